"""Negotiation message codec.

Two JSON payload shapes travel over the signalling channel:

    {"sdp": {"type": "offer" | "answer", "sdp": "<SDP text>"}}
    {"ice": {"candidate": "<candidate>", "sdpMLineIndex": <uint32>}}

Anything else is rejected as a whole; there is no best-effort parsing.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from sendrecv.core.constants import ProtocolConstants
from sendrecv.core.errors import MalformedMessage

UINT32_MAX = 0xFFFF_FFFF


class SdpType(str, Enum):
    """Session description role."""

    OFFER = "offer"
    ANSWER = "answer"


@dataclass(frozen=True)
class SessionDescription:
    """Offer or answer SDP."""

    type: SdpType
    sdp: str


@dataclass(frozen=True)
class IceCandidate:
    """Connectivity candidate for one media line."""

    sdp_mline_index: int
    candidate: str


NegotiationMessage = Union[SessionDescription, IceCandidate]


def encode(message: NegotiationMessage) -> str:
    """Serialize a negotiation message to channel text.

    Args:
        message: Message to encode

    Returns:
        JSON text

    Raises:
        TypeError: If ``message`` is not a negotiation message
    """
    if isinstance(message, SessionDescription):
        payload = {
            ProtocolConstants.SDP_KEY: {
                "type": SdpType(message.type).value,
                "sdp": message.sdp,
            }
        }
    elif isinstance(message, IceCandidate):
        payload = {
            ProtocolConstants.ICE_KEY: {
                "candidate": message.candidate,
                "sdpMLineIndex": message.sdp_mline_index,
            }
        }
    else:
        raise TypeError(f"Not a negotiation message: {type(message).__name__}")

    return json.dumps(payload, separators=(",", ":"))


def decode(text: str) -> NegotiationMessage:
    """Parse channel text into a negotiation message.

    Args:
        text: JSON text received from the channel

    Returns:
        SessionDescription or IceCandidate

    Raises:
        MalformedMessage: If the text is not exactly one recognised shape
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedMessage(f"Negotiation message is not JSON: {e}") from e

    if not isinstance(data, dict):
        raise MalformedMessage("Negotiation message must be a JSON object")

    keys = set(data)
    if keys == {ProtocolConstants.SDP_KEY}:
        return _decode_sdp(data[ProtocolConstants.SDP_KEY])
    if keys == {ProtocolConstants.ICE_KEY}:
        return _decode_ice(data[ProtocolConstants.ICE_KEY])

    raise MalformedMessage(
        f"Expected exactly one of 'sdp' or 'ice', got keys {sorted(keys)}"
    )


def _decode_sdp(body: Any) -> SessionDescription:
    if not isinstance(body, dict):
        raise MalformedMessage("'sdp' must be an object")

    sdp_type = body.get("type")
    sdp = body.get("sdp")
    if not isinstance(sdp, str):
        raise MalformedMessage("'sdp.sdp' must be a string")
    try:
        return SessionDescription(type=SdpType(sdp_type), sdp=sdp)
    except ValueError:
        raise MalformedMessage(f"Unknown SDP type: {sdp_type!r}") from None


def _decode_ice(body: Any) -> IceCandidate:
    if not isinstance(body, dict):
        raise MalformedMessage("'ice' must be an object")

    candidate = body.get("candidate")
    mline_index = body.get("sdpMLineIndex")
    if not isinstance(candidate, str):
        raise MalformedMessage("'ice.candidate' must be a string")
    # bool is an int subclass; reject it explicitly
    if (
        isinstance(mline_index, bool)
        or not isinstance(mline_index, int)
        or not 0 <= mline_index <= UINT32_MAX
    ):
        raise MalformedMessage(f"'ice.sdpMLineIndex' must be a uint32, got {mline_index!r}")

    return IceCandidate(sdp_mline_index=mline_index, candidate=candidate)
