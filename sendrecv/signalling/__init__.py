"""Signalling side of the call.

- SessionChannel: websocket connection to the rendezvous server
- NegotiationCoordinator: call lifecycle between channel and media engine
- messages: JSON codec for offer/answer and candidate payloads
"""

__all__ = [
    "NegotiationCoordinator",
    "SessionChannel",
]

from sendrecv.signalling.channel import SessionChannel
from sendrecv.signalling.coordinator import NegotiationCoordinator
