"""Negotiation coordinator.

Sits between the signalling channel and the media engine and drives the call
state machine:

1. Channel open -> register ``HELLO <id>``
2. ``HELLO`` -> request ``SESSION <peer-id>``
3. ``SESSION_OK`` -> start the media engine
4. Media engine needs negotiation -> create offer -> send offer
5. Remote answer -> apply -> call started
6. Candidates are exchanged in both directions for the rest of the call

Channel callbacks and media engine events arrive on different tasks (and, for
GStreamer, different threads). They only post into one mailbox; a single
actor loop drains it, so every guard check and transition is one atomic step.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Optional, Protocol

import structlog

from sendrecv.core.call_state import (
    CallEvent,
    CallState,
    error_state_for,
    require_at_least,
    require_state,
    transition,
)
from sendrecv.core.constants import ProtocolConstants
from sendrecv.core.errors import (
    CallFailed,
    CallTimeout,
    ChannelClosedError,
    ChannelError,
    MalformedMessage,
    MediaEngineError,
    ProtocolViolation,
    ServerReportedError,
)
from sendrecv.media.engine_base import MediaEngine, MediaEvent, MediaEventType
from sendrecv.signalling.messages import (
    IceCandidate,
    NegotiationMessage,
    SdpType,
    SessionDescription,
    decode,
    encode,
)

# Phases waiting for a reply from the server or the remote peer
_AWAITING_REPLY = frozenset({
    CallState.SERVER_REGISTERING,
    CallState.PEER_CONNECTING,
    CallState.PEER_CALL_NEGOTIATING,
})


class OutboundChannel(Protocol):
    """The part of the session channel the coordinator drives."""

    async def run(self, handler: object) -> None:
        ...

    async def send(self, text: str) -> None:
        ...

    async def close(self, code: int = ProtocolConstants.CLOSE_NORMAL) -> None:
        ...


@dataclass
class Session:
    """State of the single call owned by the coordinator."""

    peer_id: str
    channel: OutboundChannel
    state: CallState = CallState.SERVER_CONNECTING
    our_id: Optional[int] = None
    offer_attempt: int = 0
    history: list[CallState] = field(default_factory=list)


# Mailbox items

@dataclass
class _ChannelOpened:
    pass


@dataclass
class _ChannelMessage:
    text: str


@dataclass
class _ChannelClosed:
    code: Optional[int]
    reason: str


@dataclass
class _ChannelFailed:
    error: CallFailed


@dataclass
class _MediaEventItem:
    event: MediaEvent


@dataclass
class _OfferCreated:
    attempt: int
    sdp: str


@dataclass
class _MediaFailed:
    error: CallFailed


class NegotiationCoordinator:
    """Drives one call from registration to an established media session."""

    def __init__(
        self,
        peer_id: str,
        channel: OutboundChannel,
        media: MediaEngine,
        id_range: tuple[int, int] = (ProtocolConstants.ID_MIN, ProtocolConstants.ID_MAX),
        response_timeout: Optional[float] = None,
        rng: Optional[random.Random] = None
    ) -> None:
        """Initialize coordinator.

        Args:
            peer_id: Identifier of the peer to call
            channel: Signalling channel (see :class:`SessionChannel`)
            media: Media engine negotiating the call
            id_range: Range ``[min, max)`` for the registration id
            response_timeout: Seconds to wait for each server/peer reply
                (None waits forever)
            rng: Random source for the registration id
        """
        id_min, id_max = id_range
        if not 0 <= id_min < id_max:
            raise ValueError(f"Invalid registration id range: [{id_min}, {id_max})")
        if response_timeout is not None and response_timeout <= 0:
            raise ValueError(f"Response timeout must be positive, got {response_timeout}")

        self._session = Session(peer_id=peer_id, channel=channel)
        self._session.history.append(self._session.state)
        self._media = media
        self._id_range = (id_min, id_max)
        self._response_timeout = response_timeout
        self._rng = rng or random.Random()

        self._mailbox: asyncio.Queue = asyncio.Queue()
        self._tasks: set[asyncio.Task] = set()
        self._media_started = False
        self._offer_sent = False
        self._pending_candidates: list[IceCandidate] = []
        # Loop time by which the awaited reply must arrive
        self._deadline: Optional[float] = None

        self._logger = structlog.get_logger(__name__).bind(peer_id=peer_id)

    @property
    def session(self) -> Session:
        """Call session (read-only use outside the coordinator)."""
        return self._session

    @property
    def state(self) -> CallState:
        """Current call phase."""
        return self._session.state

    # ------------------------------------------------------ channel handler

    async def on_open(self) -> None:
        """Channel callback: connection established."""
        self._post(_ChannelOpened())

    async def on_message(self, text: str) -> None:
        """Channel callback: text message received."""
        self._post(_ChannelMessage(text))

    async def on_close(self, code: Optional[int], reason: str) -> None:
        """Channel callback: connection closed."""
        self._post(_ChannelClosed(code, reason))

    def _post(self, item: object) -> None:
        self._mailbox.put_nowait(item)

    # ------------------------------------------------------------ run loop

    async def run(self) -> CallState:
        """Run the call until the channel closes.

        Returns:
            Final state (``SERVER_CLOSED``) when the call ended normally

        Raises:
            CallFailed: On any fatal fault (protocol violation, server error,
                malformed payload, media failure, timeout)
        """
        self._logger.info("Starting call", state=self.state.name)
        self._spawn(self._run_channel(), name="signalling-channel")
        self._spawn(self._pump_media_events(), name="media-events")

        try:
            while True:
                item = await self._next_item()
                if await self._dispatch(item):
                    break
        except CallFailed as e:
            self._logger.error(
                "Call failed",
                error=str(e),
                error_type=type(e).__name__,
                failed_in=e.state.name if e.state else None,
                state=self.state.name
            )
            raise
        finally:
            await self._shutdown()

        self._logger.info("Call ended", state=self.state.name)
        return self.state

    async def _next_item(self) -> object:
        if self._deadline is None:
            return await self._mailbox.get()

        # Unrelated traffic (candidates, tracks) does not extend the deadline
        try:
            async with asyncio.timeout_at(self._deadline):
                return await self._mailbox.get()
        except TimeoutError:
            raise CallTimeout(
                f"No reply within {self._response_timeout}s", self.state
            ) from None

    async def _dispatch(self, item: object) -> bool:
        """Handle one mailbox item. Returns True when the call is over."""
        if isinstance(item, _ChannelMessage):
            await self._handle_message(item.text)
        elif isinstance(item, _MediaEventItem):
            await self._handle_media_event(item.event)
        elif isinstance(item, _OfferCreated):
            await self._handle_offer_created(item)
        elif isinstance(item, _ChannelOpened):
            await self._handle_open()
        elif isinstance(item, _ChannelClosed):
            self._advance(CallEvent.CHANNEL_CLOSED)
            self._logger.info("Server closed connection", code=item.code, reason=item.reason)
            return True
        elif isinstance(item, (_ChannelFailed, _MediaFailed)):
            if item.error.state is None:
                item.error.state = self.state
            if isinstance(item, _ChannelFailed):
                self._session.state = error_state_for(self.state)
                self._session.history.append(self._session.state)
            raise item.error
        else:
            raise TypeError(f"Unknown mailbox item: {item!r}")
        return False

    def _advance(self, event: CallEvent) -> CallState:
        previous = self._session.state
        self._session.state = transition(previous, event)
        self._session.history.append(self._session.state)

        if self._response_timeout is not None and self._session.state in _AWAITING_REPLY:
            self._deadline = asyncio.get_running_loop().time() + self._response_timeout
        else:
            self._deadline = None

        self._logger.debug(
            "State transition",
            call_event=event.name,
            from_state=previous.name,
            to_state=self._session.state.name
        )
        return self._session.state

    # -------------------------------------------------------- channel side

    async def _handle_open(self) -> None:
        self._advance(CallEvent.CHANNEL_OPENED)

        our_id = self._rng.randrange(*self._id_range)
        self._session.our_id = our_id
        self._logger.info("Registering id with server", our_id=our_id)
        await self._send(f"{ProtocolConstants.REGISTER_PREFIX} {our_id}")
        self._advance(CallEvent.REGISTRATION_SENT)

    async def _handle_message(self, text: str) -> None:
        if text == ProtocolConstants.REGISTRATION_ACK:
            require_state(self.state, CallState.SERVER_REGISTERING, "accept HELLO")
            self._advance(CallEvent.REGISTRATION_ACK)
            await self._setup_call()
            return

        if text == ProtocolConstants.SESSION_ACK:
            require_state(self.state, CallState.PEER_CONNECTING, "accept SESSION_OK")
            self._advance(CallEvent.SESSION_ACK)
            await self._start_media()
            return

        if text.startswith(ProtocolConstants.ERROR_PREFIX):
            await self._handle_server_error(text)
            return

        try:
            message = decode(text)
        except MalformedMessage as e:
            e.state = self.state
            raise
        await self._handle_negotiation_message(message)

    async def _setup_call(self) -> None:
        peer_id = self._session.peer_id
        self._logger.info("Setting up signalling server call")
        await self._send(f"{ProtocolConstants.SESSION_PREFIX} {peer_id}")
        self._advance(CallEvent.SESSION_REQUESTED)

    async def _start_media(self) -> None:
        if self._media_started:
            raise ProtocolViolation("Media engine already started", self.state)
        self._media_started = True

        try:
            await self._media.start()
        except CallFailed:
            raise
        except Exception as e:
            raise MediaEngineError(f"Failed to set up webrtc: {e}", self.state) from e
        self._logger.info("Media engine started")

    async def _handle_server_error(self, text: str) -> None:
        prior = self.state
        error_state = self._advance(CallEvent.SERVER_ERROR)
        self._logger.error(
            "Got error message",
            message=text,
            state=prior.name,
            error_state=error_state.name
        )
        await self._session.channel.close(ProtocolConstants.CLOSE_NORMAL)
        raise ServerReportedError(
            f"Server reported error: {text}",
            state=prior,
            error_state=error_state,
            server_message=text
        )

    async def _handle_negotiation_message(self, message: NegotiationMessage) -> None:
        if isinstance(message, IceCandidate):
            # Connectivity checks continue for the whole call; no guard
            self._media.add_ice_candidate(message.sdp_mline_index, message.candidate)
            self._logger.debug(
                "Added remote candidate",
                sdp_mline_index=message.sdp_mline_index
            )
            return

        if message.type is not SdpType.ANSWER:
            raise ProtocolViolation(
                f"Expected SDP answer, got {message.type.value}", self.state
            )
        require_state(self.state, CallState.PEER_CALL_NEGOTIATING, "apply remote answer")
        self._logger.info("Received answer", sdp_length=len(message.sdp))

        try:
            await self._media.set_remote_description(message.sdp)
        except CallFailed:
            raise
        except Exception as e:
            raise MediaEngineError(f"Failed to apply answer: {e}", self.state) from e
        self._advance(CallEvent.ANSWER_APPLIED)
        self._logger.info("Call started")

    # ---------------------------------------------------------- media side

    async def _pump_media_events(self) -> None:
        try:
            async for event in self._media.events():
                self._post(_MediaEventItem(event))
        except CallFailed as e:
            self._post(_MediaFailed(e))
        except Exception as e:
            self._post(_MediaFailed(MediaEngineError(f"Media event stream failed: {e}")))

    async def _handle_media_event(self, event: MediaEvent) -> None:
        data = event.data or {}

        if event.type is MediaEventType.NEGOTIATION_NEEDED:
            require_state(self.state, CallState.PEER_CONNECTED, "start negotiation")
            self._advance(CallEvent.NEGOTIATION_NEEDED)
            self._session.offer_attempt += 1
            self._spawn(
                self._request_offer(self._session.offer_attempt), name="create-offer"
            )
        elif event.type is MediaEventType.ICE_CANDIDATE:
            require_at_least(self.state, CallState.PEER_CALL_NEGOTIATING, "send ICE")
            candidate = IceCandidate(
                sdp_mline_index=data["sdp_mline_index"],
                candidate=data["candidate"]
            )
            if self._offer_sent:
                await self._send_negotiation(candidate, "send ICE")
            else:
                self._pending_candidates.append(candidate)
        elif event.type is MediaEventType.INCOMING_TRACK:
            self._logger.info("Incoming media stream", media=data.get("media"), caps=data.get("caps"))
        elif event.type is MediaEventType.ERROR:
            raise MediaEngineError(
                f"Media pipeline error: {data.get('message', 'unknown')}", self.state
            )

    async def _request_offer(self, attempt: int) -> None:
        try:
            sdp = await self._media.create_offer()
        except CallFailed as e:
            self._post(_MediaFailed(e))
        except Exception as e:
            self._post(_MediaFailed(MediaEngineError(f"Failed to create offer: {e}")))
        else:
            self._post(_OfferCreated(attempt, sdp))

    async def _handle_offer_created(self, item: _OfferCreated) -> None:
        require_state(self.state, CallState.PEER_CALL_NEGOTIATING, "handle created offer")
        if item.attempt != self._session.offer_attempt:
            raise ProtocolViolation(
                f"Offer for attempt {item.attempt} arrived, current attempt is "
                f"{self._session.offer_attempt}",
                self.state
            )

        self._media.set_local_description(item.sdp)
        await self._send_negotiation(
            SessionDescription(type=SdpType.OFFER, sdp=item.sdp), "send offer"
        )
        self._offer_sent = True
        self._logger.info("Offer sent", pending_candidates=len(self._pending_candidates))

        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self._send_negotiation(candidate, "send ICE")

    async def _send_negotiation(self, message: NegotiationMessage, action: str) -> None:
        require_at_least(self.state, CallState.PEER_CALL_NEGOTIATING, action)
        await self._send(encode(message))

    async def _send(self, text: str) -> None:
        try:
            await self._session.channel.send(text)
        except ChannelClosedError as e:
            # The channel's close notification is already on its way
            # and ends the call normally
            self._logger.info("Channel closed, message not sent", error=str(e), state=self.state.name)
        except ChannelError as e:
            if e.state is None:
                e.state = self.state
            raise

    # ------------------------------------------------------------ plumbing

    async def _run_channel(self) -> None:
        try:
            await self._session.channel.run(self)
        except CallFailed as e:
            self._post(_ChannelFailed(e))
        except Exception as e:
            self._post(_ChannelFailed(ChannelError(f"Signalling channel failed: {e}")))

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _shutdown(self) -> None:
        try:
            await self._session.channel.close(ProtocolConstants.CLOSE_NORMAL)
        except Exception as e:
            self._logger.error("Error closing channel", error=str(e))

        if self._media_started:
            try:
                await self._media.stop()
            except Exception as e:
                self._logger.error("Error stopping media engine", error=str(e))

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
