"""Base protocol and types for the local media negotiation engine."""

import asyncio
import time
from abc import abstractmethod
from dataclasses import dataclass
from enum import Enum, auto
from typing import AsyncIterator, Dict, Optional, Protocol, runtime_checkable

import structlog


class MediaEventType(Enum):
    """Events emitted asynchronously by the media engine."""

    NEGOTIATION_NEEDED = auto()
    ICE_CANDIDATE = auto()
    INCOMING_TRACK = auto()
    ERROR = auto()


@dataclass
class MediaEvent:
    """Media engine event data."""

    type: MediaEventType
    data: Optional[Dict] = None
    timestamp: float = 0.0


@runtime_checkable
class MediaEngine(Protocol):
    """Protocol for media engine implementations."""

    @abstractmethod
    async def start(self) -> None:
        """Build and start the media pipeline.

        The engine reports NEGOTIATION_NEEDED once it is ready to negotiate.

        Raises:
            MediaEngineError: If the pipeline cannot be started
        """
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the pipeline and release resources."""
        ...

    @abstractmethod
    async def create_offer(self) -> str:
        """Create a local offer.

        Returns:
            Offer SDP text

        Raises:
            MediaEngineError: If no offer could be created
        """
        ...

    @abstractmethod
    def set_local_description(self, sdp: str) -> None:
        """Install an offer created by :meth:`create_offer` as local description."""
        ...

    @abstractmethod
    async def set_remote_description(self, sdp: str) -> None:
        """Apply the remote answer.

        Raises:
            MediaEngineError: If the answer is rejected
        """
        ...

    @abstractmethod
    def add_ice_candidate(self, sdp_mline_index: int, candidate: str) -> None:
        """Add a remote connectivity candidate."""
        ...

    @abstractmethod
    def events(self) -> AsyncIterator[MediaEvent]:
        """Iterate over engine events.

        Yields:
            Media events (NEGOTIATION_NEEDED, ICE_CANDIDATE, ...)
        """
        ...


class MediaEngineBase:
    """Base class for media engines with a shared event queue.

    Subclasses call :meth:`emit` from the event loop thread, or
    :meth:`emit_threadsafe` from any other thread.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Initialize base engine.

        Args:
            loop: Event loop that consumes events (defaults to the running loop
                at :meth:`bind_loop` time)
        """
        self._loop = loop
        self._event_queue: asyncio.Queue[Optional[MediaEvent]] = asyncio.Queue()
        self._started = False
        self._closed = False
        self._logger = structlog.get_logger(__name__)

    @property
    def is_started(self) -> bool:
        """Check if the pipeline was started."""
        return self._started

    def bind_loop(self) -> asyncio.AbstractEventLoop:
        """Remember the running loop as target for thread-safe emits."""
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def emit(self, event_type: MediaEventType, **data: object) -> None:
        """Queue an event (event loop thread only)."""
        if self._closed:
            self._logger.debug("Dropping event after close", type=event_type.name)
            return
        self._event_queue.put_nowait(
            MediaEvent(type=event_type, data=data or None, timestamp=time.time())
        )

    def emit_threadsafe(self, event_type: MediaEventType, **data: object) -> None:
        """Queue an event from a foreign (e.g. GStreamer streaming) thread."""
        if self._loop is None:
            raise RuntimeError("Engine is not bound to an event loop")
        self._loop.call_soon_threadsafe(lambda: self.emit(event_type, **data))

    def close_events(self) -> None:
        """End the :meth:`events` iterator."""
        if self._closed:
            return
        self._closed = True
        self._event_queue.put_nowait(None)

    async def events(self) -> AsyncIterator[MediaEvent]:
        """Iterate over queued events until :meth:`close_events`."""
        while True:
            event = await self._event_queue.get()
            if event is None:
                break
            yield event
