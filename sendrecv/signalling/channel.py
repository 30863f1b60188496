"""Websocket session channel to the signalling server."""

import asyncio
import ssl
from typing import Optional, Protocol

import structlog
import websockets
from websockets.asyncio.client import ClientConnection

from sendrecv.core.constants import ProtocolConstants
from sendrecv.core.errors import ChannelClosedError, ChannelError


class ChannelHandler(Protocol):
    """Callbacks driven by :meth:`SessionChannel.run`."""

    async def on_open(self) -> None:
        ...

    async def on_message(self, text: str) -> None:
        ...

    async def on_close(self, code: Optional[int], reason: str) -> None:
        ...


class SessionChannel:
    """Persistent text-message connection to the rendezvous server.

    Messages are delivered to the handler in arrival order. ``on_close`` is
    called exactly once after a successful open, whatever ends the
    connection.
    """

    def __init__(
        self,
        url: str = ProtocolConstants.DEFAULT_SERVER,
        open_timeout: float = 10.0,
        verify_tls: bool = True
    ) -> None:
        """Initialize channel.

        Args:
            url: Signalling server URL (ws:// or wss://)
            open_timeout: Seconds allowed for the opening handshake
            verify_tls: Verify the server certificate for wss:// URLs
        """
        self._url = url
        self._open_timeout = open_timeout
        self._verify_tls = verify_tls
        self._ws: Optional[ClientConnection] = None
        self._closing = False
        self._closed = False

        self._messages_received = 0
        self._messages_sent = 0

        self._logger = structlog.get_logger(__name__)

    @property
    def url(self) -> str:
        """Signalling server URL."""
        return self._url

    @property
    def is_open(self) -> bool:
        """Check if the connection is established and not closing."""
        return self._ws is not None and not (self._closing or self._closed)

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        if not self._url.startswith("wss://"):
            return None
        context = ssl.create_default_context()
        if not self._verify_tls:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    async def run(self, handler: ChannelHandler) -> None:
        """Connect and pump messages into ``handler`` until the channel closes.

        Args:
            handler: Receiver of open/message/close callbacks

        Raises:
            ChannelError: If the connection cannot be established
        """
        self._logger.info("Connecting to server", url=self._url)

        try:
            self._ws = await websockets.connect(
                self._url,
                ssl=self._ssl_context(),
                open_timeout=self._open_timeout
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise ChannelError(f"Failed to connect to {self._url}: {e}") from e

        ws = self._ws
        code: Optional[int] = None
        reason = ""
        try:
            await handler.on_open()

            async for message in ws:
                if isinstance(message, bytes):
                    self._logger.warning("Ignoring binary frame", size=len(message))
                    continue
                self._messages_received += 1
                await handler.on_message(message)

            code, reason = ws.close_code, ws.close_reason or ""
        except websockets.exceptions.ConnectionClosed as e:
            if e.rcvd is not None:
                code, reason = e.rcvd.code, e.rcvd.reason
            else:
                code, reason = ProtocolConstants.CLOSE_ABNORMAL, str(e)
        finally:
            self._closed = True
            # No-op when already closed; releases the socket on cancellation
            await ws.close()

        self._logger.info(
            "Channel closed",
            code=code,
            reason=reason,
            received=self._messages_received,
            sent=self._messages_sent
        )
        await handler.on_close(code, reason)

    async def send(self, text: str) -> None:
        """Send a text message.

        Raises:
            ChannelError: If the channel was never opened
            ChannelClosedError: If the channel has closed or is closing
        """
        if self._ws is None:
            raise ChannelError("Can't send, channel is not open")
        if self._closing or self._closed:
            raise ChannelClosedError("Can't send, channel is closed")

        try:
            await self._ws.send(text)
        except websockets.exceptions.ConnectionClosed as e:
            raise ChannelClosedError(f"Channel closed while sending: {e}") from e

        self._messages_sent += 1
        self._logger.debug("Sent message", text=text[:80])

    async def close(self, code: int = ProtocolConstants.CLOSE_NORMAL) -> None:
        """Close the channel. Only the first call has an effect."""
        if self._ws is None or self._closing or self._closed:
            return

        self._closing = True
        self._logger.info("Closing channel", code=code)
        await self._ws.close(code=code)
