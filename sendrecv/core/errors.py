"""Fatal call outcomes.

Every failure in the call lifecycle is fatal for the call: nothing here is
retried. ``CallFailed`` is what :meth:`NegotiationCoordinator.run` raises
instead of returning a final state.
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from sendrecv.core.call_state import CallState


class CallFailed(Exception):
    """Base class for faults that stop the call."""

    def __init__(self, message: str, state: Optional["CallState"] = None) -> None:
        """Initialize fault.

        Args:
            message: Human readable diagnostic
            state: Call phase in which the fault happened
        """
        super().__init__(message)
        self.state = state

    def __str__(self) -> str:
        message = super().__str__()
        if self.state is None:
            return message
        return f"{message} (state={self.state.name})"


class ProtocolViolation(CallFailed):
    """A state guard failed or an undefined transition was requested."""


class MalformedMessage(ProtocolViolation):
    """Negotiation payload is not one of the recognised shapes."""


class ServerReportedError(CallFailed):
    """The signalling server sent an ``ERROR`` message."""

    def __init__(
        self,
        message: str,
        state: "CallState",
        error_state: "CallState",
        server_message: str
    ) -> None:
        """Initialize server error.

        Args:
            message: Diagnostic text
            state: Phase the call was in when the error arrived
            error_state: Phase-specific error state it maps to
            server_message: Raw text received from the server
        """
        super().__init__(message, state)
        self.error_state = error_state
        self.server_message = server_message


class ChannelError(CallFailed):
    """The signalling channel could not be established or used."""


class ChannelClosedError(ChannelError):
    """The channel was open but has closed; its ``on_close`` is still due."""


class CallTimeout(CallFailed):
    """No reply arrived within the configured response timeout."""


class MediaEngineError(CallFailed):
    """The media engine failed to start or to complete a negotiation step."""
