"""Call lifecycle state machine.

The call progresses through server registration, peer session setup and
media negotiation:

    SERVER_CONNECTING -> SERVER_CONNECTED -> SERVER_REGISTERING
    -> SERVER_REGISTERED -> PEER_CONNECTING -> PEER_CONNECTED
    -> PEER_CALL_NEGOTIATING -> PEER_CALL_STARTED

States are totally ordered so guards can ask "has negotiation started"
(``state >= PEER_CALL_NEGOTIATING``). The order comes from ``_RANKS`` only;
enum values carry no meaning.

Undefined (state, event) pairs and failed guards raise ``ProtocolViolation``.
"""

from enum import Enum, auto

from sendrecv.core.errors import ProtocolViolation


class CallState(Enum):
    """Call phase."""

    APP_ERROR = auto()
    SERVER_CONNECTING = auto()
    SERVER_CONNECTION_ERROR = auto()
    SERVER_CONNECTED = auto()
    SERVER_REGISTERING = auto()
    SERVER_REGISTERING_ERROR = auto()
    SERVER_REGISTERED = auto()
    SERVER_CLOSED = auto()
    PEER_CONNECTING = auto()
    PEER_CONNECTION_ERROR = auto()
    PEER_CONNECTED = auto()
    PEER_CALL_NEGOTIATING = auto()
    PEER_CALL_STARTED = auto()
    PEER_CALL_ERROR = auto()

    @property
    def rank(self) -> int:
        """Position in the total order (lower is earlier)."""
        return _RANKS[self]

    @property
    def is_error(self) -> bool:
        """True for the generic fault state and every phase error state."""
        return self in _ERROR_STATES

    @property
    def is_terminal(self) -> bool:
        """True when no further progress is possible."""
        return self.is_error or self is CallState.SERVER_CLOSED

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, CallState):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, CallState):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, CallState):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, CallState):
            return NotImplemented
        return self.rank >= other.rank


_ORDER = (
    CallState.APP_ERROR,
    CallState.SERVER_CONNECTING,
    CallState.SERVER_CONNECTION_ERROR,
    CallState.SERVER_CONNECTED,
    CallState.SERVER_REGISTERING,
    CallState.SERVER_REGISTERING_ERROR,
    CallState.SERVER_REGISTERED,
    CallState.SERVER_CLOSED,
    CallState.PEER_CONNECTING,
    CallState.PEER_CONNECTION_ERROR,
    CallState.PEER_CONNECTED,
    CallState.PEER_CALL_NEGOTIATING,
    CallState.PEER_CALL_STARTED,
    CallState.PEER_CALL_ERROR,
)
_RANKS = {state: rank for rank, state in enumerate(_ORDER)}

_ERROR_STATES = frozenset({
    CallState.APP_ERROR,
    CallState.SERVER_CONNECTION_ERROR,
    CallState.SERVER_REGISTERING_ERROR,
    CallState.PEER_CONNECTION_ERROR,
    CallState.PEER_CALL_ERROR,
})

# Happy path, in order
PROGRESS_STATES = (
    CallState.SERVER_CONNECTING,
    CallState.SERVER_CONNECTED,
    CallState.SERVER_REGISTERING,
    CallState.SERVER_REGISTERED,
    CallState.PEER_CONNECTING,
    CallState.PEER_CONNECTED,
    CallState.PEER_CALL_NEGOTIATING,
    CallState.PEER_CALL_STARTED,
)


class CallEvent(Enum):
    """Inputs that move the call between phases."""

    CHANNEL_OPENED = auto()
    REGISTRATION_SENT = auto()
    REGISTRATION_ACK = auto()
    SESSION_REQUESTED = auto()
    SESSION_ACK = auto()
    NEGOTIATION_NEEDED = auto()
    ANSWER_APPLIED = auto()
    SERVER_ERROR = auto()
    CHANNEL_CLOSED = auto()


_TRANSITIONS: dict[tuple[CallState, CallEvent], CallState] = {
    (CallState.SERVER_CONNECTING, CallEvent.CHANNEL_OPENED): CallState.SERVER_CONNECTED,
    (CallState.SERVER_CONNECTED, CallEvent.REGISTRATION_SENT): CallState.SERVER_REGISTERING,
    (CallState.SERVER_REGISTERING, CallEvent.REGISTRATION_ACK): CallState.SERVER_REGISTERED,
    (CallState.SERVER_REGISTERED, CallEvent.SESSION_REQUESTED): CallState.PEER_CONNECTING,
    (CallState.PEER_CONNECTING, CallEvent.SESSION_ACK): CallState.PEER_CONNECTED,
    (CallState.PEER_CONNECTED, CallEvent.NEGOTIATION_NEEDED): CallState.PEER_CALL_NEGOTIATING,
    (CallState.PEER_CALL_NEGOTIATING, CallEvent.ANSWER_APPLIED): CallState.PEER_CALL_STARTED,
}

_ERROR_MAPPING = {
    CallState.SERVER_CONNECTING: CallState.SERVER_CONNECTION_ERROR,
    CallState.SERVER_REGISTERING: CallState.SERVER_REGISTERING_ERROR,
    CallState.PEER_CONNECTING: CallState.PEER_CONNECTION_ERROR,
    CallState.PEER_CONNECTED: CallState.PEER_CALL_ERROR,
    CallState.PEER_CALL_NEGOTIATING: CallState.PEER_CALL_ERROR,
}


def error_state_for(state: CallState) -> CallState:
    """Map the current phase to the error state a server error lands in.

    Error states map to themselves; phases without a dedicated error state
    map to ``APP_ERROR``.
    """
    if state.is_error:
        return state
    return _ERROR_MAPPING.get(state, CallState.APP_ERROR)


def transition(current: CallState, event: CallEvent) -> CallState:
    """Compute the next state.

    Args:
        current: Current call phase
        event: Event being applied

    Returns:
        New call phase

    Raises:
        ProtocolViolation: If the event is not allowed in ``current``
    """
    if event is CallEvent.CHANNEL_CLOSED:
        return CallState.SERVER_CLOSED
    if event is CallEvent.SERVER_ERROR:
        return error_state_for(current)

    try:
        return _TRANSITIONS[(current, event)]
    except KeyError:
        raise ProtocolViolation(
            f"Event {event.name} is not allowed in {current.name}", current
        ) from None


def require_state(current: CallState, expected: CallState, action: str) -> None:
    """Guard: ``current`` must be exactly ``expected`` before ``action``.

    Raises:
        ProtocolViolation: If the guard fails
    """
    if current is not expected:
        raise ProtocolViolation(
            f"Can't {action}: expected {expected.name}, in {current.name}", current
        )


def require_at_least(current: CallState, minimum: CallState, action: str) -> None:
    """Guard: ``current`` must be ``minimum`` or later before ``action``.

    Raises:
        ProtocolViolation: If the guard fails
    """
    if current < minimum:
        raise ProtocolViolation(
            f"Can't {action}: not in call (need {minimum.name}), in {current.name}",
            current
        )
