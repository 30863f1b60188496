"""Call state machine, error taxonomy, constants and call profiles."""

__all__ = [
    "CallEvent",
    "CallState",
    "CallFailed",
    "CallProfile",
    "transition",
]

from sendrecv.core.call_profile import CallProfile
from sendrecv.core.call_state import CallEvent, CallState, transition
from sendrecv.core.errors import CallFailed
