"""Tests for the call state machine."""

import pytest

from sendrecv.core.call_state import (
    PROGRESS_STATES,
    CallEvent,
    CallState,
    error_state_for,
    require_at_least,
    require_state,
    transition,
)
from sendrecv.core.errors import ProtocolViolation


HAPPY_PATH_EVENTS = [
    CallEvent.CHANNEL_OPENED,
    CallEvent.REGISTRATION_SENT,
    CallEvent.REGISTRATION_ACK,
    CallEvent.SESSION_REQUESTED,
    CallEvent.SESSION_ACK,
    CallEvent.NEGOTIATION_NEEDED,
    CallEvent.ANSWER_APPLIED,
]


class TestOrdering:
    """Test the declared total order."""

    def test_declared_order(self) -> None:
        """States compare in declaration order, generic fault first."""
        ordered = sorted(CallState, key=lambda s: s.rank)
        assert ordered[0] is CallState.APP_ERROR
        assert ordered[-1] is CallState.PEER_CALL_ERROR
        assert CallState.SERVER_CONNECTING < CallState.SERVER_CONNECTION_ERROR < CallState.SERVER_CONNECTED
        assert CallState.SERVER_CLOSED < CallState.PEER_CONNECTING
        assert CallState.PEER_CALL_NEGOTIATING < CallState.PEER_CALL_STARTED < CallState.PEER_CALL_ERROR

    def test_progress_states_strictly_increase(self) -> None:
        """Happy path phases are strictly increasing."""
        for earlier, later in zip(PROGRESS_STATES, PROGRESS_STATES[1:]):
            assert earlier < later
            assert later > earlier
            assert not later <= earlier

    def test_comparison_with_other_types(self) -> None:
        """Ordering against non-states is not defined."""
        with pytest.raises(TypeError):
            CallState.SERVER_CONNECTING < 3  # noqa: B015

    def test_error_and_terminal_flags(self) -> None:
        """Error flag covers every *_ERROR plus the generic fault."""
        errors = {s for s in CallState if s.is_error}
        assert errors == {
            CallState.APP_ERROR,
            CallState.SERVER_CONNECTION_ERROR,
            CallState.SERVER_REGISTERING_ERROR,
            CallState.PEER_CONNECTION_ERROR,
            CallState.PEER_CALL_ERROR,
        }
        assert CallState.SERVER_CLOSED.is_terminal
        assert not CallState.PEER_CALL_STARTED.is_terminal


class TestTransitions:
    """Test the transition table."""

    def test_happy_path(self) -> None:
        """Every happy path event moves exactly one phase forward."""
        state = CallState.SERVER_CONNECTING
        visited = [state]
        for event in HAPPY_PATH_EVENTS:
            state = transition(state, event)
            visited.append(state)

        assert visited == list(PROGRESS_STATES)
        assert len(set(visited)) == len(visited)

    @pytest.mark.parametrize("state", list(CallState))
    def test_channel_closed_from_any_state(self, state: CallState) -> None:
        """Closing the channel always ends in SERVER_CLOSED."""
        assert transition(state, CallEvent.CHANNEL_CLOSED) is CallState.SERVER_CLOSED

    def test_undefined_pairs_are_violations(self) -> None:
        """Pairs outside the table raise instead of being ignored."""
        allowed = set(zip(PROGRESS_STATES, HAPPY_PATH_EVENTS))
        for state in CallState:
            for event in HAPPY_PATH_EVENTS:
                if (state, event) in allowed:
                    continue
                with pytest.raises(ProtocolViolation):
                    transition(state, event)

    def test_violation_names_state_and_event(self) -> None:
        """Diagnostics name the offending pair."""
        with pytest.raises(ProtocolViolation) as excinfo:
            transition(CallState.SERVER_CONNECTING, CallEvent.ANSWER_APPLIED)

        assert excinfo.value.state is CallState.SERVER_CONNECTING
        assert "ANSWER_APPLIED" in str(excinfo.value)
        assert "SERVER_CONNECTING" in str(excinfo.value)


class TestErrorMapping:
    """Test server error mapping."""

    @pytest.mark.parametrize(
        "state,expected",
        [
            (CallState.SERVER_CONNECTING, CallState.SERVER_CONNECTION_ERROR),
            (CallState.SERVER_REGISTERING, CallState.SERVER_REGISTERING_ERROR),
            (CallState.PEER_CONNECTING, CallState.PEER_CONNECTION_ERROR),
            (CallState.PEER_CONNECTED, CallState.PEER_CALL_ERROR),
            (CallState.PEER_CALL_NEGOTIATING, CallState.PEER_CALL_ERROR),
            (CallState.SERVER_CONNECTED, CallState.APP_ERROR),
            (CallState.SERVER_REGISTERED, CallState.APP_ERROR),
            (CallState.SERVER_CLOSED, CallState.APP_ERROR),
            (CallState.PEER_CALL_STARTED, CallState.APP_ERROR),
        ],
    )
    def test_phase_specific_error(self, state: CallState, expected: CallState) -> None:
        """Each phase fails into its own error state."""
        assert error_state_for(state) is expected
        assert transition(state, CallEvent.SERVER_ERROR) is expected

    def test_error_states_are_sinks(self) -> None:
        """An error state maps to itself."""
        for state in CallState:
            if state.is_error:
                assert transition(state, CallEvent.SERVER_ERROR) is state


class TestGuards:
    """Test guard helpers."""

    def test_answer_guard_only_while_negotiating(self) -> None:
        """Applying an answer is allowed iff negotiating."""
        for state in CallState:
            if state is CallState.PEER_CALL_NEGOTIATING:
                require_state(state, CallState.PEER_CALL_NEGOTIATING, "apply remote answer")
            else:
                with pytest.raises(ProtocolViolation):
                    require_state(state, CallState.PEER_CALL_NEGOTIATING, "apply remote answer")

    def test_send_guard_threshold(self) -> None:
        """Sending offer/candidates is allowed iff negotiation has started."""
        for state in CallState:
            if state >= CallState.PEER_CALL_NEGOTIATING:
                require_at_least(state, CallState.PEER_CALL_NEGOTIATING, "send ICE")
            else:
                with pytest.raises(ProtocolViolation, match="not in call"):
                    require_at_least(state, CallState.PEER_CALL_NEGOTIATING, "send ICE")
