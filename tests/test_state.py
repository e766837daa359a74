import pytest

from amqpexchange.state import (
    CONNECTION_PHASE,
    TRANSITIONS,
    SessionState,
    backoff_delay_ms,
    can_transition,
)


def test_backoff_delay_doubles_per_attempt():
    assert [backoff_delay_ms(k) for k in (1, 2, 3, 4)] == [1000, 2000, 4000, 8000]


def test_backoff_delay_is_capped():
    assert backoff_delay_ms(5) == 10000
    assert backoff_delay_ms(12) == 10000


def test_backoff_delay_custom_base_and_cap():
    assert backoff_delay_ms(3, base_ms=50, cap_ms=150) == 150
    assert backoff_delay_ms(2, base_ms=50, cap_ms=150) == 100


def test_backoff_delay_rejects_attempt_zero():
    with pytest.raises(ValueError):
        backoff_delay_ms(0)


def test_every_state_has_transitions():
    assert set(TRANSITIONS) == set(SessionState)


def test_closed_is_final():
    assert TRANSITIONS[SessionState.CLOSED] == frozenset()


def test_every_non_terminal_state_can_fail():
    for state in SessionState:
        if state in (SessionState.IDLE, SessionState.FAILED, SessionState.SETTLING):
            continue
        if state.is_terminal:
            continue
        assert can_transition(state, SessionState.FAILED), state


def test_every_path_ends_in_closed():
    for state in SessionState:
        if state is SessionState.CLOSED:
            continue
        assert can_transition(state, SessionState.CLOSING) or state is SessionState.CLOSING
    assert can_transition(SessionState.CLOSING, SessionState.CLOSED)


def test_reconnect_only_from_connection_phase():
    sources = {
        state
        for state, targets in TRANSITIONS.items()
        if SessionState.RECONNECTING in targets
    }
    assert sources == set(CONNECTION_PHASE)


def test_send_and_receive_paths_do_not_mix():
    assert not can_transition(SessionState.SENDING, SessionState.ACCEPTING)
    assert not can_transition(SessionState.WAITING, SessionState.SETTLING)


def test_is_terminal():
    assert SessionState.CLOSING.is_terminal
    assert SessionState.CLOSED.is_terminal
    assert not SessionState.FAILED.is_terminal
