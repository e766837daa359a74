"""
Session lifecycle states, the events that drive them and the reconnect backoff.
"""

from enum import Enum


class SessionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    RECONNECTING = "reconnecting"
    CONNECTED = "connected"
    LINK_OPENING = "link_opening"
    LINK_OPEN = "link_open"
    SENDING = "sending"
    SETTLING = "settling"
    WAITING = "waiting"
    ACCEPTING = "accepting"
    FAILED = "failed"
    CLOSING = "closing"
    CLOSED = "closed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.CLOSING, SessionState.CLOSED)


class SessionEvent(Enum):
    CONNECTION_OPENED = "connection_opened"
    CONNECTION_FAILED = "connection_failed"
    LINK_OPENED = "link_opened"
    MESSAGE_ARRIVED = "message_arrived"
    DELIVERY_ACCEPTED = "delivery_accepted"
    DELIVERY_REJECTED = "delivery_rejected"
    DISCONNECTED = "disconnected"


_S = SessionState

TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    _S.IDLE: frozenset({_S.CONNECTING, _S.CLOSING}),
    _S.CONNECTING: frozenset({_S.CONNECTED, _S.RECONNECTING, _S.FAILED, _S.CLOSING}),
    _S.RECONNECTING: frozenset({_S.CONNECTING, _S.FAILED, _S.CLOSING}),
    _S.CONNECTED: frozenset({_S.LINK_OPENING, _S.FAILED, _S.CLOSING}),
    _S.LINK_OPENING: frozenset({_S.LINK_OPEN, _S.RECONNECTING, _S.FAILED, _S.CLOSING}),
    _S.LINK_OPEN: frozenset({_S.SENDING, _S.WAITING, _S.FAILED, _S.CLOSING}),
    _S.SENDING: frozenset({_S.SETTLING, _S.FAILED, _S.CLOSING}),
    _S.SETTLING: frozenset({_S.CLOSING}),
    _S.WAITING: frozenset({_S.ACCEPTING, _S.FAILED, _S.CLOSING}),
    _S.ACCEPTING: frozenset({_S.CLOSING, _S.FAILED}),
    _S.FAILED: frozenset({_S.CLOSING}),
    _S.CLOSING: frozenset({_S.CLOSED}),
    _S.CLOSED: frozenset(),
}

# states where a lost connection still counts against the connect budget
CONNECTION_PHASE = frozenset({_S.CONNECTING, _S.LINK_OPENING})


def can_transition(current: SessionState, target: SessionState) -> bool:
    return target in TRANSITIONS[current]


def backoff_delay_ms(attempt: int, base_ms: int = 1000, cap_ms: int = 10000) -> int:
    """
    Delay before the reconnect that follows the given attempt number.

    :param attempt: 1-based attempt number
    :param base_ms: delay after the first attempt
    :param cap_ms: upper bound for any delay
    :return: min(base_ms * 2 ** (attempt - 1), cap_ms)
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    return min(base_ms * 2 ** (attempt - 1), cap_ms)
