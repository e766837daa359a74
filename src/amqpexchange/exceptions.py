"""
Custom exceptions for amqpexchange.

Every terminal outcome of an exchange other than success is one of these.
The session raises them only after the link and connection are closed.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    CONNECTION_EXHAUSTED = "connection_exhausted"
    PROTOCOL_REJECTED = "protocol_rejected"
    TIMEOUT = "timeout"
    INVALID_STATE = "invalid_state"
    TRANSPORT_ERROR = "transport_error"
    CANCELLED = "cancelled"


class ExchangeError(Exception):
    """Base class for all exchange failures."""

    kind: ErrorKind


class ConnectionExhaustedError(ExchangeError):
    """Raised when every allowed connection attempt has failed."""

    kind = ErrorKind.CONNECTION_EXHAUSTED

    def __init__(
        self, attempts: int, last_error: Optional[str] = None, message: str = None
    ):
        self.attempts = attempts
        self.last_error = last_error
        if message is None:
            message = f"Failed to connect after {attempts} attempts"
            if last_error:
                message = f"{message}: {last_error}"
        super().__init__(message)


class ProtocolRejectedError(ExchangeError):
    """Raised when the broker does not accept a sent message."""

    kind = ErrorKind.PROTOCOL_REJECTED

    def __init__(self, destination: str, condition: Optional[str] = None):
        self.destination = destination
        self.condition = condition
        message = f"Message was rejected by the broker for {destination}"
        if condition:
            message = f"{message}: {condition}"
        super().__init__(message)


class ExchangeTimeoutError(ExchangeError):
    """Raised when no message arrives before the receive deadline."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(f"No message received within {timeout_ms}ms")


class InvalidStateError(ExchangeError):
    """Raised when an operation is not allowed in the session's current state."""

    kind = ErrorKind.INVALID_STATE

    def __init__(self, state, operation: str):
        self.state = state
        self.operation = operation
        state_name = getattr(state, "value", state)
        super().__init__(f"Cannot {operation} while session is {state_name}")


class TransportError(ExchangeError):
    """Wraps an error reported by the underlying AMQP library."""

    kind = ErrorKind.TRANSPORT_ERROR

    def __init__(self, description: str, cause: Optional[BaseException] = None):
        self.description = description
        self.cause = cause
        super().__init__(description)


class CancelledError(ExchangeError):
    """Raised when the caller cancels an exchange before its outcome is settled."""

    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "Exchange was cancelled"):
        super().__init__(message)
