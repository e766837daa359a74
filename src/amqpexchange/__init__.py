from amqpexchange.exceptions import (
    CancelledError,
    ConnectionExhaustedError,
    ExchangeError,
    ExchangeTimeoutError,
    InvalidStateError,
    ProtocolRejectedError,
    TransportError,
)
from amqpexchange.models import (
    Ack,
    ConnectionConfig,
    DestinationKind,
    DestinationRef,
    DurabilityMode,
    Message,
    Role,
)
from amqpexchange.session import ExchangeSession, receive, send
from amqpexchange.state import SessionEvent, SessionState

__all__ = [
    "Ack",
    "CancelledError",
    "ConnectionConfig",
    "ConnectionExhaustedError",
    "DestinationKind",
    "DestinationRef",
    "DurabilityMode",
    "ExchangeError",
    "ExchangeSession",
    "ExchangeTimeoutError",
    "InvalidStateError",
    "Message",
    "ProtocolRejectedError",
    "Role",
    "SessionEvent",
    "SessionState",
    "TransportError",
    "receive",
    "send",
]
