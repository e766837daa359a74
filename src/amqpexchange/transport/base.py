"""
Abstract interfaces between the exchange session and an AMQP client library.

The transport owns the event loop and the wire protocol. The session only
issues commands through `Transport` and is notified through `TransportListener`.
All listener calls and scheduled callbacks run on the transport's loop thread.
"""

import abc
from typing import Any, Callable

from amqpexchange.models import ConnectionConfig, DestinationRef, Message, Role
from amqpexchange.state import SessionEvent


class TimerHandle(abc.ABC):
    @abc.abstractmethod
    def cancel(self) -> None:
        """Cancel the timer. Cancelling a fired or cancelled timer is a no-op."""
        pass


class TransportListener(abc.ABC):
    @abc.abstractmethod
    def on_transport_started(self) -> None:
        """Called once from the loop thread when the event loop starts."""
        pass

    @abc.abstractmethod
    def on_transport_event(self, event: SessionEvent, **payload: Any) -> None:
        """
        Called for each protocol event of the current connection attempt.

        Payload keys by event:
            CONNECTION_FAILED, DISCONNECTED: error (str or None)
            MESSAGE_ARRIVED: message (Message), delivery (opaque handle)
            DELIVERY_REJECTED: condition (str or None)
        """
        pass


class Transport(abc.ABC):
    """
    Event-driven AMQP 1.0 client used by one session for one exchange.
    """

    @abc.abstractmethod
    def run(self, listener: TransportListener) -> None:
        """
        Run the event loop on the calling thread until `close` has been called
        and all work has drained.
        """
        pass

    @abc.abstractmethod
    def connect(self, config: ConnectionConfig) -> None:
        """
        Start a new connection attempt. The outcome arrives as CONNECTION_OPENED,
        CONNECTION_FAILED or DISCONNECTED.
        """
        pass

    @abc.abstractmethod
    def disconnect(self) -> None:
        """
        Abandon the current connection attempt. Later events from it are dropped.
        """
        pass

    @abc.abstractmethod
    def open_link(self, destination: DestinationRef, role: Role) -> None:
        """Open a sender or receiver link; LINK_OPENED follows when it is usable."""
        pass

    @abc.abstractmethod
    def send(self, message: Message) -> None:
        """Transmit one message; the broker outcome arrives as a delivery event."""
        pass

    @abc.abstractmethod
    def accept(self, delivery: Any) -> None:
        """Accept and settle an inbound delivery."""
        pass

    @abc.abstractmethod
    def schedule(self, delay_ms: int, callback: Callable[[], None]) -> TimerHandle:
        pass

    @abc.abstractmethod
    def call_soon_threadsafe(self, callback: Callable[[], None]) -> None:
        """
        Run the callback on the loop thread. Safe to call from other threads
        and from signal handlers.
        """
        pass

    @abc.abstractmethod
    def close(self) -> None:
        """
        Close link and connection and release loop resources. Idempotent.
        """
        pass
