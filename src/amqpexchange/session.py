"""
Single-message exchange session.

An `ExchangeSession` owns one connection and one link to one destination and
performs exactly one send or one receive over it:

    connect (with bounded reconnect/backoff) -> open link -> send or receive
    -> settle -> drain -> close

All protocol work happens in transport callbacks on the transport's event
loop thread. `send` and `receive` block the caller while that loop runs.
"""

import logging
import threading
from typing import Any, Optional, Union

from amqpexchange.exceptions import (
    CancelledError,
    ConnectionExhaustedError,
    ExchangeError,
    ExchangeTimeoutError,
    InvalidStateError,
    ProtocolRejectedError,
    TransportError,
)
from amqpexchange.models import Ack, ConnectionConfig, DestinationRef, Message, Role
from amqpexchange.state import (
    CONNECTION_PHASE,
    SessionEvent,
    SessionState,
    backoff_delay_ms,
    can_transition,
)
from amqpexchange.transport.base import TimerHandle, Transport, TransportListener

logger = logging.getLogger(__name__)


class ExchangeSession(TransportListener):
    """
    One connection, one link and one message: either a send that waits for the
    broker to accept, or a receive that accepts the first delivery.

    A session runs its operation once. `send`/`receive` block while the
    transport loop runs; `cancel` may be called from any thread.
    """

    def __init__(
        self,
        config: ConnectionConfig,
        destination: DestinationRef,
        role: Role,
        transport: Optional[Transport] = None,
    ):
        """
        :param config: broker connection parameters
        :param destination: queue or topic to exchange with
        :param role: whether this session sends or receives
        :param transport: AMQP transport; a ProtonTransport when omitted
        """
        if transport is None:
            from amqpexchange.transport.proton_transport import ProtonTransport

            transport = ProtonTransport()

        self.config = config
        self.destination = destination
        self.role = role
        self.state = SessionState.IDLE
        self.attempt_count = 0
        self.pending_outcome: Optional[Union[Ack, Message]] = None
        self.error: Optional[ExchangeError] = None

        self._transport = transport
        self._busy = threading.Lock()
        self._message: Optional[Message] = None
        self._timeout_ms: Optional[int] = None
        self._message_sent = False
        self._accepted_deliveries: list[Any] = []

        self._connect_timer: Optional[TimerHandle] = None
        self._reconnect_timer: Optional[TimerHandle] = None
        self._receive_timer: Optional[TimerHandle] = None
        self._drain_timer: Optional[TimerHandle] = None

    def __repr__(self) -> str:
        return (
            f"ExchangeSession(role={self.role.value}, destination={self.destination}, "
            f"state={self.state.value}, attempt_count={self.attempt_count})"
        )

    # public operations

    def send(self, message: Message) -> Ack:
        """
        Send one message and wait for the broker to accept it.

        :raises ExchangeError: on any failure, after the connection is closed
        """
        self._message = message
        return self._run(Role.SENDER, "send")

    def receive(self, timeout_ms: Optional[int] = None) -> Message:
        """
        Wait for one message, accept it and return it.

        :param timeout_ms: give up after this long; wait forever when None
        :raises ExchangeError: on any failure, after the connection is closed
        """
        if timeout_ms is not None and timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be positive, got {timeout_ms}")
        self._timeout_ms = timeout_ms
        return self._run(Role.RECEIVER, "receive")

    def cancel(self) -> None:
        """
        Abandon the in-progress operation. Safe from any thread or a signal handler.
        """
        logger.info("Cancellation requested")
        self._transport.call_soon_threadsafe(lambda: self._guarded(self._on_cancel))

    def close(self) -> None:
        """Release the link and connection. Closing twice is a no-op."""
        if self.state is SessionState.CLOSED:
            return
        self._cancel_timers()
        if self.state is not SessionState.CLOSING:
            self._set_state(SessionState.CLOSING)
        try:
            self._transport.close()
        finally:
            self._set_state(SessionState.CLOSED)
            logger.info("Connection closed.")

    def _run(self, role: Role, operation: str):
        if not self._busy.acquire(blocking=False):
            raise InvalidStateError(self.state, operation)
        try:
            if self.role is not role or self.state is not SessionState.IDLE:
                raise InvalidStateError(self.state, operation)

            try:
                self._transport.run(self)
            except ExchangeError as e:
                self._fail(e)
            except Exception as e:
                logger.exception("Event loop failed")
                self._fail(TransportError(f"Event loop failed: {e}", e))

            if self.state is not SessionState.CLOSED:
                self._fail(TransportError("Event loop stopped before the exchange finished"))

            if self.error is not None:
                raise self.error
            logger.info("Finished.")
            return self.pending_outcome
        finally:
            self._busy.release()

    # state handling

    def _set_state(self, target: SessionState) -> None:
        if not can_transition(self.state, target):
            raise InvalidStateError(self.state, f"move to {target.value}")
        logger.info("Session state: %s -> %s", self.state.value, target.value)
        self.state = target

    def _fail(self, error: ExchangeError) -> None:
        logger.error("Error: %s (attempt %d)", error, self.attempt_count)
        if self.error is None:
            self.error = error
        if self.state is SessionState.CLOSED:
            return
        if can_transition(self.state, SessionState.FAILED):
            self._set_state(SessionState.FAILED)
        self.close()

    def _cancel_timers(self) -> None:
        for name in ("_connect_timer", "_reconnect_timer", "_receive_timer", "_drain_timer"):
            timer = getattr(self, name)
            if timer is not None:
                timer.cancel()
                setattr(self, name, None)

    def _guarded(self, callback, *args, **kwargs) -> None:
        """Run a loop callback, routing any exception through the failure path."""
        try:
            callback(*args, **kwargs)
        except ExchangeError as e:
            self._fail(e)
        except Exception as e:
            logger.exception("Unexpected error in %s", getattr(callback, "__name__", callback))
            self._fail(TransportError(str(e), e))

    # transport listener

    def on_transport_started(self) -> None:
        self._guarded(self._start)

    def on_transport_event(self, event: SessionEvent, **payload: Any) -> None:
        logger.debug("Event %s in state %s", event.value, self.state.value)
        handler = getattr(self, f"_on_{event.value}")
        self._guarded(handler, **payload)

    def _ignore(self, event: SessionEvent) -> None:
        logger.debug("Ignoring %s in state %s", event.value, self.state.value)

    # connection phase

    def _start(self) -> None:
        if self.state is not SessionState.IDLE:
            # cancelled before the loop came up
            return
        self.attempt_count = 1
        self._connect()

    def _connect(self) -> None:
        self._reconnect_timer = None
        self._set_state(SessionState.CONNECTING)
        logger.info(
            "Connecting to %s:%s (attempt %d/%d)",
            self.config.host,
            self.config.port,
            self.attempt_count,
            self.config.max_connection_attempts,
        )
        self._connect_timer = self._transport.schedule(
            self.config.connection_timeout_ms, self._on_connect_timeout
        )
        try:
            self._transport.connect(self.config)
        except TransportError as e:
            self._connection_lost(str(e))

    def _on_connect_timeout(self) -> None:
        self._connect_timer = None
        if self.state is SessionState.CONNECTING:
            self._guarded(
                self._connection_lost,
                f"Connection timed out after {self.config.connection_timeout_ms}ms",
            )

    def _connection_lost(self, error: Optional[str]) -> None:
        """Handle a connection-level failure before the link is usable."""
        logger.warning("Connection error: %s", error or "Unknown error")
        if self._connect_timer is not None:
            self._connect_timer.cancel()
            self._connect_timer = None
        self._transport.disconnect()

        if self.attempt_count >= self.config.max_connection_attempts:
            self._fail(ConnectionExhaustedError(self.attempt_count, error))
            return

        self._set_state(SessionState.RECONNECTING)
        self.attempt_count += 1
        delay = backoff_delay_ms(
            self.attempt_count, self.config.backoff_base_ms, self.config.backoff_cap_ms
        )
        logger.info(
            "Connection attempt %d/%d failed. Retrying in %dms...",
            self.attempt_count - 1,
            self.config.max_connection_attempts,
            delay,
        )
        self._reconnect_timer = self._transport.schedule(
            delay, lambda: self._guarded(self._connect)
        )

    def _on_connection_opened(self) -> None:
        if self.state is not SessionState.CONNECTING:
            return self._ignore(SessionEvent.CONNECTION_OPENED)
        if self._connect_timer is not None:
            self._connect_timer.cancel()
            self._connect_timer = None

        self._set_state(SessionState.CONNECTED)
        logger.info("Successfully connected to %s:%s", self.config.host, self.config.port)
        self._set_state(SessionState.LINK_OPENING)
        self._transport.open_link(self.destination, self.role)

    def _on_connection_failed(self, error: Optional[str] = None) -> None:
        if self.state in CONNECTION_PHASE:
            self._connection_lost(error)
        elif self.state.is_terminal or self.state in (
            SessionState.IDLE,
            SessionState.RECONNECTING,
        ):
            self._ignore(SessionEvent.CONNECTION_FAILED)
        elif self.state in (SessionState.SETTLING, SessionState.ACCEPTING):
            # outcome already settled; close without waiting for the drain delay
            logger.warning("Connection error after settlement: %s", error)
            self.close()
        else:
            self._fail(TransportError(error or "Connection failed"))

    def _on_disconnected(self, error: Optional[str] = None) -> None:
        logger.info("Disconnected: %s", error or "Disconnected")
        self._on_connection_failed(error)

    # link phase

    def _on_link_opened(self) -> None:
        if self.state is not SessionState.LINK_OPENING:
            return self._ignore(SessionEvent.LINK_OPENED)
        self._set_state(SessionState.LINK_OPEN)

        if self.role is Role.SENDER:
            logger.info("Sender opened for %s", self.destination)
            self._transmit()
        else:
            logger.info("Receiver opened for %s", self.destination)
            self._set_state(SessionState.WAITING)
            logger.info("Waiting for messages...")
            if self._timeout_ms is not None:
                self._receive_timer = self._transport.schedule(
                    self._timeout_ms, self._on_receive_timeout
                )

    def _transmit(self) -> None:
        if self._message_sent:
            raise InvalidStateError(self.state, "send twice")
        self._set_state(SessionState.SENDING)
        self._message_sent = True
        logger.info("Sending message '%s'...", self._message.body_text)
        self._transport.send(self._message)

    def _on_delivery_accepted(self) -> None:
        if self.state is not SessionState.SENDING:
            return self._ignore(SessionEvent.DELIVERY_ACCEPTED)
        self._set_state(SessionState.SETTLING)
        self.pending_outcome = Ack.now(self.destination)
        logger.info("Message accepted by the broker")
        self._drain()

    def _on_delivery_rejected(self, condition: Optional[str] = None) -> None:
        if self.state is not SessionState.SENDING:
            return self._ignore(SessionEvent.DELIVERY_REJECTED)
        self._fail(ProtocolRejectedError(str(self.destination), condition))

    def _on_message_arrived(self, message: Message, delivery: Any = None) -> None:
        if self.state is not SessionState.WAITING:
            # left unsettled; the broker redelivers it after we close
            return self._ignore(SessionEvent.MESSAGE_ARRIVED)
        if self._receive_timer is not None:
            self._receive_timer.cancel()
            self._receive_timer = None

        self._set_state(SessionState.ACCEPTING)
        self._accept(delivery)
        self.pending_outcome = message
        logger.info("Received message: '%s'.", message.body_text)
        self._drain()

    def _accept(self, delivery: Any) -> None:
        if any(delivery is accepted for accepted in self._accepted_deliveries):
            raise InvalidStateError(self.state, "accept a delivery twice")
        self._transport.accept(delivery)
        self._accepted_deliveries.append(delivery)

    def _on_receive_timeout(self) -> None:
        self._receive_timer = None
        if self.state is SessionState.WAITING:
            self._fail(ExchangeTimeoutError(self._timeout_ms))

    # termination

    def _drain(self) -> None:
        if self.config.drain_delay_ms == 0:
            self.close()
            return
        logger.debug("Waiting %dms before closing", self.config.drain_delay_ms)
        self._drain_timer = self._transport.schedule(
            self.config.drain_delay_ms, self._on_drained
        )

    def _on_drained(self) -> None:
        self._drain_timer = None
        self._guarded(self.close)

    def _on_cancel(self) -> None:
        if self.state.is_terminal:
            return
        if self.state in (SessionState.SETTLING, SessionState.ACCEPTING):
            logger.info("Outcome already settled, closing without drain delay")
            self.close()
            return
        self._fail(CancelledError())


def send(
    config: ConnectionConfig,
    destination: DestinationRef,
    message: Message,
    transport: Optional[Transport] = None,
) -> Ack:
    """Connect, send one message to the destination, and close."""
    session = ExchangeSession(config, destination, Role.SENDER, transport=transport)
    return session.send(message)


def receive(
    config: ConnectionConfig,
    destination: DestinationRef,
    timeout_ms: Optional[int] = None,
    transport: Optional[Transport] = None,
) -> Message:
    """Connect, receive and accept one message from the destination, and close."""
    session = ExchangeSession(config, destination, Role.RECEIVER, transport=transport)
    return session.receive(timeout_ms=timeout_ms)
