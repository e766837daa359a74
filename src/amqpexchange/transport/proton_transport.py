"""
AMQP 1.0 transport backed by the Qpid Proton reactor.

Proton drives everything from `Container.run()` on the calling thread. Each
connection attempt gets its own handler so that callbacks from an abandoned
attempt can be recognised and dropped.
"""

import logging
import time
from collections import deque
from typing import Any, Callable, Optional

from proton import Delivery, SSLDomain, Terminus
from proton import Message as ProtonMessage
from proton.handlers import MessagingHandler
from proton.reactor import Container, LinkOption

from amqpexchange.exceptions import TransportError
from amqpexchange.models import (
    ConnectionConfig,
    DestinationRef,
    DurabilityMode,
    Message,
    Role,
)
from amqpexchange.state import SessionEvent
from amqpexchange.transport.base import TimerHandle, Transport, TransportListener

logger = logging.getLogger(__name__)

# how often callbacks handed over from other threads are picked up
CALLBACK_POLL_MS = 100
CLOSE_GRACE_MS = 1000


def describe_condition(condition) -> Optional[str]:
    """Render a proton Condition as 'name: description'."""
    if condition is None:
        return None
    if condition.description:
        return f"{condition.name}: {condition.description}"
    return str(condition.name)


def to_proton_message(message: Message) -> ProtonMessage:
    properties = {"durable": message.durability_mode.durable}
    if message.priority is not None:
        properties["priority"] = message.priority
    return ProtonMessage(body=message.body, **properties)


def from_proton_message(message: ProtonMessage) -> Message:
    body = message.body
    if body is None:
        body = ""
    elif isinstance(body, memoryview):
        body = body.tobytes()
    elif not isinstance(body, (str, bytes)):
        body = str(body)

    return Message(
        body=body,
        durability_mode=(
            DurabilityMode.UNSETTLED_STATE
            if message.durable
            else DurabilityMode.NON_DURABLE
        ),
        priority=message.priority,
    )


class DurableTerminus(LinkOption):
    """Request unsettled-state durability and no expiry on the link's remote terminus."""

    def apply(self, link):
        terminus = link.target if link.is_sender else link.source
        terminus.durability = Terminus.DELIVERIES
        terminus.expiry_policy = Terminus.EXPIRE_NEVER


class _ProtonTimer(TimerHandle):
    def __init__(self, callback: Callable[[], None]):
        self._callback = callback
        self._task = None
        self._cancelled = False

    def on_timer_task(self, event):
        if not self._cancelled:
            self._cancelled = True
            self._callback()

    def cancel(self) -> None:
        self._cancelled = True
        if self._task is not None:
            self._task.cancel()


class _LoopHandler(MessagingHandler):
    """Container-level handler for the loop start."""

    def __init__(self, transport: "ProtonTransport"):
        super().__init__(prefetch=0, auto_accept=False)
        self._transport = transport

    def on_start(self, event):
        self._transport._on_loop_started(event.container)


class _ConnectionHandler(MessagingHandler):
    """
    Per-connection handler translating proton callbacks into session events.

    Only the handler of the current attempt forwards anything.
    """

    def __init__(self, transport: "ProtonTransport", generation: int):
        super().__init__(prefetch=0, auto_accept=False, auto_settle=True)
        self._transport = transport
        self.generation = generation
        self._transport_error: Optional[str] = None
        self._link_ready = False

    def _emit(self, event: SessionEvent, **payload: Any) -> None:
        self._transport._dispatch(self.generation, event, **payload)

    def on_connection_opened(self, event):
        self._emit(SessionEvent.CONNECTION_OPENED)

    def on_connection_error(self, event):
        self._emit(
            SessionEvent.CONNECTION_FAILED,
            error=describe_condition(event.connection.remote_condition),
        )

    def on_connection_closing(self, event):
        self._emit(SessionEvent.DISCONNECTED, error="Connection closed by remote host")

    def on_session_error(self, event):
        self._emit(
            SessionEvent.CONNECTION_FAILED,
            error=describe_condition(event.session.remote_condition),
        )

    def on_link_error(self, event):
        self._emit(
            SessionEvent.CONNECTION_FAILED,
            error=describe_condition(event.link.remote_condition),
        )

    def on_link_closing(self, event):
        self._emit(SessionEvent.CONNECTION_FAILED, error="Link closed by remote host")

    def on_transport_error(self, event):
        self._transport_error = describe_condition(event.transport.condition)
        logger.debug("Transport error: %s", self._transport_error)

    def on_disconnected(self, event):
        # proton reports the disconnect before on_transport_error
        error = None
        if event.transport is not None:
            error = describe_condition(event.transport.condition)
        self._emit(
            SessionEvent.DISCONNECTED,
            error=error or self._transport_error or "Disconnected",
        )

    def on_connection_closed(self, event):
        self._transport._connection_finished(self.generation)

    def on_transport_closed(self, event):
        self._transport._connection_finished(self.generation)

    def on_link_opened(self, event):
        if event.receiver is not None and not self._link_ready:
            self._link_ready = True
            event.receiver.flow(1)
            self._emit(SessionEvent.LINK_OPENED)

    def on_sendable(self, event):
        if not self._link_ready:
            self._link_ready = True
            self._emit(SessionEvent.LINK_OPENED)

    def on_accepted(self, event):
        self._emit(SessionEvent.DELIVERY_ACCEPTED)

    def on_rejected(self, event):
        self._emit(
            SessionEvent.DELIVERY_REJECTED,
            condition=describe_condition(event.delivery.remote.condition),
        )

    def on_released(self, event):
        self._emit(SessionEvent.DELIVERY_REJECTED, condition="released")

    def on_message(self, event):
        logger.debug("Inbound delivery %s", event.delivery.tag)
        self._emit(
            SessionEvent.MESSAGE_ARRIVED,
            message=from_proton_message(event.message),
            delivery=event.delivery,
        )


class ProtonTransport(Transport):
    """
    Transport implementation over `proton.reactor.Container`.
    """

    def __init__(self) -> None:
        self._loop_handler = _LoopHandler(self)
        self._container: Optional[Container] = None
        self._listener: Optional[TransportListener] = None
        # deque.append takes no lock, so signal handlers can hand over callbacks
        self._callbacks: deque = deque()
        self._poll_timer: Optional[TimerHandle] = None

        self._connection = None
        self._link = None
        self._generation = 0
        self._final_generation: Optional[int] = None
        self._closed = False
        self._stopped = False
        self._stop_timer: Optional[TimerHandle] = None

    def run(self, listener: TransportListener) -> None:
        self._listener = listener
        self._container = Container(self._loop_handler)
        self._container.run()

    def _on_loop_started(self, container: Container) -> None:
        self._listener.on_transport_started()
        self._run_callbacks()

    def _run_callbacks(self) -> None:
        self._poll_timer = None
        while self._callbacks and not self._closed:
            self._callbacks.popleft()()
        if not self._closed:
            self._poll_timer = self.schedule(CALLBACK_POLL_MS, self._run_callbacks)

    def _dispatch(self, generation: int, event: SessionEvent, **payload: Any) -> None:
        if self._closed or generation != self._generation:
            logger.debug("Dropping %s from stale connection attempt", event.value)
            return
        self._listener.on_transport_event(event, **payload)

    def connect(self, config: ConnectionConfig) -> None:
        self.disconnect()
        self._generation += 1

        self._container.container_id = (
            f"{config.container_id_prefix}-{int(time.time() * 1000)}"
        )
        options = {
            "url": config.url,
            "reconnect": False,
            "heartbeat": config.heartbeat_seconds,
            "handler": _ConnectionHandler(self, self._generation),
        }
        if config.username:
            options["user"] = config.username
            options["password"] = config.password
            options["allowed_mechs"] = "PLAIN"
            options["allow_insecure_mechs"] = not config.use_tls
        if config.vpn_hostname:
            options["virtual_host"] = config.vpn_hostname
        if config.use_tls:
            options["ssl_domain"] = self._build_ssl_domain(config)

        logger.debug("Connection options: %s", config.describe())
        try:
            self._connection = self._container.connect(**options)
        except Exception as e:
            raise TransportError(f"Unable to start connection to {config.url}", e) from e

    @staticmethod
    def _build_ssl_domain(config: ConnectionConfig) -> SSLDomain:
        domain = SSLDomain(SSLDomain.MODE_CLIENT)
        if not config.tls_verify:
            logger.warning("TLS peer verification disabled for %s", config.host)
            domain.set_peer_authentication(SSLDomain.ANONYMOUS_PEER)
        return domain

    def disconnect(self) -> None:
        # bump the generation first so close callbacks of the old attempt are dropped
        self._generation += 1
        self._close_endpoints()

    def _close_endpoints(self) -> None:
        link, self._link = self._link, None
        connection, self._connection = self._connection, None
        try:
            if link is not None:
                link.close()
            if connection is not None:
                connection.close()
        except Exception as e:
            logger.exception("Error closing connection: %s", e)

    def open_link(self, destination: DestinationRef, role: Role) -> None:
        if self._connection is None:
            raise TransportError("No connection to open a link on")

        options = [DurableTerminus()] if destination.durable else None
        if role is Role.SENDER:
            self._link = self._container.create_sender(
                self._connection, target=destination.address, options=options
            )
        else:
            self._link = self._container.create_receiver(
                self._connection, source=destination.address, options=options
            )
        logger.debug("Opening %s link to %s", role.value, destination.address)

    def send(self, message: Message) -> None:
        if self._link is None or not self._link.is_sender:
            raise TransportError("No sender link to send on")
        delivery = self._link.send(to_proton_message(message))
        logger.debug("Send delivery: %s", delivery.tag)

    def accept(self, delivery: Any) -> None:
        delivery.update(Delivery.ACCEPTED)
        delivery.settle()

    def schedule(self, delay_ms: int, callback: Callable[[], None]) -> TimerHandle:
        timer = _ProtonTimer(callback)
        timer._task = self._container.schedule(delay_ms / 1000.0, timer)
        return timer

    def call_soon_threadsafe(self, callback: Callable[[], None]) -> None:
        if self._closed:
            return
        self._callbacks.append(callback)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        has_connection = self._connection is not None
        self._final_generation = self._generation
        self._close_endpoints()
        if self._poll_timer is not None:
            self._poll_timer.cancel()
            self._poll_timer = None

        if self._container is None:
            return
        if has_connection:
            # stop once the peer confirms the close, or give up after the grace period
            self._stop_timer = self.schedule(CLOSE_GRACE_MS, self._stop)
        else:
            self._stop()

    def _connection_finished(self, generation: int) -> None:
        if self._closed and generation == self._final_generation:
            self._stop()

    def _stop(self) -> None:
        if self._stop_timer is not None:
            self._stop_timer.cancel()
            self._stop_timer = None
        if self._container is not None and not self._stopped:
            self._stopped = True
            logger.debug("Stopping event loop")
            self._container.stop()
