"""
Shared pytest fixtures and utilities for testing.

## Fake Transport Infrastructure

Sessions talk to the broker only through the `Transport` interface, so the
tests drive them with an in-process fake instead of a real AMQP broker.

### Core Fake Classes

- `FakeTransport`: deterministic implementation of `Transport`
  - Runs the session's callbacks on a single-threaded loop with a virtual
    clock; timers fire instantly in due order, so a 10 second watchdog
    costs nothing
  - Scripted connection outcomes per attempt (`True` opens, `False` fails,
    `None` never answers so the watchdog fires, `"disconnect"` drops)
  - Scripted link and send outcomes
  - Records connects (with virtual timestamps), disconnects, closes, sent
    messages, accepted deliveries and scheduled delays for inspection
  - Raises `RuntimeError` when it runs out of work before being closed, so a
    broken session fails the test instead of hanging it

- `InMemoryBroker`: address -> queue of messages, shared between transports
  - `publish(address, message)` stores or delivers to an attached receiver
  - One unit of credit per receiver, like the real receiver link
  - Unsettled deliveries are released back to the queue on close

### Available Fixtures

- `broker`: fresh `InMemoryBroker`
- `fake_transport`: `FakeTransport` attached to `broker`
- `make_transport`: factory for scripted `FakeTransport`s sharing `broker`
- `fast_config`: `ConnectionConfig` with the default attempt budget and delays
- `queue_destination`: `DestinationRef` for queue `Q/test`

### Usage Example

```python
def test_send(fast_config, queue_destination, fake_transport):
    session = ExchangeSession(fast_config, queue_destination, Role.SENDER, fake_transport)
    ack = session.send(Message(body="hello"))

    assert ack.destination == queue_destination
    assert fake_transport.connect_calls == 1
    assert fake_transport.broker.pending("Q/test") == 1
```
"""

import heapq
import itertools
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

import pytest

from amqpexchange.models import ConnectionConfig, DestinationRef, Message, Role
from amqpexchange.state import SessionEvent
from amqpexchange.transport.base import TimerHandle, Transport, TransportListener


class FakeDelivery:
    """Inbound delivery handle handed to the session with MESSAGE_ARRIVED."""

    def __init__(self, tag: int, address: str, message: Message):
        self.tag = tag
        self.address = address
        self.message = message
        self.settled = False

    def __repr__(self):
        return f"FakeDelivery(tag={self.tag}, settled={self.settled})"


class InMemoryBroker:
    """
    Minimal broker keeping one FIFO queue per address.
    """

    def __init__(self):
        self._queues: Dict[str, Deque[Message]] = {}
        self._receivers: Dict[str, Callable[[Message], None]] = {}
        self._tags = itertools.count(1)

    def publish(self, address: str, message: Message) -> None:
        """Store a message, or hand it to a receiver with credit."""
        receiver = self._receivers.pop(address, None)
        if receiver is not None:
            receiver(message)
        else:
            self._queues.setdefault(address, deque()).append(message)

    def attach(self, address: str, receiver: Callable[[Message], None]) -> None:
        """Grant one unit of credit; delivers immediately when a message is queued."""
        queue = self._queues.get(address)
        if queue:
            receiver(queue.popleft())
        else:
            self._receivers[address] = receiver

    def detach(self, address: str) -> None:
        self._receivers.pop(address, None)

    def release(self, delivery: FakeDelivery) -> None:
        """Put an unsettled delivery back at the head of its queue."""
        self._queues.setdefault(delivery.address, deque()).appendleft(delivery.message)

    def next_tag(self) -> int:
        return next(self._tags)

    def pending(self, address: str) -> int:
        return len(self._queues.get(address, ()))

    def messages(self, address: str) -> List[Message]:
        return list(self._queues.get(address, ()))


class FakeTimer(TimerHandle):
    def __init__(self, due_ms: int, callback: Callable[[], None]):
        self.due_ms = due_ms
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeTransport(Transport):
    """
    Deterministic, virtual-clock implementation of `Transport`.
    """

    def __init__(
        self,
        broker: Optional[InMemoryBroker] = None,
        connect_outcomes: Optional[List[Any]] = None,
        link_outcomes: Optional[List[bool]] = None,
        send_outcome: Optional[str] = "accepted",
    ):
        self.broker = broker if broker is not None else InMemoryBroker()
        self.connect_outcomes = list(connect_outcomes or [])
        self.link_outcomes = list(link_outcomes or [])
        self.send_outcome = send_outcome

        self.now_ms = 0
        self.connect_calls = 0
        self.connect_times: List[int] = []
        self.disconnect_calls = 0
        self.close_calls = 0
        self.closed_at_ms: Optional[int] = None
        self.opened_links: List[tuple] = []
        self.sent: List[Message] = []
        self.accepted: List[FakeDelivery] = []
        self.deliveries: List[FakeDelivery] = []
        self.scheduled: List[int] = []

        self._listener: Optional[TransportListener] = None
        self._ready: Deque[Callable[[], None]] = deque()
        self._timers: list = []
        self._sequence = itertools.count()
        self._generation = 0
        self._address: Optional[str] = None
        self._connected = False
        self.closed = False

    # loop

    def run(self, listener: TransportListener) -> None:
        self._listener = listener
        self._ready.append(listener.on_transport_started)

        while True:
            if self._ready:
                self._ready.popleft()()
                continue
            if self.closed:
                return
            timer = self._next_timer()
            if timer is None:
                raise RuntimeError("FakeTransport has no work left but was never closed")
            self.now_ms = max(self.now_ms, timer.due_ms)
            timer.callback()

    def _next_timer(self) -> Optional[FakeTimer]:
        while self._timers:
            _, _, timer = heapq.heappop(self._timers)
            if not timer.cancelled:
                timer.cancelled = True
                return timer
        return None

    def _post(self, event: SessionEvent, **payload: Any) -> None:
        generation = self._generation

        def deliver():
            if not self.closed and generation == self._generation:
                self._listener.on_transport_event(event, **payload)

        self._ready.append(deliver)

    # Transport interface

    def connect(self, config: ConnectionConfig) -> None:
        self.connect_calls += 1
        self.connect_times.append(self.now_ms)
        self._generation += 1

        outcome = self.connect_outcomes.pop(0) if self.connect_outcomes else True
        if outcome is True:
            self._connected = True
            self._post(SessionEvent.CONNECTION_OPENED)
        elif outcome is False:
            self._post(SessionEvent.CONNECTION_FAILED, error="amqp:connection refused")
        elif outcome == "disconnect":
            self._post(SessionEvent.DISCONNECTED, error="Connection reset by peer")
        # None: the broker never answers

    def disconnect(self) -> None:
        self.disconnect_calls += 1
        self._generation += 1
        self._connected = False
        self._detach()

    def open_link(self, destination: DestinationRef, role: Role) -> None:
        self.opened_links.append((destination.address, role))
        if self.link_outcomes and not self.link_outcomes.pop(0):
            self._post(SessionEvent.CONNECTION_FAILED, error="amqp:not-found")
            return

        self._address = destination.address
        self._post(SessionEvent.LINK_OPENED)
        if role is Role.RECEIVER:
            generation = self._generation
            self._ready.append(
                lambda: self._attach(destination.address, generation)
            )

    def _attach(self, address: str, generation: int) -> None:
        if not self.closed and generation == self._generation:
            self.broker.attach(address, self.deliver)

    def _detach(self) -> None:
        if self._address is not None:
            self.broker.detach(self._address)
        for delivery in self.deliveries:
            if not delivery.settled:
                self.broker.release(delivery)
                delivery.settled = True

    def deliver(self, message: Message) -> FakeDelivery:
        """Push an inbound message to the session, regardless of credit."""
        delivery = FakeDelivery(self.broker.next_tag(), self._address, message)
        self.deliveries.append(delivery)
        self._post(SessionEvent.MESSAGE_ARRIVED, message=message, delivery=delivery)
        return delivery

    def send(self, message: Message) -> None:
        self.sent.append(message)
        if self.send_outcome == "accepted":
            self.broker.publish(self._address, message)
            self._post(SessionEvent.DELIVERY_ACCEPTED)
        elif self.send_outcome == "rejected":
            self._post(SessionEvent.DELIVERY_REJECTED, condition="amqp:not-allowed")
        elif self.send_outcome == "disconnect":
            self._post(SessionEvent.DISCONNECTED, error="Connection reset by peer")

    def accept(self, delivery: FakeDelivery) -> None:
        self.accepted.append(delivery)
        delivery.settled = True

    def schedule(self, delay_ms: int, callback: Callable[[], None]) -> TimerHandle:
        self.scheduled.append(delay_ms)
        timer = FakeTimer(self.now_ms + delay_ms, callback)
        heapq.heappush(self._timers, (timer.due_ms, next(self._sequence), timer))
        return timer

    def call_soon_threadsafe(self, callback: Callable[[], None]) -> None:
        if self.closed:
            return
        self._ready.append(callback)

    def close(self) -> None:
        self.close_calls += 1
        if self.closed:
            return
        self.closed = True
        self.closed_at_ms = self.now_ms
        self._generation += 1
        self._detach()


@pytest.fixture
def broker():
    """Create a fresh InMemoryBroker."""
    return InMemoryBroker()


@pytest.fixture
def fake_transport(broker):
    """Create a FakeTransport that always connects and accepts."""
    return FakeTransport(broker=broker)


@pytest.fixture
def fast_config():
    """Connection config with the default attempt budget and delays."""
    return ConnectionConfig(host="broker.test", port=5672)


@pytest.fixture
def queue_destination():
    return DestinationRef(name="Q/test")


@pytest.fixture
def make_transport(broker):
    """
    Factory for FakeTransports sharing the `broker` fixture.

    Example:
        transport = make_transport(connect_outcomes=[False, False, True])
    """

    def factory(**kwargs) -> FakeTransport:
        kwargs.setdefault("broker", broker)
        return FakeTransport(**kwargs)

    return factory
