from amqpexchange.transport.base import TimerHandle, Transport, TransportListener

__all__ = ["TimerHandle", "Transport", "TransportListener"]
