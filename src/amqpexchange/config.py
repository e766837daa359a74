"""
Configuration constants for amqpexchange.

This module contains the defaults shared by the session, the transport and the CLI.
"""

# Global service name for logging/observability systems
SERVICE_NAME = "amqp-exchange"


class ExchangeDefaults:
    """Centralized default values for connections, destinations and messages."""

    HOST = "localhost"
    PORT = 5672
    USERNAME = "default"
    PASSWORD = "default"
    # Solace message VPN; "default" is never sent as the AMQP hostname
    VPN = "default"

    CONNECTION_ATTEMPTS = 3
    CONNECTION_TIMEOUT_MS = 10000

    BACKOFF_BASE_MS = 1000
    BACKOFF_CAP_MS = 10000
    # wait before closing so in-flight disposition frames get flushed
    DRAIN_DELAY_MS = 2000

    CONTAINER_ID_PREFIX = "amqp-exchange"

    QUEUE_NAME = "Q/tutorial"
    TOPIC_NAME = "T/tutorial"
    QUEUE_MESSAGE = "Hello world Queues!"
    TOPIC_MESSAGE = "Message with String Data"
    MESSAGE_PRIORITY = 1

    TOPIC_ADDRESS_PREFIX = "topic://"
