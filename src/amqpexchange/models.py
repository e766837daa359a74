import datetime
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, Field, field_validator

from amqpexchange.config import ExchangeDefaults


class DestinationKind(Enum):
    QUEUE = "queue"
    TOPIC = "topic"


class Role(Enum):
    SENDER = "sender"
    RECEIVER = "receiver"


class DurabilityMode(Enum):
    # values follow the AMQP 1.0 terminus-durability codes
    NON_DURABLE = 0
    CONFIGURATION = 1
    UNSETTLED_STATE = 2

    @property
    def durable(self) -> bool:
        """Whether the message header durable flag is set for this mode."""
        return self is not DurabilityMode.NON_DURABLE


class ConnectionConfig(BaseModel, frozen=True):
    """Broker connection parameters for a single exchange."""

    host: str = ExchangeDefaults.HOST
    port: int = Field(default=ExchangeDefaults.PORT, ge=1, le=65535)
    username: str = ExchangeDefaults.USERNAME
    password: str = ExchangeDefaults.PASSWORD
    virtual_host: str = ExchangeDefaults.VPN
    use_tls: bool = False
    tls_verify: bool = True
    connection_timeout_ms: int = Field(
        default=ExchangeDefaults.CONNECTION_TIMEOUT_MS, gt=0
    )
    max_connection_attempts: int = Field(
        default=ExchangeDefaults.CONNECTION_ATTEMPTS, ge=1
    )
    backoff_base_ms: int = Field(default=ExchangeDefaults.BACKOFF_BASE_MS, ge=0)
    backoff_cap_ms: int = Field(default=ExchangeDefaults.BACKOFF_CAP_MS, ge=0)
    drain_delay_ms: int = Field(default=ExchangeDefaults.DRAIN_DELAY_MS, ge=0)
    container_id_prefix: str = ExchangeDefaults.CONTAINER_ID_PREFIX

    @field_validator("host")
    @classmethod
    def host_not_empty(cls, value: str) -> str:
        if len(value.strip()) == 0:
            raise ValueError("host must not be empty")
        return value.strip()

    @property
    def url(self) -> str:
        scheme = "amqps" if self.use_tls else "amqp"
        return f"{scheme}://{self.host}:{self.port}"

    @property
    def heartbeat_seconds(self) -> float:
        return self.connection_timeout_ms / 1000.0

    @property
    def vpn_hostname(self) -> Optional[str]:
        """
        The AMQP open hostname to request, or None when the broker default
        VPN should be used.
        """
        if not self.virtual_host or self.virtual_host == ExchangeDefaults.VPN:
            return None
        return self.virtual_host

    def describe(self) -> dict:
        """Connection options safe for logging (password masked)."""
        options = self.model_dump()
        options["password"] = "****" if self.password else ""
        options["url"] = self.url
        return options


class DestinationRef(BaseModel, frozen=True):
    """A named queue or topic on the broker."""

    name: str
    kind: DestinationKind = DestinationKind.QUEUE
    durable: bool = True

    @field_validator("name")
    @classmethod
    def name_not_empty(cls, value: str) -> str:
        if len(value.strip()) == 0:
            raise ValueError("destination name must not be empty")
        return value

    @property
    def address(self) -> str:
        if self.kind is DestinationKind.TOPIC and not self.name.startswith(
            ExchangeDefaults.TOPIC_ADDRESS_PREFIX
        ):
            return f"{ExchangeDefaults.TOPIC_ADDRESS_PREFIX}{self.name}"
        return self.name

    def __str__(self) -> str:
        return f"{self.kind.value} '{self.name}'"


class Message(BaseModel, frozen=True):
    body: Union[str, bytes]
    durability_mode: DurabilityMode = DurabilityMode.UNSETTLED_STATE
    priority: Optional[int] = Field(default=None, ge=0, le=255)

    @property
    def body_text(self) -> str:
        if isinstance(self.body, bytes):
            return self.body.decode("utf-8", errors="replace")
        return self.body


class Ack(BaseModel, frozen=True):
    """Broker acceptance of a sent message."""

    destination: DestinationRef
    timestamp: datetime.datetime

    @classmethod
    def now(cls, destination: DestinationRef) -> "Ack":
        return cls(
            destination=destination,
            timestamp=datetime.datetime.now(datetime.timezone.utc),
        )
