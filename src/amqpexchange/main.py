import logging
import signal
from contextlib import contextmanager

import typer
from pydantic import ValidationError
from typing_extensions import Annotated, Optional

from amqpexchange.config import ExchangeDefaults
from amqpexchange.exceptions import ExchangeError
from amqpexchange.logging_config import setup_logging
from amqpexchange.models import (
    ConnectionConfig,
    DestinationKind,
    DestinationRef,
    Message,
    Role,
)
from amqpexchange.session import ExchangeSession

app = typer.Typer(
    help="Send or receive a single message over AMQP 1.0.",
    context_settings={"help_option_names": ["-h", "--help"]},
)
logger = logging.getLogger(__name__)

EXIT_FAILURE = 1
EXIT_INVALID_PARAMETERS = 2


@app.callback()
def callback(
    ctx: typer.Context,
    host: Annotated[str, typer.Option(envvar="AMQP_HOST")] = ExchangeDefaults.HOST,
    port: Annotated[int, typer.Option(envvar="AMQP_PORT")] = ExchangeDefaults.PORT,
    username: Annotated[
        str, typer.Option(envvar="AMQP_USERNAME")
    ] = ExchangeDefaults.USERNAME,
    password: Annotated[
        str, typer.Option(envvar="AMQP_PASSWORD")
    ] = ExchangeDefaults.PASSWORD,
    vpn: Annotated[
        str, typer.Option(envvar="AMQP_VPN", help="Solace message VPN")
    ] = ExchangeDefaults.VPN,
    ssl: Annotated[bool, typer.Option("--ssl/--no-ssl", envvar="AMQP_SSL")] = False,
    ssl_verify: Annotated[
        bool,
        typer.Option(
            "--ssl-verify/--no-ssl-verify",
            envvar="AMQP_SSL_VERIFY",
            help="Verify the broker certificate when --ssl is on",
        ),
    ] = True,
    connection_attempts: Annotated[
        int,
        typer.Option(
            "--connectionAttempts",
            envvar="AMQP_CONNECTION_ATTEMPTS",
            help="Number of connection attempts before giving up",
        ),
    ] = ExchangeDefaults.CONNECTION_ATTEMPTS,
    connection_timeout: Annotated[
        int,
        typer.Option(
            "--connectionTimeout",
            envvar="AMQP_CONNECTION_TIMEOUT",
            help="Connection timeout in milliseconds",
        ),
    ] = ExchangeDefaults.CONNECTION_TIMEOUT_MS,
    debug: Annotated[bool, typer.Option("--debug/--no-debug", envvar="AMQP_DEBUG")] = False,
    log_otlp: Annotated[
        bool,
        typer.Option(envvar="AMQP_LOG_OTLP", help="Enable OpenTelemetry OTLP logging"),
    ] = False,
):
    setup_logging(debug=debug, enable_otel=log_otlp)

    try:
        ctx.obj = ConnectionConfig(
            host=host,
            port=port,
            username=username,
            password=password,
            virtual_host=vpn,
            use_tls=ssl,
            tls_verify=ssl_verify,
            connection_timeout_ms=connection_timeout,
            max_connection_attempts=connection_attempts,
        )
    except ValidationError as e:
        typer.echo(f"Invalid connection parameters:\n{e}", err=True)
        raise typer.Exit(EXIT_INVALID_PARAMETERS)


@app.command("queue-producer")
def queue_producer(
    ctx: typer.Context,
    queue_name: Annotated[
        str, typer.Option("--queueName", envvar="AMQP_QUEUE_NAME")
    ] = ExchangeDefaults.QUEUE_NAME,
    message: Annotated[
        str, typer.Option(envvar="AMQP_MESSAGE")
    ] = ExchangeDefaults.QUEUE_MESSAGE,
):
    """Send one persistent message to a queue."""
    _produce(ctx.obj, queue_name, DestinationKind.QUEUE, message)


@app.command("queue-consumer")
def queue_consumer(
    ctx: typer.Context,
    queue_name: Annotated[
        str, typer.Option("--queueName", envvar="AMQP_QUEUE_NAME")
    ] = ExchangeDefaults.QUEUE_NAME,
    timeout: Annotated[
        Optional[int],
        typer.Option(help="Give up after this many milliseconds (default: wait forever)"),
    ] = None,
):
    """Receive and accept one message from a queue."""
    _consume(ctx.obj, queue_name, DestinationKind.QUEUE, timeout)


@app.command("topic-publisher")
def topic_publisher(
    ctx: typer.Context,
    topic_name: Annotated[
        str, typer.Option("--topicName", envvar="AMQP_TOPIC_NAME")
    ] = ExchangeDefaults.TOPIC_NAME,
    message: Annotated[
        str, typer.Option(envvar="AMQP_MESSAGE")
    ] = ExchangeDefaults.TOPIC_MESSAGE,
):
    """Publish one message to a topic."""
    _produce(ctx.obj, topic_name, DestinationKind.TOPIC, message)


@app.command("topic-subscriber")
def topic_subscriber(
    ctx: typer.Context,
    topic_name: Annotated[
        str, typer.Option("--topicName", envvar="AMQP_TOPIC_NAME")
    ] = ExchangeDefaults.TOPIC_NAME,
    timeout: Annotated[
        Optional[int],
        typer.Option(help="Give up after this many milliseconds (default: wait forever)"),
    ] = None,
):
    """Receive and accept one message published to a topic."""
    _consume(ctx.obj, topic_name, DestinationKind.TOPIC, timeout)


def _destination(name: str, kind: DestinationKind) -> DestinationRef:
    try:
        # topic links must not create a durable endpoint on the broker
        return DestinationRef(
            name=name, kind=kind, durable=kind is DestinationKind.QUEUE
        )
    except ValidationError as e:
        typer.echo(f"Invalid destination:\n{e}", err=True)
        raise typer.Exit(EXIT_INVALID_PARAMETERS)


def _print_parameters(config: ConnectionConfig, destination: DestinationRef, **extra):
    typer.echo("Connection parameters:")
    for key, value in config.describe().items():
        typer.echo(f"  {key}: {value}")
    typer.echo(f"  destination: {destination.address}")
    for key, value in extra.items():
        typer.echo(f"  {key}: {value}")


@contextmanager
def _cancel_on_signal(session: ExchangeSession):
    """Route SIGINT and SIGTERM to session.cancel() for the duration of the block."""

    def handler(signum, frame):
        logger.info("Received signal %s", signal.Signals(signum).name)
        session.cancel()

    previous = {
        signum: signal.signal(signum, handler)
        for signum in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        yield
    finally:
        for signum, old_handler in previous.items():
            signal.signal(signum, old_handler)


def _produce(config: ConnectionConfig, name: str, kind: DestinationKind, body: str):
    destination = _destination(name, kind)
    _print_parameters(config, destination, message=body)

    session = ExchangeSession(config, destination, Role.SENDER)
    try:
        with _cancel_on_signal(session):
            ack = session.send(
                Message(body=body, priority=ExchangeDefaults.MESSAGE_PRIORITY)
            )
    except ExchangeError as e:
        typer.echo(f"Send failed: {e}", err=True)
        raise typer.Exit(EXIT_FAILURE)

    typer.echo(f"Message sent to {ack.destination} at {ack.timestamp.isoformat()}")


def _consume(
    config: ConnectionConfig,
    name: str,
    kind: DestinationKind,
    timeout_ms: Optional[int],
):
    if timeout_ms is not None and timeout_ms <= 0:
        typer.echo(f"Invalid timeout: {timeout_ms}", err=True)
        raise typer.Exit(EXIT_INVALID_PARAMETERS)

    destination = _destination(name, kind)
    _print_parameters(config, destination, timeout=timeout_ms)

    session = ExchangeSession(config, destination, Role.RECEIVER)
    try:
        with _cancel_on_signal(session):
            message = session.receive(timeout_ms=timeout_ms)
    except ExchangeError as e:
        typer.echo(f"Receive failed: {e}", err=True)
        raise typer.Exit(EXIT_FAILURE)

    typer.echo(f"Received message: '{message.body_text}'")


if __name__ == "__main__":
    app()
