"""
Centralized logging configuration for amqpexchange.

Every state transition and error of a session is logged; this module decides
where those lines go and how they look.
"""

import logging
import os
import sys
from typing import Optional

try:
    from opentelemetry._logs import set_logger_provider
    from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
    from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
    from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
    from opentelemetry.sdk.resources import Resource

    OTEL_AVAILABLE = True
except ImportError:
    OTEL_AVAILABLE = False

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s - %(message)s"
DEBUG_LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s (%(threadName)s) - %(message)s"
DATE_FORMAT = "%H:%M:%S"


def setup_logging(
    level: int = logging.INFO,
    debug: bool = False,
    force_setup: bool = False,
    enable_otel: bool = False,
    otel_endpoint: Optional[str] = None,
) -> None:
    """
    Setup logging for amqpexchange programs.

    Args:
        level: Logging level when debug is off (default: INFO)
        debug: Log at DEBUG, including proton's own loggers
        force_setup: Whether to force reconfiguration even if already setup
        enable_otel: Whether to export logs over OTLP (requires the otel extra)
        otel_endpoint: OTEL collector endpoint (defaults to env var)
    """
    if debug:
        level = logging.DEBUG

    root_logger = logging.getLogger()
    if root_logger.handlers and not force_setup:
        root_logger.setLevel(level)
        return

    if force_setup:
        root_logger.handlers.clear()

    if enable_otel:
        if OTEL_AVAILABLE:
            _setup_otel_logging(otel_endpoint)
        else:
            logging.getLogger(__name__).warning(
                "OTEL logging requested but opentelemetry is not installed"
            )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(create_formatter(debug))
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # proton logs every transport error at ERROR; the session reports those itself
    logging.getLogger("proton").setLevel(logging.DEBUG if debug else logging.CRITICAL)
    logging.getLogger("amqpexchange").setLevel(level)


def create_formatter(debug: bool = False) -> logging.Formatter:
    """
    Timestamped human readable formatter, e.g. "[14:02:11] INFO amqpexchange.session - ...".
    """
    return logging.Formatter(
        DEBUG_LOG_FORMAT if debug else LOG_FORMAT, datefmt=DATE_FORMAT
    )


def _setup_otel_logging(otel_endpoint: Optional[str] = None) -> None:
    from amqpexchange.config import SERVICE_NAME

    resource = Resource.create(
        {
            "service.name": SERVICE_NAME,
            "service.instance.id": os.uname().nodename,
        }
    )
    logger_provider = LoggerProvider(resource=resource)
    set_logger_provider(logger_provider)

    endpoint = otel_endpoint or os.getenv("OTEL_EXPORTER_OTLP_LOGS_ENDPOINT")
    exporter = OTLPLogExporter(endpoint=endpoint, insecure=True)
    logger_provider.add_log_record_processor(BatchLogRecordProcessor(exporter))

    logging.getLogger().addHandler(
        LoggingHandler(level=logging.NOTSET, logger_provider=logger_provider)
    )
