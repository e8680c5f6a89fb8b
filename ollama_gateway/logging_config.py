"""Structured JSON logging for the gateway.

Every record, whether emitted through ``logging`` or ``structlog``, is
rendered as one JSON object on stderr carrying a ``correlation_id``. Values
passed with ``extra=`` become top-level keys; an explicit ``correlation_id``
in ``extra`` wins over the one bound to the current request.
"""
from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

import structlog
from opentelemetry._logs import set_logger_provider
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.resources import Resource
from structlog.stdlib import ProcessorFormatter
from structlog.types import Processor

from .telemetry import get_correlation_id

UNKNOWN_CORRELATION_ID = "unknown"


def add_correlation_id(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    if not event_dict.get("correlation_id"):
        event_dict["correlation_id"] = get_correlation_id() or UNKNOWN_CORRELATION_ID
    return event_dict


def _shared_processors() -> List[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.ExtraAdder(),
        add_correlation_id,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]


def _otlp_log_handler(service_name: str) -> Optional[logging.Handler]:
    """Build an OTLP log handler when a collector endpoint is configured."""

    if not (
        os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_LOGS_ENDPOINT")
    ):
        return None

    provider = LoggerProvider(
        resource=Resource.create({"service.name": os.getenv("OTEL_SERVICE_NAME", service_name)})
    )
    provider.add_log_record_processor(BatchLogRecordProcessor(OTLPLogExporter()))
    set_logger_provider(provider)
    return LoggingHandler(level=logging.NOTSET, logger_provider=provider)


def configure_logging(service_name: str, level: Optional[str] = None) -> None:
    """Route stdlib and structlog output through one JSON renderer.

    ``level`` defaults to ``LOG_LEVEL`` (``INFO`` when unset).
    """

    processors = _shared_processors()
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(
        ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(default=str),
            foreign_pre_chain=processors,
        )
    )

    root = logging.getLogger()
    root.handlers = [stream_handler]
    root.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())

    structlog.configure(
        processors=processors + [ProcessorFormatter.wrap_for_formatter],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    try:
        otlp_handler = _otlp_log_handler(service_name)
    except Exception:  # pragma: no cover - exporter misconfiguration must not stop the app
        root.exception("Failed to configure OTLP log exporter")
        return
    if otlp_handler is not None:
        root.addHandler(otlp_handler)
        root.debug("OTLP log exporter configured", extra={"service_name": service_name})
