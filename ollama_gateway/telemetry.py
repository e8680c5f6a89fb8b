"""Correlation identifiers and OpenTelemetry wiring for the gateway."""
from __future__ import annotations

import os
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Mapping, Optional

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode
from structlog.contextvars import bind_contextvars, unbind_contextvars

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
_instrumented_apps: set = set()


@dataclass(frozen=True)
class RequestContext:
    """Per-request data threaded through the service layer."""

    correlation_id: str
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


def otlp_headers(raw_value: Optional[str]) -> Dict[str, str]:
    """Parse ``OTEL_EXPORTER_OTLP_HEADERS`` (``k1=v1,k2=v2``)."""

    pairs = (item.split("=", 1) for item in (raw_value or "").split(",") if "=" in item)
    return {key.strip(): value.strip() for key, value in pairs if key.strip()}


def configure_tracing(app: FastAPI, service_name: str) -> bool:
    """Export spans over OTLP/HTTP when a collector endpoint is configured.

    Returns ``True`` when the application was instrumented by this call.
    """

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not endpoint or id(app) in _instrumented_apps:
        return False

    provider = TracerProvider(
        resource=Resource.create(
            {"service.name": os.getenv("OTEL_SERVICE_NAME", service_name)}
        ),
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(
                endpoint=f"{endpoint.rstrip('/')}/v1/traces",
                headers=otlp_headers(os.getenv("OTEL_EXPORTER_OTLP_HEADERS")) or None,
            )
        )
    )
    trace.set_tracer_provider(provider)
    FastAPIInstrumentor().instrument_app(app, tracer_provider=provider)
    _instrumented_apps.add(id(app))
    return True


def annotate_span(span: Span, attributes: Mapping[str, Any]) -> None:
    """Copy ``attributes`` onto ``span`` together with the correlation id."""

    for key, value in attributes.items():
        span.set_attribute(key, value)
    correlation_id = get_correlation_id()
    if correlation_id:
        span.set_attribute("correlation.id", correlation_id)


def mark_span_failed(span: Span, exc: BaseException, description: Optional[str] = None) -> None:
    span.record_exception(exc)
    span.set_status(Status(StatusCode.ERROR, description or str(exc)))


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


@contextmanager
def correlation_scope(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Bind a correlation id (generated when missing) for the enclosed block.

    The id is visible to :func:`get_correlation_id` and to structlog's
    context-local logger state until the block exits.
    """

    value = correlation_id or str(uuid.uuid4())
    token = correlation_id_var.set(value)
    bind_contextvars(correlation_id=value)
    try:
        yield value
    finally:
        unbind_contextvars("correlation_id")
        correlation_id_var.reset(token)


def current_context() -> RequestContext:
    """Build a request context from the active correlation identifier."""

    return RequestContext(correlation_id=get_correlation_id() or str(uuid.uuid4()))
