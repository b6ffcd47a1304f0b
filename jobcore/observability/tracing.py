"""
OpenTelemetry tracing for lock, job and dead letter operations.

Library code opens spans through job_span(); until setup_tracing() installs
a provider those spans are no-ops, so embedding applications that bring
their own provider get jobcore spans under it for free.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Status, StatusCode, Tracer
from sqlalchemy.ext.asyncio import AsyncEngine

from jobcore import __version__
from jobcore.config import Settings, get_settings

logger = logging.getLogger(__name__)

TRACER_NAME = "jobcore"
ATTRIBUTE_PREFIX = "jobcore."

_tracer: Tracer | None = None


def setup_tracing(
    settings: Settings | None = None,
    enable_console_export: bool = False,
) -> Tracer:
    """
    Install a tracer provider exporting over OTLP.

    The resource carries the instance id, so spans from different
    scheduler instances competing for the same job can be told apart.

    Args:
        settings: Defaults to the process settings.
        enable_console_export: Also print finished spans to stdout.
    """
    global _tracer

    settings = settings or get_settings()
    attributes: dict[str, Any] = {
        "service.name": settings.otel_service_name,
        "service.version": __version__,
    }
    if settings.instance_id:
        attributes["service.instance.id"] = settings.instance_id

    provider = TracerProvider(resource=Resource.create(attributes))
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True)
        )
    )
    if enable_console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer(TRACER_NAME, __version__)
    logger.info(
        "Tracing enabled",
        extra={"endpoint": settings.otel_exporter_otlp_endpoint},
    )
    return _tracer


def instrument_sql_store(engine: AsyncEngine) -> None:
    """Trace the SQL statements issued by the SQL store's engine."""
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def get_tracer() -> Tracer:
    if _tracer is None:
        return trace.get_tracer(TRACER_NAME, __version__)
    return _tracer


@contextmanager
def job_span(name: str, job_id: str, **attributes: Any) -> Iterator[Span]:
    """
    Open a span for an operation on one job.

    Attributes are namespaced under ``jobcore.``; None values are skipped.
    An exception escaping the block marks the span as failed and is
    re-raised unchanged.

    Example:
        with job_span("acquire_lock", job_id) as span:
            ...
            set_job_attributes(span, fencing_token=token)
    """
    with get_tracer().start_as_current_span(
        name, record_exception=False, set_status_on_exception=False
    ) as span:
        set_job_attributes(span, job_id=job_id, **attributes)
        try:
            yield span
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e) or type(e).__name__))
            raise


def set_job_attributes(span: Span, **attributes: Any) -> None:
    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(f"{ATTRIBUTE_PREFIX}{key}", value)
