"""
OpenTelemetry tracing setup.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any
from uuid import UUID

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Tracer

from taskscheduler import __version__
from taskscheduler.config import get_settings
from taskscheduler.constants import SPAN_EXECUTE_JOB

# Global tracer instance
_tracer: Tracer | None = None


def setup_tracing(enable_console_export: bool = False) -> Tracer:
    """
    Set up OpenTelemetry tracing.

    Spans are exported over OTLP only when an endpoint is configured.

    Args:
        enable_console_export: If True, also export spans to console.

    Returns:
        Tracer: The tracer instance.
    """
    global _tracer

    settings = get_settings()

    # Create resource with service info
    resource = Resource.create(
        {
            "service.name": settings.otel_service_name,
            "service.version": __version__,
        }
    )

    # Create tracer provider
    provider = TracerProvider(resource=resource)

    if settings.otel_exporter_otlp_endpoint:
        otlp_exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_otlp_endpoint,
            insecure=True,
        )
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))

    # Optionally add console exporter for debugging
    if enable_console_export:
        provider.add_span_processor(
            BatchSpanProcessor(ConsoleSpanExporter())
        )

    # Set the global tracer provider
    trace.set_tracer_provider(provider)

    # Get tracer
    _tracer = trace.get_tracer(settings.otel_service_name)

    return _tracer


def instrument_sqlalchemy(engine: Any) -> None:
    """
    Instrument SQLAlchemy engine with OpenTelemetry.

    Args:
        engine: The SQLAlchemy engine instance (the sync engine of an async one).
    """
    SQLAlchemyInstrumentor().instrument(engine=engine)


def get_tracer() -> Tracer:
    """
    Get the tracer instance.

    Falls back to the globally configured provider when tracing was not
    set up explicitly, which is a no-op tracer unless an SDK is installed.

    Returns:
        Tracer: The tracer instance.
    """
    if _tracer is None:
        return trace.get_tracer(__name__)
    return _tracer


@contextmanager
def job_span(job_id: UUID, job_class: str, dispatcher_id: str) -> Iterator[Span]:
    """
    Span around the execution of one job.

    Exceptions raised by the handler are recorded on the span and re-raised.

    Args:
        job_id: The job UUID.
        job_class: Handler key of the job.
        dispatcher_id: The dispatcher executing the job.
    """
    with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
        span.set_attribute("job.id", str(job_id))
        span.set_attribute("job.class", job_class)
        span.set_attribute("dispatcher.id", dispatcher_id)
        yield span
