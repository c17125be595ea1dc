"""Tracing and domain metrics.

Spans come from OpenTelemetry; a console exporter is attached only when
ENABLE_TRACING is on. Domain counters are plain prometheus_client objects in
the default registry, scraped together with the HTTP metrics on ``/metrics``.
"""

import os
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from prometheus_client import Counter

from .. import __version__

_TRUTHY = {"1", "true", "yes", "on"}

log = structlog.get_logger("qssun.observability")


serial_allocation_counter = Counter(
    "serial_allocations_total",
    "Total number of daily serials issued",
    ["store"],
)
serial_allocation_failure_counter = Counter(
    "serial_allocation_failures_total",
    "Serial allocations that failed",
    ["reason"],
)
notification_dispatch_counter = Counter(
    "notification_dispatch_total",
    "Notification deliveries by channel and outcome",
    ["channel", "outcome"],
)


def setup_observability(
    service_name: str = "qssun-backoffice",
    environment: Optional[str] = None,
) -> TracerProvider:
    """Install a tracer provider tagged with service name, version and environment."""
    environment = environment or os.getenv("APP_ENV", "development")
    provider = TracerProvider(resource=Resource.create({
        "service.name": service_name,
        "service.version": __version__,
        "deployment.environment": environment,
    }))
    tracing_enabled = os.getenv("ENABLE_TRACING", "false").lower() in _TRUTHY
    if tracing_enabled:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    log.info("Observability configured", service_name=service_name,
             environment=environment, console_spans=tracing_enabled)
    return provider


@contextmanager
def trace_operation(operation_name: str, **attributes) -> Iterator[trace.Span]:
    """Run a block inside a span named ``operation_name``.

    Exceptions are recorded on the span, logged once and re-raised.
    """
    tracer = trace.get_tracer("qssun")
    op_log = log.bind(operation=operation_name, **attributes)
    with tracer.start_as_current_span(
        operation_name,
        attributes=attributes,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        try:
            yield span
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(trace.Status(trace.StatusCode.ERROR, str(exc)))
            op_log.warning("Operation failed", error_type=type(exc).__name__, error_message=str(exc))
            raise
        span.set_status(trace.Status(trace.StatusCode.OK))
        op_log.debug("Operation completed")


__all__ = [
    "setup_observability",
    "trace_operation",
    "serial_allocation_counter",
    "serial_allocation_failure_counter",
    "notification_dispatch_counter",
]
