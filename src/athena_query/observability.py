"""Logging, tracing and metrics for Athena Query.

Provides:
- structlog JSON logging carrying the active trace and span ids
- An ``athena_query`` tracer and meter, exported over OTLP when enabled
- Query instruments: duration, decoded rows, in-flight queries, API requests

Instruments stay unset until :func:`setup_opentelemetry` runs with
``otel.enabled``; the ``record_*`` helpers are no-ops until then.
"""

from __future__ import annotations

import contextlib
import logging
from typing import TYPE_CHECKING

import structlog
from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from athena_query.config import get_settings

if TYPE_CHECKING:
    from athena_query.config import OTelConfig

INSTRUMENTATION_NAME = "athena_query"
METRIC_EXPORT_INTERVAL_MS = 10_000
FLUSH_TIMEOUT_MS = 5_000

_initialized = False

_tracer: trace.Tracer | None = None
_meter: metrics.Meter | None = None
_tracer_provider: TracerProvider | None = None
_meter_provider: MeterProvider | None = None

_query_duration_histogram: metrics.Histogram | None = None
_query_rows_counter: metrics.Counter | None = None
_active_queries_gauge: metrics.UpDownCounter | None = None
_request_counter: metrics.Counter | None = None


def get_tracer() -> trace.Tracer:
    """Return the cached ``athena_query`` tracer."""
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer(INSTRUMENTATION_NAME)
    return _tracer


def get_meter() -> metrics.Meter:
    """Return the cached ``athena_query`` meter."""
    global _meter
    if _meter is None:
        _meter = metrics.get_meter(INSTRUMENTATION_NAME)
    return _meter


def record_query_duration(duration_seconds: float, status: str = "succeeded") -> None:
    """Record the wall-clock duration of one logical query.

    Args:
        duration_seconds: Time from submission to materialized result.
        status: ``succeeded``, ``failed`` (FAILED returned as a value) or ``error``.
    """
    if _query_duration_histogram is not None:
        _query_duration_histogram.record(duration_seconds, {"status": status})


def record_query_rows(row_count: int) -> None:
    if _query_rows_counter is not None:
        _query_rows_counter.add(row_count)


def record_request(action: str, status: int) -> None:
    """Count one Athena API request by action and HTTP status."""
    if _request_counter is not None:
        _request_counter.add(1, {"action": action, "status": status})


def increment_active_queries() -> None:
    if _active_queries_gauge is not None:
        _active_queries_gauge.add(1)


def decrement_active_queries() -> None:
    if _active_queries_gauge is not None:
        _active_queries_gauge.add(-1)


def _add_trace_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """structlog processor copying the current span context into the event."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def configure_logging(level: int = logging.INFO) -> None:
    """Route structlog through stdlib logging and render events as JSON."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            _add_trace_context,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", level=level)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger, named ``athena_query`` unless ``name`` is given."""
    return structlog.get_logger(name or INSTRUMENTATION_NAME)


def _install_tracer_provider(resource: Resource, otel: OTelConfig) -> TracerProvider:
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=otel.endpoint, insecure=otel.insecure)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    return provider


def _install_meter_provider(resource: Resource, otel: OTelConfig) -> MeterProvider:
    exporter = OTLPMetricExporter(endpoint=otel.endpoint, insecure=otel.insecure)
    reader = PeriodicExportingMetricReader(
        exporter, export_interval_millis=METRIC_EXPORT_INTERVAL_MS
    )
    provider = MeterProvider(resource=resource, metric_readers=[reader])
    metrics.set_meter_provider(provider)
    return provider


def _create_instruments(meter: metrics.Meter) -> None:
    global _query_duration_histogram, _query_rows_counter
    global _active_queries_gauge, _request_counter

    _query_duration_histogram = meter.create_histogram(
        name="query_duration_seconds",
        description="Wall-clock duration of Athena queries, submission to result",
        unit="s",
    )
    _query_rows_counter = meter.create_counter(
        name="query_rows_returned",
        description="Rows decoded from inline results and JSON records",
        unit="rows",
    )
    _active_queries_gauge = meter.create_up_down_counter(
        name="active_queries",
        description="Queries currently being driven to a terminal state",
        unit="queries",
    )
    _request_counter = meter.create_counter(
        name="athena_requests",
        description="Athena API requests by action and HTTP status",
        unit="requests",
    )


def setup_opentelemetry() -> None:
    """Configure logging and, when ``otel.enabled``, OTLP tracing and metrics.

    Safe to call more than once; only the first call has an effect.
    """
    global _initialized, _tracer, _meter, _tracer_provider, _meter_provider

    if _initialized:
        return

    otel = get_settings().otel
    configure_logging()

    if otel.enabled:
        resource = Resource.create({SERVICE_NAME: otel.service_name})
        _tracer_provider = _install_tracer_provider(resource, otel)
        _meter_provider = _install_meter_provider(resource, otel)
        _tracer = trace.get_tracer(INSTRUMENTATION_NAME)
        _meter = metrics.get_meter(INSTRUMENTATION_NAME)
        _create_instruments(_meter)

    _initialized = True


def shutdown_opentelemetry() -> None:
    """Flush and shut down installed providers."""
    global _tracer_provider, _meter_provider

    for provider in (_tracer_provider, _meter_provider):
        if provider is None:
            continue
        with contextlib.suppress(Exception):
            provider.force_flush(timeout_millis=FLUSH_TIMEOUT_MS)
            provider.shutdown()
    _tracer_provider = None
    _meter_provider = None


def reset_observability() -> None:
    """Forget providers, instruments and the initialized flag (for tests)."""
    global _initialized, _tracer, _meter, _tracer_provider, _meter_provider
    global _query_duration_histogram, _query_rows_counter
    global _active_queries_gauge, _request_counter

    _initialized = False
    _tracer = None
    _meter = None
    _tracer_provider = None
    _meter_provider = None
    _query_duration_histogram = None
    _query_rows_counter = None
    _active_queries_gauge = None
    _request_counter = None
