"""OpenTelemetry export for the ingestion pipeline, with a Prometheus fallback.

Everything here is optional: when CCJSONL_OTEL_ENABLED is off or the
packages from the ``otel`` extra are missing, every recorder is a no-op.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from fastapi import FastAPI

from ccjsonl import config

logger = logging.getLogger("ccjsonl.observability")


@dataclass(frozen=True)
class _MetricDef:
    kind: str  # "counter" | "histogram"
    unit: str
    description: str
    labels: tuple[str, ...]


_INGESTION_RUNS = "ccjsonl_ingestion_events_total"
_INGESTION_LATENCY = "ccjsonl_ingestion_latency_ms"
_PARSER_FAILURES = "ccjsonl_parser_failures_total"
_TRACKING_CONFLICTS = "ccjsonl_tracking_conflicts_total"

_METRICS: dict[str, _MetricDef] = {
    _INGESTION_RUNS: _MetricDef("counter", "1", "Count of transcript ingestion runs", ("entity", "result", "project")),
    _INGESTION_LATENCY: _MetricDef("histogram", "ms", "Latency of transcript ingestion runs", ("entity", "result", "project")),
    _PARSER_FAILURES: _MetricDef(
        "counter", "1", "Transcript lines that failed JSON parsing or schema validation", ("parser", "project")
    ),
    _TRACKING_CONFLICTS: _MetricDef(
        "counter", "1", "Batches discarded after losing a tracking cursor race", ("project",)
    ),
}


@dataclass
class _TelemetryState:
    initialized: bool = False
    enabled: bool = False
    tracer: Any = None
    providers: list[Any] = field(default_factory=list)
    instrumentor: Any = None
    instruments: dict[str, Any] = field(default_factory=dict)
    prom_instruments: dict[str, Any] = field(default_factory=dict)


_state = _TelemetryState()


def _signal_endpoint(base_endpoint: str, signal: str) -> str | None:
    """OTLP/HTTP wants one URL per signal, e.g. http://collector:4318/v1/traces."""
    endpoint = (base_endpoint or "").strip().rstrip("/")
    if not endpoint:
        return None
    suffix = f"/v1/{signal}"
    if endpoint.endswith(suffix):
        return endpoint
    if endpoint.endswith("/v1"):
        return f"{endpoint}/{signal}"
    return f"{endpoint}{suffix}"


def _label_values(labels: dict[str, str]) -> dict[str, str]:
    return {key: (value or "").strip() or "unknown" for key, value in labels.items()}


def _start_prometheus() -> None:
    try:
        from prometheus_client import Counter, Histogram, start_http_server
    except ImportError as exc:
        logger.warning("Prometheus fallback unavailable: %s", exc)
        return
    try:
        start_http_server(config.PROM_PORT)
    except OSError as exc:
        logger.warning("Prometheus fallback not started: %s", exc)
        return
    kinds = {"counter": Counter, "histogram": Histogram}
    for name, metric in _METRICS.items():
        _state.prom_instruments[name] = kinds[metric.kind](name, metric.description, list(metric.labels))
    logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)


def initialize(app: FastAPI | None = None) -> None:
    """Set up tracing and metrics once per process; later calls only instrument ``app``."""
    if _state.initialized:
        if _state.enabled and app is not None and _state.instrumentor is not None:
            _state.instrumentor.instrument_app(app)
        return
    _state.initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (CCJSONL_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    service_name = config.OTEL_SERVICE_NAME or "ccjsonl-ingest"
    resource = Resource.create({"service.name": service_name, "service.namespace": "ccjsonl"})

    tracer_provider = TracerProvider(resource=resource)
    tracer_provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=_signal_endpoint(config.OTEL_ENDPOINT, "traces")))
    )
    trace.set_tracer_provider(tracer_provider)

    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=_signal_endpoint(config.OTEL_ENDPOINT, "metrics"))
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("ccjsonl.ingest")

    for name, metric in _METRICS.items():
        create = meter.create_counter if metric.kind == "counter" else meter.create_histogram
        _state.instruments[name] = create(name, unit=metric.unit, description=metric.description)

    _state.providers = [meter_provider, tracer_provider]
    _state.tracer = trace.get_tracer("ccjsonl.ingest")
    _state.instrumentor = FastAPIInstrumentor()
    _state.enabled = True

    if app is not None:
        _state.instrumentor.instrument_app(app)
    if config.PROM_PORT > 0:
        _start_prometheus()

    logger.info("OpenTelemetry initialized (service=%s endpoint=%s)", service_name, config.OTEL_ENDPOINT)


def shutdown(app: FastAPI | None = None) -> None:
    if not _state.initialized:
        return
    if app is not None and _state.instrumentor is not None:
        try:
            _state.instrumentor.uninstrument_app(app)
        except Exception as exc:  # noqa: BLE001
            logger.debug("FastAPI uninstrument failed: %s", exc)
    for provider in _state.providers:
        try:
            provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Telemetry provider shutdown failed: %s", exc)
    _state.enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _state.enabled or _state.tracer is None:
        yield None
        return
    with _state.tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def _emit(name: str, value: float, **labels: str) -> None:
    values = _label_values(labels)
    instrument = _state.instruments.get(name) if _state.enabled else None
    if instrument is not None:
        if _METRICS[name].kind == "counter":
            instrument.add(value, values)
        else:
            instrument.record(value, values)
    prom = _state.prom_instruments.get(name)
    if prom is not None:
        series = prom.labels(**values)
        if _METRICS[name].kind == "counter":
            series.inc(value)
        else:
            series.observe(value)


def record_ingestion(entity: str, result: str, duration_ms: float, *, project_id: str) -> None:
    """One processor run for a file, tagged with its outcome."""
    _emit(_INGESTION_RUNS, 1, entity=entity, result=result, project=project_id)
    _emit(_INGESTION_LATENCY, max(0.0, float(duration_ms)), entity=entity, result=result, project=project_id)


def record_parser_failure(parser: str, *, project_id: str, count: int = 1) -> None:
    if count <= 0:
        return
    _emit(_PARSER_FAILURES, int(count), parser=parser, project=project_id)


def record_tracking_conflict(*, project_id: str) -> None:
    _emit(_TRACKING_CONFLICTS, 1, project=project_id)
