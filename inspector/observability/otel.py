"""OpenTelemetry + Prometheus fallback wiring for the session inspector.

Every helper is a no-op until ``initialize`` runs with
``INSPECTOR_OTEL_ENABLED`` set, so callers record unconditionally.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator

from fastapi import FastAPI

from inspector import config

logger = logging.getLogger("inspector.observability")

SCANS = "inspector_danger_scans_total"
SCAN_LATENCY = "inspector_danger_scan_latency_ms"
HITS = "inspector_danger_hits_total"
SESSIONS_SCANNED = "inspector_danger_sessions_scanned_total"
PARSE_FAILURES = "inspector_parse_failures_total"
PROGRESS_SAVES = "inspector_progress_saves_total"

# name -> (kind, unit, description, prometheus label names)
_METRICS: dict[str, tuple[str, str, str, tuple[str, ...]]] = {
    SCANS: ("counter", "1", "Count of danger scan passes", ()),
    SCAN_LATENCY: ("histogram", "ms", "Latency of danger scan passes", ()),
    HITS: ("counter", "1", "Danger hits produced by scan passes", ()),
    SESSIONS_SCANNED: ("counter", "1", "Session files covered by scan passes", ()),
    PARSE_FAILURES: ("counter", "1", "Session lines that failed to parse", ()),
    PROGRESS_SAVES: ("counter", "1", "Progress store write attempts by result", ("result",)),
}


@dataclass
class _Telemetry:
    initialized: bool = False
    tracer: Any = None
    trace_provider: Any = None
    meter_provider: Any = None
    instrumentor: Any = None
    otel_metrics: dict[str, Any] = field(default_factory=dict)
    prom_metrics: dict[str, Any] = field(default_factory=dict)


_state = _Telemetry()


def _otlp_url(base_endpoint: str, signal_path: str) -> str:
    """Append a ``/v1/<signal>`` path unless the endpoint already ends with one."""
    base = (base_endpoint or "").strip().rstrip("/")
    if not base or base.endswith(signal_path):
        return base
    if base.endswith("/v1"):
        base = base[: -len("/v1")]
    return base + signal_path


def initialize(app: FastAPI | None = None) -> None:
    if _state.initialized:
        if app is not None and _state.instrumentor is not None:
            _state.instrumentor.instrument_app(app)
        return
    _state.initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (INSPECTOR_OTEL_ENABLED=false)")
        return

    from opentelemetry import metrics, trace
    from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    service_name = config.OTEL_SERVICE_NAME or "session-inspector"
    resource = Resource.create({"service.name": service_name, "service.namespace": "inspector"})

    trace_provider = TracerProvider(resource=resource)
    span_exporter = OTLPSpanExporter(endpoint=_otlp_url(config.OTEL_ENDPOINT, "/v1/traces") or None)
    trace_provider.add_span_processor(BatchSpanProcessor(span_exporter))
    trace.set_tracer_provider(trace_provider)

    metric_exporter = OTLPMetricExporter(endpoint=_otlp_url(config.OTEL_ENDPOINT, "/v1/metrics") or None)
    meter_provider = MeterProvider(
        resource=resource,
        metric_readers=[PeriodicExportingMetricReader(metric_exporter)],
    )
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("inspector")
    for name, (kind, unit, description, _labels) in _METRICS.items():
        create = meter.create_histogram if kind == "histogram" else meter.create_counter
        _state.otel_metrics[name] = create(name, unit=unit, description=description)

    _state.trace_provider = trace_provider
    _state.meter_provider = meter_provider
    _state.tracer = trace.get_tracer("inspector")
    _state.instrumentor = FastAPIInstrumentor()
    if app is not None:
        _state.instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        _start_prometheus(config.PROM_PORT)

    logger.info("OpenTelemetry initialized (service=%s endpoint=%s)", service_name, config.OTEL_ENDPOINT)


def _start_prometheus(port: int) -> None:
    from prometheus_client import Counter, Histogram, start_http_server

    try:
        start_http_server(port)
    except OSError as exc:
        logger.warning("Prometheus fallback not started on port %s: %s", port, exc)
        return
    for name, (kind, _unit, description, labels) in _METRICS.items():
        metric_cls = Histogram if kind == "histogram" else Counter
        _state.prom_metrics[name] = metric_cls(name, description, labels)
    logger.info("Prometheus fallback metrics server listening on port %s", port)


def shutdown(app: FastAPI | None = None) -> None:
    if _state.tracer is None:
        return
    if app is not None and _state.instrumentor is not None:
        try:
            _state.instrumentor.uninstrument_app(app)
        except Exception as exc:  # noqa: BLE001
            logger.debug("FastAPI uninstrumentation failed: %s", exc)
    for provider in (_state.meter_provider, _state.trace_provider):
        try:
            provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Telemetry provider shutdown failed: %s", exc)
    _state.tracer = None
    _state.otel_metrics.clear()


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None) -> Iterator[Any]:
    if _state.tracer is None:
        yield None
        return
    with _state.tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def _add(name: str, amount: int = 1, **labels: str) -> None:
    otel_metric = _state.otel_metrics.get(name)
    if otel_metric is not None:
        otel_metric.add(amount, labels or None)
    prom_metric = _state.prom_metrics.get(name)
    if prom_metric is not None:
        (prom_metric.labels(**labels) if labels else prom_metric).inc(amount)


def _observe(name: str, value: float) -> None:
    otel_metric = _state.otel_metrics.get(name)
    if otel_metric is not None:
        otel_metric.record(value)
    prom_metric = _state.prom_metrics.get(name)
    if prom_metric is not None:
        prom_metric.observe(value)


def record_scan(hits: int, duration_ms: float, *, sessions: int = 1) -> None:
    _add(SCANS)
    _observe(SCAN_LATENCY, max(0.0, float(duration_ms)))
    if sessions > 0:
        _add(SESSIONS_SCANNED, int(sessions))
    if hits > 0:
        _add(HITS, int(hits))


def record_parse_failure(count: int = 1) -> None:
    if count > 0:
        _add(PARSE_FAILURES, int(count))


def record_progress_save(result: str) -> None:
    _add(PROGRESS_SAVES, result=result or "unknown")
