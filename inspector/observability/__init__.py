"""Tracing and metrics hooks; all no-ops unless telemetry is enabled."""

from inspector.observability.otel import initialize, shutdown, start_span
from inspector.observability.otel import record_parse_failure, record_progress_save, record_scan

__all__ = [
    "initialize",
    "record_parse_failure",
    "record_progress_save",
    "record_scan",
    "shutdown",
    "start_span",
]
