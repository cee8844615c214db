"""Observability helpers."""

from ccjsonl.observability.otel import (
    initialize,
    record_ingestion,
    record_parser_failure,
    record_tracking_conflict,
    shutdown,
    start_span,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_ingestion",
    "record_parser_failure",
    "record_tracking_conflict",
]
