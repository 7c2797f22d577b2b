"""Observability module for OpenTelemetry-aligned tracing, metrics, and logging."""

from spimi_index.observability.context import (
    bind_build_run,
    bind_lane,
    get_trace_context,
    reset_trace_context,
    set_trace_context,
    trace_context,
)
from spimi_index.observability.logging import (
    JsonFormatter,
    configure_log_exporter,
    configure_logging,
    init_log_exporter,
)
from spimi_index.observability.metrics import (
    DOCUMENTS_INDEXED,
    INDEX_TERM_COUNT,
    MERGE_LATENCY,
    QUERY_LATENCY,
    SEGMENT_BYTES,
    SEGMENTS_FLUSHED,
    configure_metrics_exporter,
    get_metrics,
    init_metrics,
    track_latency,
)
from spimi_index.observability.tracing import (
    configure_trace_exporter,
    create_span,
    get_tracer,
    init_tracing,
)


__all__ = [
    "DOCUMENTS_INDEXED",
    "INDEX_TERM_COUNT",
    "MERGE_LATENCY",
    "QUERY_LATENCY",
    "SEGMENTS_FLUSHED",
    "SEGMENT_BYTES",
    "JsonFormatter",
    "bind_build_run",
    "bind_lane",
    "configure_log_exporter",
    "configure_logging",
    "configure_metrics_exporter",
    "configure_trace_exporter",
    "create_span",
    "get_metrics",
    "get_trace_context",
    "get_tracer",
    "init_log_exporter",
    "init_metrics",
    "init_tracing",
    "reset_trace_context",
    "set_trace_context",
    "trace_context",
    "track_latency",
]
