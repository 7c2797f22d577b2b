"""Prometheus metrics for indexing and query observability with OTLP export."""

from __future__ import annotations

from contextlib import contextmanager
import time
from typing import TYPE_CHECKING, Any

from opentelemetry import metrics as otel_metrics
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
    OTLPMetricExporter as GrpcOTLPMetricExporter,
)
from opentelemetry.exporter.otlp.proto.http.metric_exporter import (
    OTLPMetricExporter as HttpOTLPMetricExporter,
)
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from prometheus_client import Counter, Gauge, Histogram, generate_latest

from spimi_index.config import ObservabilityCollectorConfig


if TYPE_CHECKING:
    from collections.abc import Generator


_meter_holder: dict[str, Any] = {"meter": None, "provider": None, "reader": None}


def init_metrics(
    service_name: str = "spimi-index",
    resource_attributes: dict[str, str] | None = None,
    metric_readers: list[PeriodicExportingMetricReader] | None = None,
) -> MeterProvider:
    """Initialize OpenTelemetry metrics."""
    provider = _meter_holder.get("provider")
    if isinstance(provider, MeterProvider):
        return provider

    attributes = {"service.name": service_name}
    if resource_attributes:
        attributes.update(resource_attributes)
    resource = Resource.create(attributes)
    provider = MeterProvider(resource=resource, metric_readers=metric_readers or [])
    otel_metrics.set_meter_provider(provider)
    _meter_holder["provider"] = provider
    _meter_holder["meter"] = otel_metrics.get_meter(__name__)
    return provider


def configure_metrics_exporter(
    config: ObservabilityCollectorConfig | None,
    provider: MeterProvider | None = None,
    *,
    service_name: str = "spimi-index",
) -> None:
    """Configure OTLP metrics export for an initialized meter provider."""
    if not config or not config.enabled:
        return

    endpoint = config.collector_endpoint
    if config.otlp_protocol == "http" and endpoint.endswith("/v1/traces"):
        endpoint = endpoint.removesuffix("/v1/traces") + "/v1/metrics"

    if config.otlp_protocol == "grpc":
        exporter = GrpcOTLPMetricExporter(
            endpoint=endpoint,
            headers=config.headers,
            timeout=config.timeout_seconds,
            insecure=config.grpc_insecure,
        )
    else:
        exporter = HttpOTLPMetricExporter(
            endpoint=endpoint,
            headers=config.headers,
            timeout=config.timeout_seconds,
        )

    reader = PeriodicExportingMetricReader(exporter)

    active_provider = provider or _meter_holder.get("provider")
    if not isinstance(active_provider, MeterProvider):
        init_metrics(
            service_name=service_name,
            resource_attributes=dict(config.resource_attributes),
            metric_readers=[reader],
        )
        _meter_holder["reader"] = reader
        return

    if _meter_holder.get("reader") is None:
        resource = getattr(active_provider, "resource", None) or getattr(active_provider, "_resource", None)
        if resource is None:
            resource = Resource.create({})
        replacement = MeterProvider(resource=resource, metric_readers=[reader])
        otel_metrics.set_meter_provider(replacement)
        _meter_holder["provider"] = replacement
        _meter_holder["meter"] = otel_metrics.get_meter(__name__)
        _meter_holder["reader"] = reader


def _get_meter():
    meter = _meter_holder.get("meter")
    if meter is None:
        init_metrics()
        meter = _meter_holder.get("meter")
    return meter


def _label_key(labels: dict[str, str]) -> tuple[tuple[str, str], ...]:
    return tuple(sorted(labels.items()))


class _BoundMetric:
    def __init__(self, wrapper: MetricBridge, labels: dict[str, str]) -> None:
        self._wrapper = wrapper
        self._labels = labels

    def inc(self, amount: float = 1.0) -> None:
        self._wrapper.inc(self._labels, amount)

    def observe(self, value: float) -> None:
        self._wrapper.observe(self._labels, value)

    def set(self, value: float) -> None:
        self._wrapper.set(self._labels, value)


class MetricBridge:
    """Bridge Prometheus metrics to OTel instruments."""

    def __init__(
        self,
        prom_metric: Counter | Histogram | Gauge,
        *,
        otel_name: str,
        otel_description: str,
        otel_kind: str,
    ) -> None:
        self._prom_metric = prom_metric
        self._otel_name = otel_name
        self._otel_description = otel_description
        self._otel_kind = otel_kind
        self._otel_instrument = None
        self._last_values: dict[tuple[tuple[str, str], ...], float] = {}

    def labels(self, **labels: str) -> _BoundMetric:
        return _BoundMetric(self, labels)

    def _ensure_otel_instrument(self):
        if self._otel_instrument is not None:
            return self._otel_instrument
        meter = _get_meter()
        if self._otel_kind == "counter":
            self._otel_instrument = meter.create_counter(self._otel_name, description=self._otel_description)
        elif self._otel_kind == "histogram":
            self._otel_instrument = meter.create_histogram(self._otel_name, description=self._otel_description)
        elif self._otel_kind == "gauge":
            self._otel_instrument = meter.create_up_down_counter(self._otel_name, description=self._otel_description)
        else:
            raise ValueError(f"Unknown metric kind: {self._otel_kind}")
        return self._otel_instrument

    def inc(self, labels: dict[str, str], amount: float) -> None:
        self._prom_metric.labels(**labels).inc(amount)
        otel = self._ensure_otel_instrument()
        otel.add(amount, labels)

    def observe(self, labels: dict[str, str], value: float) -> None:
        self._prom_metric.labels(**labels).observe(value)
        otel = self._ensure_otel_instrument()
        otel.record(value, labels)

    def set(self, labels: dict[str, str], value: float) -> None:
        self._prom_metric.labels(**labels).set(value)
        otel = self._ensure_otel_instrument()
        key = _label_key(labels)
        last = self._last_values.get(key, 0.0)
        delta = value - last
        if delta:
            otel.add(delta, labels)
        self._last_values[key] = value


_DOCUMENTS_INDEXED_PROM = Counter(
    "spimi_documents_indexed_total",
    "Documents added to in-memory segments",
    ["lane"],
)

_SEGMENTS_FLUSHED_PROM = Counter(
    "spimi_segments_flushed_total",
    "Segments flushed to storage",
    ["strategy", "trigger"],
)

_SEGMENT_BYTES_PROM = Histogram(
    "spimi_segment_estimated_bytes",
    "Estimated size of flushed segments",
    ["strategy"],
    buckets=(1024, 16 * 1024, 256 * 1024, 1024 * 1024, 8 * 1024 * 1024, 64 * 1024 * 1024, 256 * 1024 * 1024),
)

_MERGE_LATENCY_PROM = Histogram(
    "spimi_merge_latency_seconds",
    "Segment merge latency in seconds",
    ["operation"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0),
)

_QUERY_LATENCY_PROM = Histogram(
    "spimi_query_latency_seconds",
    "Boolean query latency in seconds",
    ["operation"],
    buckets=(0.0001, 0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.5),
)

_INDEX_TERM_COUNT_PROM = Gauge(
    "spimi_index_term_count",
    "Distinct terms in the loaded boolean index",
    ["kind"],
)

_OTLP_EXPORT_ERRORS_PROM = Counter(
    "spimi_otlp_export_errors_total",
    "Total OTLP export configuration errors",
    ["protocol"],
)

_OTLP_EXPORT_STATUS_PROM = Gauge(
    "spimi_otlp_exporter_enabled",
    "OTLP exporter enabled status (1=enabled, 0=disabled)",
    ["protocol"],
)

DOCUMENTS_INDEXED = MetricBridge(
    _DOCUMENTS_INDEXED_PROM,
    otel_name="spimi_documents_indexed_total",
    otel_description="Documents added to in-memory segments",
    otel_kind="counter",
)

SEGMENTS_FLUSHED = MetricBridge(
    _SEGMENTS_FLUSHED_PROM,
    otel_name="spimi_segments_flushed_total",
    otel_description="Segments flushed to storage",
    otel_kind="counter",
)

SEGMENT_BYTES = MetricBridge(
    _SEGMENT_BYTES_PROM,
    otel_name="spimi_segment_estimated_bytes",
    otel_description="Estimated size of flushed segments",
    otel_kind="histogram",
)

MERGE_LATENCY = MetricBridge(
    _MERGE_LATENCY_PROM,
    otel_name="spimi_merge_latency_seconds",
    otel_description="Segment merge latency in seconds",
    otel_kind="histogram",
)

QUERY_LATENCY = MetricBridge(
    _QUERY_LATENCY_PROM,
    otel_name="spimi_query_latency_seconds",
    otel_description="Boolean query latency in seconds",
    otel_kind="histogram",
)

INDEX_TERM_COUNT = MetricBridge(
    _INDEX_TERM_COUNT_PROM,
    otel_name="spimi_index_term_count",
    otel_description="Distinct terms in the loaded boolean index",
    otel_kind="gauge",
)

OTLP_EXPORT_ERRORS = MetricBridge(
    _OTLP_EXPORT_ERRORS_PROM,
    otel_name="spimi_otlp_export_errors_total",
    otel_description="Total OTLP export configuration errors",
    otel_kind="counter",
)

OTLP_EXPORT_STATUS = MetricBridge(
    _OTLP_EXPORT_STATUS_PROM,
    otel_name="spimi_otlp_exporter_enabled",
    otel_description="OTLP exporter enabled status (1=enabled, 0=disabled)",
    otel_kind="gauge",
)


@contextmanager
def track_latency(histogram: MetricBridge, **labels: str) -> Generator[None, None, None]:
    """Context manager to track operation latency."""
    start = time.perf_counter()
    try:
        yield
    finally:
        histogram.labels(**labels).observe(time.perf_counter() - start)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest()
