"""Unit tests for observability module."""

import io
import logging
import sys
from unittest.mock import Mock

import orjson
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode
import pytest

from spimi_index.config import ObservabilityCollectorConfig
from spimi_index.observability import (
    QUERY_LATENCY,
    JsonFormatter,
    bind_build_run,
    bind_lane,
    configure_logging,
    configure_metrics_exporter,
    configure_trace_exporter,
    create_span,
    get_metrics,
    get_trace_context,
    metrics as metrics_module,
    reset_trace_context,
    set_trace_context,
    tracing as tracing_module,
    track_latency,
)
from spimi_index.search.builder import SegmentBuilder
from spimi_index.search.flush_policy import FlushPolicy
from spimi_index.search.merger import SegmentMerger


def _record(msg="test message", level=logging.INFO, name="spimi_index.search.merger"):
    return logging.LogRecord(name=name, level=level, pathname="test.py", lineno=1, msg=msg, args=(), exc_info=None)


@pytest.fixture
def span_exporter(monkeypatch):
    """Route spans created through ``create_span`` to an in-memory exporter."""
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    monkeypatch.setitem(tracing_module._tracer_holder, "tracer", provider.get_tracer("test"))
    return exporter


@pytest.mark.unit
class TestJsonFormatter:
    def test_format_includes_trace_context(self):
        set_trace_context("ab" * 16, "cd" * 8)
        data = orjson.loads(JsonFormatter().format(_record()))

        assert data["message"] == "test message"
        assert data["level"] == "INFO"
        assert data["trace_id"] == "ab" * 16
        assert data["span_id"] == "cd" * 8
        assert data["component"] == "merger"
        assert "timestamp" in data

    def test_format_includes_build_run(self):
        set_trace_context("ab" * 16, "cd" * 8)
        bind_build_run("run-42")

        data = orjson.loads(JsonFormatter().format(_record()))

        assert data["build_run"] == "run-42"

    def test_format_groups_index_fields(self, tmp_path):
        record = _record()
        record.segment_id = 7
        record.doc_count = 3
        record.path = tmp_path / "segment_7.json"
        record.source = "corpus.zip"

        data = orjson.loads(JsonFormatter().format(record))

        assert data["index"] == {"segment_id": 7, "doc_count": 3, "path": str(tmp_path / "segment_7.json")}
        assert data["source"] == "corpus.zip"
        assert "segment_id" not in data

    def test_format_without_index_fields_has_no_index_object(self):
        data = orjson.loads(JsonFormatter().format(_record()))

        assert "index" not in data

    def test_format_includes_lane(self):
        set_trace_context("ab" * 16, "cd" * 8)
        bind_lane(0)

        data = orjson.loads(JsonFormatter().format(_record()))

        assert data["lane"] == 0

    def test_format_truncates_long_messages(self):
        data = orjson.loads(JsonFormatter().format(_record(msg="x" * 5000)))

        assert len(data["message"]) == JsonFormatter.MAX_MESSAGE_LEN + 3
        assert data["message"].endswith("...")

    def test_json_default_handles_sets_and_errors(self):
        formatter = JsonFormatter()

        assert formatter._json_default({3, 1, 2}) == [1, 2, 3]
        assert formatter._json_default(KeyError("red")) == "KeyError: 'red'"

    def test_merge_log_carries_merge_fields(self, red_blue_green, caplog):
        with caplog.at_level("INFO", logger="spimi_index.search.merger"):
            SegmentMerger().merge_store(red_blue_green)

        record = next(record for record in caplog.records if "complete" in record.getMessage())
        data = orjson.loads(JsonFormatter().format(record))
        assert data["index"]["merge_id"] == 1
        assert data["index"]["inputs"] == 2
        assert data["index"]["retired"] == 2
        assert data["index"]["term_count"] == 3


@pytest.mark.unit
class TestTraceContext:
    def test_get_trace_context_generates_ids(self):
        set_trace_context("", "")
        ctx = get_trace_context()

        assert len(ctx["trace_id"]) == 32
        assert len(ctx["span_id"]) == 16

    def test_bind_build_run_preserves_trace_id(self):
        set_trace_context("aa" * 16, "bb" * 8)
        bind_build_run("run-1")

        ctx = get_trace_context()
        assert ctx["trace_id"] == "aa" * 16
        assert ctx["build_run"] == "run-1"

    def test_reset_removes_build_run(self):
        set_trace_context("aa" * 16, "bb" * 8)
        token = bind_build_run("run-2")

        reset_trace_context(token)

        assert "build_run" not in get_trace_context()


@pytest.mark.unit
class TestTracing:
    def test_create_span_sets_attributes(self, span_exporter):
        with create_span("spimi.test", attributes={"spimi.key": "value"}):
            pass

        (span,) = span_exporter.get_finished_spans()
        assert span.name == "spimi.test"
        assert span.attributes["spimi.key"] == "value"

    def test_create_span_records_exceptions(self, span_exporter):
        with pytest.raises(RuntimeError):
            with create_span("spimi.failing"):
                raise RuntimeError("boom")

        (span,) = span_exporter.get_finished_spans()
        assert span.status.status_code is StatusCode.ERROR
        assert span.events[0].name == "exception"

    def test_merge_emits_span(self, span_exporter, red_blue_green):
        SegmentMerger().merge_store(red_blue_green)

        spans = {span.name: span for span in span_exporter.get_finished_spans()}
        assert spans["spimi.merge"].attributes["spimi.merge.inputs"] == 2
        assert spans["spimi.merge"].attributes["spimi.merge.terms"] == 3

    def test_configure_trace_exporter_adds_span_processor(self, monkeypatch):
        provider = TracerProvider()
        config = ObservabilityCollectorConfig(
            enabled=True,
            otlp_protocol="http",
            collector_endpoint="http://collector/v1/traces",
        )
        monkeypatch.setattr(tracing_module, "HttpOTLPSpanExporter", Mock(return_value=Mock()))
        add_processor = Mock()
        provider.add_span_processor = add_processor  # type: ignore[method-assign]

        configure_trace_exporter(config, provider=provider)

        add_processor.assert_called_once()
        assert metrics_module._OTLP_EXPORT_STATUS_PROM.labels(protocol="http")._value.get() == 1

    def test_configure_trace_exporter_handles_exporter_failure(self, monkeypatch):
        config = ObservabilityCollectorConfig(enabled=True, otlp_protocol="grpc")
        monkeypatch.setattr(tracing_module, "GrpcOTLPSpanExporter", Mock(side_effect=RuntimeError("boom")))

        configure_trace_exporter(config, provider=TracerProvider())

        assert metrics_module._OTLP_EXPORT_STATUS_PROM.labels(protocol="grpc")._value.get() == 0

    def test_disabled_exporters_are_noops(self):
        config = ObservabilityCollectorConfig(enabled=False)

        configure_trace_exporter(config)
        configure_metrics_exporter(config)
        configure_trace_exporter(None)


@pytest.mark.unit
class TestMetrics:
    def test_get_metrics_exposes_spimi_metrics(self):
        output = get_metrics()

        assert isinstance(output, bytes)
        assert b"spimi_segments_flushed_total" in output
        assert b"spimi_query_latency_seconds" in output

    def test_flush_increments_counter(self):
        child = metrics_module._SEGMENTS_FLUSHED_PROM.labels(strategy="posting_count", trigger="finalize")
        before = child._value.get()

        builder = SegmentBuilder(FlushPolicy.posting_count(10))
        builder.add(1, ["red"])
        builder.finish()

        assert child._value.get() == before + 1

    def test_track_latency_records_histogram(self):
        with track_latency(QUERY_LATENCY, operation="lookup"):
            pass


@pytest.mark.unit
class TestConfigureLogging:
    def test_configure_logging_sets_level(self):
        configure_logging(level="DEBUG")

        assert logging.getLogger().level == logging.DEBUG

    def test_configure_logging_json_formatter(self):
        configure_logging(level="INFO")

        assert isinstance(logging.getLogger().handlers[0].formatter, JsonFormatter)

    def test_configure_logging_non_json_formatter(self):
        configure_logging(level="INFO", json_output=False)

        formatter = logging.getLogger().handlers[0].formatter
        assert "%(asctime)s" in formatter._style._fmt

    def test_configure_logging_writes_to_stderr_by_default(self):
        configure_logging(level="INFO")

        assert logging.getLogger().handlers[0].stream is sys.stderr

    def test_configure_logging_custom_stream(self):
        stream = io.StringIO()
        configure_logging(level="INFO", stream=stream)

        logging.getLogger("spimi_index.search.merger").info("merged", extra={"merge_id": 4})

        assert orjson.loads(stream.getvalue().splitlines()[-1])["index"] == {"merge_id": 4}
