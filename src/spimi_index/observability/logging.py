"""Structured JSON logging for build runs, merges and queries.

Every line carries the trace context plus the build run and lane bound by
``IndexBuildRun``. Segment and merge details passed through ``extra=`` are
grouped under an ``index`` object so flush and merge events can be filtered
without parsing messages::

    {"level": "INFO", "message": "Merge 2 complete", "build_run": "9f2c...",
     "index": {"merge_id": 2, "doc_count": 200, "term_count": 41}}
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from pathlib import Path
import sys
from typing import IO, Any

from opentelemetry._logs import set_logger_provider
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter as GrpcOTLPLogExporter
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter as HttpOTLPLogExporter
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.resources import Resource
import orjson

from spimi_index.config import ObservabilityCollectorConfig
from spimi_index.observability.context import get_trace_context


_RESERVED_RECORD_KEYS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}

# ``extra=`` keys describing segments and merges
INDEX_FIELDS = frozenset(
    {
        "segment_id",
        "merge_id",
        "doc_count",
        "term_count",
        "size_bytes",
        "trigger",
        "inputs",
        "retired",
        "path",
    }
)


class JsonFormatter(logging.Formatter):
    """One JSON object per record, correlated with the active build run."""

    MAX_MESSAGE_LEN = 2000

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_trace_context()
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": self._truncate(record.getMessage()),
            "logger": record.name,
            "trace_id": ctx.get("trace_id", ""),
            "span_id": ctx.get("span_id", ""),
        }

        if "." in record.name:
            log_entry["component"] = record.name.split(".")[-1]

        if build_run := ctx.get("build_run"):
            log_entry["build_run"] = build_run
        if (lane := ctx.get("lane")) is not None:
            log_entry["lane"] = lane

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        index_fields: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_KEYS or key.startswith("_"):
                continue
            if key in INDEX_FIELDS:
                index_fields[key] = value
            else:
                log_entry[key] = value
        if index_fields:
            log_entry["index"] = index_fields

        return orjson.dumps(log_entry, default=self._json_default).decode("utf-8")

    def _truncate(self, msg: str) -> str:
        if len(msg) > self.MAX_MESSAGE_LEN:
            return msg[: self.MAX_MESSAGE_LEN] + "..."
        return msg

    def _json_default(self, value: Any) -> Any:
        if isinstance(value, Path):
            return str(value)
        if isinstance(value, (set, frozenset)):
            return sorted(value)
        if isinstance(value, Exception):
            return f"{type(value).__name__}: {value}"
        return repr(value)


def configure_logging(level: str = "INFO", json_output: bool = True, *, stream: IO[str] | None = None) -> None:
    """Configure the root logger.

    Logs go to stderr by default; stdout is reserved for the JSON results
    printed by the command line.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))

    root.addHandler(handler)


_logger_holder: dict[str, object] = {"provider": None, "handler_added": False}


def init_log_exporter(
    service_name: str = "spimi-index",
    resource_attributes: dict[str, str] | None = None,
) -> LoggerProvider:
    attributes = {"service.name": service_name}
    if resource_attributes:
        attributes.update(resource_attributes)
    resource = Resource.create(attributes)
    provider = LoggerProvider(resource=resource)
    set_logger_provider(provider)
    _logger_holder["provider"] = provider
    return provider


def configure_log_exporter(
    config: ObservabilityCollectorConfig | None,
    provider: LoggerProvider | None = None,
) -> None:
    if not config or not config.enabled:
        return

    active_provider = provider or _logger_holder.get("provider")
    if not isinstance(active_provider, LoggerProvider):
        active_provider = init_log_exporter(resource_attributes=dict(config.resource_attributes))

    endpoint = config.collector_endpoint
    if config.otlp_protocol == "http" and endpoint.endswith("/v1/traces"):
        endpoint = endpoint.removesuffix("/v1/traces") + "/v1/logs"

    if config.otlp_protocol == "grpc":
        exporter = GrpcOTLPLogExporter(
            endpoint=endpoint,
            headers=config.headers,
            timeout=config.timeout_seconds,
            insecure=config.grpc_insecure,
        )
    else:
        exporter = HttpOTLPLogExporter(
            endpoint=endpoint,
            headers=config.headers,
            timeout=config.timeout_seconds,
        )

    if _logger_holder.get("handler_added"):
        return

    active_provider.add_log_record_processor(BatchLogRecordProcessor(exporter))
    handler = LoggingHandler(level=logging.INFO, logger_provider=active_provider)
    logging.getLogger().addHandler(handler)
    _logger_holder["handler_added"] = True
