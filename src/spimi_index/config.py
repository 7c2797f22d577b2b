"""Centralized configuration for spimi-index using Pydantic Settings."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(ValueError):
    """Raised when the build configuration is missing or invalid."""


class FlushStrategy(str, Enum):
    """Selects when an in-progress segment is written to disk."""

    BYTE_SIZE = "byte_size"
    POSTING_COUNT = "posting_count"


class ObservabilityCollectorConfig(BaseModel):
    """Configuration for OTLP export of traces, metrics and logs."""

    model_config = {"extra": "forbid"}

    enabled: Annotated[
        bool,
        Field(
            description="Enable OTLP export to an external collector",
        ),
    ] = False

    otlp_protocol: Annotated[
        Literal["http", "grpc"],
        Field(
            description="OTLP transport protocol",
        ),
    ] = "grpc"

    collector_endpoint: Annotated[
        str,
        Field(
            description="OTLP collector endpoint (HTTP uses /v1/traces)",
            examples=["http://localhost:4317", "http://localhost:4318/v1/traces"],
        ),
    ] = "http://localhost:4317"

    headers: Annotated[
        dict[str, str],
        Field(
            description="Optional headers to include with OTLP requests",
        ),
    ] = Field(default_factory=dict)

    timeout_seconds: Annotated[
        int,
        Field(
            ge=1,
            le=60,
            description="OTLP exporter timeout in seconds",
        ),
    ] = 10

    grpc_insecure: Annotated[
        bool,
        Field(
            description="Allow insecure gRPC (plaintext) connections",
        ),
    ] = True

    resource_attributes: Annotated[
        dict[str, str],
        Field(
            description="Additional OpenTelemetry resource attributes",
        ),
    ] = Field(default_factory=dict)


class Settings(BaseSettings):
    """Strictly typed build configuration loaded from ``SPIMI_*`` environment variables.

    Values are validated once at startup so a bad flush strategy or threshold
    stops the build before any segment is written.
    """

    model_config = SettingsConfigDict(
        env_prefix="SPIMI_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        validate_default=True,
        extra="ignore",
    )

    # Flush policy
    flush_strategy: FlushStrategy = Field(
        default=FlushStrategy.BYTE_SIZE,
        description="Segment flush strategy: byte_size or posting_count",
    )
    max_segment_bytes: int = Field(
        default=60 * 1024 * 1024,
        ge=1,
        description="Estimated segment size in bytes that triggers a flush (byte_size strategy)",
    )
    max_postings_per_segment: int = Field(
        default=10_000,
        ge=1,
        description="Documents per segment that trigger a flush (posting_count strategy)",
    )

    # Storage layout
    segment_directory: Path = Field(default=Path("index"), description="Directory holding segment files")
    segment_prefix: str = Field(default="segment_", min_length=1, description="File prefix for flushed segments")
    merged_prefix: str = Field(default="merged_", min_length=1, description="File prefix for merged outputs")

    # Ingestion
    lanes: int = Field(default=1, ge=1, le=64, description="Parallel segment lanes used during ingestion")
    queue_size: int = Field(default=256, ge=1, description="Documents buffered per lane")
    start_doc_id: int = Field(default=0, ge=0, description="Lowest first document id of a build run; runs also start past every stored id")
    stopwords_path: Path | None = Field(default=None, description="Optional newline-delimited stopwords file")

    # Logging
    log_level: str = Field(default="info", description="Logging level")
    log_json: bool = Field(default=True, description="Emit structured JSON logs")

    observability: ObservabilityCollectorConfig = Field(default_factory=ObservabilityCollectorConfig)

    @model_validator(mode="after")
    def _check_prefixes(self) -> Settings:
        # Discovery globs on the prefix, so one prefix must not shadow the other
        if self.segment_prefix.startswith(self.merged_prefix) or self.merged_prefix.startswith(self.segment_prefix):
            raise ValueError(
                "SPIMI_SEGMENT_PREFIX and SPIMI_MERGED_PREFIX must differ and neither may start with the other "
                f"(got {self.segment_prefix!r} and {self.merged_prefix!r})"
            )
        return self

    def flush_threshold(self) -> int:
        """Return the threshold for whichever flush strategy is active."""
        if self.flush_strategy is FlushStrategy.BYTE_SIZE:
            return self.max_segment_bytes
        return self.max_postings_per_segment


def load_settings(**overrides: object) -> Settings:
    """Load settings from the environment, reporting problems as ``ConfigurationError``.

    Args:
        **overrides: Explicit values that take precedence over the environment

    Returns:
        Validated settings
    """
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid spimi-index configuration: {exc}") from exc
