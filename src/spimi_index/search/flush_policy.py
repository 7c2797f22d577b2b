"""Flush policy deciding when an open segment must be written to storage."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from spimi_index.config import ConfigurationError, FlushStrategy


if TYPE_CHECKING:
    from spimi_index.config import Settings
    from spimi_index.search.segment import Segment


@dataclass(frozen=True, slots=True)
class FlushPolicy:
    """Tagged variant over the two flush strategies.

    ``BYTE_SIZE`` compares the segment's incremental size estimate against
    ``threshold`` bytes; ``POSTING_COUNT`` compares its document count
    against ``threshold`` documents.
    """

    strategy: FlushStrategy
    threshold: int

    def __post_init__(self) -> None:
        try:
            strategy = FlushStrategy(self.strategy)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown or unspecified flush strategy: {self.strategy!r}") from exc
        # Accept the plain string form ("byte_size") as well as the enum member
        object.__setattr__(self, "strategy", strategy)
        if isinstance(self.threshold, bool) or not isinstance(self.threshold, int) or self.threshold < 1:
            raise ConfigurationError(f"Flush threshold must be a positive integer, got {self.threshold!r}")

    @classmethod
    def byte_size(cls, max_bytes: int) -> FlushPolicy:
        return cls(FlushStrategy.BYTE_SIZE, max_bytes)

    @classmethod
    def posting_count(cls, max_postings: int) -> FlushPolicy:
        return cls(FlushStrategy.POSTING_COUNT, max_postings)

    @classmethod
    def from_settings(cls, settings: Settings) -> FlushPolicy:
        return cls(settings.flush_strategy, settings.flush_threshold())

    def should_flush(self, segment: Segment) -> bool:
        """Return True once the segment has reached the configured threshold."""
        if self.strategy is FlushStrategy.BYTE_SIZE:
            return segment.size_bytes >= self.threshold
        return segment.doc_count >= self.threshold
