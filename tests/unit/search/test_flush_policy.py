"""Unit tests for flush policies."""

import pytest

from spimi_index.config import ConfigurationError, FlushStrategy, load_settings
from spimi_index.search.flush_policy import FlushPolicy
from spimi_index.search.segment import Segment


@pytest.mark.unit
class TestFlushPolicy:
    def test_byte_size_fires_at_threshold(self):
        policy = FlushPolicy.byte_size(100)

        assert not policy.should_flush(Segment(segment_id=1, size_bytes=99, doc_count=50))
        assert policy.should_flush(Segment(segment_id=1, size_bytes=100, doc_count=1))

    def test_posting_count_counts_documents(self):
        policy = FlushPolicy.posting_count(2)

        assert not policy.should_flush(Segment(segment_id=1, doc_count=1, size_bytes=10**9))
        assert policy.should_flush(Segment(segment_id=1, doc_count=2))

    def test_accepts_strategy_name(self):
        policy = FlushPolicy("posting_count", 5)

        assert policy.strategy is FlushStrategy.POSTING_COUNT

    @pytest.mark.parametrize("strategy", ["document_count", "", None])
    def test_unknown_strategy_is_configuration_error(self, strategy):
        with pytest.raises(ConfigurationError, match="flush strategy"):
            FlushPolicy(strategy, 10)  # type: ignore[arg-type]

    @pytest.mark.parametrize("threshold", [0, -1, True, 1.5])
    def test_threshold_must_be_positive_integer(self, threshold):
        with pytest.raises(ConfigurationError, match="threshold"):
            FlushPolicy.byte_size(threshold)  # type: ignore[arg-type]

    def test_from_settings_uses_active_threshold(self):
        settings = load_settings(flush_strategy="posting_count", max_postings_per_segment=3, max_segment_bytes=999)

        policy = FlushPolicy.from_settings(settings)

        assert policy == FlushPolicy.posting_count(3)

    def test_from_settings_defaults_to_byte_size(self):
        policy = FlushPolicy.from_settings(load_settings())

        assert policy.strategy is FlushStrategy.BYTE_SIZE
        assert policy.threshold == 60 * 1024 * 1024
