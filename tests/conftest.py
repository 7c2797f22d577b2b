"""Shared test fixtures and configuration."""

from collections.abc import Mapping, Sequence
import os
from pathlib import Path

import pytest

from spimi_index.search.segment import Segment, new_posting_list
from spimi_index.search.storage import SegmentStore


# Keep developer environments and .env files from leaking into settings
TEST_ENV = {
    "SPIMI_LOG_LEVEL": "warning",
    "SPIMI_LOG_JSON": "true",
    "SPIMI_OBSERVABILITY__ENABLED": "false",
}


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch, tmp_path):
    """Reset SPIMI_* variables and run each test from its own directory."""
    for key in list(os.environ):
        if key.upper().startswith("SPIMI_"):
            monkeypatch.delenv(key, raising=False)
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)
    monkeypatch.chdir(tmp_path)


def make_segment(
    segment_id: int,
    postings: Mapping[str, Sequence[int]],
    *,
    doc_count: int | None = None,
    kind: str = "segment",
) -> Segment:
    """Build a sealed segment from plain lists."""
    segment = Segment(
        segment_id=segment_id,
        postings={term: new_posting_list(doc_ids) for term, doc_ids in postings.items()},
        kind=kind,  # type: ignore[arg-type]
    )
    if doc_count is None:
        doc_count = len({doc_id for doc_ids in postings.values() for doc_id in doc_ids})
    segment.doc_count = doc_count
    segment.size_bytes = segment.estimate_size_bytes()
    return segment.sealed()


def as_lists(segment: Segment) -> dict[str, list[int]]:
    return {term: list(plist) for term, plist in segment.items()}


@pytest.fixture
def segment_factory():
    return make_segment


@pytest.fixture
def postings_of():
    """Convert a segment into ``{term: [doc ids]}`` for comparisons."""
    return as_lists


@pytest.fixture
def store(tmp_path: Path) -> SegmentStore:
    return SegmentStore(tmp_path / "index")


@pytest.fixture
def red_blue_green(store: SegmentStore) -> SegmentStore:
    """Two flushed segments on disk: A {red, blue} and B {red, green}."""
    store.write_segment(make_segment(1, {"red": [1, 2, 3], "blue": [2, 3, 7]}))
    store.write_segment(make_segment(2, {"red": [4, 5], "green": [6, 7]}))
    return store
