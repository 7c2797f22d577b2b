"""Boolean AND query engine over one fully loaded segment."""

from __future__ import annotations

from array import array
from collections.abc import Iterable
import logging
from pathlib import Path
import threading
from typing import Any

from spimi_index.observability.metrics import INDEX_TERM_COUNT, QUERY_LATENCY, track_latency
from spimi_index.observability.tracing import create_span
from spimi_index.search.segment import Segment
from spimi_index.search.storage import JsonSegmentSerializer, PersistenceError, SegmentStore


logger = logging.getLogger(__name__)


class IndexNotLoadedError(RuntimeError):
    """Raised when a query runs before any index has been loaded."""

    def __init__(self) -> None:
        super().__init__("No index loaded")


def _intersect(left: Iterable[int], right: array) -> list[int]:
    # Linear merge of two sorted, duplicate-free lists
    result: list[int] = []
    other = iter(right)
    candidate = next(other, None)
    for doc_id in left:
        while candidate is not None and candidate < doc_id:
            candidate = next(other, None)
        if candidate is None:
            break
        if candidate == doc_id:
            result.append(doc_id)
    return result


class BooleanIndex:
    """Answers term lookups and AND-intersections against a loaded segment.

    The index is read-only once loaded and safe for concurrent readers.
    Loading swaps the segment reference in one step, so readers see either
    the old or the new index, never a partial one.
    """

    def __init__(self, serializer: JsonSegmentSerializer | None = None) -> None:
        self._serializer = serializer or JsonSegmentSerializer()
        self._segment: Segment | None = None
        self._source: Path | None = None
        self._load_lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._segment is not None

    @property
    def source(self) -> Path | None:
        """Path the current index was loaded from, if any."""
        return self._source

    def load_from_store(self, location: str | Path | SegmentStore) -> Segment:
        """Load a segment (merged or raw) from disk.

        ``location`` is either a segment file path or a ``SegmentStore``, in
        which case its latest merged output is loaded. On failure
        ``PersistenceError`` propagates and the previously loaded index stays
        in place.
        """
        if isinstance(location, SegmentStore):
            path = location.latest_merged_path()
            if path is None:
                raise PersistenceError(f"No merged index in {location.directory}", location.directory)
            serializer = location.serializer
        else:
            path = Path(location)
            serializer = self._serializer

        with create_span("spimi.index.load", attributes={"spimi.index.path": str(path)}):
            try:
                segment = serializer.read_from_file(path)
            except Exception:
                logger.error("Error reading index from %s; keeping previous index", path)
                raise
            self._install(segment, source=path)
        logger.info("Loaded %s %d from %s (%d terms)", segment.kind, segment.segment_id, path, segment.term_count)
        return segment

    def load_from_memory(self, segment: Segment) -> None:
        """Adopt an already built segment."""
        self._install(segment.sealed(), source=None)

    def _install(self, segment: Segment, *, source: Path | None) -> None:
        with self._load_lock:
            self._segment = segment
            self._source = source
        INDEX_TERM_COUNT.labels(kind=segment.kind).set(segment.term_count)

    def _require_segment(self) -> Segment:
        segment = self._segment
        if segment is None:
            raise IndexNotLoadedError()
        return segment

    def lookup(self, term: str) -> list[int]:
        """Return the sorted document ids containing ``term`` (empty when unknown)."""
        segment = self._require_segment()
        with track_latency(QUERY_LATENCY, operation="lookup"):
            return list(segment.get_postings(term.lower()))

    def intersection_query(self, terms: Iterable[str]) -> list[int]:
        """Return the sorted document ids containing every term.

        An empty term list yields an empty result; any unknown term makes the
        whole intersection empty. Lists are intersected smallest first.
        """
        segment = self._require_segment()
        normalized = sorted({term.lower() for term in terms})
        with (
            create_span("spimi.query.intersection", attributes={"spimi.query.terms": len(normalized)}),
            track_latency(QUERY_LATENCY, operation="intersection"),
        ):
            if not normalized:
                return []
            postings = [segment.get_postings(term) for term in normalized]
            postings.sort(key=len)
            if not postings[0]:
                return []

            result: list[int] = list(postings[0])
            for plist in postings[1:]:
                result = _intersect(result, plist)
                if not result:
                    break
            return result

    def stats(self) -> dict[str, Any]:
        segment = self._require_segment()
        return {
            "segment_id": segment.segment_id,
            "kind": segment.kind,
            "doc_count": segment.doc_count,
            "term_count": segment.term_count,
            "posting_count": segment.posting_count,
            "size_bytes": segment.size_bytes,
            "source": str(self._source) if self._source else None,
        }
