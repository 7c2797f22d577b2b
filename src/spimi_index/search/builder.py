"""Bounded-memory segment builder.

``SegmentBuilder`` owns exactly one open segment at a time. Documents are
added in increasing document-id order; after every document the flush
policy is consulted and a full segment is sealed and handed back to the
caller, either as the return value of ``add`` or through ``on_flush``.

The last, partially filled segment is only produced by ``finish()`` (or by
leaving the ``with`` block), so callers must finalize at end of input.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
import logging
from types import TracebackType

from spimi_index.observability.metrics import SEGMENT_BYTES, SEGMENTS_FLUSHED
from spimi_index.search.flush_policy import FlushPolicy
from spimi_index.search.segment import (
    POSTING_BYTES,
    TERM_OVERHEAD_BYTES,
    Segment,
    new_posting_list,
)


logger = logging.getLogger(__name__)

FlushCallback = Callable[[Segment], None]


class SegmentBuilder:
    """Accumulates an in-memory inverted index until the flush policy fires."""

    def __init__(
        self,
        policy: FlushPolicy,
        *,
        first_segment_id: int = 1,
        segment_ids: Callable[[], int] | None = None,
        on_flush: FlushCallback | None = None,
        name: str = "builder",
    ) -> None:
        """Initialize builder.

        Args:
            policy: Flush policy consulted after every document
            first_segment_id: Id of the first segment when ``segment_ids`` is not given
            segment_ids: Shared allocator returning the next segment id (used by parallel lanes)
            on_flush: Optional callback receiving every completed segment
            name: Label used in log messages
        """
        self.policy = policy
        self.name = name
        self._on_flush = on_flush
        if segment_ids is None:
            next_id = first_segment_id

            def _sequential() -> int:
                nonlocal next_id
                allocated = next_id
                next_id += 1
                return allocated

            segment_ids = _sequential
        self._segment_ids = segment_ids
        self._segment: Segment | None = None
        self._last_doc_id: int | None = None
        self._closed = False
        self.flushed_count = 0

    def __enter__(self) -> SegmentBuilder:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc_type is None:
            self.finish()
            return
        self.discard(f"error: {exc}")

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_documents(self) -> int:
        """Documents held in the open segment that have not been flushed yet."""
        return self._segment.doc_count if self._segment is not None else 0

    @property
    def current_segment(self) -> Segment | None:
        return self._segment

    def add(self, document_id: int, tokens: Iterable[str]) -> Segment | None:
        """Index one document into the open segment.

        Args:
            document_id: Globally monotonic document id
            tokens: Terms of the document (normalized to lowercase here)

        Returns:
            The completed segment when this document triggered a flush, else None
        """
        if self._closed:
            raise RuntimeError(f"{self.name}: cannot add documents after finish()")
        if document_id < 0:
            raise ValueError(f"Document ids must be non-negative, got {document_id}")
        if self._last_doc_id is not None and document_id <= self._last_doc_id:
            raise ValueError(
                f"{self.name}: document ids must be strictly increasing "
                f"(got {document_id} after {self._last_doc_id})"
            )

        # Tokenize fully before touching the open segment
        terms = [token.lower() for token in tokens]

        segment = self._open_segment()
        postings = segment.postings
        added_bytes = 0
        for term in terms:
            plist = postings.get(term)
            if plist is None:
                postings[term] = new_posting_list((document_id,))
                added_bytes += len(term.encode("utf-8")) + TERM_OVERHEAD_BYTES + POSTING_BYTES
            elif plist[-1] != document_id:
                plist.append(document_id)
                added_bytes += POSTING_BYTES

        segment.size_bytes += added_bytes
        segment.doc_count += 1
        self._last_doc_id = document_id

        if self.policy.should_flush(segment):
            return self._flush(trigger="threshold")
        return None

    def flush(self) -> Segment | None:
        """Seal and return the open segment, starting a fresh one on the next ``add``.

        Returns None when no document has been added since the last flush.
        """
        return self._flush(trigger="explicit")

    def finish(self) -> Segment | None:
        """Flush the final partial segment and close the builder."""
        if self._closed:
            return None
        segment = self._flush(trigger="finalize")
        self._closed = True
        return segment

    def discard(self, reason: str) -> None:
        """Drop the open segment without flushing it and close the builder."""
        if self.pending_documents:
            logger.warning(
                "%s: discarding open segment with %d documents (%s)",
                self.name,
                self.pending_documents,
                reason,
            )
        self._segment = None
        self._closed = True

    def _open_segment(self) -> Segment:
        if self._segment is None:
            self._segment = Segment(segment_id=self._segment_ids())
        return self._segment

    def _flush(self, *, trigger: str) -> Segment | None:
        segment = self._segment
        if segment is None or segment.doc_count == 0:
            return None
        segment.sealed()

        if self._on_flush is not None:
            # Segment stays open until the callback succeeds
            self._on_flush(segment)

        self._segment = None
        self.flushed_count += 1
        strategy = self.policy.strategy.value
        SEGMENTS_FLUSHED.labels(strategy=strategy, trigger=trigger).inc()
        SEGMENT_BYTES.labels(strategy=strategy).observe(segment.size_bytes)
        logger.debug(
            "%s: flushed segment %d (%d docs, %d terms, ~%d bytes, trigger=%s)",
            self.name,
            segment.segment_id,
            segment.doc_count,
            segment.term_count,
            segment.size_bytes,
            trigger,
            extra={
                "segment_id": segment.segment_id,
                "doc_count": segment.doc_count,
                "term_count": segment.term_count,
                "size_bytes": segment.size_bytes,
                "trigger": trigger,
            },
        )
        return segment
