"""K-way merger for flushed segments.

Each input segment iterates its terms in lexicographic order, so the merger
keeps a min-heap of ``(term, source)`` heads and pops every source sharing
the smallest term at once. The posting lists for that term are unioned with
``heapq.merge`` and deduplicated, which keeps the output strictly
increasing even if inputs overlap.

Complexity
- Time:  O(TotalPostings * log K) where K is the number of segments.
- Space: the merged segment plus one posting list per source head.

Store-level merges write the merged output durably before any input is
deleted; an interrupted merge leaves every input in place to be merged
again.
"""

from __future__ import annotations

from array import array
from collections.abc import Sequence
from dataclasses import dataclass, field
import heapq
import logging
from pathlib import Path

from spimi_index.observability.metrics import MERGE_LATENCY, track_latency
from spimi_index.observability.tracing import create_span
from spimi_index.search.segment import Segment, new_posting_list
from spimi_index.search.storage import JsonSegmentSerializer, SegmentStore


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MergeResult:
    """Outcome of a store-level merge."""

    merge_id: int
    path: Path
    input_paths: list[Path]
    doc_count: int
    term_count: int
    retired: list[Path] = field(default_factory=list)

    @property
    def fully_retired(self) -> bool:
        return len(self.retired) == len(self.input_paths)


def union_postings(lists: Sequence[array]) -> array:
    """Union sorted posting lists into one sorted, duplicate-free list."""
    if len(lists) == 1:
        return new_posting_list(lists[0])
    merged = new_posting_list()
    last: int | None = None
    for doc_id in heapq.merge(*lists):
        if doc_id != last:
            merged.append(doc_id)
            last = doc_id
    return merged


class SegmentMerger:
    """Merges segments structurally and retires merged inputs from a store."""

    def merge(self, segments: Sequence[Segment], *, merge_id: int = 1) -> Segment:
        """Merge segments into one ``merged`` segment.

        Args:
            segments: Segments to merge, in any order
            merge_id: Id assigned to the merged output

        Returns:
            Merged segment with sorted terms and unioned postings
        """
        if not segments:
            raise ValueError("No segments to merge")

        sources = [segment.items() for segment in segments]
        heap: list[tuple[str, int, array]] = []
        for index, source in enumerate(sources):
            head = next(source, None)
            if head is not None:
                heap.append((head[0], index, head[1]))
        heapq.heapify(heap)

        postings: dict[str, array] = {}
        while heap:
            term = heap[0][0]
            pending: list[array] = []
            while heap and heap[0][0] == term:
                _, index, plist = heapq.heappop(heap)
                pending.append(plist)
                head = next(sources[index], None)
                if head is not None:
                    heapq.heappush(heap, (head[0], index, head[1]))
            postings[term] = union_postings(pending)

        merged = Segment(
            segment_id=merge_id,
            postings=postings,
            doc_count=sum(segment.doc_count for segment in segments),
            kind="merged",
            source_segment_ids=[segment.segment_id for segment in segments],
        )
        merged.size_bytes = merged.estimate_size_bytes()
        return merged

    def merge_store(self, store: SegmentStore) -> MergeResult | None:
        """Merge every flushed segment in ``store`` into a new merged output.

        Inputs are deleted only after the merged output has been written
        durably. Any read failure aborts the merge with ``PersistenceError``
        and leaves all inputs untouched.

        Returns:
            MergeResult, or None when the store holds no flushed segments
        """
        self._sweep_temporary_files(store)
        input_paths = store.list_segment_paths()
        if not input_paths:
            logger.info("No segments to merge in %s", store.directory)
            return None
        return self._merge_paths(store, input_paths, operation="merge")

    def compact(self, store: SegmentStore) -> MergeResult | None:
        """Merge all existing merged outputs into one new merged output.

        Returns:
            MergeResult, or None when there are fewer than two merged outputs
        """
        self._sweep_temporary_files(store)
        input_paths = store.list_merged_paths()
        if len(input_paths) < 2:
            logger.info("Nothing to compact in %s (%d merged outputs)", store.directory, len(input_paths))
            return None
        return self._merge_paths(store, input_paths, operation="compact")

    def _merge_paths(self, store: SegmentStore, input_paths: list[Path], *, operation: str) -> MergeResult:
        merge_id = store.next_merge_id()
        with (
            create_span(
                "spimi.merge",
                attributes={"spimi.merge.operation": operation, "spimi.merge.inputs": len(input_paths)},
            ) as span,
            track_latency(MERGE_LATENCY, operation=operation),
        ):
            logger.info("Merging %d segment files into merge %d (%s)", len(input_paths), merge_id, operation)
            segments = [store.read(path) for path in input_paths]
            merged = self.merge(segments, merge_id=merge_id)
            output_path = store.write_merged(merged)
            span.set_attribute("spimi.merge.terms", merged.term_count)

            retired = [path for path in input_paths if store.delete(path)]

        if len(retired) != len(input_paths):
            logger.warning(
                "Merge %d written to %s but %d inputs could not be removed",
                merge_id,
                output_path,
                len(input_paths) - len(retired),
            )
        logger.info(
            "Merge %d complete: %d docs, %d terms -> %s",
            merge_id,
            merged.doc_count,
            merged.term_count,
            output_path,
            extra={
                "merge_id": merge_id,
                "doc_count": merged.doc_count,
                "term_count": merged.term_count,
                "inputs": len(input_paths),
                "retired": len(retired),
                "path": output_path,
            },
        )
        return MergeResult(
            merge_id=merge_id,
            path=output_path,
            input_paths=list(input_paths),
            doc_count=merged.doc_count,
            term_count=merged.term_count,
            retired=retired,
        )

    def _sweep_temporary_files(self, store: SegmentStore) -> None:
        # Leftovers of writes interrupted before their atomic rename
        for leftover in store.directory.glob(f"*{JsonSegmentSerializer.TMP_SUFFIX}"):
            logger.warning("Removing incomplete segment write %s", leftover)
            store.delete(leftover)
