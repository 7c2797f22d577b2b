"""Build-run driver: document ids, parallel segment lanes and the final merge.

A build run assigns document ids in source order and deals documents
round-robin to N lanes. Each lane is a worker thread with its own bounded
queue and its own ``SegmentBuilder``, so every open segment has exactly one
writer and document ids within a lane stay strictly increasing. Flushed
segments are persisted as they complete. A lane that drains its queue parks
before writing its last partial segment until every lane is known healthy;
if any lane failed, the parked lanes discard their open segments instead.
The merge phase starts only after every lane has finalized.

Document ids start past the highest id already stored in the index
directory, so leftover segments and earlier merged outputs never share an
id with the documents of a new run.
"""

from __future__ import annotations

from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor
import contextvars
from dataclasses import dataclass, field
import logging
from pathlib import Path
import queue
import threading
from typing import TYPE_CHECKING

from spimi_index.observability.context import bind_build_run, bind_lane, generate_span_id, reset_trace_context
from spimi_index.observability.metrics import DOCUMENTS_INDEXED
from spimi_index.observability.tracing import create_span
from spimi_index.search.analyzers import Analyzer, get_analyzer
from spimi_index.search.builder import SegmentBuilder
from spimi_index.search.documents import SourceDocument
from spimi_index.search.flush_policy import FlushPolicy
from spimi_index.search.merger import MergeResult, SegmentMerger
from spimi_index.search.segment import Segment
from spimi_index.search.storage import SegmentStore


if TYPE_CHECKING:
    from spimi_index.config import Settings


logger = logging.getLogger(__name__)

_STOP = object()
_PUT_TIMEOUT_SECONDS = 0.1


class BuildAbortedError(RuntimeError):
    """Raised inside a lane when another lane or the document source failed."""


class DocumentIdAllocator:
    """Hands out globally increasing document ids for one build run."""

    def __init__(self, start: int = 0) -> None:
        if start < 0:
            raise ValueError(f"Document ids must be non-negative, got {start}")
        self._next = start

    @property
    def next_id(self) -> int:
        return self._next

    def allocate(self) -> int:
        doc_id = self._next
        self._next += 1
        return doc_id


class SegmentIdAllocator:
    """Thread-safe sequential segment ids shared by all lanes."""

    def __init__(self, start: int = 1) -> None:
        self._next = start
        self._lock = threading.Lock()

    def __call__(self) -> int:
        with self._lock:
            segment_id = self._next
            self._next += 1
            return segment_id

    @property
    def allocated(self) -> int:
        return self._next - 1


@dataclass(slots=True)
class BuildResult:
    """Summary of a finished build run."""

    build_run: str
    documents: int
    segment_paths: list[Path] = field(default_factory=list)
    merge: MergeResult | None = None

    @property
    def merged_path(self) -> Path | None:
        return self.merge.path if self.merge is not None else None


@dataclass(slots=True)
class _Lane:
    index: int
    queue: queue.Queue
    flushed: list[tuple[int, Path]] = field(default_factory=list)
    drained: threading.Event = field(default_factory=threading.Event)
    future: Future | None = None


class IndexBuildRun:
    """Indexes a stream of documents into flushed segments, then merges them.

    Example:
        >>> run = IndexBuildRun(settings)
        >>> result = run.run(iter_sources(["corpus.zip"], "zip"))
        >>> result.merged_path
        PosixPath('index/merged_1.json')
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: SegmentStore | None = None,
        analyzer: Analyzer | None = None,
        merger: SegmentMerger | None = None,
        doc_ids: DocumentIdAllocator | None = None,
    ) -> None:
        """Initialize a build run.

        Args:
            settings: Loaded settings (flush policy, lanes, directory, start id)
            store: Segment store; defaults to the configured directory
            analyzer: Tokenizer pipeline; defaults to the english analyzer
            merger: Merger used for the final merge phase
            doc_ids: Explicit document id allocator. When omitted, every run
                starts at ``start_doc_id`` or one past the highest id already
                stored, whichever is larger.
        """
        self.settings = settings
        self.store = store or SegmentStore.from_settings(settings)
        self.policy = FlushPolicy.from_settings(settings)
        self.analyzer = analyzer or get_analyzer("english", stopwords_path=settings.stopwords_path)
        self.merger = merger or SegmentMerger()
        self.doc_ids = doc_ids
        self.lanes = settings.lanes
        self.build_run = generate_span_id()
        self._abort = threading.Event()
        self._release = threading.Event()

    def run(self, documents: Iterable[SourceDocument], *, merge: bool = True) -> BuildResult:
        """Index ``documents`` and, unless ``merge`` is False, merge the flushed segments.

        A failure in the document source or in any lane stops every lane,
        discards their open segments and propagates; no merge runs.
        """
        token = bind_build_run(self.build_run)
        try:
            return self._run(documents, merge=merge)
        finally:
            reset_trace_context(token)

    def _run(self, documents: Iterable[SourceDocument], *, merge: bool) -> BuildResult:
        self._abort.clear()
        self._release.clear()
        first_segment_id = self.store.next_segment_id()
        if first_segment_id > 1:
            logger.warning(
                "Found leftover segments in %s; numbering continues at %d",
                self.store.directory,
                first_segment_id,
            )
        segment_ids = SegmentIdAllocator(first_segment_id)
        doc_ids = self._document_ids()

        with create_span(
            "spimi.build",
            attributes={
                "spimi.build.run": self.build_run,
                "spimi.build.lanes": self.lanes,
                "spimi.flush.strategy": self.policy.strategy.value,
            },
        ) as span:
            logger.info(
                "Build run %s: %d lanes, %s threshold %d, first document id %d, writing to %s",
                self.build_run,
                self.lanes,
                self.policy.strategy.value,
                self.policy.threshold,
                doc_ids.next_id,
                self.store.directory,
            )
            lanes = [_Lane(index=index, queue=queue.Queue(maxsize=self.settings.queue_size)) for index in range(self.lanes)]
            with ThreadPoolExecutor(max_workers=self.lanes, thread_name_prefix="spimi-lane") as executor:
                for lane in lanes:
                    # One context copy per lane; a Context cannot be entered by two threads
                    ctx = contextvars.copy_context()
                    lane.future = executor.submit(ctx.run, self._run_lane, lane, segment_ids)
                try:
                    count = self._dispatch(lanes, documents, doc_ids)
                except BaseException:
                    self._abort.set()
                    self._release.set()
                    self._stop_lanes(lanes)
                    raise
                self._stop_lanes(lanes)
                self._release_lanes(lanes)
                self._wait_for_lanes(lanes)

            segment_paths = [path for _, path in sorted(entry for lane in lanes for entry in lane.flushed)]
            span.set_attribute("spimi.build.documents", count)
            span.set_attribute("spimi.build.segments", len(segment_paths))
            logger.info("Indexed %d documents into %d segments", count, len(segment_paths))

            result = BuildResult(build_run=self.build_run, documents=count, segment_paths=segment_paths)
            if merge:
                result.merge = self.merger.merge_store(self.store)
        return result

    def _document_ids(self) -> DocumentIdAllocator:
        # Start past every stored id; merges union this run with leftovers and earlier outputs
        floor = max(self.settings.start_doc_id, self.store.next_document_id())
        if self.doc_ids is None:
            return DocumentIdAllocator(floor)
        if self.doc_ids.next_id < floor:
            raise ValueError(
                f"Document id {self.doc_ids.next_id} is already used in {self.store.directory}; "
                f"the next free id is {floor}"
            )
        return self.doc_ids

    def _dispatch(self, lanes: list[_Lane], documents: Iterable[SourceDocument], doc_ids: DocumentIdAllocator) -> int:
        count = 0
        for document in documents:
            doc_id = doc_ids.allocate()
            self._put(lanes[count % len(lanes)], (doc_id, document))
            count += 1
        return count

    def _put(self, lane: _Lane, item: object) -> None:
        while True:
            if lane.future is not None and lane.future.done():
                # Re-raises the lane's failure
                lane.future.result()
                raise BuildAbortedError(f"Lane {lane.index} stopped before the input was exhausted")
            try:
                lane.queue.put(item, timeout=_PUT_TIMEOUT_SECONDS)
                return
            except queue.Full:
                continue

    def _stop_lanes(self, lanes: list[_Lane]) -> None:
        for lane in lanes:
            while lane.future is not None and not lane.future.done():
                try:
                    lane.queue.put(_STOP, timeout=_PUT_TIMEOUT_SECONDS)
                    break
                except queue.Full:
                    continue

    def _release_lanes(self, lanes: list[_Lane]) -> None:
        """Let drained lanes finalize, or abort them all if any lane failed.

        Lanes park after draining their queue, before writing their last
        segment, so a late failure in one lane still discards the others.
        """
        try:
            for lane in lanes:
                while not lane.drained.wait(_PUT_TIMEOUT_SECONDS):
                    if lane.future is None or lane.future.done():
                        break
            failed = [lane.index for lane in lanes if lane.future is not None and lane.future.done()]
            if failed:
                logger.error("Lanes %s failed; discarding open segments of the other lanes", failed)
                self._abort.set()
        except BaseException:
            self._abort.set()
            raise
        finally:
            self._release.set()

    def _wait_for_lanes(self, lanes: list[_Lane]) -> None:
        # Barrier before the merge phase
        errors: list[BaseException] = []
        for lane in lanes:
            if lane.future is None:
                continue
            exc = lane.future.exception()
            if exc is not None:
                if not isinstance(exc, BuildAbortedError):
                    logger.error("Lane %d failed: %s", lane.index, exc)
                errors.append(exc)
        if errors:
            # Prefer the root cause over the aborts it triggered
            root = next((exc for exc in errors if not isinstance(exc, BuildAbortedError)), errors[0])
            raise root

    def _run_lane(self, lane: _Lane, segment_ids: SegmentIdAllocator) -> None:
        bind_lane(lane.index)
        label = str(lane.index)
        indexed = DOCUMENTS_INDEXED.labels(lane=label)

        def persist(segment: Segment) -> None:
            with create_span(
                "spimi.segment.flush",
                attributes={
                    "spimi.segment.id": segment.segment_id,
                    "spimi.segment.docs": segment.doc_count,
                    "spimi.segment.bytes": segment.size_bytes,
                },
            ):
                lane.flushed.append((segment.segment_id, self.store.write_segment(segment)))

        builder = SegmentBuilder(self.policy, segment_ids=segment_ids, on_flush=persist, name=f"lane-{label}")
        try:
            while True:
                item = lane.queue.get()
                if item is _STOP:
                    break
                if self._abort.is_set():
                    raise BuildAbortedError("Build run aborted")
                doc_id, document = item
                builder.add(doc_id, self.analyzer(document.text))
                indexed.inc()
            lane.drained.set()
            self._release.wait()
            if self._abort.is_set():
                raise BuildAbortedError("Build run aborted")
            builder.finish()
        except BaseException as exc:
            builder.discard(f"{type(exc).__name__}: {exc}")
            raise
        logger.debug("Lane %s finished with %d segments", label, builder.flushed_count)
