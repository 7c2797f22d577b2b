"""Segment persistence for the SPIMI build.

The storage module provides:

* ``JsonSegmentSerializer`` - encodes a ``Segment`` as minified JSON and
  restores it exactly (term order, posting order, metadata).
* ``SegmentStore`` - the on-disk layout of one index directory: flushed
  segments named ``<segment_prefix><segment_id>.json`` and merged outputs
  named ``<merged_prefix><merge_id>.json``.

Writes are atomic: payloads go to a temporary file that is fsynced and then
renamed over the destination, so a reader never observes a half-written
segment and a crash never leaves a truncated one behind.
"""

from __future__ import annotations

from contextlib import suppress
import logging
import os
from pathlib import Path
import re
from typing import TYPE_CHECKING

import orjson

from spimi_index.search.segment import Segment


if TYPE_CHECKING:
    from spimi_index.config import Settings


logger = logging.getLogger(__name__)


class StorageError(ValueError):
    """Raised when invalid segments or storage operations are encountered."""


class PersistenceError(StorageError):
    """Raised when a segment cannot be written to or read from storage."""

    def __init__(self, message: str, path: Path | None = None) -> None:
        super().__init__(message)
        self.path = path


class JsonSegmentSerializer:
    """Serializer capability backed by orjson."""

    TMP_SUFFIX = ".tmp"

    def write_to_file(self, path: str | Path, segment: Segment) -> Path:
        """Durably write ``segment`` to ``path``."""
        target = Path(path)
        tmp_path = target.with_name(target.name + self.TMP_SUFFIX)
        try:
            payload = orjson.dumps(segment.to_dict())
            with tmp_path.open("wb") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            tmp_path.replace(target)
            _fsync_directory(target.parent)
        except (OSError, TypeError, orjson.JSONEncodeError) as exc:
            with suppress(OSError):
                tmp_path.unlink(missing_ok=True)
            raise PersistenceError(f"Failed to write segment {segment.segment_id} to {target}: {exc}", target) from exc
        return target

    def read_from_file(self, path: str | Path) -> Segment:
        """Restore a segment previously written by ``write_to_file``."""
        source = Path(path)
        try:
            data = orjson.loads(source.read_bytes())
            return Segment.from_dict(data)
        except (OSError, orjson.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Failed to read segment from {source}: {exc}", source) from exc


def _fsync_directory(directory: Path) -> None:
    # Directory handles cannot be opened on every platform
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        with suppress(OSError):
            os.fsync(fd)
    finally:
        os.close(fd)


class SegmentStore:
    """File layout for flushed segments and merged outputs in one directory."""

    SEGMENT_SUFFIX = ".json"

    def __init__(
        self,
        directory: str | Path,
        *,
        segment_prefix: str = "segment_",
        merged_prefix: str = "merged_",
        serializer: JsonSegmentSerializer | None = None,
    ) -> None:
        if not segment_prefix or not merged_prefix:
            raise StorageError("Segment and merged prefixes must be non-empty")
        if segment_prefix.startswith(merged_prefix) or merged_prefix.startswith(segment_prefix):
            raise StorageError(f"Prefixes overlap: {segment_prefix!r} / {merged_prefix!r}")
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.segment_prefix = segment_prefix
        self.merged_prefix = merged_prefix
        self.serializer = serializer or JsonSegmentSerializer()
        self._segment_pattern = self._compile(segment_prefix)
        self._merged_pattern = self._compile(merged_prefix)

    @classmethod
    def from_settings(cls, settings: Settings) -> SegmentStore:
        return cls(
            settings.segment_directory,
            segment_prefix=settings.segment_prefix,
            merged_prefix=settings.merged_prefix,
        )

    def _compile(self, prefix: str) -> re.Pattern[str]:
        return re.compile(rf"^{re.escape(prefix)}(\d+){re.escape(self.SEGMENT_SUFFIX)}$")

    # -- paths ---------------------------------------------------------------

    def segment_path(self, segment_id: int) -> Path:
        return self.directory / f"{self.segment_prefix}{segment_id}{self.SEGMENT_SUFFIX}"

    def merged_path(self, merge_id: int) -> Path:
        return self.directory / f"{self.merged_prefix}{merge_id}{self.SEGMENT_SUFFIX}"

    def list_segment_paths(self) -> list[Path]:
        """Return flushed segment files ordered by segment id."""
        return [path for _, path in self._scan(self._segment_pattern)]

    def list_merged_paths(self) -> list[Path]:
        """Return merged output files ordered by merge id."""
        return [path for _, path in self._scan(self._merged_pattern)]

    def segment_ids(self) -> list[int]:
        return [identifier for identifier, _ in self._scan(self._segment_pattern)]

    def merge_ids(self) -> list[int]:
        return [identifier for identifier, _ in self._scan(self._merged_pattern)]

    def next_merge_id(self) -> int:
        ids = self.merge_ids()
        return (ids[-1] + 1) if ids else 1

    def next_segment_id(self) -> int:
        ids = self.segment_ids()
        return (ids[-1] + 1) if ids else 1

    def latest_merged_path(self) -> Path | None:
        paths = self.list_merged_paths()
        return paths[-1] if paths else None

    def next_document_id(self) -> int:
        """Return one past the highest document id held by any segment or merged output.

        A new build run starts its ids here so its postings never collide with
        leftovers or earlier merged outputs that a later merge or compaction
        will union with them.
        """
        highest: int | None = None
        for path in [*self.list_segment_paths(), *self.list_merged_paths()]:
            max_doc_id = self.read(path).max_doc_id
            if max_doc_id is not None and (highest is None or max_doc_id > highest):
                highest = max_doc_id
        return 0 if highest is None else highest + 1

    def _scan(self, pattern: re.Pattern[str]) -> list[tuple[int, Path]]:
        found: list[tuple[int, Path]] = []
        if not self.directory.exists():
            return found
        for candidate in self.directory.iterdir():
            match = pattern.match(candidate.name)
            if match and candidate.is_file():
                found.append((int(match.group(1)), candidate))
        found.sort(key=lambda entry: entry[0])
        return found

    # -- read/write ----------------------------------------------------------

    def write_segment(self, segment: Segment) -> Path:
        """Persist a flushed segment under its sequential id."""
        if segment.kind != "segment":
            raise StorageError(f"Refusing to store {segment.kind} output {segment.segment_id} as a flushed segment")
        path = self.serializer.write_to_file(self.segment_path(segment.segment_id), segment)
        logger.debug("Wrote segment %d to %s", segment.segment_id, path)
        return path

    def write_merged(self, segment: Segment) -> Path:
        """Persist a merged output under its merge id (``segment.segment_id``)."""
        if segment.kind != "merged":
            raise StorageError(f"Segment {segment.segment_id} is not a merged output")
        target = self.merged_path(segment.segment_id)
        if target.exists():
            raise StorageError(f"Merged output {target} already exists")
        path = self.serializer.write_to_file(target, segment)
        logger.debug("Wrote merged output %d to %s", segment.segment_id, path)
        return path

    def read(self, path: str | Path) -> Segment:
        return self.serializer.read_from_file(path)

    def delete(self, path: str | Path) -> bool:
        """Remove a segment file; returns False when removal failed."""
        candidate = Path(path)
        try:
            candidate.unlink(missing_ok=True)
        except OSError:
            logger.warning("Failed to remove segment file %s", candidate)
            return False
        return True
