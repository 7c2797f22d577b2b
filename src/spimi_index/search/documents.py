"""Document sources feeding a build run.

Every source yields ``SourceDocument`` objects lazily so an arbitrarily
large corpus never has to fit in memory. Document ids are assigned later by
the build run, in the order documents are yielded here.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
import logging
from pathlib import Path
import zipfile


logger = logging.getLogger(__name__)

SOURCE_FORMATS = ("zip", "dir", "lines")


@dataclass(frozen=True, slots=True)
class SourceDocument:
    """One raw document: where it came from and its text."""

    name: str
    text: str


def _decode(payload: bytes) -> str:
    return payload.decode("utf-8", errors="replace")


def iter_zip_archive(path: str | Path) -> Iterator[SourceDocument]:
    """Yield each file entry of a zip archive in archive order.

    Directory entries are skipped.
    """
    archive_path = Path(path)
    with zipfile.ZipFile(archive_path) as archive:
        for info in archive.infolist():
            if info.is_dir():
                continue
            yield SourceDocument(name=f"{archive_path.name}:{info.filename}", text=_decode(archive.read(info)))


def iter_directory(path: str | Path, pattern: str = "*.txt") -> Iterator[SourceDocument]:
    """Yield files under ``path`` matching ``pattern`` (recursive), sorted by relative path."""
    root = Path(path)
    if not root.is_dir():
        raise NotADirectoryError(f"Not a directory: {root}")
    for candidate in sorted(root.rglob(pattern)):
        if candidate.is_file():
            yield SourceDocument(name=str(candidate.relative_to(root)), text=_decode(candidate.read_bytes()))


def iter_lines(path: str | Path) -> Iterator[SourceDocument]:
    """Yield one document per non-empty line of a text file."""
    source = Path(path)
    with source.open(encoding="utf-8", errors="replace") as handle:
        for line_number, line in enumerate(handle, start=1):
            text = line.strip()
            if text:
                yield SourceDocument(name=f"{source.name}:{line_number}", text=text)


def iter_sources(paths: list[str | Path], source_format: str, *, pattern: str = "*.txt") -> Iterator[SourceDocument]:
    """Chain documents from several sources of the same format, in argument order."""
    if source_format not in SOURCE_FORMATS:
        raise ValueError(f"Unknown source format {source_format!r}; expected one of {SOURCE_FORMATS}")
    for path in paths:
        logger.info("Reading %s source %s", source_format, path)
        if source_format == "zip":
            yield from iter_zip_archive(path)
        elif source_format == "dir":
            yield from iter_directory(path, pattern)
        else:
            yield from iter_lines(path)
