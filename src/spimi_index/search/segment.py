"""Segment data model shared by the builder, merger, storage and query engine.

A segment maps lowercase terms to posting lists of document ids. Posting
lists are kept as ``array("Q")`` so a segment of millions of postings stays
compact while it is held in memory.

Invariants:

* every posting list is strictly increasing (sorted, no duplicates)
* a sealed segment iterates its terms in lexicographic order
"""

from __future__ import annotations

from array import array
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal


POSTING_TYPECODE = "Q"
# Estimated bytes per stored document id (one unsigned 64-bit integer).
POSTING_BYTES = 8
# Estimated fixed bytes per term entry (key length prefix + list header).
TERM_OVERHEAD_BYTES = 16

SegmentKind = Literal["segment", "merged"]


def new_posting_list(doc_ids: Iterable[int] = ()) -> array:
    """Create a posting list from already sorted, unique document ids."""
    return array(POSTING_TYPECODE, doc_ids)


def estimate_term_bytes(term: str, posting_count: int) -> int:
    """Estimate the serialized footprint of one term and its postings."""
    return len(term.encode("utf-8")) + TERM_OVERHEAD_BYTES + posting_count * POSTING_BYTES


@dataclass(slots=True)
class Segment:
    """One bounded unit of the inverted index.

    ``postings`` is only mutated by ``SegmentBuilder`` while the segment is
    open. Flushed, merged and deserialized segments are sealed: their terms
    are stored in lexicographic order and must not be modified.
    """

    segment_id: int
    postings: dict[str, array] = field(default_factory=dict)
    doc_count: int = 0
    size_bytes: int = 0
    kind: SegmentKind = "segment"
    source_segment_ids: list[int] = field(default_factory=list)

    @property
    def term_count(self) -> int:
        return len(self.postings)

    @property
    def posting_count(self) -> int:
        return sum(len(plist) for plist in self.postings.values())

    @property
    def max_doc_id(self) -> int | None:
        """Largest document id in the segment, or None when it has no postings."""
        tails = [plist[-1] for plist in self.postings.values() if plist]
        return max(tails) if tails else None

    def terms(self) -> Iterator[str]:
        """Iterate terms in lexicographic order."""
        return iter(sorted(self.postings))

    def items(self) -> Iterator[tuple[str, array]]:
        """Iterate ``(term, posting list)`` pairs in lexicographic term order."""
        for term in self.terms():
            yield term, self.postings[term]

    def get_postings(self, term: str) -> array:
        """Return the posting list for ``term`` or an empty list when absent."""
        plist = self.postings.get(term)
        if plist is None:
            return new_posting_list()
        return plist

    def sealed(self) -> Segment:
        """Return this segment with its term keys in lexicographic order."""
        self.postings = {term: self.postings[term] for term in sorted(self.postings)}
        return self

    def estimate_size_bytes(self) -> int:
        """Recompute the size estimate from scratch (used after merges)."""
        return sum(estimate_term_bytes(term, len(plist)) for term, plist in self.postings.items())

    def check_invariants(self) -> None:
        """Raise ``ValueError`` if term order or posting order is violated."""
        previous_term: str | None = None
        for term, plist in self.postings.items():
            if previous_term is not None and term <= previous_term:
                raise ValueError(f"Segment {self.segment_id}: term {term!r} out of order after {previous_term!r}")
            previous_term = term
            for left, right in zip(plist, plist[1:]):
                if right <= left:
                    raise ValueError(
                        f"Segment {self.segment_id}: postings for {term!r} not strictly increasing ({left}, {right})"
                    )

    def to_dict(self) -> dict[str, Any]:
        """Serialize with short keys: i=id, k=kind, n=doc count, b=bytes, s=sources, p=postings."""
        return {
            "i": self.segment_id,
            "k": self.kind,
            "n": self.doc_count,
            "b": self.size_bytes,
            "s": list(self.source_segment_ids),
            "p": {term: list(plist) for term, plist in self.items()},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Segment:
        raw_postings = data.get("p", {})
        postings = {str(term): new_posting_list(int(doc_id) for doc_id in doc_ids) for term, doc_ids in raw_postings.items()}
        kind = data.get("k", "segment")
        if kind not in ("segment", "merged"):
            raise ValueError(f"Unknown segment kind: {kind!r}")
        return cls(
            segment_id=int(data["i"]),
            postings=postings,
            doc_count=int(data.get("n", 0)),
            size_bytes=int(data.get("b", 0)),
            kind=kind,
            source_segment_ids=[int(value) for value in data.get("s", [])],
        ).sealed()
