"""
SPIMI indexing and Boolean query package.

This package provides a bounded-memory inverted index stack:
- segment: Segment data model (term -> sorted posting list)
- flush_policy: Byte-size and posting-count flush strategies
- builder: Single-pass in-memory segment builder
- storage: JSON segment serializer and on-disk segment store
- merger: K-way structural merge of flushed segments
- boolean_index: Term lookup and AND-intersection queries
- analyzers: Tokenizers and filters (lowercase, stopwords)
- documents: Zip, directory and line-per-document sources
- pipeline: Build runs with parallel segment lanes
"""
