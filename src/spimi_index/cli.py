"""Command line entry point for building and querying SPIMI indexes.

Examples:
    spimi-index build corpus.zip --format zip
    spimi-index --index-dir ./index query red blue
    SPIMI_FLUSH_STRATEGY=posting_count SPIMI_LANES=4 spimi-index build docs/ --format dir

Exit codes: 0 on success, 1 on runtime errors, 2 on configuration errors.
"""

from __future__ import annotations

import argparse
from collections.abc import Sequence
import logging
from pathlib import Path
import sys
from typing import Any
import zipfile

import orjson

from spimi_index.config import ConfigurationError, FlushStrategy, Settings, load_settings
from spimi_index.observability.logging import configure_log_exporter, configure_logging
from spimi_index.observability.metrics import configure_metrics_exporter
from spimi_index.observability.tracing import configure_trace_exporter, init_tracing
from spimi_index.search.boolean_index import BooleanIndex, IndexNotLoadedError
from spimi_index.search.documents import SOURCE_FORMATS, iter_sources
from spimi_index.search.flush_policy import FlushPolicy
from spimi_index.search.merger import MergeResult, SegmentMerger
from spimi_index.search.pipeline import IndexBuildRun
from spimi_index.search.storage import SegmentStore, StorageError


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_RUNTIME_ERROR = 1
EXIT_CONFIG_ERROR = 2


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="spimi-index",
        description="Build bounded-memory inverted indexes and run Boolean AND queries",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--index-dir", type=Path, help="Segment directory (overrides SPIMI_SEGMENT_DIRECTORY)")
    parser.add_argument(
        "--flush-strategy",
        choices=[strategy.value for strategy in FlushStrategy],
        help="Segment flush strategy (overrides SPIMI_FLUSH_STRATEGY)",
    )
    parser.add_argument("--max-segment-bytes", type=int, help="Byte threshold for the byte_size strategy")
    parser.add_argument("--max-postings", type=int, help="Document threshold for the posting_count strategy")
    parser.add_argument("--lanes", type=int, help="Parallel segment lanes used by build")
    parser.add_argument("--log-level", help="Logging level (overrides SPIMI_LOG_LEVEL)")

    subparsers = parser.add_subparsers(dest="command", help="Operation", required=True)

    build_parser = subparsers.add_parser("build", help="Index documents into segments and merge them")
    build_parser.add_argument("sources", nargs="+", metavar="SOURCE", help="Zip archives, directories or text files")
    build_parser.add_argument(
        "--format",
        dest="source_format",
        choices=SOURCE_FORMATS,
        default="zip",
        help="Source format (default: zip)",
    )
    build_parser.add_argument("--pattern", default="*.txt", help="Glob for --format dir (default: *.txt)")
    build_parser.add_argument("--no-merge", action="store_true", help="Leave flushed segments unmerged")

    subparsers.add_parser("merge", help="Merge flushed segments into a new merged output")
    subparsers.add_parser("compact", help="Merge all merged outputs into one")

    lookup_parser = subparsers.add_parser("lookup", help="Print the posting list of one term")
    lookup_parser.add_argument("term", metavar="TERM")

    query_parser = subparsers.add_parser("query", help="Print documents containing every term")
    query_parser.add_argument("terms", nargs="*", metavar="TERM")

    subparsers.add_parser("stats", help="Print statistics of the latest merged index")
    return parser


def _settings_overrides(args: argparse.Namespace) -> dict[str, Any]:
    candidates = {
        "segment_directory": args.index_dir,
        "flush_strategy": args.flush_strategy,
        "max_segment_bytes": args.max_segment_bytes,
        "max_postings_per_segment": args.max_postings,
        "lanes": args.lanes,
        "log_level": args.log_level,
    }
    return {key: value for key, value in candidates.items() if value is not None}


def _configure_observability(settings: Settings) -> None:
    configure_logging(settings.log_level, settings.log_json)
    collector = settings.observability
    if not collector.enabled:
        return
    provider = init_tracing(resource_attributes=dict(collector.resource_attributes))
    configure_trace_exporter(collector, provider)
    configure_metrics_exporter(collector)
    configure_log_exporter(collector)


def _emit(payload: dict[str, Any]) -> None:
    sys.stdout.write(orjson.dumps(payload, option=orjson.OPT_SORT_KEYS).decode("utf-8") + "\n")
    sys.stdout.flush()


def _merge_payload(result: MergeResult | None) -> dict[str, Any] | None:
    if result is None:
        return None
    return {
        "merge_id": result.merge_id,
        "path": str(result.path),
        "inputs": len(result.input_paths),
        "retired": len(result.retired),
        "doc_count": result.doc_count,
        "term_count": result.term_count,
    }


def _run_build(args: argparse.Namespace, settings: Settings) -> int:
    run = IndexBuildRun(settings)
    result = run.run(iter_sources(args.sources, args.source_format, pattern=args.pattern), merge=not args.no_merge)
    _emit(
        {
            "build_run": result.build_run,
            "documents": result.documents,
            "segments": [str(path) for path in result.segment_paths],
            "merge": _merge_payload(result.merge),
        }
    )
    return EXIT_OK


def _run_merge(args: argparse.Namespace, settings: Settings) -> int:
    store = SegmentStore.from_settings(settings)
    merger = SegmentMerger()
    result = merger.compact(store) if args.command == "compact" else merger.merge_store(store)
    _emit({"merge": _merge_payload(result)})
    return EXIT_OK


def _load_index(settings: Settings) -> BooleanIndex:
    index = BooleanIndex()
    index.load_from_store(SegmentStore.from_settings(settings))
    return index


def _run_lookup(args: argparse.Namespace, settings: Settings) -> int:
    index = _load_index(settings)
    _emit({"term": args.term.lower(), "doc_ids": index.lookup(args.term)})
    return EXIT_OK


def _run_query(args: argparse.Namespace, settings: Settings) -> int:
    index = _load_index(settings)
    _emit({"terms": [term.lower() for term in args.terms], "doc_ids": index.intersection_query(args.terms)})
    return EXIT_OK


def _run_stats(args: argparse.Namespace, settings: Settings) -> int:
    index = _load_index(settings)
    _emit(index.stats())
    return EXIT_OK


_COMMANDS = {
    "build": _run_build,
    "merge": _run_merge,
    "compact": _run_merge,
    "lookup": _run_lookup,
    "query": _run_query,
    "stats": _run_stats,
}


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_argument_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(**_settings_overrides(args))
        # Validate the flush policy before touching the filesystem
        FlushPolicy.from_settings(settings)
    except ConfigurationError as exc:
        sys.stderr.write(f"spimi-index: {exc}\n")
        return EXIT_CONFIG_ERROR

    _configure_observability(settings)

    try:
        return _COMMANDS[args.command](args, settings)
    except (StorageError, IndexNotLoadedError, OSError, ValueError, zipfile.BadZipFile) as exc:
        logger.error("%s failed: %s", args.command, exc)
        return EXIT_RUNTIME_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
