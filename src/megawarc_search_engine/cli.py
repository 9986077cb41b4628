"""Unified megawarc CLI (application layer).

This module is separated from the core library code in
`megawarc_search_engine.megawarc` so the extraction boundary is clean.

Examples:
    python -m megawarc_search_engine.cli --help
    megawarc info telegram_20221103181246_61f581b9.1658771457.megawarc.warc.zst
    megawarc index *.megawarc.warc.zst --index-db index/megawarc.duckdb --commit-every 5000
    megawarc search "pool" --index-db index/megawarc.duckdb --limit 10
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
import time
from pathlib import Path

from megawarc_search_engine.megawarc import container, manifest, pipeline, writer
from megawarc_search_engine.megawarc.errors import MegawarcError
from megawarc_search_engine.megawarc.index_sink import DuckDBIndexSink
from megawarc_search_engine.megawarc.records import ON_MALFORMED_CHOICES, PipelineCounters

logger = logging.getLogger("megawarc")


def _configure_logging(verbose: int) -> None:
    level = logging.DEBUG if verbose > 1 else (logging.INFO if verbose == 1 else logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _emit(obj: object) -> None:
    sys.stdout.write(json.dumps(obj, ensure_ascii=False) + "\n")


def _cmd_info(args: argparse.Namespace) -> int:
    try:
        info = container.describe_container(Path(args.path), max_dictionary_bytes=int(args.max_dictionary_bytes))
    except MegawarcError as e:
        _emit({"ok": False, "path": str(args.path), "error_kind": e.kind, "error": str(e)})
        return 1
    except OSError as e:
        _emit({"ok": False, "path": str(args.path), "error_kind": type(e).__name__, "error": str(e)})
        return 1
    _emit({"ok": True, **info})
    return 0


def _cmd_scan(args: argparse.Namespace) -> int:
    counters = PipelineCounters()
    t0 = time.perf_counter()
    error = None
    try:
        for rec in pipeline.iter_archive_records(
            Path(args.path),
            counters=counters,
            on_malformed=str(args.on_malformed),
            max_dictionary_bytes=int(args.max_dictionary_bytes),
        ):
            if not args.quiet:
                _emit(
                    {
                        "ordinal": rec.ordinal,
                        "record_type": rec.record_type,
                        "record_id": rec.record_id,
                        "target_uri": rec.target_uri,
                        "content_length": rec.content_length,
                    }
                )
            if args.limit and counters.parsed >= int(args.limit):
                break
    except MegawarcError as e:
        error = e

    dt = time.perf_counter() - t0
    sys.stderr.write(
        f"total_seen={counters.total_seen} parsed={counters.parsed} parse_failures={counters.parse_failures} "
        f"elapsed_s={dt:.2f}\n"
    )
    if error is not None:
        sys.stderr.write(f"error={error.kind}: {error}\n")
        return 1
    return 0


def _cmd_index(args: argparse.Namespace) -> int:
    try:
        config = pipeline.PipelineConfig.from_args(args)
    except ValueError as e:
        sys.stderr.write(f"Invalid configuration: {e}\n")
        return 2

    cancel = threading.Event()

    def _on_sigint(signum, frame) -> None:
        logger.warning("Interrupt received; stopping after the current record")
        cancel.set()

    previous = signal.signal(signal.SIGINT, _on_sigint)
    try:
        with DuckDBIndexSink(config.index_path) as sink:
            results = pipeline.run_many(
                config,
                [Path(p) for p in args.paths],
                sink,
                keep_going=bool(args.keep_going),
                cancel_event=cancel,
            )
    except MegawarcError as e:
        sys.stderr.write(f"{e.kind}: {e}\n")
        return 1
    except OSError as e:
        sys.stderr.write(f"{type(e).__name__}: {e}\n")
        return 1
    finally:
        signal.signal(signal.SIGINT, previous)

    for res in results:
        _emit(res.summary())

    ok = len(results) == len(args.paths) and all(r.ok for r in results)
    return 0 if ok else 1


def _cmd_search(args: argparse.Namespace) -> int:
    try:
        with DuckDBIndexSink(Path(args.index_db), read_only=True) as sink:
            hits = sink.search(str(args.query), limit=int(args.limit))
    except MegawarcError as e:
        sys.stderr.write(f"{e.kind}: {e}\n")
        return 1
    for score, doc in hits:
        _emit({"score": score, **doc})
    return 0


def _cmd_manifest(args: argparse.Namespace) -> int:
    counters = PipelineCounters()
    try:
        rows = manifest.write_manifest(
            pipeline.iter_archive_records(
                Path(args.path),
                counters=counters,
                on_malformed=str(args.on_malformed),
                max_dictionary_bytes=int(args.max_dictionary_bytes),
            ),
            Path(args.out),
        )
    except MegawarcError as e:
        sys.stderr.write(f"{e.kind}: {e} (total_seen={counters.total_seen})\n")
        return 1
    _emit({"ok": True, "out": str(args.out), "rows": rows, **counters.as_dict()})
    return 0


def _cmd_pack(args: argparse.Namespace) -> int:
    n = writer.pack_warc(
        Path(args.warc),
        Path(args.out),
        dict_size=int(args.dict_size),
        max_samples=int(args.max_samples),
        compress_dictionary=bool(args.compress_dictionary),
        level=int(args.level),
    )
    _emit({"ok": True, "out": str(args.out), "bytes_written": n})
    return 0


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(prog="megawarc", description="megawarc decode + full-text index CLI")
    ap.add_argument("-v", "--verbose", action="count", default=0, help="-v for info, -vv for debug logging")
    sub = ap.add_subparsers(dest="cmd", required=True)

    # ---- info ----
    ap_info = sub.add_parser("info", help="Describe the container header and dictionary frame")
    ap_info.add_argument("path", type=Path)
    ap_info.add_argument("--max-dictionary-bytes", type=int, default=container.DEFAULT_MAX_DICTIONARY_BYTES)
    ap_info.set_defaults(func=_cmd_info)

    # ---- scan ----
    ap_scan = sub.add_parser("scan", help="Decode a megawarc file and list its WARC records (JSONL)")
    ap_scan.add_argument("path", type=Path)
    ap_scan.add_argument("--on-malformed", choices=ON_MALFORMED_CHOICES, default="abort")
    ap_scan.add_argument("--max-dictionary-bytes", type=int, default=container.DEFAULT_MAX_DICTIONARY_BYTES)
    ap_scan.add_argument("--limit", type=int, default=0, help="Stop after this many records (0 = all)")
    ap_scan.add_argument("--quiet", action="store_true", default=False, help="Only print the summary")
    ap_scan.set_defaults(func=_cmd_scan)

    # ---- index ----
    ap_index = sub.add_parser("index", help="Index megawarc files into a DuckDB full-text index")
    ap_index.add_argument("paths", nargs="+", type=Path)
    ap_index.add_argument("--config", type=Path, default=None, help="JSON config (default: ./megawarc_config.json)")
    ap_index.add_argument("--index-db", type=Path, default=None, help="DuckDB index path (env MEGAWARC_INDEX_DB)")
    ap_index.add_argument("--commit-every", type=int, default=None, help="Commit every N documents (0 = end of pass)")
    ap_index.add_argument("--on-malformed", choices=ON_MALFORMED_CHOICES, default=None)
    ap_index.add_argument("--url-filter", default=None, help="Regex a record's target URI must match")
    ap_index.add_argument(
        "--record-type",
        action="append",
        default=None,
        help="WARC-Type to index (repeatable; default: response)",
    )
    ap_index.add_argument("--max-body-bytes", type=int, default=None)
    ap_index.add_argument(
        "--max-record-bytes",
        type=int,
        default=None,
        help="Reject records declaring a larger Content-Length (0 = no limit)",
    )
    ap_index.add_argument("--max-dictionary-bytes", type=int, default=None)
    ap_index.add_argument("--worker-stack-bytes", type=int, default=None)
    ap_index.add_argument("--keep-going", action="store_true", default=False, help="Continue with the next file on failure")
    ap_index.set_defaults(func=_cmd_index)

    # ---- search ----
    ap_search = sub.add_parser("search", help="Query the full-text index")
    ap_search.add_argument("query")
    ap_search.add_argument("--index-db", type=Path, default=pipeline.default_index_path())
    ap_search.add_argument("--limit", type=int, default=10)
    ap_search.set_defaults(func=_cmd_search)

    # ---- manifest ----
    ap_manifest = sub.add_parser("manifest", help="Write a Parquet manifest of record headers")
    ap_manifest.add_argument("path", type=Path)
    ap_manifest.add_argument("--out", type=Path, required=True)
    ap_manifest.add_argument("--on-malformed", choices=ON_MALFORMED_CHOICES, default="abort")
    ap_manifest.add_argument("--max-dictionary-bytes", type=int, default=container.DEFAULT_MAX_DICTIONARY_BYTES)
    ap_manifest.set_defaults(func=_cmd_manifest)

    # ---- pack ----
    ap_pack = sub.add_parser("pack", help="Build a megawarc container from an uncompressed WARC")
    ap_pack.add_argument("warc", type=Path)
    ap_pack.add_argument("--out", type=Path, required=True)
    ap_pack.add_argument("--dict-size", type=int, default=writer.DEFAULT_DICT_SIZE, help="0 disables the dictionary")
    ap_pack.add_argument("--max-samples", type=int, default=10_000)
    ap_pack.add_argument("--compress-dictionary", action="store_true", default=False)
    ap_pack.add_argument("--level", type=int, default=writer.DEFAULT_LEVEL)
    ap_pack.set_defaults(func=_cmd_pack)

    ns = ap.parse_args(argv)
    _configure_logging(int(ns.verbose))
    return int(ns.func(ns))


if __name__ == "__main__":
    raise SystemExit(main())
