"""megawarc -> full-text index pipeline.

One pass over one archive:

    file -> open_container -> wrap (zstd + dictionary) -> ArchiveRecordStream
         -> select / extract_document -> IndexSink.add -> IndexSink.commit

The pass runs on a dedicated worker thread created with an explicit stack
size; the caller blocks until it finishes. Container, codec and record errors
end the pass and come back as a failed `PipelineResult` carrying the counters
accumulated so far. The sink is only committed at batch boundaries and at the
end of a complete pass; a cancelled or failed pass rolls back its open batch.
"""

from __future__ import annotations

import json
import logging
import os
import re
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, TypeVar

import psutil

from .container import DEFAULT_MAX_DICTIONARY_BYTES, open_container
from .decompress import DEFAULT_READ_CHUNK_BYTES, wrap
from .errors import MegawarcError, SourceUnavailable
from .http_extract import DEFAULT_MAX_BODY_BYTES, extract_document
from .index_sink import IndexSink
from .records import ON_MALFORMED_ABORT, ON_MALFORMED_CHOICES, ArchiveRecord, ArchiveRecordStream, PipelineCounters

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer ${name}={raw!r}")
        return int(default)


DEFAULT_WORKER_STACK_BYTES = 64 * 1024 * 1024
MIN_WORKER_STACK_BYTES = 32 * 1024


def default_index_path() -> Path:
    return Path((os.environ.get("MEGAWARC_INDEX_DB") or "index/megawarc.duckdb")).expanduser()


@dataclass
class PipelineConfig:
    """Pipeline configuration"""

    source_path: Optional[Path] = None
    index_path: Path = field(default_factory=default_index_path)
    worker_stack_bytes: int = field(
        default_factory=lambda: _env_int("MEGAWARC_WORKER_STACK_BYTES", DEFAULT_WORKER_STACK_BYTES)
    )
    max_dictionary_bytes: int = field(
        default_factory=lambda: _env_int("MEGAWARC_MAX_DICTIONARY_BYTES", DEFAULT_MAX_DICTIONARY_BYTES)
    )
    read_chunk_bytes: int = DEFAULT_READ_CHUNK_BYTES
    commit_every: int = 0
    on_malformed: str = ON_MALFORMED_ABORT
    record_types: Tuple[str, ...] = ("response",)
    url_filter: Optional[str] = None
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES
    # 0 = no ceiling on a record's declared Content-Length.
    max_record_bytes: int = 0

    def __post_init__(self):
        if self.source_path is not None:
            self.source_path = Path(self.source_path).expanduser()
        self.index_path = Path(self.index_path).expanduser()
        self.record_types = tuple(str(t).strip().lower() for t in (self.record_types or ()) if str(t).strip())

        if self.worker_stack_bytes and int(self.worker_stack_bytes) < MIN_WORKER_STACK_BYTES:
            raise ValueError(f"worker_stack_bytes must be 0 (platform default) or >= {MIN_WORKER_STACK_BYTES}")
        if int(self.max_dictionary_bytes) < 0:
            raise ValueError("max_dictionary_bytes must be >= 0")
        if int(self.read_chunk_bytes) <= 0:
            raise ValueError("read_chunk_bytes must be positive")
        if int(self.commit_every) < 0:
            raise ValueError("commit_every must be >= 0")
        if int(self.max_record_bytes) < 0:
            raise ValueError("max_record_bytes must be >= 0")
        if self.on_malformed not in ON_MALFORMED_CHOICES:
            raise ValueError(f"on_malformed must be one of {ON_MALFORMED_CHOICES}")
        if self.url_filter:
            re.compile(self.url_filter)

    @classmethod
    def from_json(cls, path: Path) -> "PipelineConfig":
        """Load configuration from JSON file"""
        with open(path) as f:
            data = json.load(f)
        if "record_types" in data and isinstance(data["record_types"], list):
            data["record_types"] = tuple(data["record_types"])
        return cls(**data)

    @classmethod
    def from_args(cls, args) -> "PipelineConfig":
        """Create config from command-line args, with JSON config as fallback"""
        config_file = Path(args.config) if getattr(args, "config", None) else Path("megawarc_config.json")

        if config_file.exists():
            logger.info(f"Loading configuration from {config_file}")
            config = cls.from_json(config_file)
        else:
            logger.info(f"Config file {config_file} not found, using defaults")
            config = cls()

        overrides = {
            "index_path": getattr(args, "index_db", None),
            "worker_stack_bytes": getattr(args, "worker_stack_bytes", None),
            "max_dictionary_bytes": getattr(args, "max_dictionary_bytes", None),
            "commit_every": getattr(args, "commit_every", None),
            "on_malformed": getattr(args, "on_malformed", None),
            "url_filter": getattr(args, "url_filter", None),
            "max_body_bytes": getattr(args, "max_body_bytes", None),
            "max_record_bytes": getattr(args, "max_record_bytes", None),
        }
        record_types = getattr(args, "record_type", None)
        if record_types:
            overrides["record_types"] = tuple(record_types)

        data = asdict(config)
        for key, value in overrides.items():
            if value is not None:
                logger.info(f"Overriding {key}: {value}")
                data[key] = value
        return cls(**data)

    def for_source(self, source_path: Path) -> "PipelineConfig":
        data = asdict(self)
        data["source_path"] = Path(source_path)
        return PipelineConfig(**data)


@dataclass(frozen=True)
class PipelineResult:
    ok: bool
    source_path: str
    counters: PipelineCounters
    cancelled: bool = False
    commits: int = 0
    error: Optional[MegawarcError] = None
    elapsed_s: float = 0.0
    rss_bytes: Optional[int] = None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error

    def summary(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "source_path": self.source_path,
            "cancelled": self.cancelled,
            "commits": self.commits,
            **self.counters.as_dict(),
            "error_kind": self.error.kind if self.error is not None else None,
            "error": str(self.error) if self.error is not None else None,
            "elapsed_s": round(self.elapsed_s, 3),
            "rss_bytes": self.rss_bytes,
        }


# ---- decode chain ----


@contextmanager
def open_archive(
    path: Path,
    *,
    max_dictionary_bytes: int = DEFAULT_MAX_DICTIONARY_BYTES,
    read_chunk_bytes: int = DEFAULT_READ_CHUNK_BYTES,
):
    """Open a megawarc file and yield a buffered reader of its WARC plaintext."""

    f = open(Path(path), "rb")
    try:
        opened = open_container(f, max_dictionary_bytes=max_dictionary_bytes)
        reader = wrap(opened.stream, opened.dictionary, read_chunk_bytes=read_chunk_bytes)
    except BaseException:
        f.close()
        raise
    try:
        yield reader
    finally:
        reader.close()


def iter_archive_records(
    path: Path,
    *,
    counters: Optional[PipelineCounters] = None,
    on_malformed: str = ON_MALFORMED_ABORT,
    max_dictionary_bytes: int = DEFAULT_MAX_DICTIONARY_BYTES,
    read_chunk_bytes: int = DEFAULT_READ_CHUNK_BYTES,
    max_record_bytes: Optional[int] = None,
) -> Iterator[ArchiveRecord]:
    """Lazily yield the WARC records of one megawarc file, in stream order."""

    with open_archive(path, max_dictionary_bytes=max_dictionary_bytes, read_chunk_bytes=read_chunk_bytes) as reader:
        yield from ArchiveRecordStream(
            reader,
            counters=counters,
            on_malformed=on_malformed,
            max_record_bytes=max_record_bytes,
        )


# ---- worker ----


_STACK_SIZE_LOCK = threading.Lock()


def run_on_worker(fn: Callable[[], T], *, stack_bytes: int = 0, name: str = "megawarc-worker") -> T:
    """Run `fn` on a fresh thread with the given stack size and block until it returns.

    Exceptions raised by `fn` are re-raised in the calling thread.
    """

    outcome: Dict[str, Any] = {}

    def _target() -> None:
        try:
            outcome["value"] = fn()
        except BaseException as e:  # re-raised in the caller below
            outcome["error"] = e

    # threading.stack_size() is process-global: set it only around Thread.start().
    with _STACK_SIZE_LOCK:
        previous = threading.stack_size(int(stack_bytes)) if stack_bytes else None
        try:
            worker = threading.Thread(target=_target, name=name, daemon=True)
            worker.start()
        finally:
            if previous is not None:
                threading.stack_size(previous)

    worker.join()
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


# ---- pass ----


def _rss_bytes() -> Optional[int]:
    try:
        return int(psutil.Process().memory_info().rss)
    except psutil.Error:
        return None


class _Pass:
    def __init__(self, config: PipelineConfig, sink: IndexSink, cancel_event: Optional[threading.Event]) -> None:
        self.config = config
        self.sink = sink
        self.cancel_event = cancel_event
        self.counters = PipelineCounters()
        self.commits = 0
        self._url_re = re.compile(config.url_filter) if config.url_filter else None

    def _select(self, record: ArchiveRecord) -> Optional[Dict[str, str]]:
        if self.config.record_types and (record.record_type or "") not in self.config.record_types:
            return None
        url = record.target_uri
        if not url:
            return None
        if self._url_re is not None and not self._url_re.search(url):
            return None
        return extract_document(
            record,
            max_body_bytes=self.config.max_body_bytes,
            source=str(self.config.source_path),
        )

    def _commit(self) -> None:
        self.sink.commit()
        self.commits += 1

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def run(self) -> PipelineResult:
        cfg = self.config
        t0 = time.perf_counter()
        pending = 0
        cancelled = False
        error: Optional[MegawarcError] = None

        logger.info(f"Indexing {cfg.source_path}")
        try:
            records = iter_archive_records(
                cfg.source_path,
                counters=self.counters,
                on_malformed=cfg.on_malformed,
                max_dictionary_bytes=cfg.max_dictionary_bytes,
                read_chunk_bytes=cfg.read_chunk_bytes,
                max_record_bytes=cfg.max_record_bytes or None,
            )
            try:
                while True:
                    if self._cancelled():
                        cancelled = True
                        break
                    record = next(records, None)
                    if record is None:
                        break
                    doc = self._select(record)
                    if doc is None:
                        self.counters.skipped += 1
                        continue
                    self.sink.add(doc)
                    self.counters.indexed += 1
                    pending += 1
                    if cfg.commit_every and pending >= cfg.commit_every:
                        self._commit()
                        pending = 0
            finally:
                records.close()

            if not cancelled:
                self._commit()
                pending = 0
        except MegawarcError as e:
            error = e
            logger.error(f"Pass over {cfg.source_path} failed: {e.kind}: {e}")
        except OSError as e:
            error = SourceUnavailable(f"cannot read {cfg.source_path}: {e}", path=str(cfg.source_path))
            error.__cause__ = e
            logger.error(f"Pass over {cfg.source_path} failed: {error.kind}: {error}")

        if cancelled or error is not None:
            self.sink.rollback()
            if cancelled:
                logger.warning(f"Pass over {cfg.source_path} cancelled; {pending} uncommitted document(s) discarded")

        result = PipelineResult(
            ok=(error is None and not cancelled),
            source_path=str(cfg.source_path),
            counters=self.counters,
            cancelled=cancelled,
            commits=self.commits,
            error=error,
            elapsed_s=time.perf_counter() - t0,
            rss_bytes=_rss_bytes(),
        )
        c = self.counters
        logger.info(
            f"Total records: {c.total_seen} parsed={c.parsed} failed={c.parse_failures} "
            f"skipped={c.skipped} indexed={c.indexed} commits={self.commits} elapsed_s={result.elapsed_s:.2f}"
        )
        return result


def run_pipeline(
    config: PipelineConfig,
    sink: IndexSink,
    *,
    cancel_event: Optional[threading.Event] = None,
) -> PipelineResult:
    """Run one full pass over `config.source_path` into `sink` on a dedicated worker."""

    if config.source_path is None:
        raise ValueError("config.source_path is required")
    job = _Pass(config, sink, cancel_event)
    return run_on_worker(job.run, stack_bytes=config.worker_stack_bytes, name=f"megawarc:{Path(config.source_path).name}")


def run_many(
    config: PipelineConfig,
    paths: Sequence[Path],
    sink: IndexSink,
    *,
    keep_going: bool = False,
    cancel_event: Optional[threading.Event] = None,
) -> List[PipelineResult]:
    """Run one pass per file, in order. Stops at the first failure unless `keep_going`."""

    results: List[PipelineResult] = []
    for p in paths:
        res = run_pipeline(config.for_source(Path(p)), sink, cancel_event=cancel_event)
        results.append(res)
        if res.cancelled:
            break
        if not res.ok and not keep_going:
            break
    return results
