"""Streaming WARC record parser over the decompressed megawarc payload.

Each record is a header block (a ``WARC/x.y`` version line, ``name: value``
lines, a blank line) followed by exactly ``Content-Length`` body bytes.
Records are read one at a time; nothing beyond the current record is held.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, Iterator, List, Optional, Tuple

from .errors import MalformedHeader, MegawarcError, TruncatedBody

logger = logging.getLogger(__name__)


ON_MALFORMED_ABORT = "abort"
ON_MALFORMED_RESYNC = "resync"
ON_MALFORMED_CHOICES = (ON_MALFORMED_ABORT, ON_MALFORMED_RESYNC)

DEFAULT_MAX_HEADER_LINE_BYTES = 64 * 1024
DEFAULT_MAX_HEADER_BYTES = 1024 * 1024
BODY_READ_CHUNK_BYTES = 1024 * 1024

_VERSION_PREFIX = b"WARC/"


@dataclass
class PipelineCounters:
    """Per-pass counters. `skipped` is only ever incremented downstream of the parser."""

    total_seen: int = 0
    parsed: int = 0
    parse_failures: int = 0
    skipped: int = 0
    indexed: int = 0

    def reset(self) -> None:
        self.total_seen = 0
        self.parsed = 0
        self.parse_failures = 0
        self.skipped = 0
        self.indexed = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "total_seen": self.total_seen,
            "parsed": self.parsed,
            "parse_failures": self.parse_failures,
            "skipped": self.skipped,
            "indexed": self.indexed,
        }


@dataclass(frozen=True)
class ArchiveRecord:
    ordinal: int
    version: str
    headers: Dict[str, str]
    body: bytes = field(repr=False)
    content_length: int = 0

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        want = name.lower()
        for k, v in self.headers.items():
            if k.lower() == want:
                return v
        return default

    @property
    def record_type(self) -> Optional[str]:
        v = self.header("WARC-Type")
        return v.lower() if v else None

    @property
    def target_uri(self) -> Optional[str]:
        v = self.header("WARC-Target-URI")
        if v and v.startswith("<") and v.endswith(">"):
            # WARC/1.0 writers sometimes wrap the URI in angle brackets.
            v = v[1:-1]
        return v or None

    @property
    def record_id(self) -> Optional[str]:
        return self.header("WARC-Record-ID")

    @property
    def date(self) -> Optional[str]:
        return self.header("WARC-Date")


def _strip_eol(line: bytes) -> bytes:
    if line.endswith(b"\r\n"):
        return line[:-2]
    if line.endswith(b"\n"):
        return line[:-1]
    return line


class ArchiveRecordStream:
    """Forward-only iterator of `ArchiveRecord`s read from a plaintext WARC stream.

    `next_record()` returns None at a clean end of stream. A `ParseError` ends
    the stream, except `MalformedHeader` under ``on_malformed="resync"``, which
    is logged and counted, after which parsing resumes at the next line that
    starts with ``WARC/``.
    """

    def __init__(
        self,
        stream: BinaryIO,
        *,
        counters: Optional[PipelineCounters] = None,
        on_malformed: str = ON_MALFORMED_ABORT,
        max_header_line_bytes: int = DEFAULT_MAX_HEADER_LINE_BYTES,
        max_header_bytes: int = DEFAULT_MAX_HEADER_BYTES,
        max_record_bytes: Optional[int] = None,
    ) -> None:
        if on_malformed not in ON_MALFORMED_CHOICES:
            raise ValueError(f"on_malformed must be one of {ON_MALFORMED_CHOICES}, got {on_malformed!r}")
        self._stream = stream
        self.counters = counters if counters is not None else PipelineCounters()
        self._on_malformed = on_malformed
        self._max_line = int(max_header_line_bytes)
        self._max_header = int(max_header_bytes)
        self._max_record = int(max_record_bytes) if max_record_bytes else None
        self._pushback: Optional[bytes] = None
        self._offset = 0
        self._done = False

    def __iter__(self) -> Iterator[ArchiveRecord]:
        return self

    def __next__(self) -> ArchiveRecord:
        rec = self.next_record()
        if rec is None:
            raise StopIteration
        return rec

    @property
    def offset(self) -> int:
        """Plaintext offset of the next unread byte."""
        return self._offset - (len(self._pushback) if self._pushback is not None else 0)

    def next_record(self) -> Optional[ArchiveRecord]:
        while not self._done:
            try:
                return self._read_one()
            except MalformedHeader as e:
                if self._on_malformed != ON_MALFORMED_RESYNC:
                    self._done = True
                    raise
                logger.warning(f"Skipping malformed record #{e.ordinal}: {e}")
                try:
                    resumed = self._resync()
                except MegawarcError:
                    self._done = True
                    raise
                if not resumed:
                    self._done = True
            except MegawarcError:
                self._done = True
                raise
        return None

    # ---- internals ----

    def _readline(self) -> bytes:
        if self._pushback is not None:
            line, self._pushback = self._pushback, None
            return line
        line = self._stream.readline(self._max_line + 1)
        self._offset += len(line)
        return line

    def _next_version_line(self) -> Optional[Tuple[bytes, int]]:
        while True:
            start = self.offset
            line = self._readline()
            if not line:
                return None
            if _strip_eol(line).strip():
                return line, start

    def _read_one(self) -> Optional[ArchiveRecord]:
        found = self._next_version_line()
        if found is None:
            return None
        first, start = found

        self.counters.total_seen += 1
        ordinal = self.counters.total_seen
        try:
            version, headers = self._parse_header_block(first, ordinal=ordinal, start=start)
            content_length = self._content_length(headers, ordinal=ordinal, start=start)
            body = self._read_body(content_length)
            if len(body) < content_length:
                raise TruncatedBody(expected=content_length, found=len(body), ordinal=ordinal, offset=start)
        except MegawarcError:
            # Codec errors mid-record count as a failed attempt too.
            self.counters.parse_failures += 1
            raise

        self.counters.parsed += 1
        return ArchiveRecord(
            ordinal=ordinal,
            version=version,
            headers=headers,
            body=body,
            content_length=content_length,
        )

    def _parse_header_block(self, first: bytes, *, ordinal: int, start: int) -> Tuple[str, Dict[str, str]]:
        version_line = _strip_eol(first)
        if not version_line.startswith(_VERSION_PREFIX) or len(first) > self._max_line:
            preview = version_line[:40].decode("utf-8", errors="replace")
            raise MalformedHeader(f"expected a WARC/ version line, found {preview!r}", ordinal=ordinal, offset=start)
        version = version_line.decode("utf-8", errors="replace")

        headers: Dict[str, str] = {}
        keys_by_lower: Dict[str, str] = {}
        last_key: Optional[str] = None
        block_bytes = len(first)

        while True:
            line = self._readline()
            if not line:
                raise MalformedHeader("stream ended before the blank line closing the header block", ordinal=ordinal, offset=start)
            block_bytes += len(line)
            if len(line) > self._max_line or block_bytes > self._max_header:
                raise MalformedHeader("header line or block exceeds the configured limit", ordinal=ordinal, offset=start)
            if not line.endswith(b"\n"):
                raise MalformedHeader("stream ended inside a header line", ordinal=ordinal, offset=start)

            text = _strip_eol(line).decode("utf-8", errors="replace")
            if not text:
                break

            if text[0] in " \t":
                if last_key is None:
                    raise MalformedHeader("continuation line before any header field", ordinal=ordinal, offset=start)
                headers[last_key] = f"{headers[last_key]} {text.strip()}"
                continue

            if ":" not in text:
                raise MalformedHeader(f"header line without ':': {text[:60]!r}", ordinal=ordinal, offset=start)
            name, value = text.split(":", 1)
            name = name.strip()
            if not name:
                raise MalformedHeader("header line with an empty field name", ordinal=ordinal, offset=start)
            value = value.strip()

            existing = keys_by_lower.get(name.lower())
            if existing is not None:
                # One entry per name: repeated fields are folded into the first.
                headers[existing] = f"{headers[existing]}, {value}"
                last_key = existing
            else:
                keys_by_lower[name.lower()] = name
                headers[name] = value
                last_key = name

        return version, headers

    def _content_length(self, headers: Dict[str, str], *, ordinal: int, start: int) -> int:
        raw = None
        for k, v in headers.items():
            if k.lower() == "content-length":
                raw = v
                break
        if raw is None:
            raise MalformedHeader("missing Content-Length", ordinal=ordinal, offset=start)
        try:
            n = int(raw.strip())
        except ValueError:
            raise MalformedHeader(f"invalid Content-Length {raw!r}", ordinal=ordinal, offset=start) from None
        if n < 0:
            raise MalformedHeader(f"negative Content-Length {n}", ordinal=ordinal, offset=start)
        if n > sys.maxsize or (self._max_record is not None and n > self._max_record):
            raise MalformedHeader(f"Content-Length {n} out of range", ordinal=ordinal, offset=start)
        return n

    def _read_body(self, n: int) -> bytes:
        # Declared lengths are untrusted: read in bounded pieces until EOF.
        chunks = []
        remaining = n
        while remaining > 0:
            chunk = self._stream.read(min(remaining, BODY_READ_CHUNK_BYTES))
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
            self._offset += len(chunk)
        return b"".join(chunks)

    def _resync(self) -> bool:
        """Scan forward to the next plausible record start; False at end of stream."""

        skipped_lines = 0
        while True:
            line = self._readline()
            if not line:
                logger.warning(f"Resync reached end of stream after {skipped_lines} line(s)")
                return False
            if line.startswith(_VERSION_PREFIX):
                self._pushback = line
                logger.info(f"Resynchronized at plaintext offset {self.offset} after {skipped_lines} line(s)")
                return True
            skipped_lines += 1


def iter_records(stream: BinaryIO, **kwargs) -> Iterator[ArchiveRecord]:
    return iter(ArchiveRecordStream(stream, **kwargs))


def serialize_record(headers: Dict[str, str], body: bytes, *, version: str = "WARC/1.0") -> bytes:
    """Render one WARC record (header block, body, record separator)."""

    lines: List[str] = [version]
    has_length = False
    for k, v in headers.items():
        if k.lower() == "content-length":
            has_length = True
            v = str(len(body))
        lines.append(f"{k}: {v}")
    if not has_length:
        lines.append(f"Content-Length: {len(body)}")
    head = ("\r\n".join(lines) + "\r\n\r\n").encode("utf-8")
    return head + bytes(body) + b"\r\n\r\n"
