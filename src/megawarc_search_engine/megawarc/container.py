"""Container framing for ArchiveTeam-style ``*.megawarc.warc.zst`` files.

Layout:

    [5D 2A 4D 18][int32 LE dictionary_length][dictionary bytes][zstd frames ...]

The first eight bytes are a zstd skippable frame header, so the dictionary is
part of the zstd stream itself. We read it once to learn the dictionary, then
rewind so the decompressor sees the whole stream again (it skips that frame on
its own).

The dictionary block is either a raw zstd dictionary (``37 A4 30 EC``) or a
regular zstd frame (``28 B5 2F FD``) that decompresses to one.
"""

from __future__ import annotations

import enum
import io
import logging
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, Optional

import zstandard

from .errors import (
    CorruptDictionaryLength,
    DictionaryDecodeFailed,
    UnrecognizedDictionaryFrame,
    UnsupportedContainer,
)

logger = logging.getLogger(__name__)


CONTAINER_MAGIC = b"\x5d\x2a\x4d\x18"
RAW_DICTIONARY_MAGIC = b"\x37\xa4\x30\xec"
ZSTD_FRAME_MAGIC = b"\x28\xb5\x2f\xfd"

HEADER_SIZE = 8
DEFAULT_MAX_DICTIONARY_BYTES = 64 * 1024 * 1024


class DictionaryKind(str, enum.Enum):
    RAW = "raw"
    COMPRESSED = "compressed"
    EMPTY = "empty"
    UNRECOGNIZED = "unrecognized"


def classify_dictionary(buf: bytes) -> DictionaryKind:
    if not buf:
        return DictionaryKind.EMPTY
    head = bytes(buf[:4])
    if head == RAW_DICTIONARY_MAGIC:
        return DictionaryKind.RAW
    if head == ZSTD_FRAME_MAGIC:
        return DictionaryKind.COMPRESSED
    return DictionaryKind.UNRECOGNIZED


@dataclass(frozen=True)
class ContainerHeader:
    magic: bytes
    dictionary_length: int


@dataclass(frozen=True)
class DictionaryFrame:
    kind: DictionaryKind
    raw: bytes
    # Bytes handed to the decompressor (decompressed when kind is COMPRESSED).
    resolved: bytes

    @property
    def dict_id(self) -> int:
        if not self.resolved:
            return 0
        return int(zstandard.ZstdCompressionDict(self.resolved).dict_id())


@dataclass(frozen=True)
class OpenedContainer:
    header: ContainerHeader
    frame: DictionaryFrame
    # Rewound to where the container started; ownership moves to the decompressor.
    stream: BinaryIO

    @property
    def dictionary(self) -> bytes:
        return self.frame.resolved


class _ReplayStream(io.RawIOBase):
    """Replays bytes already consumed from a non-seekable source, then continues with it."""

    def __init__(self, prefix: bytes, rest: BinaryIO) -> None:
        super().__init__()
        self._prefix = memoryview(bytes(prefix))
        self._rest = rest

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        if len(self._prefix):
            n = min(len(b), len(self._prefix))
            b[:n] = self._prefix[:n]
            self._prefix = self._prefix[n:]
            return n
        data = self._rest.read(len(b))
        if not data:
            return 0
        n = len(data)
        b[:n] = data
        return n

    def close(self) -> None:
        try:
            self._rest.close()
        finally:
            super().close()


def _read_exact(source: BinaryIO, n: int) -> bytes:
    # Raw streams may return short reads before EOF.
    chunks = []
    remaining = int(n)
    while remaining > 0:
        chunk = source.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _is_seekable(source: BinaryIO) -> bool:
    try:
        return bool(source.seekable())
    except (AttributeError, ValueError, OSError):
        return False


def read_container_header(
    source: BinaryIO,
    *,
    max_dictionary_bytes: int = DEFAULT_MAX_DICTIONARY_BYTES,
    base_offset: int = 0,
) -> ContainerHeader:
    """Read and validate the 8-byte container header from the current position."""

    magic = _read_exact(source, 4)
    if magic != CONTAINER_MAGIC:
        raise UnsupportedContainer(expected=CONTAINER_MAGIC, found=magic, offset=base_offset)

    raw_len = _read_exact(source, 4)
    if len(raw_len) != 4:
        raise CorruptDictionaryLength(
            f"container header truncated: expected 4 length bytes, found {len(raw_len)}",
            offset=base_offset + 4,
        )

    (dictionary_length,) = struct.unpack("<i", raw_len)
    if dictionary_length < 0:
        raise CorruptDictionaryLength(
            f"negative dictionary length {dictionary_length}",
            declared=dictionary_length,
            offset=base_offset + 4,
        )
    if dictionary_length > int(max_dictionary_bytes):
        raise CorruptDictionaryLength(
            f"dictionary length {dictionary_length} exceeds ceiling {int(max_dictionary_bytes)}",
            declared=dictionary_length,
            offset=base_offset + 4,
        )

    return ContainerHeader(magic=magic, dictionary_length=int(dictionary_length))


def resolve_dictionary(
    raw: bytes,
    *,
    max_dictionary_bytes: int = DEFAULT_MAX_DICTIONARY_BYTES,
    offset: Optional[int] = None,
) -> DictionaryFrame:
    """Turn the dictionary block into the bytes the decompressor should be seeded with."""

    kind = classify_dictionary(raw)

    if kind is DictionaryKind.EMPTY:
        return DictionaryFrame(kind=kind, raw=b"", resolved=b"")

    if kind is DictionaryKind.RAW:
        return DictionaryFrame(kind=kind, raw=raw, resolved=raw)

    if kind is DictionaryKind.COMPRESSED:
        logger.debug(f"Decompressing dictionary frame ({len(raw)} compressed bytes)")
        try:
            resolved = zstandard.ZstdDecompressor().decompress(raw, max_output_size=int(max_dictionary_bytes))
        except zstandard.ZstdError as e:
            raise DictionaryDecodeFailed(f"could not decompress dictionary frame: {e}", offset=offset) from e
        if len(resolved) > int(max_dictionary_bytes):
            raise DictionaryDecodeFailed(
                f"decompressed dictionary is {len(resolved)} bytes, ceiling is {int(max_dictionary_bytes)}",
                offset=offset,
            )
        if classify_dictionary(resolved) is not DictionaryKind.RAW:
            logger.warning(
                f"Decompressed dictionary does not start with the zstd dictionary magic "
                f"({resolved[:4].hex(' ')}); using it as raw content"
            )
        logger.debug(f"Decompressed dictionary: {len(raw)} -> {len(resolved)} bytes")
        return DictionaryFrame(kind=kind, raw=raw, resolved=resolved)

    raise UnrecognizedDictionaryFrame(found=bytes(raw[:4]), offset=offset)


def open_container(
    source: BinaryIO,
    *,
    max_dictionary_bytes: int = DEFAULT_MAX_DICTIONARY_BYTES,
) -> OpenedContainer:
    """Validate the container framing, resolve its dictionary, and rewind the stream.

    The returned ``stream`` re-presents every byte from the start of the
    container: header, dictionary frame and payload.
    """

    seekable = _is_seekable(source)
    start = source.tell() if seekable else 0

    header = read_container_header(source, max_dictionary_bytes=max_dictionary_bytes, base_offset=start)

    raw = _read_exact(source, header.dictionary_length)
    if len(raw) != header.dictionary_length:
        raise CorruptDictionaryLength(
            f"declared dictionary length {header.dictionary_length} but only {len(raw)} bytes follow",
            declared=header.dictionary_length,
            offset=start + 4,
        )

    frame = resolve_dictionary(raw, max_dictionary_bytes=max_dictionary_bytes, offset=start + HEADER_SIZE)
    logger.info(
        f"Container dictionary: kind={frame.kind.value} length={header.dictionary_length} "
        f"resolved={len(frame.resolved)}"
    )

    if seekable:
        source.seek(start)
        stream: BinaryIO = source
    else:
        consumed = header.magic + struct.pack("<i", header.dictionary_length) + raw
        stream = io.BufferedReader(_ReplayStream(consumed, source))

    return OpenedContainer(header=header, frame=frame, stream=stream)


def describe_container(path: Path, *, max_dictionary_bytes: int = DEFAULT_MAX_DICTIONARY_BYTES) -> Dict[str, object]:
    """Summary of a container's framing, for the `info` command."""

    p = Path(path)
    with p.open("rb") as f:
        opened = open_container(f, max_dictionary_bytes=max_dictionary_bytes)
        frame = opened.frame
        return {
            "path": str(p),
            "size_bytes": p.stat().st_size,
            "magic": opened.header.magic.hex(" "),
            "dictionary_length": opened.header.dictionary_length,
            "dictionary_kind": frame.kind.value,
            "dictionary_resolved_bytes": len(frame.resolved),
            "dictionary_id": frame.dict_id,
            "payload_offset": HEADER_SIZE + opened.header.dictionary_length,
        }
