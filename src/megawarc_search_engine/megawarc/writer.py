"""Build megawarc containers: dictionary frame + one dictionary-compressed zstd frame per record."""

from __future__ import annotations

import io
import logging
import struct
from pathlib import Path
from typing import BinaryIO, Iterable, List, Optional, Sequence

import zstandard

from .container import CONTAINER_MAGIC
from .records import ArchiveRecordStream, serialize_record

logger = logging.getLogger(__name__)


DEFAULT_DICT_SIZE = 112_640
DEFAULT_LEVEL = 3


def train_dictionary(samples: Sequence[bytes], *, dict_size: int = DEFAULT_DICT_SIZE, level: int = DEFAULT_LEVEL) -> bytes:
    """Train a zstd dictionary (``37 A4 30 EC ...``) from record samples."""

    zdict = zstandard.train_dictionary(int(dict_size), list(samples), level=int(level))
    logger.info(f"Trained dictionary id={zdict.dict_id()} size={len(zdict)} from {len(samples)} samples")
    return zdict.as_bytes()


def dictionary_frame(dictionary: bytes, *, compress: bool = False, level: int = 19) -> bytes:
    """Container header plus dictionary block (optionally zstd-compressed)."""

    block = bytes(dictionary)
    if compress and block:
        block = zstandard.ZstdCompressor(level=int(level)).compress(block)
    return CONTAINER_MAGIC + struct.pack("<i", len(block)) + block


def write_container(
    out: BinaryIO,
    records: Iterable[bytes],
    dictionary: bytes = b"",
    *,
    compress_dictionary: bool = False,
    level: int = DEFAULT_LEVEL,
) -> int:
    """Write a container to `out`; returns the number of bytes written."""

    if dictionary:
        cctx = zstandard.ZstdCompressor(level=int(level), dict_data=zstandard.ZstdCompressionDict(bytes(dictionary)))
    else:
        cctx = zstandard.ZstdCompressor(level=int(level))

    written = out.write(dictionary_frame(dictionary, compress=compress_dictionary))
    frames = 0
    for rec in records:
        written += out.write(cctx.compress(bytes(rec)))
        frames += 1
    logger.debug(f"Wrote {frames} record frame(s), {written} bytes")
    return written


def encode_payload(payload: bytes, dictionary: bytes = b"", *, compress_dictionary: bool = False) -> bytes:
    """Encode `payload` as a single-frame container held in memory."""

    buf = io.BytesIO()
    write_container(buf, [payload], dictionary, compress_dictionary=compress_dictionary)
    return buf.getvalue()


def _plain_records(path: Path) -> Iterable[bytes]:
    with open(path, "rb") as f:
        for rec in ArchiveRecordStream(f):
            yield serialize_record(rec.headers, rec.body, version=rec.version)


def pack_warc(
    warc_path: Path,
    out_path: Path,
    *,
    dict_size: int = DEFAULT_DICT_SIZE,
    max_samples: int = 10_000,
    compress_dictionary: bool = False,
    level: int = DEFAULT_LEVEL,
) -> int:
    """Convert an uncompressed WARC file into a megawarc container.

    The first `max_samples` records train the dictionary; when training is not
    possible (too little data) the container is written without one.
    """

    samples: List[bytes] = []
    for i, rec in enumerate(_plain_records(Path(warc_path))):
        if i >= int(max_samples):
            break
        samples.append(rec)

    dictionary: Optional[bytes] = None
    if dict_size and samples:
        try:
            dictionary = train_dictionary(samples, dict_size=dict_size, level=level)
        except zstandard.ZstdError as e:
            logger.warning(f"Dictionary training failed ({e}); writing container without a dictionary")
    del samples

    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with open(out_path, "wb") as out:
        n = write_container(
            out,
            _plain_records(Path(warc_path)),
            dictionary or b"",
            compress_dictionary=compress_dictionary,
            level=level,
        )
    logger.info(f"Packed {warc_path} -> {out_path} ({n} bytes)")
    return n
