"""Dictionary-seeded zstd decompression over a whole megawarc stream.

megawarc payloads are one zstd frame per WARC record, all compressed with the
same dictionary, preceded by the skippable frame that carries that
dictionary. We decode frame by frame with `decompressobj()` so that:

- skippable frames (the dictionary frame included) are consumed silently,
- input ending inside a frame is reported as `Truncated` instead of a clean EOF,
- memory use is bounded by one input chunk and its decoded output.
"""

from __future__ import annotations

import io
import logging
from typing import BinaryIO, Optional

import zstandard

from .errors import DictionaryRejected, StreamCorrupt, Truncated

logger = logging.getLogger(__name__)


DEFAULT_READ_CHUNK_BYTES = 1024 * 1024


def _decompressor_for(dictionary: bytes) -> zstandard.ZstdDecompressor:
    if not dictionary:
        return zstandard.ZstdDecompressor()
    return zstandard.ZstdDecompressor(dict_data=zstandard.ZstdCompressionDict(bytes(dictionary)))


class DictionaryDecompressReader(io.RawIOBase):
    """Raw reader yielding the decompressed plaintext of a megawarc stream."""

    def __init__(
        self,
        source: BinaryIO,
        dictionary: bytes = b"",
        *,
        read_chunk_bytes: int = DEFAULT_READ_CHUNK_BYTES,
    ) -> None:
        super().__init__()
        if int(read_chunk_bytes) <= 0:
            raise ValueError("read_chunk_bytes must be positive")

        self._source = source
        self._read_chunk_bytes = int(read_chunk_bytes)

        # Dictionary loading is lazy in the codec; creating the first
        # decompressobj forces it so a bad dictionary fails here.
        try:
            self._dctx = _decompressor_for(dictionary)
            self._dobj = self._dctx.decompressobj()
        except zstandard.ZstdError as e:
            raise DictionaryRejected(f"zstd rejected the dictionary ({len(dictionary)} bytes): {e}") from e

        self._frame_bytes_in = 0
        self._frame_start = 0
        self._consumed = 0
        self._frames = 0
        self._out = b""
        self._out_pos = 0
        self._source_eof = False

    @property
    def frames_decoded(self) -> int:
        return self._frames

    @property
    def compressed_bytes_consumed(self) -> int:
        return self._consumed

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        while self._out_pos >= len(self._out):
            if self._source_eof:
                return 0
            self._fill()

        n = min(len(b), len(self._out) - self._out_pos)
        b[:n] = self._out[self._out_pos : self._out_pos + n]
        self._out_pos += n
        return n

    def _fill(self) -> None:
        chunk = self._source.read(self._read_chunk_bytes)
        if not chunk:
            self._source_eof = True
            if self._frame_bytes_in:
                raise Truncated(
                    f"stream ended inside a zstd frame after {self._frame_bytes_in} of its bytes",
                    offset=self._frame_start,
                )
            logger.debug(f"Decompression finished: frames={self._frames} compressed_bytes={self._consumed}")
            return

        self._out = self._feed(chunk)
        self._out_pos = 0

    def _feed(self, data: bytes) -> bytes:
        produced = []
        while data:
            try:
                out = self._dobj.decompress(data)
            except zstandard.ZstdError as e:
                msg = str(e)
                if "dictionary" in msg.lower():
                    raise DictionaryRejected(f"zstd dictionary mismatch: {msg}", offset=self._frame_start) from e
                raise StreamCorrupt(f"corrupt zstd frame: {msg}", offset=self._frame_start) from e
            if out:
                produced.append(out)

            if not self._dobj.eof:
                self._frame_bytes_in += len(data)
                self._consumed += len(data)
                break

            rest = self._dobj.unused_data
            used = len(data) - len(rest)
            self._consumed += used
            self._frames += 1
            self._frame_start = self._consumed
            self._frame_bytes_in = 0
            self._dobj = self._dctx.decompressobj()
            data = rest

        return b"".join(produced)

    def close(self) -> None:
        if self.closed:
            return
        try:
            self._source.close()
        finally:
            self._dobj = None
            self._out = b""
            super().close()


def wrap(
    stream: BinaryIO,
    dictionary: bytes = b"",
    *,
    read_chunk_bytes: int = DEFAULT_READ_CHUNK_BYTES,
    buffer_size: Optional[int] = None,
) -> io.BufferedReader:
    """Wrap a rewound container stream into a buffered plaintext reader.

    Raises DictionaryRejected immediately if the codec refuses the dictionary;
    StreamCorrupt / Truncated surface from reads.
    """

    raw = DictionaryDecompressReader(stream, dictionary, read_chunk_bytes=read_chunk_bytes)
    return io.BufferedReader(raw, buffer_size=int(buffer_size or io.DEFAULT_BUFFER_SIZE))
