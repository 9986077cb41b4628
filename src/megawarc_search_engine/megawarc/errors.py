"""Error taxonomy for the megawarc decode pipeline.

Three layers fail in distinct ways:

- FormatError: the container framing (magic, dictionary length, dictionary
  sub-frame). Fatal for the file.
- DecodeError: the zstd codec (dictionary, frames, truncation). Fatal for the pass.
- ParseError: a single WARC record. MalformedHeader may be recovered by the
  caller; TruncatedBody never is.
"""

from __future__ import annotations

from typing import Optional


class MegawarcError(Exception):
    """Base class for every error raised by the megawarc pipeline."""

    def __init__(self, message: str, *, offset: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.offset = offset

    @property
    def kind(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        if self.offset is None:
            return self.message
        return f"{self.message} (offset={self.offset})"


# ---- source ----


class SourceUnavailable(MegawarcError):
    """The archive path could not be opened or read."""

    def __init__(self, message: str, *, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


# ---- container level ----


class FormatError(MegawarcError):
    pass


class UnsupportedContainer(FormatError):
    def __init__(self, *, expected: bytes, found: bytes, offset: int = 0) -> None:
        super().__init__(
            f"unsupported container magic: expected {expected.hex(' ')}, found {found.hex(' ') or '<eof>'}",
            offset=offset,
        )
        self.expected = expected
        self.found = found


class CorruptDictionaryLength(FormatError):
    def __init__(self, message: str, *, declared: Optional[int] = None, offset: Optional[int] = None) -> None:
        super().__init__(message, offset=offset)
        self.declared = declared


class UnrecognizedDictionaryFrame(FormatError):
    def __init__(self, *, found: bytes, offset: Optional[int] = None) -> None:
        super().__init__(f"unrecognized dictionary frame magic: {found.hex(' ') or '<empty>'}", offset=offset)
        self.found = found


class DictionaryDecodeFailed(FormatError):
    pass


# ---- codec level ----


class DecodeError(MegawarcError):
    pass


class DictionaryRejected(DecodeError):
    pass


class StreamCorrupt(DecodeError):
    pass


class Truncated(DecodeError):
    pass


# ---- record level ----


class ParseError(MegawarcError):
    def __init__(self, message: str, *, ordinal: Optional[int] = None, offset: Optional[int] = None) -> None:
        super().__init__(message, offset=offset)
        self.ordinal = ordinal


class MalformedHeader(ParseError):
    pass


class TruncatedBody(ParseError):
    def __init__(self, *, expected: int, found: int, ordinal: Optional[int] = None, offset: Optional[int] = None) -> None:
        super().__init__(
            f"record body truncated: expected {expected} bytes, stream ended after {found}",
            ordinal=ordinal,
            offset=offset,
        )
        self.expected = expected
        self.found = found


# ---- sink ----


class IndexSinkError(MegawarcError):
    pass
