"""HTTP payload parsing and text extraction for WARC response records.

A `response` record's body is the raw HTTP response: status line, headers,
blank line, entity body (possibly chunked). We split that apart and turn HTML
or plain-text entities into the `title` / `body` fields the index wants.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from bs4 import BeautifulSoup

from .records import ArchiveRecord

logger = logging.getLogger(__name__)


DEFAULT_MAX_BODY_BYTES = 2_000_000

_CT_CHARSET_RE = re.compile(r"charset=([^;\s]+)", re.IGNORECASE)
_WS_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class HttpPayload:
    ok: bool
    status: Optional[int]
    status_line: Optional[str]
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = field(default=b"", repr=False)
    mime: Optional[str] = None
    charset: Optional[str] = None
    is_html: bool = False
    error: Optional[str] = None

    def text(self) -> str:
        enc = self.charset or "utf-8"
        try:
            return self.body.decode(enc, errors="replace")
        except LookupError:
            return self.body.decode("utf-8", errors="replace")


def _parse_headers_block(text: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    lines = [ln.strip("\r") for ln in text.splitlines() if ln.strip("\r")]
    if not lines:
        return out
    out["_first_line"] = lines[0]
    for ln in lines[1:]:
        if ":" not in ln:
            continue
        k, v = ln.split(":", 1)
        out[k.strip().lower()] = v.strip()
    return out


def _decode_chunked(body: bytes, *, max_output_bytes: int) -> Tuple[bytes, Optional[str]]:
    """Best-effort HTTP/1.1 chunked transfer decoding."""

    out = bytearray()
    i = 0
    n = len(body)
    while i < n:
        j = body.find(b"\n", i)
        if j == -1:
            return bytes(out), "chunked: missing size line"
        line = body[i : j + 1].strip()
        i = j + 1
        if b";" in line:
            line = line.split(b";", 1)[0]
        if not line:
            continue
        try:
            size = int(line, 16)
        except ValueError:
            return bytes(out), f"chunked: bad size line {line[:16]!r}"
        if size < 0:
            return bytes(out), f"chunked: bad size line {line[:16]!r}"
        if size == 0:
            break
        if i + size > n:
            out.extend(body[i:n])
            return bytes(out[: int(max_output_bytes)]), "chunked: truncated"
        out.extend(body[i : i + size])
        if len(out) > int(max_output_bytes):
            return bytes(out[: int(max_output_bytes)]), "chunked: output truncated"
        i += size
        # Skip CRLF after chunk
        if body[i : i + 2] == b"\r\n":
            i += 2
        elif body[i : i + 1] == b"\n":
            i += 1
    return bytes(out), None


def _split_head(data: bytes) -> Tuple[int, int]:
    sep = data.find(b"\r\n\r\n")
    if sep != -1:
        return sep, 4
    sep = data.find(b"\n\n")
    return sep, 2


def extract_http_payload(data: bytes, *, max_body_bytes: int = DEFAULT_MAX_BODY_BYTES) -> HttpPayload:
    """Split an HTTP response message into status, headers and decoded entity body."""

    if not data.startswith(b"HTTP/"):
        return HttpPayload(ok=False, status=None, status_line=None, error="no_http_payload")

    sep, sep_len = _split_head(data)
    if sep == -1:
        return HttpPayload(ok=False, status=None, status_line=None, error="missing_http_header_separator")

    headers_all = _parse_headers_block(data[:sep].decode("iso-8859-1", errors="replace"))
    status_line = headers_all.pop("_first_line", None)
    status: Optional[int] = None
    if status_line:
        parts = status_line.split()
        if len(parts) >= 2 and parts[1].isdigit():
            status = int(parts[1])

    body = data[sep + sep_len :]
    te = headers_all.get("transfer-encoding", "")
    if te and "chunked" in te.lower():
        body, err = _decode_chunked(body, max_output_bytes=int(max_body_bytes))
        if err:
            logger.debug(f"Chunked decoding: {err}")
    if int(max_body_bytes) > 0 and len(body) > int(max_body_bytes):
        body = body[: int(max_body_bytes)]

    mime = None
    charset = None
    ct = headers_all.get("content-type")
    if ct:
        mime = ct.split(";", 1)[0].strip().lower() or None
        m = _CT_CHARSET_RE.search(ct)
        if m:
            charset = m.group(1).strip("\"'").lower()

    is_html = bool(mime == "text/html" or (mime and mime.endswith("+html")))
    if not is_html and body[:64].lstrip().lower().startswith((b"<!doctype html", b"<html")):
        is_html = True

    return HttpPayload(
        ok=True,
        status=status,
        status_line=status_line,
        headers=headers_all,
        body=body,
        mime=mime,
        charset=charset,
        is_html=is_html,
    )


def html_to_fields(html: str) -> Tuple[Optional[str], str]:
    """Return (title, visible text) of an HTML document."""

    soup = BeautifulSoup(html, "html.parser")
    title = None
    if soup.title is not None and soup.title.string:
        title = _WS_RE.sub(" ", soup.title.string).strip() or None
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    text = soup.get_text(separator=" ", strip=True)
    return title, _WS_RE.sub(" ", text).strip()


def extract_document(
    record: ArchiveRecord,
    *,
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
    source: Optional[str] = None,
) -> Optional[Dict[str, str]]:
    """Build the index fields for a record, or None when it has nothing to index."""

    payload = extract_http_payload(record.body, max_body_bytes=max_body_bytes)
    if not payload.ok or not payload.body:
        return None
    if payload.status is not None and not (200 <= payload.status < 300):
        return None

    url = record.target_uri or ""
    if payload.is_html:
        title, text = html_to_fields(payload.text())
    elif payload.mime == "text/plain":
        title, text = None, _WS_RE.sub(" ", payload.text()).strip()
    else:
        return None

    if not text:
        return None

    fields = {
        "title": title or url,
        "body": text,
        "url": url,
        "record_id": record.record_id or "",
    }
    if source:
        fields["source"] = source
    return fields
