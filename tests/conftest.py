"""Pytest configuration and shared fixtures."""

import struct
import uuid
from pathlib import Path

import pytest
import zstandard

from megawarc_search_engine.megawarc.records import serialize_record
from megawarc_search_engine.megawarc.writer import write_container


@pytest.fixture
def repo_root():
    """Return the repository root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def src_path(repo_root):
    """Return the src directory path."""
    return repo_root / "src"


# ---- WARC record builders ----

_TOPICS = [
    "river", "mountain", "harbour", "library", "railway", "festival", "orchard",
    "bakery", "observatory", "lighthouse", "market", "vineyard", "canal", "museum",
]


def make_response(url, html, *, record_id=None, status="200 OK", content_type="text/html; charset=utf-8"):
    body = html if isinstance(html, bytes) else html.encode("utf-8")
    http = (
        f"HTTP/1.1 {status}\r\n"
        f"Content-Type: {content_type}\r\n"
        f"Content-Length: {len(body)}\r\n"
        "\r\n"
    ).encode("utf-8") + body
    headers = {
        "WARC-Type": "response",
        "WARC-Record-ID": record_id or f"<urn:uuid:{uuid.uuid5(uuid.NAMESPACE_URL, url)}>",
        "WARC-Date": "2022-11-03T18:12:46Z",
        "WARC-Target-URI": url,
        "Content-Type": "application/http; msgtype=response",
    }
    return serialize_record(headers, http)


def make_request(url):
    http = f"GET / HTTP/1.1\r\nHost: {url.split('/')[2]}\r\n\r\n".encode("utf-8")
    headers = {
        "WARC-Type": "request",
        "WARC-Record-ID": f"<urn:uuid:{uuid.uuid5(uuid.NAMESPACE_URL, url + '#request')}>",
        "WARC-Date": "2022-11-03T18:12:46Z",
        "WARC-Target-URI": url,
        "Content-Type": "application/http; msgtype=request",
    }
    return serialize_record(headers, http)


def page_html(i):
    topic = _TOPICS[i % len(_TOPICS)]
    return (
        f"<html><head><title>Post {i} about the {topic}</title>"
        f"<script>var id = {i};</script></head>"
        f"<body><h1>Channel {i % 7}</h1><p>Message number {i} discusses the {topic} "
        f"and the weather on day {i % 31}.</p></body></html>"
    )


def corpus(n):
    """n request/response pairs, in order."""
    out = []
    for i in range(n):
        url = f"https://t.me/s/channel{i % 7}/{i}"
        out.append(make_request(url))
        out.append(make_response(url, page_html(i)))
    return out


@pytest.fixture
def warc():
    """Record builders: warc.response(url, html), warc.request(url), warc.corpus(n), warc.page_html(i)."""

    class _Builders:
        response = staticmethod(make_response)
        request = staticmethod(make_request)
        corpus = staticmethod(corpus)
        page_html = staticmethod(page_html)

    return _Builders


@pytest.fixture(scope="session")
def trained_dictionary():
    samples = corpus(300)
    return zstandard.train_dictionary(4096, samples, level=3).as_bytes()


@pytest.fixture
def build_archive(tmp_path):
    """Factory: write records into a megawarc container file and return its path."""

    counter = {"n": 0}

    def _build(records, dictionary=b"", *, compress_dictionary=False, name=None):
        counter["n"] += 1
        path = tmp_path / (name or f"archive{counter['n']}.megawarc.warc.zst")
        with open(path, "wb") as f:
            write_container(f, records, dictionary, compress_dictionary=compress_dictionary)
        return path

    return _build


@pytest.fixture
def build_raw_archive(tmp_path):
    """Factory: hand-assemble a container (header, dictionary block, plain zstd frames)."""

    counter = {"n": 0}

    def _build(frames_plaintext, *, dictionary_block=b"", declared_length=None, name=None):
        counter["n"] += 1
        length = len(dictionary_block) if declared_length is None else declared_length
        cctx = zstandard.ZstdCompressor()
        data = b"\x5d\x2a\x4d\x18" + struct.pack("<i", length) + dictionary_block
        data += b"".join(cctx.compress(p) for p in frames_plaintext)
        path = tmp_path / (name or f"raw{counter['n']}.megawarc.warc.zst")
        path.write_bytes(data)
        return path

    return _build


class RecordingSink:
    """In-memory stand-in for the index: tracks pending vs committed documents."""

    def __init__(self):
        self.pending = []
        self.committed = []
        self.commits = 0
        self.rollbacks = 0

    def add(self, fields):
        self.pending.append(dict(fields))

    def commit(self):
        self.committed.extend(self.pending)
        self.pending = []
        self.commits += 1

    def rollback(self):
        self.pending = []
        self.rollbacks += 1

    def search(self, query, limit=10):
        hits = [d for d in self.committed if query.lower() in (d["title"] + " " + d["body"]).lower()]
        return [(1.0, d) for d in hits[:limit]]


@pytest.fixture
def recording_sink():
    return RecordingSink()


@pytest.fixture
def duckdb_sink(tmp_path):
    from megawarc_search_engine.megawarc.errors import IndexSinkError
    from megawarc_search_engine.megawarc.index_sink import DuckDBIndexSink

    try:
        sink = DuckDBIndexSink(tmp_path / "index" / "megawarc.duckdb")
    except IndexSinkError as e:
        pytest.skip(f"DuckDB fts extension unavailable: {e}")
    yield sink
    sink.close()
