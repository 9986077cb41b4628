from __future__ import annotations

import pyarrow.parquet as pq
import pytest

from megawarc_search_engine.megawarc.errors import TruncatedBody
from megawarc_search_engine.megawarc.manifest import MANIFEST_SCHEMA, write_manifest
from megawarc_search_engine.megawarc.pipeline import iter_archive_records


def test_manifest_rows_match_records(build_archive, tmp_path, warc):
    """Test that the manifest has one row per record."""
    path = build_archive(warc.corpus(12))
    out = tmp_path / "out" / "manifest.parquet"

    rows = write_manifest(iter_archive_records(path), out, batch_rows=5)

    assert rows == 24
    table = pq.read_table(out)
    assert table.schema.names == MANIFEST_SCHEMA.names
    assert table.num_rows == 24
    d = table.to_pydict()
    assert d["ordinal"] == list(range(1, 25))
    assert d["record_type"][:2] == ["request", "response"]
    assert d["target_uri"][1] == "https://t.me/s/channel0/0"
    assert d["content_type"][1] == "application/http; msgtype=response"
    assert not (tmp_path / "out" / "manifest.parquet.tmp").exists()


def test_manifest_not_written_on_decode_failure(build_raw_archive, tmp_path, warc):
    """Test that no manifest file is left behind when decoding fails."""
    rec = warc.response("https://t.me/s/a/1", warc.page_html(1))
    path = build_raw_archive([rec, rec[:-30]], dictionary_block=b"\x37\xa4\x30\xec")
    out = tmp_path / "manifest.parquet"

    with pytest.raises(TruncatedBody):
        write_manifest(iter_archive_records(path), out)

    assert not out.exists()
    assert not (tmp_path / "manifest.parquet.tmp").exists()
