"""Tests for the unified megawarc CLI."""

from __future__ import annotations

import json
import os
import subprocess
import sys

import duckdb
import pytest

from megawarc_search_engine.cli import main
from megawarc_search_engine.megawarc.errors import IndexSinkError
from megawarc_search_engine.megawarc.index_sink import DuckDBIndexSink


def _run_module(src_path, *args):
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join([str(src_path), env.get("PYTHONPATH", "")]).rstrip(os.pathsep)
    return subprocess.run(
        [sys.executable, "-m", "megawarc_search_engine.cli", *args],
        capture_output=True,
        text=True,
        timeout=30,
        env=env,
    )


def _jsonl(text: str):
    return [json.loads(line) for line in text.splitlines() if line.strip()]


@pytest.fixture
def fts_available():
    try:
        DuckDBIndexSink(":memory:").close()
    except IndexSinkError as e:
        pytest.skip(f"DuckDB fts extension unavailable: {e}")


def test_megawarc_help(src_path):
    """Test that the megawarc CLI displays help."""
    result = _run_module(src_path, "--help")
    assert result.returncode == 0
    for cmd in ("info", "scan", "index", "search", "manifest", "pack"):
        assert cmd in result.stdout


def test_megawarc_index_help(src_path):
    """Test that the index subcommand lists its options."""
    result = _run_module(src_path, "index", "--help")
    assert result.returncode == 0
    assert "--commit-every" in result.stdout
    assert "--on-malformed" in result.stdout


def test_info(build_archive, trained_dictionary, capsys, warc):
    path = build_archive(warc.corpus(3), trained_dictionary, compress_dictionary=True)

    assert main(["info", str(path)]) == 0

    (out,) = _jsonl(capsys.readouterr().out)
    assert out["ok"] is True
    assert out["dictionary_kind"] == "compressed"
    assert out["dictionary_resolved_bytes"] == len(trained_dictionary)


def test_info_rejects_unknown_container(tmp_path, capsys):
    path = tmp_path / "x.warc.gz"
    path.write_bytes(b"\x1f\x8b\x08\x00" + b"\x00" * 20)

    assert main(["info", str(path)]) == 1

    (out,) = _jsonl(capsys.readouterr().out)
    assert out["ok"] is False
    assert out["error_kind"] == "UnsupportedContainer"


def test_info_missing_file(tmp_path, capsys):
    assert main(["info", str(tmp_path / "missing.megawarc.warc.zst")]) == 1
    (out,) = _jsonl(capsys.readouterr().out)
    assert out["error_kind"] == "FileNotFoundError"


def test_scan_lists_records(build_archive, capsys, warc):
    path = build_archive(warc.corpus(3))

    assert main(["scan", str(path)]) == 0

    captured = capsys.readouterr()
    rows = _jsonl(captured.out)
    assert [r["ordinal"] for r in rows] == [1, 2, 3, 4, 5, 6]
    assert rows[1]["record_type"] == "response"
    assert "total_seen=6 parsed=6 parse_failures=0" in captured.err


def test_scan_limit_and_quiet(build_archive, capsys, warc):
    path = build_archive(warc.corpus(5))

    assert main(["scan", str(path), "--limit", "3", "--quiet"]) == 0

    captured = capsys.readouterr()
    assert captured.out == ""
    assert "parsed=3" in captured.err


def test_scan_reports_truncation(build_raw_archive, capsys, warc):
    rec = warc.response("https://t.me/s/a/1", warc.page_html(1))
    path = build_raw_archive([rec, rec[:-30]], dictionary_block=b"\x37\xa4\x30\xec")

    assert main(["scan", str(path), "--quiet"]) == 1

    err = capsys.readouterr().err
    assert "total_seen=2 parsed=1 parse_failures=1" in err
    assert "error=TruncatedBody" in err


def test_index_then_search(build_archive, trained_dictionary, tmp_path, monkeypatch, capsys, warc, fts_available):
    monkeypatch.chdir(tmp_path)
    path = build_archive(warc.corpus(30), trained_dictionary)
    db = tmp_path / "idx" / "megawarc.duckdb"

    assert main(["index", str(path), "--index-db", str(db), "--commit-every", "7", "--worker-stack-bytes", "0"]) == 0
    (summary,) = _jsonl(capsys.readouterr().out)
    assert summary["ok"] is True
    assert summary["indexed"] == 30
    assert summary["skipped"] == 30
    assert summary["commits"] == 5

    assert main(["search", "lighthouse", "--index-db", str(db), "--limit", "1"]) == 0
    hits = _jsonl(capsys.readouterr().out)
    assert len(hits) == 1
    assert "lighthouse" in hits[0]["title"]
    assert hits[0]["url"].startswith("https://t.me/s/channel")


def test_index_keep_going_reports_missing_file(build_archive, tmp_path, monkeypatch, capsys, warc, fts_available):
    monkeypatch.chdir(tmp_path)
    good = build_archive(warc.corpus(2))
    missing = tmp_path / "missing.megawarc.warc.zst"
    db = tmp_path / "k.duckdb"

    argv = ["index", str(good), str(missing), str(good), "--index-db", str(db), "--keep-going", "--worker-stack-bytes", "0"]
    assert main(argv) == 1

    summaries = _jsonl(capsys.readouterr().out)
    assert [s["ok"] for s in summaries] == [True, False, True]
    assert summaries[1]["error_kind"] == "SourceUnavailable"
    assert summaries[2]["indexed"] == 2


def test_search_rejects_foreign_database(tmp_path, capsys, fts_available):
    db = tmp_path / "foreign.duckdb"
    con = duckdb.connect(str(db))
    con.execute("CREATE TABLE unrelated (x INTEGER)")
    con.close()

    assert main(["search", "anything", "--index-db", str(db)]) == 1
    assert "IndexSinkError" in capsys.readouterr().err


def test_index_rejects_bad_config(build_archive, tmp_path, monkeypatch, capsys, warc):
    monkeypatch.chdir(tmp_path)
    path = build_archive(warc.corpus(1))

    assert main(["index", str(path), "--commit-every", "-1"]) == 2
    assert "Invalid configuration" in capsys.readouterr().err


def test_manifest_command(build_archive, tmp_path, capsys, warc):
    path = build_archive(warc.corpus(4))
    out = tmp_path / "m.parquet"

    assert main(["manifest", str(path), "--out", str(out)]) == 0

    (res,) = _jsonl(capsys.readouterr().out)
    assert res["rows"] == 8
    assert res["total_seen"] == 8
    assert out.exists()


def test_pack_then_scan(tmp_path, capsys, warc):
    src = tmp_path / "in.warc"
    src.write_bytes(b"".join(warc.corpus(120)))
    out = tmp_path / "in.megawarc.warc.zst"

    assert main(["pack", str(src), "--out", str(out), "--dict-size", "2048"]) == 0
    capsys.readouterr()

    assert main(["scan", str(out), "--quiet"]) == 0
    assert "total_seen=240" in capsys.readouterr().err
