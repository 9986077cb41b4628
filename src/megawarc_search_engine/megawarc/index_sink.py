"""Full-text index sink backed by DuckDB and its `fts` extension.

Documents are written inside a transaction on the writer connection. `commit()`
makes them durable and rebuilds the BM25 index; searches run on a separate
cursor, so uncommitted documents are never visible (reload-on-commit).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Mapping, Protocol, Tuple

import duckdb

from .errors import IndexSinkError

logger = logging.getLogger(__name__)


DOCUMENT_FIELDS = ("title", "body", "url", "record_id", "source")


class IndexSink(Protocol):
    def add(self, fields: Mapping[str, str]) -> None: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...

    def search(self, query: str, limit: int = 10) -> List[Tuple[float, Dict[str, object]]]: ...


def _load_fts(con: duckdb.DuckDBPyConnection) -> None:
    try:
        con.execute("LOAD fts")
        return
    except duckdb.Error:
        pass
    try:
        con.execute("INSTALL fts")
        con.execute("LOAD fts")
    except duckdb.Error as e:
        raise IndexSinkError(f"DuckDB fts extension unavailable: {e}") from e


class DuckDBIndexSink:
    def __init__(self, db_path: Path | str, *, read_only: bool = False) -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        try:
            self._con = duckdb.connect(self.db_path, read_only=bool(read_only))
        except duckdb.Error as e:
            raise IndexSinkError(f"could not open index {self.db_path}: {e}") from e

        _load_fts(self._con)
        if not read_only:
            self._con.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    doc_id BIGINT PRIMARY KEY,
                    title VARCHAR,
                    body VARCHAR,
                    url VARCHAR,
                    record_id VARCHAR,
                    source VARCHAR
                )
                """
            )
        self._reader = self._con.cursor()
        self._in_txn = False
        self._pending = 0
        try:
            self._next_id = self._max_doc_id() + 1
        except duckdb.Error as e:
            self._reader.close()
            self._con.close()
            raise IndexSinkError(f"{self.db_path} has no usable documents table: {e}") from e

    # ---- writes ----

    def _max_doc_id(self) -> int:
        row = self._con.execute("SELECT coalesce(max(doc_id), 0) FROM documents").fetchone()
        return int(row[0]) if row else 0

    def add(self, fields: Mapping[str, str]) -> None:
        if "title" not in fields or "body" not in fields:
            raise IndexSinkError("document needs at least 'title' and 'body' fields")
        if not self._in_txn:
            self._con.begin()
            self._in_txn = True
        values = [self._next_id] + [fields.get(name) for name in DOCUMENT_FIELDS]
        try:
            self._con.execute("INSERT INTO documents VALUES (?, ?, ?, ?, ?, ?)", values)
        except duckdb.Error as e:
            raise IndexSinkError(f"insert failed: {e}") from e
        self._next_id += 1
        self._pending += 1

    def commit(self) -> None:
        pending = self._pending
        try:
            if self._in_txn:
                self._con.commit()
            self._con.execute("PRAGMA create_fts_index('documents', 'doc_id', 'title', 'body', overwrite=1)")
        except duckdb.Error as e:
            raise IndexSinkError(f"commit failed: {e}") from e
        finally:
            self._in_txn = False
            self._pending = 0
        logger.info(f"Committed {pending} document(s) to {self.db_path}")

    def rollback(self) -> None:
        if not self._in_txn:
            return
        pending = self._pending
        self._con.rollback()
        self._in_txn = False
        self._pending = 0
        self._next_id = self._max_doc_id() + 1
        logger.info(f"Rolled back {pending} uncommitted document(s)")

    @property
    def pending(self) -> int:
        return self._pending

    # ---- reads ----

    def _has_fts_index(self) -> bool:
        row = self._reader.execute(
            "SELECT count(*) FROM information_schema.schemata WHERE schema_name = 'fts_main_documents'"
        ).fetchone()
        return bool(row and int(row[0]) > 0)

    def count(self) -> int:
        row = self._reader.execute("SELECT count(*) FROM documents").fetchone()
        return int(row[0]) if row else 0

    def search(self, query: str, limit: int = 10) -> List[Tuple[float, Dict[str, object]]]:
        if not str(query).strip() or not self._has_fts_index():
            return []
        # The fts macros expand at bind time, so the query goes in as a quoted literal.
        literal = "'" + str(query).replace("'", "''") + "'"
        try:
            rows = self._reader.execute(
                f"""
                SELECT score, doc_id, title, url, record_id, source
                FROM (
                    SELECT *, fts_main_documents.match_bm25(doc_id, {literal}) AS score
                    FROM documents
                ) sq
                WHERE score IS NOT NULL
                ORDER BY score DESC, doc_id
                LIMIT {max(1, int(limit))}
                """
            ).fetchall()
        except duckdb.Error as e:
            raise IndexSinkError(f"search failed: {e}") from e

        out: List[Tuple[float, Dict[str, object]]] = []
        for score, doc_id, title, url, record_id, source in rows:
            out.append(
                (
                    float(score),
                    {"doc_id": int(doc_id), "title": title, "url": url, "record_id": record_id, "source": source},
                )
            )
        return out

    # ---- lifecycle ----

    def close(self) -> None:
        if self._in_txn:
            self.rollback()
        self._reader.close()
        self._con.close()

    def __enter__(self) -> "DuckDBIndexSink":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

