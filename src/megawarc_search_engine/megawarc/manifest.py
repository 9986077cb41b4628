"""Parquet manifest of the records in a megawarc file.

One row per WARC record with the header fields that matter for lookups.
Bodies are not stored.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pyarrow as pa
import pyarrow.parquet as pq

from .records import ArchiveRecord

logger = logging.getLogger(__name__)


MANIFEST_SCHEMA = pa.schema(
    [
        ("ordinal", pa.int64()),
        ("record_id", pa.string()),
        ("record_type", pa.string()),
        ("target_uri", pa.string()),
        ("date", pa.string()),
        ("content_type", pa.string()),
        ("content_length", pa.int64()),
        ("payload_digest", pa.string()),
    ]
)


def _new_columns() -> Dict[str, List[Any]]:
    # Columnar buffer for one write batch.
    return {name: [] for name in MANIFEST_SCHEMA.names}


def _append(cols: Dict[str, List[Any]], rec: ArchiveRecord) -> None:
    cols["ordinal"].append(int(rec.ordinal))
    cols["record_id"].append(rec.record_id)
    cols["record_type"].append(rec.record_type)
    cols["target_uri"].append(rec.target_uri)
    cols["date"].append(rec.date)
    cols["content_type"].append(rec.header("Content-Type"))
    cols["content_length"].append(int(rec.content_length))
    cols["payload_digest"].append(rec.header("WARC-Payload-Digest"))


def write_manifest(
    records: Iterable[ArchiveRecord],
    out_path: Path,
    *,
    batch_rows: int = 10_000,
    compression: str = "zstd",
    compression_level: Optional[int] = None,
) -> int:
    """Write one manifest row per record; returns the number of rows written.

    Rows go to ``<out_path>.tmp`` and are renamed into place only when the
    iterator finishes, so a failed decode never leaves a partial manifest.
    """

    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = out_path.with_name(out_path.name + ".tmp")

    rows = 0
    cols = _new_columns()
    writer = pq.ParquetWriter(
        tmp_path,
        MANIFEST_SCHEMA,
        compression=str(compression),
        compression_level=compression_level,
        use_dictionary=True,
    )
    try:
        for rec in records:
            _append(cols, rec)
            rows += 1
            if len(cols["ordinal"]) >= int(batch_rows):
                writer.write_table(pa.Table.from_pydict(cols, schema=MANIFEST_SCHEMA))
                cols = _new_columns()
        if cols["ordinal"]:
            writer.write_table(pa.Table.from_pydict(cols, schema=MANIFEST_SCHEMA))
    except BaseException:
        writer.close()
        tmp_path.unlink(missing_ok=True)
        raise
    writer.close()
    tmp_path.replace(out_path)
    logger.info(f"Wrote manifest {out_path} ({rows} rows)")
    return rows
