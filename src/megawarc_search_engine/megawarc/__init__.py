"""megawarc decode/index library.

This subpackage contains the code that reads ArchiveTeam ``*.megawarc.warc.zst``
containers (zstd with an embedded dictionary frame), streams their WARC
records, and feeds selected records into a DuckDB full-text index.
"""

from . import container
from . import decompress
from . import errors
from . import pipeline
from . import records
from .container import open_container
from .decompress import wrap
from .pipeline import PipelineConfig, PipelineResult, iter_archive_records, run_pipeline
from .records import ArchiveRecord, ArchiveRecordStream, PipelineCounters

__all__ = [
    "container",
    "decompress",
    "errors",
    "pipeline",
    "records",
    "open_container",
    "wrap",
    "PipelineConfig",
    "PipelineResult",
    "iter_archive_records",
    "run_pipeline",
    "ArchiveRecord",
    "ArchiveRecordStream",
    "PipelineCounters",
]
