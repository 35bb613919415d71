"""
Dashboard Workbook Import & Reconciliation Engine

Reads the multi-sheet operational workbook, resolves people and projects
against the canonical records, and commits each upload as one batch.

Key components:
- workbook_parser: sheet detection and raw rows
- sheet_importers: per-sheet row mapping
- entity_resolver: name/code matching and creation
- merge_engine: natural-key upserts
- import_controller: batch lifecycle and report
"""

from dashimport.errors import (
    ImportEngineError,
    RowError,
    FatalStorageError,
    BatchInProgressError,
    ImportCancelledError,
    WorkbookReadError,
)

from dashimport.import_controller import ImportController

from dashimport.schemas import (
    BatchStatus,
    ImportReport,
    RowOutcome,
)

from dashimport.storage import (
    ImportStore,
    MemoryImportStore,
    SupabaseImportStore,
)

__all__ = [
    "ImportEngineError",
    "RowError",
    "FatalStorageError",
    "BatchInProgressError",
    "ImportCancelledError",
    "WorkbookReadError",
    "ImportController",
    "BatchStatus",
    "ImportReport",
    "RowOutcome",
    "ImportStore",
    "MemoryImportStore",
    "SupabaseImportStore",
]
