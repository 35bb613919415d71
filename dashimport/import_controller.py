"""
Import Transaction Controller

Drives one upload end to end:
1. Parse the workbook and detect sheet types
2. Map every row through its sheet importer (row errors are collected, not fatal)
3. Stage accepted rows in the merge engine
4. Commit everything in one storage transaction, or roll back

Only one batch may be active per dataset at a time.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .config import ImportSettings, get_import_settings
from .entity_resolver import EntityResolver
from .errors import (
    BatchInProgressError,
    FatalStorageError,
    ImportCancelledError,
    RowError,
    WorkbookReadError,
)
from .fiscal_calendar import available_fy_options
from .merge_engine import ChangeAction, MergeEngine
from .schemas import (
    BatchStatus,
    ImportBatch,
    ImportReport,
    ImportRow,
    RejectedRow,
    RowOutcome,
    SheetSummary,
    SkippedSheet,
)
from .sheet_catalog import get_sheet_spec
from .sheet_importers import SHEET_IMPORTERS, MappedRow, SheetContext
from .storage import ImportStore, safe_json_value
from .workbook_parser import ParsedSheet, parse_workbook

logger = logging.getLogger(__name__)


# ============================================================================
# Dataset locks
# ============================================================================

_dataset_locks: Dict[str, threading.Lock] = {}
_registry_lock = threading.Lock()


def _dataset_lock(dataset_id: str) -> threading.Lock:
    with _registry_lock:
        return _dataset_locks.setdefault(dataset_id, threading.Lock())


def is_import_active(dataset_id: str) -> bool:
    return _dataset_lock(dataset_id).locked()


# ============================================================================
# Controller
# ============================================================================

@dataclass
class _RowResult:
    sheet: str
    row_number: int
    mapped: Optional[MappedRow] = None
    error: Optional[str] = None


class ImportController:
    """Runs import batches against one store."""

    def __init__(self, store: ImportStore, settings: Optional[ImportSettings] = None,
                 as_of: Optional[date] = None):
        self.store = store
        self.settings = settings or get_import_settings()
        self.as_of = as_of
        self.last_batch: Optional[ImportBatch] = None

    @property
    def dataset_id(self) -> str:
        return self.settings.dataset_id

    # ------------------------------------------------------------------
    # Read-only helpers
    # ------------------------------------------------------------------

    def preview(self, content: bytes, limit: int = 5) -> Dict[str, Any]:
        """Sheet names, detected types and the first rows of each sheet. Nothing is written."""
        workbook = parse_workbook(content, self.settings)
        sheets = []
        for sheet in workbook.sheets:
            sheets.append({
                "name": sheet.name,
                "sheetType": sheet.sheet_type.value if sheet.sheet_type else None,
                "skipReason": sheet.skip_reason,
                "headerRow": sheet.header_row_number,
                "rowCount": sheet.row_count,
                "fy": sheet.fy_hint,
                "columns": sorted(sheet.columns),
                "rows": safe_json_value(sheet.preview(limit)),
            })
        return {"sheetNames": workbook.sheet_names, "sheets": sheets}

    def fy_options(self) -> List[str]:
        return available_fy_options(self.store.observed_fy_labels(), self.as_of)

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def run(self, content: bytes, source_name: str, description: Optional[str] = None,
            sheets: Optional[Iterable[str]] = None,
            cancel_event: Optional[threading.Event] = None) -> ImportReport:
        """
        Import a workbook as one batch.

        Raises:
            BatchInProgressError: another batch is active for this dataset
            WorkbookReadError: the bytes are not a readable workbook
            ImportCancelledError: cancel_event was set before commit
        """
        lock = _dataset_lock(self.dataset_id)
        if not lock.acquire(blocking=False):
            logger.warning(f"Rejected import of '{source_name}': dataset '{self.dataset_id}' is busy")
            raise BatchInProgressError(self.dataset_id)

        batch = ImportBatch(dataset_id=self.dataset_id, source_name=source_name, description=description)
        self.last_batch = batch
        logger.info(f"Import batch {batch.id} opened for '{source_name}' (dataset '{self.dataset_id}')")
        try:
            return self._run_batch(batch, content, sheets, cancel_event)
        finally:
            lock.release()

    def _run_batch(self, batch: ImportBatch, content: bytes, selected: Optional[Iterable[str]],
                   cancel_event: Optional[threading.Event]) -> ImportReport:
        try:
            workbook = parse_workbook(content, self.settings)
        except WorkbookReadError as e:
            batch.error = str(e)
            batch.transition(BatchStatus.ROLLED_BACK)
            logger.error(f"Import batch {batch.id} rolled back: {e}")
            raise

        skipped: List[SkippedSheet] = []
        sheets = self._select_sheets(workbook.sheets, selected, skipped)
        summaries: Dict[str, SheetSummary] = {
            sheet.name: SheetSummary(sheet_type=sheet.sheet_type.value) for sheet in sheets
        }

        batch.transition(BatchStatus.PROCESSING)
        changes = {}
        try:
            resolver = EntityResolver(self.store.load_snapshot(), self.settings)
            results = self._map_sheets(sheets, resolver, cancel_event)

            merge = MergeEngine(self.store)
            accepted = [r for r in results if r.mapped is not None]
            self._stage(merge, resolver, accepted)
            batch.rows = self._outcomes(results, resolver, merge.superseded())

            operations = merge.operations()
            self._check_cancelled(cancel_event, batch)
            self.store.begin_transaction()
            for operation in operations:
                if operation.action != ChangeAction.UNCHANGED:
                    self.store.upsert(operation)
            self.store.commit()
            changes = merge.change_counts(operations)
        except FatalStorageError as e:
            self.store.rollback()
            batch.error = str(e)
            batch.transition(BatchStatus.ROLLED_BACK)
            logger.error(f"Import batch {batch.id} rolled back: {e}")
            return self._report(batch, sheets, summaries, skipped, changes)
        except Exception as e:
            self.store.rollback()
            batch.error = batch.error or str(e)
            batch.transition(BatchStatus.ROLLED_BACK)
            logger.error(f"Import batch {batch.id} rolled back: {e}")
            raise

        batch.transition(BatchStatus.COMMITTED)
        report = self._report(batch, sheets, summaries, skipped, changes)
        logger.info(
            f"Import batch {batch.id} committed: {report.accepted} accepted, {report.created} created, "
            f"{report.corrected} corrected, {len(report.rejected)} rejected"
        )
        return report

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _select_sheets(self, parsed: List[ParsedSheet], selected: Optional[Iterable[str]],
                       skipped: List[SkippedSheet]) -> List[ParsedSheet]:
        wanted = set(selected) if selected is not None else None
        if wanted is not None:
            present = {sheet.name for sheet in parsed}
            for name in sorted(wanted - present):
                skipped.append(SkippedSheet(sheet=name, reason="sheet not found in workbook"))

        sheets = []
        for sheet in parsed:
            if wanted is not None and sheet.name not in wanted:
                continue
            if sheet.is_skipped:
                skipped.append(SkippedSheet(sheet=sheet.name, reason=sheet.skip_reason or "unrecognised sheet"))
                continue
            sheets.append(sheet)
        # Masters before facts that reference them
        return sorted(sheets, key=lambda s: get_sheet_spec(s.sheet_type).priority)

    def _map_sheets(self, sheets: List[ParsedSheet], resolver: EntityResolver,
                    cancel_event: Optional[threading.Event]) -> List[_RowResult]:
        workers = min(self.settings.max_sheet_workers, len(sheets))
        if workers <= 1:
            per_sheet = [self._map_sheet(sheet, resolver, cancel_event) for sheet in sheets]
        else:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = [executor.submit(self._map_sheet, sheet, resolver, cancel_event) for sheet in sheets]
                per_sheet = [future.result() for future in futures]
        return [result for results in per_sheet for result in results]

    def _map_sheet(self, sheet: ParsedSheet, resolver: EntityResolver,
                   cancel_event: Optional[threading.Event]) -> List[_RowResult]:
        mapper = SHEET_IMPORTERS[sheet.sheet_type]
        ctx = SheetContext(
            resolver=resolver,
            settings=self.settings,
            sheet_name=sheet.name,
            sheet_type=sheet.sheet_type,
            fy_hint=sheet.fy_hint,
            as_of=self.as_of or date.today(),
        )
        results = []
        for raw in sheet.rows():
            if cancel_event is not None and cancel_event.is_set():
                raise ImportCancelledError(f"Import cancelled while reading sheet '{sheet.name}'")
            try:
                mapped = mapper(raw, ctx)
            except RowError as e:
                logger.warning(f"Rejected '{sheet.name}' row {raw.row_number}: {e}")
                results.append(_RowResult(sheet.name, raw.row_number, error=str(e)))
                continue
            if mapped is not None:
                results.append(_RowResult(sheet.name, raw.row_number, mapped=mapped))
        logger.info(f"Sheet '{sheet.name}': {len(results)} rows mapped")
        return results

    def _stage(self, merge: MergeEngine, resolver: EntityResolver, accepted: List[_RowResult]) -> None:
        """Stage the entities accepted rows created or adjusted, then every accepted row's records in row order."""
        referenced = {
            (resolution.kind, resolution.entity_id)
            for result in accepted
            for resolution in result.mapped.resolutions
        }
        for kind, entity in resolver.created_entities():
            if (kind, entity.id) in referenced:
                merge.stage_entity(kind, entity)
            else:
                logger.info(f"Dropping {kind.value} '{entity.name}': only rejected rows referenced it")
        for kind, patch in resolver.updated_entities():
            if (kind, patch.id) in referenced:
                merge.stage_entity(kind, patch)

        for result in accepted:
            origin = (result.sheet, result.row_number)
            for staged in result.mapped.records:
                merge.stage(staged, origin)

    def _outcomes(self, results: List[_RowResult], resolver: EntityResolver,
                  superseded: Set[Tuple[str, int]]) -> List[ImportRow]:
        rows = []
        claimed: Set[Tuple[Any, int]] = set()
        for result in results:
            if result.mapped is None:
                rows.append(ImportRow(sheet=result.sheet, row_number=result.row_number,
                                      outcome=RowOutcome.REJECTED, reason=result.error))
                continue
            resolutions = result.mapped.resolutions
            created = {
                (r.kind, r.entity_id) for r in resolutions
                if resolver.is_created(r.kind, r.entity_id)
            } - claimed
            claimed |= created
            if (result.sheet, result.row_number) in superseded:
                outcome = RowOutcome.CORRECTED
            elif created:
                outcome = RowOutcome.CREATED
            elif any(r.matched_by == "containment" for r in resolutions):
                outcome = RowOutcome.CORRECTED
            else:
                outcome = RowOutcome.ACCEPTED
            rows.append(ImportRow(sheet=result.sheet, row_number=result.row_number,
                                  entity_id=result.mapped.entity_id, outcome=outcome))
        return rows

    def _check_cancelled(self, cancel_event: Optional[threading.Event], batch: ImportBatch) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise ImportCancelledError(f"Import batch {batch.id} cancelled before commit")

    # ------------------------------------------------------------------
    # Report
    # ------------------------------------------------------------------

    def _report(self, batch: ImportBatch, sheets: List[ParsedSheet], summaries: Dict[str, SheetSummary],
                skipped: List[SkippedSheet], changes) -> ImportReport:
        report = ImportReport(
            batch_id=batch.id,
            status=batch.status,
            source_name=batch.source_name,
            sheets_processed=len(sheets),
            skipped_sheets=skipped,
            sheets=summaries,
            changes=changes,
            error=batch.error,
        )
        for row in batch.rows:
            summary = summaries[row.sheet]
            if row.outcome == RowOutcome.REJECTED:
                summary.rejected += 1
                report.rejected.append(RejectedRow(sheet=row.sheet, row=row.row_number, reason=row.reason or ""))
            elif row.outcome == RowOutcome.CREATED:
                summary.created += 1
                report.created += 1
            elif row.outcome == RowOutcome.CORRECTED:
                summary.corrected += 1
                report.corrected += 1
            else:
                summary.accepted += 1
                report.accepted += 1
        return report
