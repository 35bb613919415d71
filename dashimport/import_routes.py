"""
Workbook Upload Routes

- POST /api/upload/preview    sheet names, detected types, first rows
- POST /api/upload/import     run one import batch, returns the report
- GET  /api/upload/fy-options FY labels available to the dashboard
"""

import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse

from .config import get_import_settings
from .errors import BatchInProgressError, WorkbookReadError
from .import_controller import ImportController
from .schemas import BatchStatus
from .storage import ImportStore, MemoryImportStore, SupabaseImportStore
from .supabase_client import get_supabase

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/upload", tags=["upload"])

MAX_UPLOAD_BYTES = 20 * 1024 * 1024

_memory_store: Optional[MemoryImportStore] = None


# ============================================================================
# Dependencies
# ============================================================================

def get_import_store() -> ImportStore:
    """Supabase when configured, otherwise a process-wide in-memory store."""
    global _memory_store
    settings = get_import_settings()
    supabase = get_supabase()
    if supabase is not None:
        return SupabaseImportStore(supabase, dataset_id=settings.dataset_id)
    if _memory_store is None:
        _memory_store = MemoryImportStore()
    return _memory_store


def get_import_controller(store: ImportStore = Depends(get_import_store)) -> ImportController:
    return ImportController(store, get_import_settings())


# ============================================================================
# Helpers
# ============================================================================

async def _read_upload(file: UploadFile) -> bytes:
    filename = (file.filename or "").lower()
    if not filename.endswith((".xlsx", ".xlsm")):
        raise HTTPException(status_code=400, detail="Upload an Excel workbook (.xlsx)")
    contents = await file.read()
    logger.info(f"Received '{file.filename}', {len(contents)} bytes")
    if not contents:
        raise HTTPException(status_code=400, detail="File is empty")
    if len(contents) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail=f"File too large (max {MAX_UPLOAD_BYTES // (1024 * 1024)} MB)")
    return contents


def _parse_sheet_selection(sheets: Optional[str]) -> Optional[List[str]]:
    if not sheets:
        return None
    try:
        selection = json.loads(sheets)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="sheets must be a JSON list of sheet names")
    if not isinstance(selection, list) or not all(isinstance(name, str) for name in selection):
        raise HTTPException(status_code=400, detail="sheets must be a JSON list of sheet names")
    return selection


# ============================================================================
# Routes
# ============================================================================

@router.post("/preview")
async def preview_workbook(
    file: UploadFile = File(...),
    limit: int = Query(5, ge=1, le=50),
    controller: ImportController = Depends(get_import_controller),
):
    contents = await _read_upload(file)
    try:
        return controller.preview(contents, limit)
    except WorkbookReadError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/import")
async def import_workbook(
    file: UploadFile = File(...),
    source_name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    sheets: Optional[str] = Form(None),
    controller: ImportController = Depends(get_import_controller),
):
    contents = await _read_upload(file)
    selection = _parse_sheet_selection(sheets)
    try:
        report = controller.run(
            contents,
            source_name=source_name or file.filename,
            description=description,
            sheets=selection,
        )
    except BatchInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except WorkbookReadError as e:
        raise HTTPException(status_code=400, detail=str(e))

    status_code = 500 if report.status == BatchStatus.ROLLED_BACK else 200
    return JSONResponse(status_code=status_code, content=report.to_json_dict())


@router.get("/fy-options")
async def get_fy_options(controller: ImportController = Depends(get_import_controller)):
    return {"options": controller.fy_options()}
