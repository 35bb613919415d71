"""
Workbook Parser

Reads an uploaded workbook with pandas, detects each sheet's type from its
name and header signature, and yields raw rows lazily. Only syntactic
normalization happens here; meaning is assigned by the sheet importers.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from io import BytesIO
from typing import Any, Dict, Iterator, List, Optional, Tuple

import pandas as pd

from .cell_values import RawValue, is_blank, normalize_cell
from .config import ImportSettings, get_import_settings
from .errors import SheetDetectionError, WorkbookReadError
from .fiscal_calendar import fy_from_sheet_name
from .sheet_catalog import (
    SHEET_CATALOG,
    SheetSpec,
    SheetType,
    dedupe_headers,
    normalize_header,
    specs_for_name,
)

logger = logging.getLogger(__name__)


@dataclass
class RawRow:
    """One data row: declared column name -> raw cell, with its 1-based sheet row number."""
    sheet: str
    row_number: int
    values: Dict[str, RawValue]

    def get(self, column: str, default: RawValue = None) -> RawValue:
        value = self.values.get(column)
        return default if value is None else value


@dataclass
class ParsedSheet:
    name: str
    sheet_type: Optional[SheetType] = None
    skip_reason: Optional[str] = None
    header_row_number: Optional[int] = None
    headers: List[str] = field(default_factory=list)
    columns: Dict[str, int] = field(default_factory=dict)
    fy_hint: Optional[str] = None
    row_count: int = 0
    _frame: Optional[pd.DataFrame] = field(default=None, repr=False)
    _blank_tokens: Tuple[str, ...] = field(default=(), repr=False)
    _text_columns: Tuple[str, ...] = field(default=(), repr=False)

    @property
    def is_skipped(self) -> bool:
        return self.sheet_type is None

    def rows(self) -> Iterator[RawRow]:
        """Lazily yield data rows below the header; blank and repeated header rows are dropped."""
        if self.is_skipped or self._frame is None:
            return
        frame = self._frame
        header_index = self.header_row_number - 1
        header_values = {
            name: self.headers[position] for name, position in self.columns.items()
        }
        for index in range(header_index + 1, len(frame)):
            values = {
                name: normalize_cell(
                    _cell(frame, index, position), self._blank_tokens, keep_text=name in self._text_columns
                )
                for name, position in self.columns.items()
            }
            if all(is_blank(v) for v in values.values()):
                continue
            if _is_repeated_header(values, header_values):
                continue
            yield RawRow(sheet=self.name, row_number=index + 1, values=values)

    def preview(self, limit: int = 5) -> List[Dict[str, Any]]:
        rows = []
        for raw in self.rows():
            rows.append({"row": raw.row_number, **raw.values})
            if len(rows) >= limit:
                break
        return rows


@dataclass
class ParsedWorkbook:
    sheets: List[ParsedSheet]

    @property
    def sheet_names(self) -> List[str]:
        return [sheet.name for sheet in self.sheets]

    def get(self, name: str) -> Optional[ParsedSheet]:
        for sheet in self.sheets:
            if sheet.name == name:
                return sheet
        return None


# ============================================================================
# Helpers
# ============================================================================

def _cell(frame: pd.DataFrame, row: int, column: int) -> Any:
    if column >= frame.shape[1]:
        return None
    value = frame.iat[row, column]
    if value is None or (not isinstance(value, (list, tuple, dict)) and pd.isna(value)):
        return None
    if isinstance(value, datetime):
        return value
    # numpy scalar
    if hasattr(value, "dtype") and hasattr(value, "item"):
        return value.item()
    return value


def _is_repeated_header(values: Dict[str, RawValue], header_values: Dict[str, str]) -> bool:
    matched = 0
    for name, value in values.items():
        if isinstance(value, str) and normalize_header(value) == header_values.get(name):
            matched += 1
    return matched >= max(2, len(values) // 2)


def _header_row(frame: pd.DataFrame, index: int) -> List[str]:
    return dedupe_headers([normalize_header(_cell(frame, index, c)) for c in range(frame.shape[1])])


def find_header_row(spec: SheetSpec, frame: pd.DataFrame, search_rows: int) -> Optional[Tuple[int, List[str], Dict[str, int]]]:
    """First row within search_rows whose captions contain the sheet's signature columns."""
    for index in range(min(search_rows, len(frame))):
        headers = _header_row(frame, index)
        mapping = spec.map_headers(headers)
        if spec.signature_matches(mapping):
            return index, headers, mapping
    return None


def detect_sheet_type(sheet_name: str, frame: pd.DataFrame, search_rows: int) -> Tuple[SheetSpec, int, List[str], Dict[str, int]]:
    """
    Detect a sheet's type.

    The sheet name is tried first; a name match whose header signature is
    missing is a detection failure. Otherwise the catalogue entry matching the
    most declared columns wins (catalogue order breaks ties).
    """
    named = specs_for_name(sheet_name)
    if named:
        spec = named[0]
        found = find_header_row(spec, frame, search_rows)
        if found is None:
            raise SheetDetectionError(
                f"Sheet name looks like {spec.sheet_type.value} but the header row is missing "
                f"required columns: {', '.join(spec.required_columns)}"
            )
        return (spec,) + found

    best = None
    for spec in SHEET_CATALOG:
        found = find_header_row(spec, frame, search_rows)
        if found is None:
            continue
        if best is None or len(found[2]) > len(best[3]):
            best = (spec,) + found
    if best is None:
        raise SheetDetectionError("Unrecognised sheet: no known header signature found")
    return best


def parse_sheet(sheet_name: str, frame: pd.DataFrame, settings: Optional[ImportSettings] = None) -> ParsedSheet:
    settings = settings or get_import_settings()
    parsed = ParsedSheet(name=sheet_name, fy_hint=fy_from_sheet_name(sheet_name))
    if frame.empty:
        parsed.skip_reason = "Sheet is empty"
        return parsed
    try:
        spec, header_index, headers, mapping = detect_sheet_type(
            sheet_name, frame, settings.header_search_rows
        )
    except SheetDetectionError as e:
        parsed.skip_reason = str(e)
        return parsed

    parsed.sheet_type = spec.sheet_type
    parsed.header_row_number = header_index + 1
    parsed.headers = headers
    parsed.columns = mapping
    parsed.row_count = max(0, len(frame) - header_index - 1)
    parsed._frame = frame
    parsed._blank_tokens = tuple(settings.blank_tokens)
    parsed._text_columns = spec.text_columns
    return parsed


def parse_workbook(content: bytes, settings: Optional[ImportSettings] = None) -> ParsedWorkbook:
    """
    Read every sheet of an .xlsx workbook and detect its type.

    Raises WorkbookReadError if the bytes are not a readable workbook.
    """
    settings = settings or get_import_settings()
    try:
        frames = pd.read_excel(
            BytesIO(content), sheet_name=None, header=None, dtype=object, engine="openpyxl"
        )
    except Exception as e:
        raise WorkbookReadError(f"Could not read workbook: {e}") from e

    sheets = []
    for sheet_name, frame in frames.items():
        parsed = parse_sheet(str(sheet_name), frame, settings)
        if parsed.is_skipped:
            logger.warning(f"Skipping sheet '{parsed.name}': {parsed.skip_reason}")
        else:
            logger.info(
                f"Sheet '{parsed.name}' detected as {parsed.sheet_type.value} "
                f"(header row {parsed.header_row_number}, {parsed.row_count} rows)"
            )
        sheets.append(parsed)
    return ParsedWorkbook(sheets=sheets)
