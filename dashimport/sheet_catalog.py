"""
Sheet Catalogue

The fixed set of workbook sheet types the import engine understands.
Each entry carries the sheet-name patterns used as a hint, the declared
columns with their header aliases, and which columns form the required
header signature.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Pattern, Sequence, Tuple

from .fiscal_calendar import MONTH_LABELS


class SheetType(str, Enum):
    JOB_STATUS = "Job Status"
    STAFF_SOT = "Staff SOT"
    PIPELINE_REVENUE = "Pipeline Revenue"
    GROSS_PROFIT = "Gross Profit"
    PERSONAL_HOURS = "Personal Hours"
    PROJECT_HOURS = "Project Hours"
    CX_MASTER_LIST = "CX Master List"
    RESOURCE_COST = "Project Resource Cost"
    RESOURCE_COST_AF = "Project Resource Cost A&F"
    OPEN_OPPORTUNITIES = "Open Opportunities"


# ============================================================================
# Header normalization
# ============================================================================

MONTH_KEYS = [label.lower() for label in MONTH_LABELS]

_MONTH_WORDS: Dict[str, str] = {}
for _index, _key in enumerate(MONTH_KEYS):
    _full = date(2000, (_index + 6) % 12 + 1, 1).strftime("%B").lower()
    _MONTH_WORDS[_key] = _key
    _MONTH_WORDS[_full] = _key
    _MONTH_WORDS[f"m{_index + 1}"] = _key
_MONTH_WORDS["sept"] = "sep"

_DUPLICATE_SUFFIX = re.compile(r"\s*\(\d+\)$")


def normalize_header(value: Any) -> str:
    """
    Canonical header text: lowercase, single-spaced.

    Month captions are folded to "jul".."jun" ("July", "Jul-25", "M1" and a
    date cell all become "jul"); a caption with one month word and other
    words keeps the words first ("Jul Revenue" -> "revenue jul").
    """
    if value is None:
        return ""
    if isinstance(value, (datetime, date)):
        return MONTH_KEYS[(value.month - 7) % 12]
    text = re.sub(r"\s+", " ", str(value).strip().lower()).rstrip(":*").strip()
    suffix = ""
    match = _DUPLICATE_SUFFIX.search(text)
    if match:
        suffix = f" {match.group(0).strip()}"
        text = text[:match.start()].strip()
    parts = [p for p in re.split(r"[\s\-_']+", text) if p]
    months = [p for p in parts if p in _MONTH_WORDS]
    if len(months) == 1:
        rest = [p for p in parts if p not in _MONTH_WORDS and not p.isdigit()]
        month = _MONTH_WORDS[months[0]]
        text = f"{' '.join(rest)} {month}" if rest else month
    return text + suffix


def dedupe_headers(headers: Sequence[str]) -> List[str]:
    """Suffix repeated captions: ["name", "name"] -> ["name", "name (2)"]."""
    seen: Dict[str, int] = {}
    result = []
    for header in headers:
        if not header:
            result.append("")
            continue
        count = seen.get(header, 0) + 1
        seen[header] = count
        result.append(header if count == 1 else f"{header} ({count})")
    return result


# ============================================================================
# Catalogue entries
# ============================================================================

@dataclass(frozen=True)
class ColumnSpec:
    name: str
    aliases: Tuple[str, ...]
    required: bool = False
    # Keep the cell text as written, no number or date parsing
    text: bool = False

    def normalized_aliases(self) -> Tuple[str, ...]:
        return tuple(normalize_header(alias) for alias in self.aliases)


@dataclass(frozen=True)
class SheetSpec:
    sheet_type: SheetType
    name_patterns: Tuple[Pattern, ...]
    columns: Tuple[ColumnSpec, ...]
    priority: int
    header_lookup: Dict[str, str] = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self):
        for column in self.columns:
            for alias in column.normalized_aliases():
                self.header_lookup.setdefault(alias, column.name)

    def matches_name(self, sheet_name: str) -> bool:
        name = sheet_name.strip()
        return any(pattern.search(name) for pattern in self.name_patterns)

    @property
    def required_columns(self) -> List[str]:
        return [c.name for c in self.columns if c.required]

    @property
    def text_columns(self) -> Tuple[str, ...]:
        return tuple(c.name for c in self.columns if c.text)

    def map_headers(self, headers: Sequence[str]) -> Dict[str, int]:
        """Declared column name -> position for the first matching caption."""
        mapping: Dict[str, int] = {}
        for position, header in enumerate(headers):
            column = self.header_lookup.get(header)
            if column and column not in mapping:
                mapping[column] = position
        return mapping

    def signature_matches(self, mapping: Dict[str, int]) -> bool:
        return all(name in mapping for name in self.required_columns)


# Identifier columns are read as text whatever sheet they appear on
TEXT_COLUMNS = frozenset({"employee_code", "project_code", "client_code", "source_id", "jid"})


def _col(name: str, *aliases: str, required: bool = False) -> ColumnSpec:
    return ColumnSpec(
        name=name,
        aliases=aliases or (name.replace("_", " "),),
        required=required,
        text=name in TEXT_COLUMNS,
    )


def _month_columns(prefix: str, caption: str = "", suffix: str = "", first_required: bool = False) -> Tuple[ColumnSpec, ...]:
    columns = []
    for index, month in enumerate(MONTH_KEYS, start=1):
        alias = f"{caption} {month}".strip() + suffix
        columns.append(ColumnSpec(
            name=f"{prefix}_m{index}",
            aliases=(alias,),
            required=first_required and index == 1,
        ))
    return tuple(columns)


def _names(*patterns: str) -> Tuple[Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


def monthly_column_names(prefix: str) -> List[str]:
    return [f"{prefix}_m{index}" for index in range(1, 13)]


SHEET_CATALOG: Tuple[SheetSpec, ...] = (
    SheetSpec(
        sheet_type=SheetType.JOB_STATUS,
        name_patterns=_names(r"^job status$"),
        priority=0,
        columns=(
            _col("ad_status", "status", "ad status", "project status", required=True),
            _col("vat", "vat", "vat category"),
            _col("client_code", "client code", "client", required=True),
            _col("project_name", "project name", "project", required=True),
            _col("project_code", "project code", "job code", "job number"),
            _col("client_manager", "client manager"),
            _col("engagement_manager", "engagement manager"),
            _col("start_date", "start date", "start"),
            _col("end_date", "end date", "end"),
            _col("billing_category", "billing category", "billing type"),
            _col("work_type", "work type"),
            _col("work_order_amount", "work order amount", "work order", "contract value"),
            _col("actual_amount", "actual amount", "actuals", "actual"),
            _col("balance_amount", "balance amount", "balance"),
            _col("fy", "fy", "fy year", "financial year"),
        ) + _month_columns("revenue", "revenue") + _month_columns("cost", "cost") + _month_columns("profit", "profit"),
    ),
    SheetSpec(
        sheet_type=SheetType.STAFF_SOT,
        name_patterns=_names(r"^staff sot$"),
        priority=1,
        columns=(
            _col("name", "name", "employee name", "staff name", required=True),
            _col("employee_code", "employee code", "employee id", "staff id"),
            _col("cost_band", "cost band", "cost band level", required=True),
            _col("staff_type", "staff type", "employment type", required=True),
            _col("payroll_tax", "payroll tax"),
            _col("base_cost", "base cost"),
            _col("status", "status"),
            _col("gross_cost", "gross cost"),
            _col("jid", "jid"),
            _col("schedule_start", "schedule start"),
            _col("schedule_end", "schedule end"),
            _col("team", "team"),
            _col("location", "location"),
            _col("role", "role", "position", "title"),
            _col("certifications", "certifications", "certification", "clearances"),
        ),
    ),
    SheetSpec(
        sheet_type=SheetType.PIPELINE_REVENUE,
        name_patterns=_names(r"^resource plan opps(\s+fy\s*\d{2,4}\s*-\s*\d{2,4})?$"),
        priority=2,
        columns=(
            _col("name", "opportunity", "opportunity name", "name", required=True),
            _col("classification", "classification", "class", "phase", required=True),
            _col("source_id", "opportunity id", "id"),
            _col("vat", "vat"),
            _col("billing_type", "billing type"),
            _col("partners", "partner", "partners"),
            _col("work_type", "work type"),
            _col("status", "status"),
        ) + _month_columns("revenue", first_required=True),
    ),
    SheetSpec(
        sheet_type=SheetType.GROSS_PROFIT,
        name_patterns=_names(r"^gross\s*profit"),
        priority=3,
        columns=(
            _col("name", "opportunity", "opportunity name", "name", required=True),
            _col("classification", "classification", "class", "phase", required=True),
            _col("source_id", "opportunity id", "id"),
            _col("vat", "vat"),
        ) + _month_columns("gp", first_required=True),
    ),
    SheetSpec(
        sheet_type=SheetType.PERSONAL_HOURS,
        name_patterns=_names(r"^personal hours"),
        priority=4,
        columns=(
            _col("week_ending", "week ending", "week end", "weekending", required=True),
            _col("hours", "hours", "hours worked", required=True),
            _col("sale_value", "sale value", "sell value"),
            _col("cost_value", "cost value"),
            _col("project", "project", "project name", "project description", required=True),
            _col("first_name", "first name"),
            _col("last_name", "last name"),
            _col("employee_name", "employee", "employee name", "resource name", "name"),
            _col("employee_code", "employee code", "employee id"),
            _col("role", "role"),
            _col("activity_type", "activity type", "activity"),
            _col("entry_type", "entry type"),
        ),
    ),
    SheetSpec(
        sheet_type=SheetType.PROJECT_HOURS,
        name_patterns=_names(r"^project hours$"),
        priority=5,
        columns=(
            _col("hours", "hours", "total hours", required=True),
            _col("revenue", "revenue", required=True),
            _col("cost", "cost", "gross cost", required=True),
            _col("project", "project", "project name", "project description", required=True),
            _col("project_code", "project code"),
            _col("period", "period", "month", "date"),
            _col("entry_type", "entry type"),
        ),
    ),
    SheetSpec(
        sheet_type=SheetType.CX_MASTER_LIST,
        name_patterns=_names(r"^cx master list$"),
        priority=6,
        columns=(
            _col("engagement_name", "engagement name", "engagement", required=True),
            _col("check_point_date", "check point date", "checkpoint date", required=True),
            _col("rating", "cx rating", "rating", required=True),
            _col("resource_name", "resource name", "resource"),
            _col("client_manager", "client manager", "is client manager"),
            _col("delivery_manager", "delivery manager", "is delivery manager"),
            _col("rationale", "rationale", "comment"),
        ),
    ),
    SheetSpec(
        sheet_type=SheetType.RESOURCE_COST,
        name_patterns=_names(r"^project resource cost$"),
        priority=7,
        columns=(
            _col("name", "name", "employee name", required=True),
            _col("staff_type", "staff type", required=True),
        ) + _month_columns("cost", first_required=True),
    ),
    SheetSpec(
        sheet_type=SheetType.RESOURCE_COST_AF,
        name_patterns=_names(r"^project resource cost a\s*&\s*f$"),
        priority=8,
        columns=(
            _col("name", "name", "employee name", required=True),
            _col("staff_type", "staff type", required=True),
            _col("dvf_name", "name (2)", "employee name (2)"),
            _col("dvf_staff_type", "staff type (2)"),
        ) + _month_columns("cost", first_required=True) + _month_columns("dvf_cost", suffix=" (2)"),
    ),
    SheetSpec(
        sheet_type=SheetType.OPEN_OPPORTUNITIES,
        name_patterns=_names(r"^query$", r"^open op"),
        priority=9,
        columns=(
            _col("name", "name", "title", "opportunity", required=True),
            _col("phase", "phase", "sales phase", required=True),
            _col("item_type", "item type", required=True),
            _col("source_id", "id", "opportunity id"),
            _col("due_date", "due date"),
            _col("value", "value", "total value", "opportunity value"),
            _col("margin", "margin", "margin %", "margin percent"),
            _col("work_type", "work type"),
            _col("start_date", "start date"),
            _col("expiry_date", "expiry date", "expiry"),
            _col("vat", "vat"),
            _col("status", "status"),
            _col("comment", "comment", "comments"),
            _col("cas_lead", "cas lead"),
            _col("csd_lead", "csd lead"),
            _col("category", "category"),
            _col("partner", "partner", "partners"),
            _col("client_contact", "client contact"),
            _col("client_code", "client code"),
            _col("billing_type", "billing type"),
        ),
    ),
)

CATALOG_BY_TYPE: Dict[SheetType, SheetSpec] = {spec.sheet_type: spec for spec in SHEET_CATALOG}


def get_sheet_spec(sheet_type: SheetType) -> SheetSpec:
    return CATALOG_BY_TYPE[sheet_type]


def specs_for_name(sheet_name: str) -> List[SheetSpec]:
    return [spec for spec in SHEET_CATALOG if spec.matches_name(sheet_name)]


def find_spec_by_name(sheet_name: str) -> Optional[SheetSpec]:
    matches = specs_for_name(sheet_name)
    return matches[0] if matches else None
