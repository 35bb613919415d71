"""
Canonical Records and Import Report Schemas

Pydantic models for the entities the import engine writes, the transient
import batch, and the JSON report returned to the caller.
"""

from enum import Enum
from decimal import Decimal
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Type
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from .errors import BatchStateError


# ============================================================================
# Enums
# ============================================================================

class EntityKind(str, Enum):
    """Target collections; the value is the table name."""
    EMPLOYEE = "employees"
    PROJECT = "projects"
    OPPORTUNITY = "pipeline_opportunities"
    TIMESHEET = "timesheets"
    COST = "cost_records"
    MILESTONE = "milestones"
    REFERENCE = "reference_data"
    CX_RATING = "cx_ratings"
    RESOURCE_COST = "resource_costs"


class StaffType(str, Enum):
    PERMANENT = "Permanent"
    CONTRACTOR = "Contractor"
    OTHER = "Other"

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["StaffType"]:
        if raw is None:
            return None
        text = raw.strip().lower()
        if not text:
            return None
        if text.startswith("perm") or text in ("employee", "fte", "full time", "part time"):
            return cls.PERMANENT
        if text.startswith("contract") or text in ("labour hire", "sub contractor", "subcontractor"):
            return cls.CONTRACTOR
        return cls.OTHER


class EmployeeStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class Classification(str, Enum):
    """Pipeline phase, ordered A < Q < DF < DVF < S < C."""
    A = "A"
    Q = "Q"
    DF = "DF"
    DVF = "DVF"
    S = "S"
    C = "C"

    @property
    def win_probability(self) -> Decimal:
        return WIN_PROBABILITY[self]

    @property
    def rank(self) -> int:
        return CLASSIFICATION_ORDER.index(self)

    @classmethod
    def parse(cls, raw: str) -> "Classification":
        """Accept a bare code ("DVF") or a phase label ("4.DVF - Shortlisted")."""
        text = raw.strip()
        label = PHASE_LABELS.get(text.lower())
        if label is not None:
            return label
        try:
            return cls(text.upper())
        except ValueError:
            raise ValueError(f"Unknown pipeline classification '{raw}'")


CLASSIFICATION_ORDER = [
    Classification.A,
    Classification.Q,
    Classification.DF,
    Classification.DVF,
    Classification.S,
    Classification.C,
]

WIN_PROBABILITY = {
    Classification.A: Decimal("0.05"),
    Classification.Q: Decimal("0.15"),
    Classification.DF: Decimal("0.30"),
    Classification.DVF: Decimal("0.50"),
    Classification.S: Decimal("0.80"),
    Classification.C: Decimal("1.00"),
}

PHASE_LABELS = {
    "1.a - activity": Classification.A,
    "2.q - qualified": Classification.Q,
    "3.df - submitted": Classification.DF,
    "4.dvf - shortlisted": Classification.DVF,
    "5.s - selected": Classification.S,
}


class CostPhase(str, Enum):
    TOTAL = "Total"
    PHASE_C = "Phase C"
    PHASE_DVF = "Phase DVF"


class RowOutcome(str, Enum):
    ACCEPTED = "accepted"
    CREATED = "created"
    CORRECTED = "corrected"
    REJECTED = "rejected"


class BatchStatus(str, Enum):
    OPEN = "open"
    PROCESSING = "processing"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


# ============================================================================
# Canonical entities
# ============================================================================

class Employee(BaseModel):
    id: Optional[int] = None
    name: str
    name_key: str
    employee_code: Optional[str] = None
    staff_type: StaffType = StaffType.OTHER
    status: EmployeeStatus = EmployeeStatus.ACTIVE
    role: Optional[str] = None
    team: Optional[str] = None
    location: Optional[str] = None
    certifications: List[str] = Field(default_factory=list)
    cost_band: Optional[str] = None
    base_cost: Optional[Decimal] = None
    gross_cost: Optional[Decimal] = None
    payroll_tax: Optional[bool] = None
    jid: Optional[str] = None
    schedule_start: Optional[date] = None
    schedule_end: Optional[date] = None


class Project(BaseModel):
    id: Optional[int] = None
    name: str
    name_key: str
    project_code: Optional[str] = None
    client_code: Optional[str] = None
    status: ProjectStatus = ProjectStatus.ACTIVE
    is_internal: bool = False
    vat: Optional[str] = None
    ad_status: Optional[str] = None
    billing_category: Optional[str] = None
    work_type: Optional[str] = None
    client_manager: Optional[str] = None
    engagement_manager: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    work_order_amount: Optional[Decimal] = None
    actual_amount: Optional[Decimal] = None
    balance_amount: Optional[Decimal] = None


class PipelineOpportunity(BaseModel):
    id: Optional[int] = None
    source_id: Optional[str] = None
    name: str
    name_key: str
    classification: Classification = Classification.Q
    vat: Optional[str] = None
    fy_year: str
    billing_type: Optional[str] = None
    value: Optional[Decimal] = None
    margin_percent: Optional[Decimal] = None
    partners: Optional[List[str]] = None
    work_type: Optional[str] = None
    status: Optional[str] = None
    monthly_revenue: Optional[List[Optional[Decimal]]] = None
    monthly_gross_profit: Optional[List[Optional[Decimal]]] = None
    due_date: Optional[date] = None
    start_date: Optional[date] = None
    expiry_date: Optional[date] = None
    comment: Optional[str] = None
    client_code: Optional[str] = None
    client_contact: Optional[str] = None
    category: Optional[str] = None
    cas_lead: Optional[str] = None
    csd_lead: Optional[str] = None


class TimesheetEntry(BaseModel):
    id: Optional[int] = None
    employee_id: int
    project_id: int
    week_ending: date
    hours_worked: Decimal
    billable: bool = True
    cost_value: Optional[Decimal] = None
    sale_value: Optional[Decimal] = None
    fy_year: str
    fy_month: int
    activity_type: Optional[str] = None
    source: str = "excel-import"


class CostRecord(BaseModel):
    id: Optional[int] = None
    project_id: int
    fy_year: str
    month: Optional[int] = None
    category: str
    revenue: Optional[Decimal] = None
    cost: Optional[Decimal] = None
    profit: Optional[Decimal] = None
    hours: Optional[Decimal] = None


class Milestone(BaseModel):
    id: Optional[int] = None
    project_id: int
    name: str
    due_date: Optional[date] = None
    status: Optional[str] = None
    amount: Optional[Decimal] = None


class ReferenceData(BaseModel):
    id: Optional[int] = None
    category: str
    code: str
    label: Optional[str] = None


class CxRating(BaseModel):
    id: Optional[int] = None
    project_id: int
    employee_id: Optional[int] = None
    engagement_name: str
    check_point_date: Optional[date] = None
    rating: Optional[Decimal] = None
    resource_name: Optional[str] = None
    is_client_manager: bool = False
    is_delivery_manager: bool = False
    rationale: Optional[str] = None
    fy_year: Optional[str] = None


class ResourceCost(BaseModel):
    id: Optional[int] = None
    employee_id: int
    employee_name: str
    staff_type: Optional[str] = None
    cost_phase: CostPhase = CostPhase.TOTAL
    fy_year: str
    monthly_costs: List[Decimal]
    total_cost: Decimal
    source: str


MODEL_FOR_KIND: Dict[EntityKind, Type[BaseModel]] = {
    EntityKind.EMPLOYEE: Employee,
    EntityKind.PROJECT: Project,
    EntityKind.OPPORTUNITY: PipelineOpportunity,
    EntityKind.TIMESHEET: TimesheetEntry,
    EntityKind.COST: CostRecord,
    EntityKind.MILESTONE: Milestone,
    EntityKind.REFERENCE: ReferenceData,
    EntityKind.CX_RATING: CxRating,
    EntityKind.RESOURCE_COST: ResourceCost,
}


# ============================================================================
# Import batch
# ============================================================================

class ImportRow(BaseModel):
    """Outcome of one source row."""
    sheet: str
    row_number: int
    entity_id: Optional[int] = None
    outcome: RowOutcome
    reason: Optional[str] = None


_ALLOWED_TRANSITIONS = {
    BatchStatus.OPEN: {BatchStatus.PROCESSING, BatchStatus.ROLLED_BACK},
    BatchStatus.PROCESSING: {BatchStatus.COMMITTED, BatchStatus.ROLLED_BACK},
    BatchStatus.COMMITTED: set(),
    BatchStatus.ROLLED_BACK: set(),
}


class ImportBatch(BaseModel):
    """One upload: Open -> Processing -> Committed | RolledBack."""
    id: str = Field(default_factory=lambda: str(uuid4()))
    dataset_id: str
    source_name: str
    description: Optional[str] = None
    status: BatchStatus = BatchStatus.OPEN
    rows: List[ImportRow] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (BatchStatus.COMMITTED, BatchStatus.ROLLED_BACK)

    def transition(self, target: BatchStatus) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.status]:
            raise BatchStateError(
                f"Batch {self.id} cannot move from {self.status.value} to {target.value}"
            )
        self.status = target
        if self.is_terminal:
            self.finished_at = datetime.now()


# ============================================================================
# Report (camelCase on the wire, no internal ids)
# ============================================================================

class _ReportModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RejectedRow(_ReportModel):
    sheet: str
    row: int
    reason: str


class SkippedSheet(_ReportModel):
    sheet: str
    reason: str


class SheetSummary(_ReportModel):
    sheet_type: Optional[str] = Field(default=None, alias="sheetType")
    accepted: int = 0
    created: int = 0
    corrected: int = 0
    rejected: int = 0


class ChangeCounts(_ReportModel):
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0


class ImportReport(_ReportModel):
    batch_id: str = Field(alias="batchId")
    status: BatchStatus
    source_name: str = Field(alias="sourceName")
    sheets_processed: int = Field(default=0, alias="sheetsProcessed")
    accepted: int = 0
    created: int = 0
    corrected: int = 0
    rejected: List[RejectedRow] = Field(default_factory=list)
    skipped_sheets: List[SkippedSheet] = Field(default_factory=list, alias="skippedSheets")
    sheets: Dict[str, SheetSummary] = Field(default_factory=dict)
    changes: Dict[str, ChangeCounts] = Field(default_factory=dict)
    error: Optional[str] = None

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class CanonicalSnapshot(BaseModel):
    """Employees and projects as persisted when a batch starts."""
    employees: List[Employee] = Field(default_factory=list)
    projects: List[Project] = Field(default_factory=list)
