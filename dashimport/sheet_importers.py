"""
Sheet Importers

One row mapper per sheet type. A mapper turns a RawRow into typed, resolved
records ready for the merge engine, or raises a RowError when the row has to
be rejected. Returning None means the row is not a data row for this sheet
(e.g. a document entry in an Open Opportunities export) and is ignored.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from .cell_values import (
    as_date,
    as_decimal,
    as_decimal_or_zero,
    as_flag,
    as_text,
    clean_vat,
    split_multi_value,
)
from .config import ImportSettings
from .entity_resolver import EntityResolver, Resolution, normalize_name
from .errors import ParseError, UnresolvedReferenceError
from .fiscal_calendar import current_fy, fiscal_year, fy_month, normalize_fy_label
from .merge_engine import StagedRecord
from .schemas import (
    Classification,
    CostPhase,
    CostRecord,
    CxRating,
    Employee,
    EmployeeStatus,
    EntityKind,
    PipelineOpportunity,
    Project,
    ProjectStatus,
    ReferenceData,
    ResourceCost,
    StaffType,
    TimesheetEntry,
)
from .sheet_catalog import SheetType, monthly_column_names
from .workbook_parser import RawRow

logger = logging.getLogger(__name__)

INACTIVE_STATUSES = {"inactive", "terminated", "resigned", "left", "ceased", "finished"}


@dataclass
class SheetContext:
    resolver: EntityResolver
    settings: ImportSettings
    sheet_name: str
    sheet_type: SheetType
    fy_hint: Optional[str] = None
    as_of: date = field(default_factory=date.today)

    @property
    def default_fy(self) -> str:
        return self.fy_hint or current_fy(self.as_of)


@dataclass
class MappedRow:
    records: List[StagedRecord] = field(default_factory=list)
    resolutions: List[Resolution] = field(default_factory=list)
    entity_id: Optional[int] = None

    def add(self, kind: EntityKind, record: Any, primary: bool = True) -> None:
        self.records.append(StagedRecord(kind=kind, record=record, primary=primary))

    def resolved(self, resolution: Resolution) -> int:
        self.resolutions.append(resolution)
        return resolution.entity_id


def _present(**fields: Any) -> Dict[str, Any]:
    """Only the fields the row actually supplied."""
    return {name: value for name, value in fields.items() if value is not None}


def _reference(category: str, code: Optional[str]) -> Optional[ReferenceData]:
    if not code:
        return None
    return ReferenceData(category=category, code=code, label=code)


def _add_references(mapped: MappedRow, *references: Optional[ReferenceData]) -> None:
    for reference in references:
        if reference is not None:
            mapped.add(EntityKind.REFERENCE, reference, primary=False)


def _required_text(row: RawRow, column: str, entity: str) -> str:
    text = as_text(row.get(column))
    if not text:
        raise UnresolvedReferenceError(entity)
    return text


def _classification(row: RawRow, column: str) -> Optional[Classification]:
    raw = as_text(row.get(column))
    if raw is None:
        return None
    try:
        return Classification.parse(raw)
    except ValueError as e:
        raise ParseError(str(e), column)


def _monthly(row: RawRow, prefix: str) -> List[Optional[Decimal]]:
    return [as_decimal(row.get(column), column) for column in monthly_column_names(prefix)]


def _is_reason_row(row: RawRow, ctx: SheetContext, project_text: Optional[str]) -> bool:
    entry_type = as_text(row.get("entry_type"))
    if entry_type and ctx.resolver.is_reason_reference(entry_type):
        return True
    return ctx.resolver.is_reason_reference(project_text)


# ============================================================================
# Job Status
# ============================================================================

def map_job_status_row(row: RawRow, ctx: SheetContext) -> MappedRow:
    mapped = MappedRow()
    name = _required_text(row, "project_name", "project")
    project_id = mapped.resolved(ctx.resolver.resolve_project(name, as_text(row.get("project_code"))))
    mapped.entity_id = project_id
    project = ctx.resolver.get_project(project_id)

    ad_status = as_text(row.get("ad_status"))
    status = None
    if ad_status:
        status = ProjectStatus.COMPLETED if "closed" in ad_status.lower() else ProjectStatus.ACTIVE
    start_date = as_date(row.get("start_date"), "start_date")
    vat = clean_vat(row.get("vat"))

    mapped.add(EntityKind.PROJECT, Project(
        id=project_id,
        name=project.name,
        name_key=project.name_key,
        **_present(
            client_code=as_text(row.get("client_code")),
            vat=vat,
            ad_status=ad_status,
            status=status,
            billing_category=as_text(row.get("billing_category")),
            work_type=as_text(row.get("work_type")),
            client_manager=as_text(row.get("client_manager")),
            engagement_manager=as_text(row.get("engagement_manager")),
            start_date=start_date,
            end_date=as_date(row.get("end_date"), "end_date"),
            work_order_amount=as_decimal(row.get("work_order_amount"), "work_order_amount"),
            actual_amount=as_decimal(row.get("actual_amount"), "actual_amount"),
            balance_amount=as_decimal(row.get("balance_amount"), "balance_amount"),
        ),
    ))

    fy = normalize_fy_label(as_text(row.get("fy")))
    if fy is None:
        fy = fiscal_year(start_date) if start_date else ctx.default_fy

    revenue, cost, profit = _monthly(row, "revenue"), _monthly(row, "cost"), _monthly(row, "profit")
    for index in range(12):
        values = (revenue[index], cost[index], profit[index])
        if all(v is None or v == 0 for v in values):
            continue
        mapped.add(EntityKind.COST, CostRecord(
            project_id=project_id,
            fy_year=fy,
            month=index + 1,
            category="job_status",
            revenue=revenue[index],
            cost=cost[index],
            profit=profit[index],
        ))

    _add_references(mapped, _reference("vat", vat))
    return mapped


# ============================================================================
# Staff SOT
# ============================================================================

def _employee_status(raw: Optional[str]) -> Optional[EmployeeStatus]:
    if raw is None:
        return None
    return EmployeeStatus.INACTIVE if raw.strip().lower() in INACTIVE_STATUSES else EmployeeStatus.ACTIVE


def map_staff_row(row: RawRow, ctx: SheetContext) -> MappedRow:
    mapped = MappedRow()
    name = _required_text(row, "name", "employee")
    code = as_text(row.get("employee_code"))
    status = _employee_status(as_text(row.get("status")))
    # A row that does not assert an active status may refer to a former employee
    employee_id = mapped.resolved(ctx.resolver.resolve_employee(
        name, code, include_inactive=status != EmployeeStatus.ACTIVE
    ))
    mapped.entity_id = employee_id
    employee = ctx.resolver.get_employee(employee_id)

    payroll_raw = row.get("payroll_tax")
    team = as_text(row.get("team"))
    location = as_text(row.get("location"))
    cost_band = as_text(row.get("cost_band"))

    mapped.add(EntityKind.EMPLOYEE, Employee(
        id=employee_id,
        name=employee.name,
        name_key=employee.name_key,
        **_present(
            employee_code=code,
            cost_band=cost_band,
            staff_type=StaffType.parse(as_text(row.get("staff_type"))),
            payroll_tax=as_flag(payroll_raw) if as_text(payroll_raw) else None,
            base_cost=as_decimal(row.get("base_cost"), "base_cost"),
            gross_cost=as_decimal(row.get("gross_cost"), "gross_cost"),
            status=status,
            jid=as_text(row.get("jid")),
            schedule_start=as_date(row.get("schedule_start"), "schedule_start"),
            schedule_end=as_date(row.get("schedule_end"), "schedule_end"),
            team=team,
            location=location,
            role=as_text(row.get("role")),
            certifications=split_multi_value(row.get("certifications")),
        ),
    ))
    _add_references(
        mapped,
        _reference("team", team),
        _reference("location", location),
        _reference("cost_band", cost_band),
    )
    return mapped


# ============================================================================
# Pipeline Revenue / Gross Profit
# ============================================================================

def _pipeline_row(row: RawRow, ctx: SheetContext, monthly_field: str, prefix: str) -> MappedRow:
    mapped = MappedRow()
    name = as_text(row.get("name"))
    if not name:
        raise ParseError("opportunity name is blank", "name")
    vat = clean_vat(row.get("vat"))

    mapped.add(EntityKind.OPPORTUNITY, PipelineOpportunity(
        name=name,
        name_key=normalize_name(name),
        fy_year=ctx.default_fy,
        **_present(
            source_id=as_text(row.get("source_id")),
            classification=_classification(row, "classification"),
            vat=vat,
            billing_type=as_text(row.get("billing_type")),
            partners=split_multi_value(row.get("partners")),
            work_type=as_text(row.get("work_type")),
            status=as_text(row.get("status")),
        ),
        **{monthly_field: _monthly(row, prefix)},
    ))
    _add_references(mapped, _reference("vat", vat))
    return mapped


def map_pipeline_revenue_row(row: RawRow, ctx: SheetContext) -> MappedRow:
    return _pipeline_row(row, ctx, "monthly_revenue", "revenue")


def map_gross_profit_row(row: RawRow, ctx: SheetContext) -> MappedRow:
    return _pipeline_row(row, ctx, "monthly_gross_profit", "gp")


# ============================================================================
# Personal Hours / Project Hours
# ============================================================================

def _employee_name(row: RawRow) -> Optional[str]:
    first = as_text(row.get("first_name"))
    last = as_text(row.get("last_name"))
    if first or last:
        return " ".join(part for part in (first, last) if part)
    return as_text(row.get("employee_name"))


def map_personal_hours_row(row: RawRow, ctx: SheetContext) -> MappedRow:
    mapped = MappedRow()
    week_ending = as_date(row.get("week_ending"), "week_ending")
    if week_ending is None:
        raise ParseError("week ending is blank", "week_ending")
    hours = as_decimal(row.get("hours"), "hours")
    if hours is None:
        raise ParseError("hours is blank", "hours")

    employee_id = mapped.resolved(ctx.resolver.resolve_employee(
        _employee_name(row),
        as_text(row.get("employee_code")),
        defaults=_present(role=as_text(row.get("role"))),
    ))

    project_text = as_text(row.get("project"))
    is_reason = _is_reason_row(row, ctx, project_text)
    if not project_text and not is_reason:
        raise UnresolvedReferenceError("project")
    project_id = mapped.resolved(ctx.resolver.resolve_project(project_text, is_reason=is_reason))

    activity = as_text(row.get("activity_type"))
    mapped.entity_id = employee_id
    mapped.add(EntityKind.TIMESHEET, TimesheetEntry(
        employee_id=employee_id,
        project_id=project_id,
        week_ending=week_ending,
        hours_worked=hours,
        billable=activity is None or activity.lower() != "leave",
        cost_value=as_decimal(row.get("cost_value"), "cost_value"),
        sale_value=as_decimal(row.get("sale_value"), "sale_value"),
        fy_year=fiscal_year(week_ending),
        fy_month=fy_month(week_ending),
        activity_type=activity,
    ))
    return mapped


def map_project_hours_row(row: RawRow, ctx: SheetContext) -> MappedRow:
    mapped = MappedRow()
    project_text = as_text(row.get("project"))
    is_reason = _is_reason_row(row, ctx, project_text)
    if not project_text and not is_reason:
        raise UnresolvedReferenceError("project")
    project_id = mapped.resolved(ctx.resolver.resolve_project(
        project_text, as_text(row.get("project_code")), is_reason=is_reason
    ))
    mapped.entity_id = project_id

    period = as_date(row.get("period"), "period")
    revenue = as_decimal(row.get("revenue"), "revenue")
    cost = as_decimal(row.get("cost"), "cost")
    profit = None
    if revenue is not None or cost is not None:
        profit = (revenue or Decimal("0")) - (cost or Decimal("0"))

    mapped.add(EntityKind.COST, CostRecord(
        project_id=project_id,
        fy_year=fiscal_year(period) if period else ctx.default_fy,
        month=fy_month(period) if period else None,
        category="project_hours",
        revenue=revenue,
        cost=cost,
        profit=profit,
        hours=as_decimal(row.get("hours"), "hours"),
    ))
    return mapped


# ============================================================================
# CX Master List
# ============================================================================

def map_cx_row(row: RawRow, ctx: SheetContext) -> MappedRow:
    mapped = MappedRow()
    engagement = as_text(row.get("engagement_name"))
    if not engagement:
        raise UnresolvedReferenceError("project", "engagement name is blank")
    project_id = mapped.resolved(ctx.resolver.resolve_project(engagement, allow_base_code=True))
    mapped.entity_id = project_id

    resource_name = as_text(row.get("resource_name"))
    employee_id = None
    if resource_name:
        employee_id = mapped.resolved(ctx.resolver.resolve_employee(resource_name))

    check_point = as_date(row.get("check_point_date"), "check_point_date")
    mapped.add(EntityKind.CX_RATING, CxRating(
        project_id=project_id,
        employee_id=employee_id,
        engagement_name=engagement,
        check_point_date=check_point,
        rating=as_decimal(row.get("rating"), "rating"),
        resource_name=resource_name,
        is_client_manager=as_flag(row.get("client_manager")),
        is_delivery_manager=as_flag(row.get("delivery_manager")),
        rationale=as_text(row.get("rationale")),
        fy_year=fiscal_year(check_point) if check_point else None,
    ))
    return mapped


# ============================================================================
# Project Resource Cost (+ A&F)
# ============================================================================

def _resource_cost(mapped: MappedRow, ctx: SheetContext, row: RawRow, name: str,
                   staff_type_column: str, prefix: str, phase: CostPhase) -> int:
    employee_id = mapped.resolved(ctx.resolver.resolve_employee(name))
    costs = [as_decimal_or_zero(row.get(column), column) for column in monthly_column_names(prefix)]
    mapped.add(EntityKind.RESOURCE_COST, ResourceCost(
        employee_id=employee_id,
        employee_name=name,
        staff_type=as_text(row.get(staff_type_column)),
        cost_phase=phase,
        fy_year=ctx.default_fy,
        monthly_costs=costs,
        total_cost=sum(costs, Decimal("0")),
        source=ctx.sheet_type.value,
    ))
    return employee_id


def map_resource_cost_row(row: RawRow, ctx: SheetContext) -> MappedRow:
    mapped = MappedRow()
    name = _required_text(row, "name", "employee")
    mapped.entity_id = _resource_cost(mapped, ctx, row, name, "staff_type", "cost", CostPhase.TOTAL)
    return mapped


def map_resource_cost_af_row(row: RawRow, ctx: SheetContext) -> MappedRow:
    """Phase C block on the left, optional Phase DVF block (second Name column) on the right."""
    mapped = MappedRow()
    name = _required_text(row, "name", "employee")
    mapped.entity_id = _resource_cost(mapped, ctx, row, name, "staff_type", "cost", CostPhase.PHASE_C)

    dvf_name = as_text(row.get("dvf_name"))
    if dvf_name and dvf_name.lower() != "name":
        _resource_cost(mapped, ctx, row, dvf_name, "dvf_staff_type", "dvf_cost", CostPhase.PHASE_DVF)
    return mapped


# ============================================================================
# Open Opportunities
# ============================================================================

def _joined(values: Optional[List[str]], separator: str) -> Optional[str]:
    return separator.join(values) if values else None


def map_open_opportunity_row(row: RawRow, ctx: SheetContext) -> Optional[MappedRow]:
    item_type = as_text(row.get("item_type"))
    if not item_type or item_type.lower() != "folder":
        return None

    mapped = MappedRow()
    name = as_text(row.get("name"))
    if not name:
        raise ParseError("opportunity name is blank", "name")
    classification = _classification(row, "phase")
    if classification is None:
        raise ParseError("phase is blank", "phase")

    start_date = as_date(row.get("start_date"), "start_date")
    due_date = as_date(row.get("due_date"), "due_date")
    anchor = start_date or due_date
    vat = clean_vat(row.get("vat"))

    mapped.add(EntityKind.OPPORTUNITY, PipelineOpportunity(
        name=name,
        name_key=normalize_name(name),
        classification=classification,
        fy_year=fiscal_year(anchor) if anchor else ctx.default_fy,
        **_present(
            source_id=as_text(row.get("source_id")),
            vat=vat,
            billing_type=as_text(row.get("billing_type")),
            value=as_decimal(row.get("value"), "value"),
            margin_percent=as_decimal(row.get("margin"), "margin"),
            partners=split_multi_value(row.get("partner")),
            work_type=as_text(row.get("work_type")),
            status=as_text(row.get("status")),
            due_date=due_date,
            start_date=start_date,
            expiry_date=as_date(row.get("expiry_date"), "expiry_date"),
            comment=as_text(row.get("comment")),
            client_code=as_text(row.get("client_code")),
            client_contact=as_text(row.get("client_contact")),
            category=_joined(split_multi_value(row.get("category")), ", "),
            cas_lead=as_text(row.get("cas_lead")),
            csd_lead=_joined(split_multi_value(row.get("csd_lead")), "; "),
        ),
    ))
    _add_references(mapped, _reference("vat", vat))
    return mapped


RowMapper = Callable[[RawRow, SheetContext], Optional[MappedRow]]

SHEET_IMPORTERS: Dict[SheetType, RowMapper] = {
    SheetType.JOB_STATUS: map_job_status_row,
    SheetType.STAFF_SOT: map_staff_row,
    SheetType.PIPELINE_REVENUE: map_pipeline_revenue_row,
    SheetType.GROSS_PROFIT: map_gross_profit_row,
    SheetType.PERSONAL_HOURS: map_personal_hours_row,
    SheetType.PROJECT_HOURS: map_project_hours_row,
    SheetType.CX_MASTER_LIST: map_cx_row,
    SheetType.RESOURCE_COST: map_resource_cost_row,
    SheetType.RESOURCE_COST_AF: map_resource_cost_af_row,
    SheetType.OPEN_OPPORTUNITIES: map_open_opportunity_row,
}
