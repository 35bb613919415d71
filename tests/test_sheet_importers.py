"""
Tests for the per-sheet row mappers.

Rows are built directly as RawRow values so each mapper is tested without
a workbook round trip.
"""

from datetime import date
from decimal import Decimal

import pytest

from conftest import AS_OF
from dashimport.config import ImportSettings
from dashimport.entity_resolver import EntityResolver, normalize_name
from dashimport.errors import ParseError, UnresolvedReferenceError
from dashimport.schemas import (
    CanonicalSnapshot,
    Classification,
    CostPhase,
    Employee,
    EmployeeStatus,
    EntityKind,
    Project,
    ProjectStatus,
    StaffType,
)
from dashimport.sheet_catalog import SheetType
from dashimport.sheet_importers import (
    SHEET_IMPORTERS,
    SheetContext,
    map_cx_row,
    map_job_status_row,
    map_open_opportunity_row,
    map_personal_hours_row,
    map_pipeline_revenue_row,
    map_project_hours_row,
    map_resource_cost_af_row,
    map_staff_row,
)
from dashimport.workbook_parser import RawRow


@pytest.fixture
def resolver():
    snapshot = CanonicalSnapshot(
        employees=[Employee(id=1, name="John Smith", name_key="john smith", employee_code="E001")],
        projects=[Project(id=1, name="Widget Build", name_key="widget build", project_code="ABC123-01")],
    )
    return EntityResolver(snapshot, ImportSettings())


def _ctx(resolver, sheet_type, fy_hint=None):
    return SheetContext(
        resolver=resolver,
        settings=resolver.settings,
        sheet_name=sheet_type.value,
        sheet_type=sheet_type,
        fy_hint=fy_hint,
        as_of=AS_OF,
    )


def _row(**values):
    return RawRow(sheet="test", row_number=2, values=values)


def _records(mapped, kind):
    return [staged.record for staged in mapped.records if staged.kind == kind]


def test_every_sheet_type_has_an_importer():
    assert set(SHEET_IMPORTERS) == set(SheetType)


# =============================================================================
# MASTER SHEETS
# =============================================================================

class TestJobStatus:
    """Project master rows plus monthly financials."""

    def test_maps_project_and_months(self, resolver):
        row = _row(
            ad_status="Closed", client_code="ABC", project_name="Widget Build", project_code="ABC123-01",
            start_date=date(2024, 8, 1), vat="Defence",
            revenue_m1=Decimal("1000"), cost_m1=Decimal("600"), profit_m1=Decimal("400"),
            revenue_m2=Decimal("0"),
        )
        mapped = map_job_status_row(row, _ctx(resolver, SheetType.JOB_STATUS))

        project = _records(mapped, EntityKind.PROJECT)[0]
        assert project.id == 1
        assert project.status == ProjectStatus.COMPLETED
        assert project.vat == "Defence"

        costs = _records(mapped, EntityKind.COST)
        assert len(costs) == 1
        assert (costs[0].fy_year, costs[0].month, costs[0].category) == ("24-25", 1, "job_status")
        assert costs[0].profit == Decimal("400")

        reference = _records(mapped, EntityKind.REFERENCE)[0]
        assert (reference.category, reference.code) == ("vat", "Defence")

    def test_fy_column_wins(self, resolver):
        row = _row(ad_status="Active", client_code="ABC", project_name="Widget Build", fy="FY25-26",
                   revenue_m1=Decimal("5"))
        mapped = map_job_status_row(row, _ctx(resolver, SheetType.JOB_STATUS))
        assert _records(mapped, EntityKind.COST)[0].fy_year == "25-26"


class TestStaff:
    """Staff source of truth rows."""

    def test_patch_only_supplied_fields(self, resolver):
        row = _row(name="John Smith", employee_code="E001", cost_band="B3", staff_type="Contract",
                   status="Terminated", certifications="Baseline;#4;#NV1", team="Ops")
        mapped = map_staff_row(row, _ctx(resolver, SheetType.STAFF_SOT))
        employee = _records(mapped, EntityKind.EMPLOYEE)[0]

        assert employee.id == 1
        assert employee.staff_type == StaffType.CONTRACTOR
        assert employee.status == EmployeeStatus.INACTIVE
        assert employee.certifications == ["Baseline", "NV1"]
        assert "role" not in employee.model_dump(exclude_unset=True)
        assert {(r.category, r.code) for r in _records(mapped, EntityKind.REFERENCE)} == {
            ("team", "Ops"), ("cost_band", "B3"),
        }

    def test_blank_name_rejected(self, resolver):
        with pytest.raises(UnresolvedReferenceError):
            map_staff_row(_row(cost_band="B1", staff_type="Permanent"), _ctx(resolver, SheetType.STAFF_SOT))


# =============================================================================
# FACT SHEETS
# =============================================================================

class TestPersonalHours:
    """Timesheet rows."""

    def test_timesheet_fields(self, resolver):
        row = _row(week_ending=date(2025, 1, 10), first_name="John", last_name="Smith",
                   project="ABC123-01 Widget Build", hours=Decimal("37.5"), activity_type="Leave")
        mapped = map_personal_hours_row(row, _ctx(resolver, SheetType.PERSONAL_HOURS))
        entry = _records(mapped, EntityKind.TIMESHEET)[0]

        assert (entry.employee_id, entry.project_id) == (1, 1)
        assert entry.hours_worked == Decimal("37.5")
        assert entry.billable is False
        assert (entry.fy_year, entry.fy_month) == ("24-25", 7)

    def test_reason_entry_goes_to_internal(self, resolver):
        row = _row(week_ending=date(2025, 1, 10), employee_name="John Smith",
                   project="Reason - Annual Leave", hours=Decimal("8"))
        mapped = map_personal_hours_row(row, _ctx(resolver, SheetType.PERSONAL_HOURS))
        entry = _records(mapped, EntityKind.TIMESHEET)[0]
        assert resolver.get_project(entry.project_id).is_internal

    def test_entry_type_reason(self, resolver):
        row = _row(week_ending=date(2025, 1, 10), employee_name="John Smith",
                   project="Sick leave", entry_type="Reason", hours=Decimal("8"))
        mapped = map_personal_hours_row(row, _ctx(resolver, SheetType.PERSONAL_HOURS))
        assert resolver.get_project(_records(mapped, EntityKind.TIMESHEET)[0].project_id).is_internal

    def test_missing_week_ending(self, resolver):
        row = _row(employee_name="John Smith", project="Widget Build", hours=Decimal("8"))
        with pytest.raises(ParseError):
            map_personal_hours_row(row, _ctx(resolver, SheetType.PERSONAL_HOURS))

    def test_bad_hours(self, resolver):
        row = _row(week_ending=date(2025, 1, 10), employee_name="John Smith", project="Widget Build", hours="lots")
        with pytest.raises(ParseError):
            map_personal_hours_row(row, _ctx(resolver, SheetType.PERSONAL_HOURS))


class TestProjectHours:
    """Per-project revenue and cost."""

    def test_profit_and_period(self, resolver):
        row = _row(project="Widget Build", hours=Decimal("10"), revenue=Decimal("1000"),
                   cost=Decimal("700"), period=date(2024, 9, 30))
        mapped = map_project_hours_row(row, _ctx(resolver, SheetType.PROJECT_HOURS))
        cost = _records(mapped, EntityKind.COST)[0]
        assert cost.profit == Decimal("300")
        assert (cost.fy_year, cost.month, cost.category) == ("24-25", 3, "project_hours")

    def test_without_period_uses_current_fy(self, resolver):
        row = _row(project="Widget Build", hours=Decimal("1"), revenue=Decimal("1"), cost=Decimal("1"))
        mapped = map_project_hours_row(row, _ctx(resolver, SheetType.PROJECT_HOURS))
        cost = _records(mapped, EntityKind.COST)[0]
        assert cost.fy_year == "24-25"
        assert cost.month is None


class TestCx:
    """CX ratings resolve projects by base code."""

    def test_base_code_and_resource(self, resolver):
        row = _row(engagement_name="ABC123 Widget Review", check_point_date=date(2025, 2, 1),
                   rating=Decimal("4"), resource_name="J. Smith", client_manager="Yes")
        mapped = map_cx_row(row, _ctx(resolver, SheetType.CX_MASTER_LIST))
        rating = _records(mapped, EntityKind.CX_RATING)[0]
        assert rating.project_id == 1
        assert rating.employee_id == 1
        assert rating.is_client_manager is True
        assert rating.fy_year == "24-25"


class TestResourceCost:
    """Phase C / Phase DVF blocks."""

    def test_two_blocks(self, resolver):
        values = dict(name="John Smith", staff_type="Permanent", dvf_name="Bob Stone", dvf_staff_type="Contractor")
        for month in range(1, 13):
            values[f"cost_m{month}"] = Decimal("100")
            values[f"dvf_cost_m{month}"] = Decimal("50")
        mapped = map_resource_cost_af_row(_row(**values), _ctx(resolver, SheetType.RESOURCE_COST_AF, "24-25"))
        costs = _records(mapped, EntityKind.RESOURCE_COST)
        assert [c.cost_phase for c in costs] == [CostPhase.PHASE_C, CostPhase.PHASE_DVF]
        assert costs[0].total_cost == Decimal("1200")
        assert costs[1].total_cost == Decimal("600")
        assert costs[1].employee_name == "Bob Stone"
        assert resolver.is_created(EntityKind.EMPLOYEE, costs[1].employee_id)


# =============================================================================
# PIPELINE
# =============================================================================

class TestPipeline:
    """Pipeline revenue and open opportunities."""

    def test_pipeline_revenue(self, resolver):
        values = dict(name="Big Deal", classification="DVF", vat=";#GROWTH|abc")
        values.update({f"revenue_m{m}": Decimal(m) for m in range(1, 13)})
        mapped = map_pipeline_revenue_row(_row(**values), _ctx(resolver, SheetType.PIPELINE_REVENUE, "25-26"))
        opportunity = _records(mapped, EntityKind.OPPORTUNITY)[0]
        assert opportunity.fy_year == "25-26"
        assert opportunity.classification == Classification.DVF
        assert opportunity.vat == "GROWTH"
        assert opportunity.name_key == normalize_name("Big Deal")
        assert opportunity.monthly_revenue[11] == Decimal("12")

    def test_unknown_classification(self, resolver):
        values = dict(name="Big Deal", classification="ZZ")
        with pytest.raises(ParseError):
            map_pipeline_revenue_row(_row(**values), _ctx(resolver, SheetType.PIPELINE_REVENUE))

    def test_open_opportunity_folder(self, resolver):
        row = _row(name="Big Deal", phase="4.DVF - Shortlisted", item_type="Folder", source_id=Decimal("101"),
                   value=Decimal("1500"), margin=Decimal("0.25"), start_date=date(2025, 8, 1),
                   csd_lead="Alice;#3;#Bob", category="Cyber;#Cloud")
        mapped = map_open_opportunity_row(row, _ctx(resolver, SheetType.OPEN_OPPORTUNITIES))
        opportunity = _records(mapped, EntityKind.OPPORTUNITY)[0]
        assert opportunity.source_id == "101"
        assert opportunity.classification == Classification.DVF
        assert opportunity.fy_year == "25-26"
        assert opportunity.margin_percent == Decimal("0.25")
        assert opportunity.csd_lead == "Alice; Bob"
        assert opportunity.category == "Cyber, Cloud"

    def test_open_opportunity_documents_ignored(self, resolver):
        row = _row(name="proposal.docx", phase="2.Q - Qualified", item_type="Item")
        assert map_open_opportunity_row(row, _ctx(resolver, SheetType.OPEN_OPPORTUNITIES)) is None
