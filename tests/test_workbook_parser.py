"""
Tests for sheet detection and lazy row reading.
"""

from datetime import date
from decimal import Decimal

import pytest

from conftest import MONTHS, build_workbook
from dashimport.cell_values import BlankToken
from dashimport.errors import WorkbookReadError
from dashimport.sheet_catalog import SheetType, dedupe_headers, normalize_header
from dashimport.workbook_parser import parse_workbook


# =============================================================================
# HEADERS
# =============================================================================

class TestHeaderNormalization:
    """Header captions folded to catalogue keys."""

    def test_case_and_spacing(self):
        assert normalize_header("  Week   Ending ") == "week ending"
        assert normalize_header("Cost Band:") == "cost band"

    def test_month_words(self):
        assert normalize_header("July") == "jul"
        assert normalize_header("Jul-25") == "jul"
        assert normalize_header("M1") == "jul"
        assert normalize_header("Sept") == "sep"
        assert normalize_header(date(2024, 8, 1)) == "aug"

    def test_month_with_caption(self):
        assert normalize_header("Jul Revenue") == "revenue jul"
        assert normalize_header("Revenue Jul") == "revenue jul"

    def test_duplicate_suffix_kept(self):
        assert normalize_header("jul (2)") == "jul (2)"

    def test_dedupe(self):
        assert dedupe_headers(["name", "jul", "name", "", "name"]) == ["name", "jul", "name (2)", "", "name (3)"]


# =============================================================================
# DETECTION
# =============================================================================

class TestSheetDetection:
    """Sheet type from name and header signature."""

    def test_named_sheets(self):
        content = build_workbook({
            "Staff SOT": [["Name", "Cost Band", "Staff Type"], ["John Smith", "B3", "Permanent"]],
            "Personal Hours": [["Week Ending", "Employee", "Project", "Hours"], [date(2025, 1, 10), "John Smith", "Widget", 8]],
        })
        workbook = parse_workbook(content)
        assert workbook.sheet_names == ["Staff SOT", "Personal Hours"]
        assert workbook.get("Staff SOT").sheet_type == SheetType.STAFF_SOT
        assert workbook.get("Personal Hours").sheet_type == SheetType.PERSONAL_HOURS

    def test_header_below_title_rows(self):
        content = build_workbook({
            "Staff SOT": [["Staff source of truth"], [], ["Name", "Cost Band", "Staff Type"], ["John Smith", "B3", "Permanent"]],
        })
        sheet = parse_workbook(content).get("Staff SOT")
        assert sheet.header_row_number == 3
        rows = list(sheet.rows())
        assert len(rows) == 1
        assert rows[0].row_number == 4

    def test_unnamed_sheet_detected_by_signature(self):
        content = build_workbook({
            "Sheet7": [["Hours", "Revenue", "Cost", "Project"], [10, 1000, 600, "Widget Build"]],
        })
        assert parse_workbook(content).get("Sheet7").sheet_type == SheetType.PROJECT_HOURS

    def test_named_sheet_missing_columns_is_skipped(self):
        content = build_workbook({"Staff SOT": [["Name", "Team"], ["John Smith", "Ops"]]})
        sheet = parse_workbook(content).get("Staff SOT")
        assert sheet.is_skipped
        assert "cost_band" in sheet.skip_reason

    def test_unknown_sheet_is_skipped(self):
        content = build_workbook({
            "Notes": [["Remember to update the plan"]],
            "Staff SOT": [["Name", "Cost Band", "Staff Type"], ["John Smith", "B3", "Permanent"]],
        })
        workbook = parse_workbook(content)
        assert workbook.get("Notes").is_skipped
        assert not workbook.get("Staff SOT").is_skipped

    def test_pipeline_sheet_fy_hint(self):
        content = build_workbook({
            "Resource Plan Opps FY25-26": [["Opportunity", "Classification"] + MONTHS, ["Big Deal", "DVF"] + [1] * 12],
        })
        sheet = parse_workbook(content).get("Resource Plan Opps FY25-26")
        assert sheet.sheet_type == SheetType.PIPELINE_REVENUE
        assert sheet.fy_hint == "25-26"

    def test_repeated_name_columns(self):
        header = ["Name", "Staff Type"] + MONTHS + ["Name", "Staff Type"] + MONTHS
        row = ["Ann Lee", "Permanent"] + [100] * 12 + ["Bob Stone", "Contractor"] + [50] * 12
        content = build_workbook({"Project Resource Cost A&F": [header, row]})
        sheet = parse_workbook(content).get("Project Resource Cost A&F")
        assert sheet.sheet_type == SheetType.RESOURCE_COST_AF
        raw = next(sheet.rows())
        assert raw.get("name") == "Ann Lee"
        assert raw.get("dvf_name") == "Bob Stone"
        assert raw.get("dvf_cost_m12") == Decimal("50")

    def test_unreadable_bytes(self):
        with pytest.raises(WorkbookReadError):
            parse_workbook(b"this is not a workbook")


# =============================================================================
# ROWS
# =============================================================================

class TestRows:
    """Lazy row iteration."""

    def test_blank_and_repeated_header_rows_dropped(self):
        content = build_workbook({
            "Personal Hours": [
                ["Week Ending", "Employee", "Project", "Hours"],
                [date(2025, 1, 10), "John Smith", "Widget", 8],
                [None, None, None, None],
                ["Week Ending", "Employee", "Project", "Hours"],
                [date(2025, 1, 17), "John Smith", "Widget", "(blank)"],
            ],
        })
        rows = list(parse_workbook(content).get("Personal Hours").rows())
        assert [r.row_number for r in rows] == [2, 5]
        assert rows[0].get("week_ending") == date(2025, 1, 10)
        assert rows[0].get("hours") == Decimal("8")
        assert isinstance(rows[1].get("hours"), BlankToken)

    def test_preview(self):
        content = build_workbook({
            "Staff SOT": [["Name", "Cost Band", "Staff Type"]] + [[f"Person {i}", "B1", "Permanent"] for i in range(10)],
        })
        preview = parse_workbook(content).get("Staff SOT").preview(3)
        assert len(preview) == 3
        assert preview[0]["name"] == "Person 0"
        assert preview[0]["row"] == 2

    def test_identifier_columns_keep_leading_zeros(self):
        content = build_workbook({
            "Staff SOT": [
                ["Name", "Employee Code", "JID", "Cost Band", "Staff Type", "Base Cost"],
                ["James Bond", "007", "0042", "B1", "Permanent", "1,500"],
            ],
        })
        row = next(parse_workbook(content).get("Staff SOT").rows())
        assert row.get("employee_code") == "007"
        assert row.get("jid") == "0042"
        assert row.get("base_cost") == Decimal("1500")
