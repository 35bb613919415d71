"""
Shared fixtures for the import engine tests.

Workbooks are built in memory with openpyxl so every test exercises the
real pandas/openpyxl read path.
"""

from datetime import date
from io import BytesIO
from typing import Any, Dict, List

import pytest
from openpyxl import Workbook

from dashimport.config import ImportSettings
from dashimport.import_controller import ImportController
from dashimport.schemas import Employee, EntityKind, Project
from dashimport.storage import MemoryImportStore

AS_OF = date(2025, 3, 15)

MONTHS = ["Jul", "Aug", "Sep", "Oct", "Nov", "Dec", "Jan", "Feb", "Mar", "Apr", "May", "Jun"]


def build_workbook(sheets: Dict[str, List[List[Any]]]) -> bytes:
    """Sheet title -> rows (first row is usually the header)."""
    workbook = Workbook()
    workbook.remove(workbook.active)
    for title, rows in sheets.items():
        worksheet = workbook.create_sheet(title=title)
        for row in rows:
            worksheet.append(row)
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def make_workbook():
    return build_workbook


@pytest.fixture
def settings():
    return ImportSettings()


@pytest.fixture
def store():
    return MemoryImportStore()


@pytest.fixture
def seeded_store(store):
    """John Smith plus one billable project."""
    store.add(EntityKind.EMPLOYEE, Employee(id=1, name="John Smith", name_key="john smith", employee_code="E001"))
    store.add(EntityKind.PROJECT, Project(id=1, name="Widget Build", name_key="widget build", project_code="ABC123"))
    return store


@pytest.fixture
def controller(store, settings):
    return ImportController(store, settings, as_of=AS_OF)


@pytest.fixture
def seeded_controller(seeded_store, settings):
    return ImportController(seeded_store, settings, as_of=AS_OF)
