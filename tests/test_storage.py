"""
Tests for the persistence collaborators.
"""

from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from dashimport.errors import FatalStorageError
from dashimport.merge_engine import ChangeAction, UpsertOperation
from dashimport.schemas import EntityKind, Project, StaffType
from dashimport.storage import ImportStore, MemoryImportStore, SupabaseImportStore, safe_json_value


def _op(kind, action, record):
    return UpsertOperation(kind=kind, action=action, key=(), record=record)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def mock_supabase():
    """Mock Supabase client with per-table select results."""
    mock = MagicMock()
    tables = {
        "employees": [{"id": 1, "name": "John Smith", "name_key": "john smith"}],
        "projects": [{"id": 7, "name": "Widget Build", "name_key": "widget build", "status": "active"}],
        "pipeline_opportunities": [{"fy_year": "24-25"}, {"fy_year": None}],
        "timesheets": [{"fy_year": "23-24"}],
    }

    def make_mock_table(table_name):
        table_mock = MagicMock()
        table_mock.select.return_value.execute.return_value = MagicMock(data=tables.get(table_name, []))
        return table_mock

    mock.table = MagicMock(side_effect=make_mock_table)
    return mock


class TestImportStoreInterface:
    """Stores must implement the whole interface."""

    def test_incomplete_store_cannot_be_built(self):
        class ReadOnlyStore(ImportStore):
            def load_snapshot(self):
                return None

            def find(self, kind, criteria):
                return None

        with pytest.raises(TypeError):
            ReadOnlyStore()


# =============================================================================
# MEMORY STORE
# =============================================================================

class TestMemoryImportStore:
    """In-process store with copy-on-commit."""

    def test_commit_applies_all_operations(self):
        store = MemoryImportStore()
        store.begin_transaction()
        store.upsert(_op(EntityKind.PROJECT, ChangeAction.INSERT, {"id": 5, "name": "A", "name_key": "a"}))
        store.upsert(_op(EntityKind.PROJECT, ChangeAction.INSERT, {"id": None, "name": "B", "name_key": "b"}))
        store.commit()
        assert [p["id"] for p in store.all(EntityKind.PROJECT)] == [5, 6]
        assert store.commits == 1

    def test_failed_commit_leaves_state_untouched(self):
        class FailingStore(MemoryImportStore):
            def _apply(self, tables, operation):
                if operation.kind == EntityKind.TIMESHEET:
                    raise RuntimeError("disk full")
                super()._apply(tables, operation)

        store = FailingStore()
        store.add(EntityKind.PROJECT, Project(id=1, name="Kept", name_key="kept"))
        store.begin_transaction()
        store.upsert(_op(EntityKind.PROJECT, ChangeAction.UPDATE, {"id": 1, "name": "Changed", "name_key": "changed"}))
        store.upsert(_op(EntityKind.TIMESHEET, ChangeAction.INSERT, {"id": None}))
        with pytest.raises(FatalStorageError):
            store.commit()
        store.rollback()
        assert store.all(EntityKind.PROJECT)[0]["name"] == "Kept"
        assert store.commits == 0

    def test_unchanged_operations_are_not_written(self):
        store = MemoryImportStore()
        store.begin_transaction()
        store.upsert(_op(EntityKind.PROJECT, ChangeAction.UNCHANGED, {"id": 3, "name": "A", "name_key": "a"}))
        store.commit()
        assert store.all(EntityKind.PROJECT) == []

    def test_transaction_misuse(self):
        store = MemoryImportStore()
        with pytest.raises(FatalStorageError):
            store.commit()
        store.begin_transaction()
        with pytest.raises(FatalStorageError):
            store.begin_transaction()

    def test_find_matches_enum_values(self):
        store = MemoryImportStore()
        store.add(EntityKind.PROJECT, Project(name="A", name_key="a"))
        assert store.find(EntityKind.PROJECT, {"status": "active"})["name"] == "A"
        assert store.find(EntityKind.PROJECT, {"name_key": "zzz"}) is None

    def test_snapshot_and_fy_labels(self):
        store = MemoryImportStore()
        store.add(EntityKind.PROJECT, Project(name="A", name_key="a"))
        store.add(EntityKind.COST, {"project_id": 1, "fy_year": "24-25", "category": "job_status"})
        snapshot = store.load_snapshot()
        assert [p.name for p in snapshot.projects] == ["A"]
        assert store.observed_fy_labels() == ["24-25"]


# =============================================================================
# SUPABASE STORE
# =============================================================================

class TestSupabaseImportStore:
    """Supabase collaborator (client mocked)."""

    def test_requires_client(self):
        with patch("dashimport.supabase_client.get_supabase", return_value=None):
            with pytest.raises(FatalStorageError):
                SupabaseImportStore()

    def test_load_snapshot(self, mock_supabase):
        snapshot = SupabaseImportStore(mock_supabase).load_snapshot()
        assert snapshot.employees[0].name == "John Smith"
        assert snapshot.projects[0].id == 7

    def test_find_uses_eq_and_is_null(self):
        mock = MagicMock()
        query = mock.table.return_value.select.return_value
        query.eq.return_value = query
        query.is_.return_value = query
        query.limit.return_value.execute.return_value = MagicMock(data=[{"id": 9}])

        found = SupabaseImportStore(mock).find(
            EntityKind.CX_RATING, {"project_id": 1, "employee_id": None, "check_point_date": date(2025, 2, 1)}
        )
        assert found == {"id": 9}
        mock.table.assert_called_with("cx_ratings")
        query.eq.assert_any_call("check_point_date", "2025-02-01")
        query.is_.assert_called_once_with("employee_id", "null")

    def test_commit_sends_one_rpc(self):
        mock = MagicMock()
        store = SupabaseImportStore(mock, dataset_id="team-a")
        store.begin_transaction()
        store.upsert(_op(EntityKind.TIMESHEET, ChangeAction.INSERT, {"hours_worked": Decimal("7.5")}))
        store.upsert(_op(EntityKind.PROJECT, ChangeAction.UNCHANGED, {"id": 1}))
        store.commit()

        mock.rpc.assert_called_once()
        name, payload = mock.rpc.call_args[0]
        assert name == "apply_import_batch"
        assert payload["p_dataset_id"] == "team-a"
        assert payload["p_operations"] == [
            {"table": "timesheets", "action": "insert", "record": {"hours_worked": "7.5"}},
        ]

    def test_commit_failure_is_fatal(self):
        mock = MagicMock()
        mock.rpc.return_value.execute.side_effect = Exception("connection reset")
        store = SupabaseImportStore(mock)
        store.begin_transaction()
        store.upsert(_op(EntityKind.PROJECT, ChangeAction.INSERT, {"id": 1}))
        with pytest.raises(FatalStorageError):
            store.commit()
        # Transaction is closed even after a failure
        store.begin_transaction()

    def test_read_failure_is_fatal(self):
        mock = MagicMock()
        mock.table.side_effect = Exception("timeout")
        with pytest.raises(FatalStorageError):
            SupabaseImportStore(mock).load_snapshot()

    def test_observed_fy_labels(self, mock_supabase):
        assert SupabaseImportStore(mock_supabase).observed_fy_labels() == ["23-24", "24-25"]


class TestSafeJsonValue:
    """JSON conversion for the rpc payload."""

    def test_conversions(self):
        assert safe_json_value({"d": date(2025, 1, 1), "n": Decimal("1.5"), "e": StaffType.CONTRACTOR}) == {
            "d": "2025-01-01", "n": "1.5", "e": "Contractor",
        }
        assert safe_json_value([None, 1, "x"]) == [None, 1, "x"]
