"""
Persistence Collaborators

The import engine talks to storage through ImportStore:
load_snapshot / find for reads, begin_transaction / upsert / commit /
rollback for the single atomic write at the end of a batch.

- MemoryImportStore: in-process tables, commit applies to a copy and swaps it in.
- SupabaseImportStore: reads through the Supabase table API and sends the whole
  batch to the apply_import_batch database function in one call.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from .errors import FatalStorageError
from .merge_engine import ChangeAction, UpsertOperation
from .schemas import MODEL_FOR_KIND, CanonicalSnapshot, Employee, EntityKind, Project

logger = logging.getLogger(__name__)

FY_TABLES = (
    EntityKind.OPPORTUNITY,
    EntityKind.TIMESHEET,
    EntityKind.COST,
    EntityKind.CX_RATING,
    EntityKind.RESOURCE_COST,
)


def safe_json_value(value: Any) -> Any:
    """Convert value to JSON-safe format."""
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [safe_json_value(v) for v in value]
    if isinstance(value, dict):
        return {k: safe_json_value(v) for k, v in value.items()}
    return str(value)


class ImportStore(ABC):
    """Interface the transaction controller relies on."""

    @abstractmethod
    def load_snapshot(self) -> CanonicalSnapshot:
        raise NotImplementedError

    @abstractmethod
    def find(self, kind: EntityKind, criteria: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def begin_transaction(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def upsert(self, operation: UpsertOperation) -> None:
        raise NotImplementedError

    @abstractmethod
    def commit(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def rollback(self) -> None:
        raise NotImplementedError

    def observed_fy_labels(self) -> List[str]:
        return []


# ============================================================================
# In-memory store
# ============================================================================

class MemoryImportStore(ImportStore):
    """Thread-safe in-process store with atomic commit."""

    def __init__(self):
        self._lock = threading.RLock()
        self._tables: Dict[EntityKind, Dict[int, Dict[str, Any]]] = {kind: {} for kind in EntityKind}
        self._pending: Optional[List[UpsertOperation]] = None
        self.commits = 0

    # -- seeding / inspection -------------------------------------------

    def add(self, kind: EntityKind, record: Any) -> int:
        """Insert a record directly (outside any batch). Returns its id."""
        data = record.model_dump() if isinstance(record, BaseModel) else dict(record)
        with self._lock:
            table = self._tables[kind]
            if data.get("id") is None:
                data["id"] = max(table, default=0) + 1
            table[data["id"]] = data
            return data["id"]

    def all(self, kind: EntityKind) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(r) for _, r in sorted(self._tables[kind].items())]

    def models(self, kind: EntityKind) -> List[BaseModel]:
        model = MODEL_FOR_KIND[kind]
        return [model.model_validate(r) for r in self.all(kind)]

    # -- reads -----------------------------------------------------------

    def load_snapshot(self) -> CanonicalSnapshot:
        with self._lock:
            return CanonicalSnapshot(
                employees=[Employee.model_validate(r) for r in self._tables[EntityKind.EMPLOYEE].values()],
                projects=[Project.model_validate(r) for r in self._tables[EntityKind.PROJECT].values()],
            )

    def find(self, kind: EntityKind, criteria: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._lock:
            for record in self._tables[kind].values():
                if all(_same(record.get(name), value) for name, value in criteria.items()):
                    return copy.deepcopy(record)
        return None

    def observed_fy_labels(self) -> List[str]:
        labels = set()
        with self._lock:
            for kind in FY_TABLES:
                for record in self._tables[kind].values():
                    if record.get("fy_year"):
                        labels.add(record["fy_year"])
        return sorted(labels)

    # -- transaction -----------------------------------------------------

    def begin_transaction(self) -> None:
        with self._lock:
            if self._pending is not None:
                raise FatalStorageError("A transaction is already open")
            self._pending = []

    def upsert(self, operation: UpsertOperation) -> None:
        with self._lock:
            if self._pending is None:
                raise FatalStorageError("upsert called outside a transaction")
            self._pending.append(operation)

    def commit(self) -> None:
        with self._lock:
            if self._pending is None:
                raise FatalStorageError("commit called outside a transaction")
            working = copy.deepcopy(self._tables)
            try:
                for operation in self._pending:
                    self._apply(working, operation)
            except FatalStorageError:
                raise
            except Exception as e:
                raise FatalStorageError(f"Commit failed: {e}") from e
            self._tables = working
            self._pending = None
            self.commits += 1

    def rollback(self) -> None:
        with self._lock:
            self._pending = None

    def _apply(self, tables: Dict[EntityKind, Dict[int, Dict[str, Any]]], operation: UpsertOperation) -> None:
        if operation.action == ChangeAction.UNCHANGED:
            return
        table = tables[operation.kind]
        record = copy.deepcopy(operation.record)
        if record.get("id") is None:
            record["id"] = max(table, default=0) + 1
        table[record["id"]] = record


def _same(stored: Any, wanted: Any) -> bool:
    if isinstance(stored, Enum):
        stored = stored.value
    if isinstance(wanted, Enum):
        wanted = wanted.value
    return stored == wanted


# ============================================================================
# Supabase store
# ============================================================================

class SupabaseImportStore(ImportStore):
    """
    Supabase-backed store.

    Reads use the table API. Writes are buffered and sent in one
    rpc("apply_import_batch") call, which the database applies in a single
    transaction.
    """

    COMMIT_FUNCTION = "apply_import_batch"

    def __init__(self, supabase=None, dataset_id: str = "default"):
        if supabase is None:
            from .supabase_client import get_supabase
            supabase = get_supabase()
        if supabase is None:
            raise FatalStorageError("Supabase is not configured (set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY)")
        self.supabase = supabase
        self.dataset_id = dataset_id
        self._pending: Optional[List[UpsertOperation]] = None

    def _select_all(self, kind: EntityKind) -> List[Dict[str, Any]]:
        try:
            result = self.supabase.table(kind.value).select("*").execute()
        except Exception as e:
            raise FatalStorageError(f"Failed to read {kind.value}: {e}") from e
        return result.data or []

    def load_snapshot(self) -> CanonicalSnapshot:
        employees = [Employee.model_validate(r) for r in self._select_all(EntityKind.EMPLOYEE)]
        projects = [Project.model_validate(r) for r in self._select_all(EntityKind.PROJECT)]
        logger.info(f"Loaded snapshot: {len(employees)} employees, {len(projects)} projects")
        return CanonicalSnapshot(employees=employees, projects=projects)

    def find(self, kind: EntityKind, criteria: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            query = self.supabase.table(kind.value).select("*")
            for name, value in criteria.items():
                if value is None:
                    query = query.is_(name, "null")
                else:
                    query = query.eq(name, safe_json_value(value))
            result = query.limit(1).execute()
        except Exception as e:
            raise FatalStorageError(f"Lookup in {kind.value} failed: {e}") from e
        return result.data[0] if result.data else None

    def observed_fy_labels(self) -> List[str]:
        labels = set()
        for kind in FY_TABLES:
            try:
                result = self.supabase.table(kind.value).select("fy_year").execute()
            except Exception as e:
                raise FatalStorageError(f"Failed to read {kind.value}: {e}") from e
            labels.update(r["fy_year"] for r in result.data or [] if r.get("fy_year"))
        return sorted(labels)

    def begin_transaction(self) -> None:
        if self._pending is not None:
            raise FatalStorageError("A transaction is already open")
        self._pending = []

    def upsert(self, operation: UpsertOperation) -> None:
        if self._pending is None:
            raise FatalStorageError("upsert called outside a transaction")
        self._pending.append(operation)

    def commit(self) -> None:
        if self._pending is None:
            raise FatalStorageError("commit called outside a transaction")
        operations = [
            {"table": op.kind.value, "action": op.action.value, "record": safe_json_value(op.record)}
            for op in self._pending
            if op.action != ChangeAction.UNCHANGED
        ]
        try:
            self.supabase.rpc(self.COMMIT_FUNCTION, {
                "p_dataset_id": self.dataset_id,
                "p_operations": operations,
            }).execute()
        except Exception as e:
            raise FatalStorageError(f"Commit failed: {e}") from e
        finally:
            self._pending = None
        logger.info(f"Committed {len(operations)} operations to Supabase")

    def rollback(self) -> None:
        self._pending = None
