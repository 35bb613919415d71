"""
Reconciliation & Merge Engine

Stages resolved records for one batch and turns them into upsert operations.

- Records are keyed by the natural key of their collection; staging the
  same key again overwrites (last write wins), it never duplicates.
- Employees, projects and pipeline opportunities merge field-wise: fields
  a row did not supply keep their stored value.
- Each key is classified insert / update / unchanged against the store,
  so re-importing an unchanged workbook writes nothing.
- Nothing is ever deleted, and no aggregates are computed here.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel

from .schemas import MODEL_FOR_KIND, ChangeCounts, EntityKind

logger = logging.getLogger(__name__)

Origin = Tuple[str, int]

NATURAL_KEYS: Dict[EntityKind, Tuple[str, ...]] = {
    EntityKind.EMPLOYEE: ("id",),
    EntityKind.PROJECT: ("id",),
    EntityKind.TIMESHEET: ("employee_id", "project_id", "week_ending"),
    EntityKind.COST: ("project_id", "fy_year", "month", "category"),
    EntityKind.MILESTONE: ("project_id", "name"),
    EntityKind.REFERENCE: ("category", "code"),
    EntityKind.CX_RATING: ("project_id", "employee_id", "check_point_date"),
    EntityKind.RESOURCE_COST: ("employee_id", "fy_year", "cost_phase", "source"),
}

FIELD_MERGE_KINDS = {EntityKind.EMPLOYEE, EntityKind.PROJECT, EntityKind.OPPORTUNITY}


class ChangeAction(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    UNCHANGED = "unchanged"


@dataclass
class StagedRecord:
    """A record produced by a source row. Non-primary records (lookup values) never supersede rows."""
    kind: EntityKind
    record: BaseModel
    primary: bool = True


@dataclass
class UpsertOperation:
    kind: EntityKind
    action: ChangeAction
    key: Tuple[Any, ...]
    record: Dict[str, Any]


@dataclass
class _Entry:
    kind: EntityKind
    key: Tuple[Any, ...]
    existing: Optional[BaseModel]
    current: BaseModel
    owner: Optional[Origin] = None
    owner_record: Optional[BaseModel] = None


def _criteria_value(record: BaseModel, name: str) -> Any:
    value = getattr(record, name)
    return value.value if isinstance(value, Enum) else value


def lookup_criteria(kind: EntityKind, record: BaseModel) -> List[Dict[str, Any]]:
    """Store lookups that identify an existing record, most specific first."""
    if kind == EntityKind.OPPORTUNITY:
        by_name = {"name_key": record.name_key, "fy_year": record.fy_year}
        if record.source_id:
            return [{"source_id": record.source_id}, by_name]
        return [by_name]
    return [{name: _criteria_value(record, name) for name in NATURAL_KEYS[kind]}]


def staging_key(kind: EntityKind, record: BaseModel) -> Tuple[Any, ...]:
    if kind == EntityKind.OPPORTUNITY:
        if record.source_id:
            return ("source_id", record.source_id)
        return ("name", record.name_key, record.fy_year)
    return tuple(_criteria_value(record, name) for name in NATURAL_KEYS[kind])


def candidate_keys(kind: EntityKind, record: BaseModel) -> List[Tuple[Any, ...]]:
    """Every in-batch key the record answers to; opportunities also match by name and FY."""
    key = staging_key(kind, record)
    if kind == EntityKind.OPPORTUNITY and record.source_id:
        return [key, ("name", record.name_key, record.fy_year)]
    return [key]


def _comparable(record: BaseModel) -> Dict[str, Any]:
    return record.model_dump(exclude={"id"})


def _supplied(record: BaseModel) -> Dict[str, Any]:
    return {
        name: value
        for name, value in record.model_dump(exclude_unset=True).items()
        if value is not None and name != "id"
    }


def merge_fields(base: BaseModel, patch: BaseModel) -> BaseModel:
    """Overlay the fields a row explicitly supplied (and that are not None) onto base."""
    return base.model_copy(update=_supplied(patch))


def overwrites(kind: EntityKind, earlier: Optional[BaseModel], later: BaseModel) -> bool:
    """Whether staging later over earlier loses a value earlier supplied."""
    if kind not in FIELD_MERGE_KINDS or earlier is None:
        return True
    before = _supplied(earlier)
    return any(name in before and before[name] != value for name, value in _supplied(later).items())


class MergeEngine:
    """Collects staged records for a batch against a store's current state."""

    def __init__(self, store):
        self.store = store
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[EntityKind, Tuple[Any, ...]], _Entry] = {}
        self._aliases: Dict[Tuple[EntityKind, Tuple[Any, ...]], Tuple[EntityKind, Tuple[Any, ...]]] = {}
        self._superseded: Set[Origin] = set()

    # ------------------------------------------------------------------

    def _load_existing(self, kind: EntityKind, record: BaseModel) -> Optional[BaseModel]:
        model = MODEL_FOR_KIND[kind]
        for criteria in lookup_criteria(kind, record):
            found = self.store.find(kind, criteria)
            if found is not None:
                return model.model_validate(found)
        return None

    def _entry_for(self, kind: EntityKind, record: BaseModel) -> Tuple[Tuple[EntityKind, Tuple[Any, ...]], Optional[_Entry]]:
        keys = [(kind, key) for key in candidate_keys(kind, record)]
        for key in keys:
            key = self._aliases.get(key, key)
            if key in self._entries:
                return key, self._entries[key]
        return keys[0], None

    def _alias(self, kind: EntityKind, record: BaseModel, entry_key) -> None:
        for key in candidate_keys(kind, record):
            if (kind, key) != entry_key:
                self._aliases.setdefault((kind, key), entry_key)

    def stage(self, staged: StagedRecord, origin: Optional[Origin] = None) -> None:
        """
        Stage one record. An earlier row with the same key is marked superseded
        when it came from the same sheet, or when this record replaces a value
        it supplied.
        """
        kind, record = staged.kind, staged.record
        with self._lock:
            entry_key, entry = self._entry_for(kind, record)
            fresh = False
            if entry is None:
                existing = self._load_existing(kind, record)
                if existing is not None and existing.id is not None:
                    # Different natural keys can land on the same stored record
                    entry_key = (kind, ("id", existing.id))
                    entry = self._entries.get(entry_key)
                if entry is None:
                    merge_base = existing is not None and kind in FIELD_MERGE_KINDS
                    entry = _Entry(kind=kind, key=entry_key[1], existing=existing,
                                   current=existing if merge_base else record)
                    self._entries[entry_key] = entry
                    fresh = not merge_base
            self._alias(kind, record, entry_key)

            if not fresh:
                if kind in FIELD_MERGE_KINDS:
                    entry.current = merge_fields(entry.current, record)
                else:
                    entry.current = record

            if staged.primary and origin is not None:
                previous = entry.owner
                if previous is not None and previous != origin:
                    if previous[0] == origin[0] or overwrites(kind, entry.owner_record, record):
                        self._superseded.add(previous)
                entry.owner = origin
                entry.owner_record = record

    def stage_entity(self, kind: EntityKind, entity: BaseModel) -> None:
        """Stage an entity the resolver created; it has no source row of its own."""
        self.stage(StagedRecord(kind=kind, record=entity, primary=False))

    # ------------------------------------------------------------------

    def superseded(self) -> Set[Origin]:
        return set(self._superseded)

    def operations(self) -> List[UpsertOperation]:
        """Upsert operations in staging order, each classified against the store."""
        ops = []
        for entry in self._entries.values():
            current = entry.current
            if entry.existing is None:
                action = ChangeAction.INSERT
            elif _comparable(current) == _comparable(entry.existing):
                action = ChangeAction.UNCHANGED
            else:
                action = ChangeAction.UPDATE
            if entry.existing is not None:
                current = current.model_copy(update={"id": entry.existing.id})
            ops.append(UpsertOperation(
                kind=entry.kind,
                action=action,
                key=entry.key,
                record=current.model_dump(),
            ))
        return ops

    def change_counts(self, operations: Optional[List[UpsertOperation]] = None) -> Dict[str, ChangeCounts]:
        counts: Dict[str, ChangeCounts] = {}
        for op in operations if operations is not None else self.operations():
            bucket = counts.setdefault(op.kind.value, ChangeCounts())
            if op.action == ChangeAction.INSERT:
                bucket.inserted += 1
            elif op.action == ChangeAction.UPDATE:
                bucket.updated += 1
            else:
                bucket.unchanged += 1
        return counts
