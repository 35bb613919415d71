"""
Entity Resolver

Maps raw employee and project references from workbook rows to canonical ids.

Match policy, in order:
1. external code (employee code / project code), case-insensitive
2. exact normalized-name key among active entities
3. containment: the reference contains, or is contained by, exactly one
   canonical key (whole words), or lines up token-for-token with initials
   ("j smith" ~ "john smith"); two or more candidates is ambiguous
4. otherwise a new canonical entity is created

The resolver works on an explicit snapshot taken at batch start plus a diff
of the entities it created during the batch. Creation is a critical section
per normalized key so concurrent sheets never create the same entity twice.
"""

import logging
import re
import threading
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .config import ImportSettings, get_import_settings
from .errors import AmbiguousReferenceError, UnresolvedReferenceError
from .schemas import CanonicalSnapshot, Employee, EmployeeStatus, EntityKind, Project

logger = logging.getLogger(__name__)

PROJECT_CODE_PATTERN = re.compile(r"^([A-Z]{2,6}\d{2,4}[-\s]?\d{0,3})\s(.*)$", re.IGNORECASE)
BASE_CODE_PATTERN = re.compile(r"^([A-Z]{2,6}\d{2,4})", re.IGNORECASE)


def normalize_name(text: Optional[str]) -> str:
    """Lowercase, strip punctuation, collapse whitespace: "J. Smith" -> "j smith"."""
    if not text:
        return ""
    cleaned = re.sub(r"[^\w\s]|_", " ", str(text).lower())
    return " ".join(cleaned.split())


def normalize_code(code: Optional[str]) -> Optional[str]:
    if not code:
        return None
    value = re.sub(r"\s+", "", str(code)).upper()
    return value or None


def split_project_code(text: str) -> Tuple[Optional[str], str]:
    """"ABC123-01 Website Build" -> ("ABC123-01", "Website Build")."""
    match = PROJECT_CODE_PATTERN.match(text.strip())
    if not match:
        return None, text.strip()
    return normalize_code(match.group(1)), match.group(2).strip()


def base_code(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    match = BASE_CODE_PATTERN.match(text.strip())
    return match.group(1).upper() if match else None


def _tokens_compatible(left: List[str], right: List[str]) -> bool:
    """Same token count, each pair equal or an initial of the other, at least one full word equal."""
    if len(left) != len(right) or len(left) < 2:
        return False
    full_match = False
    for a, b in zip(left, right):
        if a == b:
            if len(a) > 1:
                full_match = True
            continue
        if len(a) == 1 and b.startswith(a):
            continue
        if len(b) == 1 and a.startswith(b):
            continue
        return False
    return full_match


def names_contain(reference: str, candidate: str) -> bool:
    """Containment test between two normalized keys."""
    if f" {reference} " in f" {candidate} " or f" {candidate} " in f" {reference} ":
        return True
    return _tokens_compatible(reference.split(), candidate.split())


@dataclass(frozen=True)
class Resolution:
    kind: EntityKind
    entity_id: int
    created: bool
    matched_by: str
    name: str


class EntityResolver:
    """Resolves references for one import batch."""

    def __init__(self, snapshot: CanonicalSnapshot, settings: Optional[ImportSettings] = None):
        self.settings = settings or get_import_settings()
        self._lock = threading.RLock()
        self._key_locks: Dict[Tuple[EntityKind, str], threading.Lock] = {}
        self._cache: Dict[Tuple[Any, ...], Resolution] = {}

        self._employees: Dict[int, Employee] = {}
        self._projects: Dict[int, Project] = {}
        self._created: Dict[EntityKind, Dict[int, Any]] = {
            EntityKind.EMPLOYEE: {},
            EntityKind.PROJECT: {},
        }
        self._flagged: List[Project] = []

        # Indices: normalized key / code -> ids
        self._employee_keys: Dict[str, Set[int]] = {}
        self._inactive_employee_keys: Dict[str, Set[int]] = {}
        self._employee_codes: Dict[str, Set[int]] = {}
        self._project_keys: Dict[str, Set[int]] = {}
        self._project_codes: Dict[str, Set[int]] = {}
        self._project_base_codes: Dict[str, Set[int]] = {}

        self._internal_id: Optional[int] = None
        self._internal_key = normalize_name(self.settings.internal_project_name)
        self._reason_keywords = [normalize_name(k) for k in self.settings.reason_keywords if normalize_name(k)]

        for employee in snapshot.employees:
            self._index_employee(employee)
        for project in snapshot.projects:
            self._index_project(project)
        self._internal_id = self._find_internal(snapshot.projects)

        self._next_ids = {
            EntityKind.EMPLOYEE: max(self._employees, default=0) + 1,
            EntityKind.PROJECT: max(self._projects, default=0) + 1,
        }

    # ------------------------------------------------------------------
    # Index maintenance
    # ------------------------------------------------------------------

    def _index_employee(self, employee: Employee) -> None:
        self._employees[employee.id] = employee
        code = normalize_code(employee.employee_code)
        if code:
            self._employee_codes.setdefault(code, set()).add(employee.id)
        if not employee.name_key:
            return
        if employee.status == EmployeeStatus.ACTIVE:
            self._employee_keys.setdefault(employee.name_key, set()).add(employee.id)
        else:
            self._inactive_employee_keys.setdefault(employee.name_key, set()).add(employee.id)

    def _index_project(self, project: Project) -> None:
        self._projects[project.id] = project
        code = normalize_code(project.project_code)
        if code:
            self._project_codes.setdefault(code, set()).add(project.id)
        for base in {base_code(project.project_code), base_code(project.name)}:
            if base:
                self._project_base_codes.setdefault(base, set()).add(project.id)
        if project.name_key:
            self._project_keys.setdefault(project.name_key, set()).add(project.id)

    def _find_internal(self, projects: Iterable[Project]) -> Optional[int]:
        projects = sorted(projects, key=lambda p: p.id)
        internal = [p for p in projects if p.is_internal]
        for project in internal:
            if project.name_key == self._internal_key:
                return project.id
        if internal:
            return internal[0].id
        for project in projects:
            if project.name_key == self._internal_key:
                # An unflagged project named Internal becomes the Internal project
                flagged = project.model_copy(update={"is_internal": True})
                self._projects[project.id] = flagged
                self._flagged.append(Project(
                    id=project.id, name=project.name, name_key=project.name_key, is_internal=True,
                ))
                logger.info(f"Flagging existing project '{project.name}' (id {project.id}) as Internal")
                return project.id
        return None

    def _allocate_id(self, kind: EntityKind) -> int:
        entity_id = self._next_ids[kind]
        self._next_ids[kind] += 1
        return entity_id

    # ------------------------------------------------------------------
    # Created entities (the batch diff)
    # ------------------------------------------------------------------

    def created_entities(self) -> List[Tuple[EntityKind, Any]]:
        with self._lock:
            return [(kind, entity) for kind, items in self._created.items() for entity in items.values()]

    def updated_entities(self) -> List[Tuple[EntityKind, Any]]:
        """Patches to existing entities the resolver adjusted (an adopted Internal project)."""
        with self._lock:
            return [(EntityKind.PROJECT, project) for project in self._flagged]

    def is_created(self, kind: EntityKind, entity_id: int) -> bool:
        return entity_id in self._created.get(kind, {})

    def get_employee(self, entity_id: int) -> Optional[Employee]:
        return self._employees.get(entity_id)

    def get_project(self, entity_id: int) -> Optional[Project]:
        return self._projects.get(entity_id)

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def is_reason_reference(self, text: Optional[str]) -> bool:
        """A purely numeric reference, or one starting with a configured reason keyword."""
        if not text:
            return False
        stripped = str(text).strip()
        if stripped.isdigit():
            return True
        key = normalize_name(stripped)
        return any(key == kw or key.startswith(kw + " ") for kw in self._reason_keywords)

    def _unique(self, kind: EntityKind, reference: str, ids: Set[int]) -> Optional[int]:
        if not ids:
            return None
        if len(ids) > 1:
            raise AmbiguousReferenceError(kind.value.rstrip("s"), reference, self._names(kind, ids))
        return next(iter(ids))

    def _names(self, kind: EntityKind, ids: Iterable[int]) -> List[str]:
        store = self._employees if kind == EntityKind.EMPLOYEE else self._projects
        return [store[i].name for i in ids]

    def _containment(self, kind: EntityKind, reference: str, key: str, index: Dict[str, Set[int]], exclude: Set[int]) -> Optional[int]:
        if len(key) < self.settings.min_containment_length:
            return None
        candidates: Set[int] = set()
        for candidate_key, ids in index.items():
            if len(candidate_key) < self.settings.min_containment_length:
                continue
            if names_contain(key, candidate_key):
                candidates.update(ids - exclude)
        return self._unique(kind, reference, candidates)

    def _match_employee(self, reference: str, key: str, code: Optional[str],
                        include_inactive: bool = False) -> Optional[Tuple[int, str]]:
        if code:
            found = self._unique(EntityKind.EMPLOYEE, reference, self._employee_codes.get(code, set()))
            if found is not None:
                return found, "code"
        if not key:
            return None
        found = self._unique(EntityKind.EMPLOYEE, reference, self._employee_keys.get(key, set()))
        if found is not None:
            return found, "exact"
        found = self._containment(EntityKind.EMPLOYEE, reference, key, self._employee_keys, set())
        if found is not None:
            return found, "containment"
        if include_inactive:
            found = self._unique(EntityKind.EMPLOYEE, reference, self._inactive_employee_keys.get(key, set()))
            if found is not None:
                return found, "exact"
        return None

    def _match_project(self, reference: str, key: str, codes: List[str], allow_base_code: bool) -> Optional[Tuple[int, str]]:
        for code in codes:
            found = self._unique(EntityKind.PROJECT, reference, self._project_codes.get(code, set()))
            if found is not None:
                return found, "code"
        if allow_base_code:
            base = base_code(reference)
            ids = self._project_base_codes.get(base, set()) if base else set()
            if len(ids) == 1:
                return next(iter(ids)), "code"
        if not key:
            return None
        found = self._unique(EntityKind.PROJECT, reference, self._project_keys.get(key, set()))
        if found is not None:
            return found, "exact"
        exclude = {self._internal_id} if self._internal_id is not None else set()
        found = self._containment(EntityKind.PROJECT, reference, key, self._project_keys, exclude)
        if found is not None:
            return found, "containment"
        return None

    def _key_lock(self, kind: EntityKind, key: str) -> threading.Lock:
        with self._lock:
            return self._key_locks.setdefault((kind, key), threading.Lock())

    def _cached(self, cache_key: Tuple[Any, ...]) -> Optional[Resolution]:
        cached = self._cache.get(cache_key)
        if cached is None:
            return None
        return replace(cached, created=False) if cached.created else cached

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve_employee(self, name: Optional[str], employee_code: Optional[str] = None,
                         defaults: Optional[Dict[str, Any]] = None,
                         include_inactive: bool = False) -> Resolution:
        """
        Resolve an employee reference to a canonical id, creating the employee if absent.

        Names match active employees only. With include_inactive, an exact name
        match against an inactive employee is used when no active one matches.

        Raises:
            UnresolvedReferenceError: name and code are both blank
            AmbiguousReferenceError: more than one canonical employee matches
        """
        reference = (name or "").strip()
        key = normalize_name(reference)
        code = normalize_code(employee_code)
        if not key and not code:
            raise UnresolvedReferenceError("employee")

        cache_key = (EntityKind.EMPLOYEE, key, code, include_inactive)
        with self._lock:
            cached = self._cached(cache_key)
            if cached:
                return cached
            found = self._match_employee(reference or code, key, code, include_inactive)
            if found:
                return self._remember(cache_key, EntityKind.EMPLOYEE, found)

        if not key:
            raise UnresolvedReferenceError("employee", f"no employee with code '{employee_code}' and no name given")

        with self._key_lock(EntityKind.EMPLOYEE, key):
            with self._lock:
                cached = self._cached(cache_key)
                if cached:
                    return cached
                found = self._match_employee(reference, key, code, include_inactive)
                if found:
                    return self._remember(cache_key, EntityKind.EMPLOYEE, found)

                fields = dict(defaults or {})
                employee = Employee(
                    id=self._allocate_id(EntityKind.EMPLOYEE),
                    name=reference,
                    name_key=key,
                    employee_code=employee_code.strip() if employee_code else None,
                    **fields,
                )
                self._index_employee(employee)
                self._created[EntityKind.EMPLOYEE][employee.id] = employee
                logger.info(f"Created employee '{employee.name}' (provisional id {employee.id})")
                resolution = Resolution(EntityKind.EMPLOYEE, employee.id, True, "created", employee.name)
                self._cache[cache_key] = resolution
                return resolution

    def resolve_project(self, name: Optional[str], project_code: Optional[str] = None,
                        is_reason: bool = False, allow_base_code: bool = False,
                        defaults: Optional[Dict[str, Any]] = None) -> Resolution:
        """
        Resolve a project reference to a canonical id, creating the project if absent.

        A reference flagged as a Reason entry always resolves to the Internal project.
        """
        if is_reason:
            return self.resolve_internal()

        reference = (name or "").strip()
        parsed_code, _ = split_project_code(reference) if reference else (None, "")
        codes = [c for c in (normalize_code(project_code), parsed_code) if c]
        key = normalize_name(reference)
        if not key and not codes:
            raise UnresolvedReferenceError("project")

        cache_key = (EntityKind.PROJECT, key, tuple(codes), allow_base_code)
        with self._lock:
            cached = self._cached(cache_key)
            if cached:
                return cached
            found = self._match_project(reference or codes[0], key, codes, allow_base_code)
            if found:
                return self._remember(cache_key, EntityKind.PROJECT, found)

        if not key:
            raise UnresolvedReferenceError("project", f"no project with code '{project_code}' and no name given")

        with self._key_lock(EntityKind.PROJECT, key):
            with self._lock:
                cached = self._cached(cache_key)
                if cached:
                    return cached
                found = self._match_project(reference, key, codes, allow_base_code)
                if found:
                    return self._remember(cache_key, EntityKind.PROJECT, found)

                fields = dict(defaults or {})
                code = codes[0] if codes else None
                if code and "client_code" not in fields:
                    fields["client_code"] = re.sub(r"[\d-]", "", code) or None
                project = Project(
                    id=self._allocate_id(EntityKind.PROJECT),
                    name=reference,
                    name_key=key,
                    project_code=code,
                    **fields,
                )
                self._index_project(project)
                self._created[EntityKind.PROJECT][project.id] = project
                logger.info(f"Created project '{project.name}' (provisional id {project.id})")
                resolution = Resolution(EntityKind.PROJECT, project.id, True, "created", project.name)
                self._cache[cache_key] = resolution
                return resolution

    def resolve_internal(self) -> Resolution:
        """The single synthetic Internal project, created on first use."""
        with self._lock:
            if self._internal_id is not None:
                project = self._projects[self._internal_id]
                return Resolution(EntityKind.PROJECT, project.id, False, "internal", project.name)
            project = Project(
                id=self._allocate_id(EntityKind.PROJECT),
                name=self.settings.internal_project_name,
                name_key=self._internal_key,
                is_internal=True,
                work_type="Internal",
            )
            self._index_project(project)
            self._created[EntityKind.PROJECT][project.id] = project
            self._internal_id = project.id
            logger.info(f"Created Internal project (provisional id {project.id})")
            return Resolution(EntityKind.PROJECT, project.id, True, "internal", project.name)

    def _remember(self, cache_key: Tuple[Any, ...], kind: EntityKind, found: Tuple[int, str]) -> Resolution:
        entity_id, matched_by = found
        name = self._names(kind, [entity_id])[0]
        resolution = Resolution(kind, entity_id, False, matched_by, name)
        self._cache[cache_key] = resolution
        return resolution
