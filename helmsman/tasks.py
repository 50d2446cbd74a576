"""
HELMSMAN Task Graph — Epic → Task → Subtask

The work hierarchy every write is gated on. One rule matters above
all others: at most one epic, and within it at most one task, is
active at a time. That pair is the "active chain".

State machines:
  Task:    planned → active → {completed, blocked, deferred}
           blocked → active (unblock), planned|blocked → deferred
  Epic:    planned → active → {completed, deferred, abandoned}
           planned → {deferred, abandoned}
  Subtask: pending → {done, skipped}

Records are never deleted, only moved into terminal states.

Every mutating method validates first and mutates second, so a
raised GovernanceError always leaves the store untouched.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from helmsman.clock import MINUTE_MS, Clock, now_ms
from helmsman.errors import (
    ChainConflict,
    IncompleteSubtasks,
    InvalidTaskTransition,
    LinkageError,
    PersistenceError,
    ValidationError,
)

TASK_STORE_VERSION = "2.0.0"

# Active for longer than this with no activity counts as stale
STALE_THRESHOLD_MS = 240 * MINUTE_MS

EpicStatus = Literal["planned", "active", "completed", "deferred", "abandoned"]
TaskStatus = Literal["planned", "active", "completed", "blocked", "deferred"]
SubtaskStatus = Literal["pending", "done", "skipped"]

WorkStreamCategory = Literal["development", "research", "governance", "maintenance", "spec-kit", "ad-hoc"]
GovernanceLevel = Literal["strict", "balanced", "minimal"]

CATEGORY_DEFAULTS: dict[str, str] = {
    "development": "strict",
    "research": "balanced",
    "governance": "strict",
    "maintenance": "balanced",
    "spec-kit": "balanced",
    "ad-hoc": "minimal",
}

EPIC_TERMINAL = {"completed", "deferred", "abandoned"}
TASK_TERMINAL = {"completed", "deferred"}

EPIC_TRANSITIONS: dict[str, set[str]] = {
    "planned": {"active", "deferred", "abandoned"},
    "active": {"completed", "deferred", "abandoned"},
    "completed": set(),
    "deferred": set(),
    "abandoned": set(),
}

TASK_TRANSITIONS: dict[str, set[str]] = {
    "planned": {"active", "deferred"},
    "active": {"completed", "blocked", "deferred"},
    "blocked": {"active", "deferred"},
    "completed": set(),
    "deferred": set(),
}


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class Subtask(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    task_id: str
    name: str
    status: SubtaskStatus = "pending"
    tool_used: str | None = None
    timestamp: int | None = None


class Task(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    epic_id: str
    name: str
    status: TaskStatus = "planned"
    assignee: str | None = None
    evidence: str | None = None
    delegated_to: str | None = None
    delegation_id: str | None = None
    created_at: int = 0
    modified_at: int = 0
    subtasks: list[Subtask] = Field(default_factory=list)

    def pending_subtasks(self) -> list[Subtask]:
        return [s for s in self.subtasks if s.status == "pending"]


class TaskEpic(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    status: EpicStatus = "planned"
    category: WorkStreamCategory = "development"
    governance_level: GovernanceLevel = "strict"
    created_at: int = 0
    modified_at: int = 0
    tasks: list[Task] = Field(default_factory=list)


class TaskStore(BaseModel):
    """The whole hierarchy, persisted as tasks.json."""
    model_config = ConfigDict(extra="allow")

    version: str = TASK_STORE_VERSION
    active_epic_id: str | None = None
    epics: list[TaskEpic] = Field(default_factory=list)


@dataclass
class ActiveChain:
    epic: TaskEpic
    task: Task | None
    pending_subtasks: list[Subtask] = field(default_factory=list)


@dataclass
class ChainWarning:
    kind: str  # dangling_reference | multiple_active_tasks | multiple_active_epics | no_active_tasks | completed_with_pending | stale_task
    message: str
    epic_id: str | None = None
    task_id: str | None = None


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


def create_empty_store() -> TaskStore:
    return TaskStore()


def create_bootstrap_store(now: int | None = None, assignee: str = "coordinator") -> TaskStore:
    """
    A store with an epic and task already active.

    Written by `helmsman init` so agents can write from their very
    first session without a start-task round trip.
    """
    ts = now if now is not None else now_ms()
    epic_id = f"epic-bootstrap-{ts}"
    task_id = f"task-bootstrap-{ts}"
    return TaskStore(
        active_epic_id=epic_id,
        epics=[TaskEpic(
            id=epic_id,
            name="Bootstrap Initialization",
            status="active",
            category="governance",
            governance_level="strict",
            created_at=ts,
            modified_at=ts,
            tasks=[Task(
                id=task_id,
                epic_id=epic_id,
                name="Initial System Setup",
                status="active",
                assignee=assignee,
                created_at=ts,
                modified_at=ts,
            )],
        )],
    )


# ---------------------------------------------------------------------------
# Migration
# ---------------------------------------------------------------------------

def _version_tuple(version: Any) -> tuple[int, ...]:
    """'2.0.0' → (2, 0, 0). A store without a version tag is 1.0.0."""
    if version is None:
        return (1, 0, 0)
    try:
        return tuple(int(part) for part in str(version).split("."))
    except ValueError:
        raise ValueError(f"Unrecognised task store version {version!r}") from None


def _list_of_dicts(value: Any, where: str) -> list[dict[str, Any]]:
    if not isinstance(value, list) or not all(isinstance(item, dict) for item in value):
        raise ValueError(f"{where} must be a list of objects, got {type(value).__name__}")
    return value


def migrate_task_store(raw: dict[str, Any]) -> dict[str, Any]:
    """
    Upgrade a persisted task store to TASK_STORE_VERSION.

    Already-current stores are returned unchanged. Older stores are
    deep-copied, unknown fields are carried over untouched, and missing
    required fields get defaults:
      - epic.category            → "development"
      - epic.governance_level    → CATEGORY_DEFAULTS[category]
      - epic/task timestamps     → parent's created_at, else 0
      - task.subtasks, epic.tasks → []
      - active_epic_id           → first epic with status "active"

    A store from a newer version raises PersistenceError rather than
    being downgraded. A malformed older store raises ValueError.
    """
    version = raw.get("version")
    if version == TASK_STORE_VERSION:
        return raw
    if _version_tuple(version) > _version_tuple(TASK_STORE_VERSION):
        raise PersistenceError(
            f"Task store version {version} is newer than supported {TASK_STORE_VERSION}; refusing to downgrade."
        )

    store = copy.deepcopy(raw)
    epics = _list_of_dicts(store.setdefault("epics", []), "epics")

    for epic in epics:
        epic.setdefault("category", "development")
        epic.setdefault("governance_level", CATEGORY_DEFAULTS.get(epic["category"], "strict"))
        epic.setdefault("status", "planned")
        epic.setdefault("created_at", 0)
        epic.setdefault("modified_at", epic["created_at"])
        tasks = _list_of_dicts(epic.setdefault("tasks", []), f"epic {epic.get('id')!r} tasks")
        for task in tasks:
            task.setdefault("epic_id", epic.get("id", ""))
            task.setdefault("status", "planned")
            task.setdefault("created_at", epic["created_at"])
            task.setdefault("modified_at", task["created_at"])
            subtasks = _list_of_dicts(task.setdefault("subtasks", []), f"task {task.get('id')!r} subtasks")
            for sub in subtasks:
                sub.setdefault("task_id", task.get("id", ""))
                sub.setdefault("status", "pending")

    if "active_epic_id" not in store:
        active = next((e.get("id") for e in epics if e.get("status") == "active"), None)
        store["active_epic_id"] = active

    store["version"] = TASK_STORE_VERSION
    return store


def load_task_store(raw: dict[str, Any] | None) -> TaskStore:
    if not raw:
        return create_empty_store()
    return TaskStore.model_validate(migrate_task_store(raw))


# ---------------------------------------------------------------------------
# Task Graph
# ---------------------------------------------------------------------------

class TaskGraph:
    """
    Logic over a TaskStore.

    The store itself is process-wide and owned by the StateManager;
    callers fetch it, run operations here, and hand it back.
    """

    def __init__(
        self,
        store: TaskStore | None = None,
        clock: Clock = now_ms,
        stale_threshold_ms: int = STALE_THRESHOLD_MS,
    ):
        self.store = store or create_empty_store()
        self._clock = clock
        self.stale_threshold_ms = stale_threshold_ms

    # ── Lookup ──────────────────────────────────────────────────────────

    def find_epic(self, epic_id: str) -> TaskEpic | None:
        return next((e for e in self.store.epics if e.id == epic_id), None)

    def find_task(self, task_id: str) -> Task | None:
        for epic in self.store.epics:
            for task in epic.tasks:
                if task.id == task_id:
                    return task
        return None

    def find_subtask(self, subtask_id: str) -> Subtask | None:
        for task in self._all_tasks():
            for sub in task.subtasks:
                if sub.id == subtask_id:
                    return sub
        return None

    def find_parent_task(self, subtask_id: str) -> Task | None:
        for task in self._all_tasks():
            if any(s.id == subtask_id for s in task.subtasks):
                return task
        return None

    def find_parent_epic(self, task_id: str) -> TaskEpic | None:
        return next((e for e in self.store.epics if any(t.id == task_id for t in e.tasks)), None)

    def active_tasks(self) -> list[Task]:
        return [t for t in self._all_tasks() if t.status == "active"]

    def _all_tasks(self) -> list[Task]:
        return [t for e in self.store.epics for t in e.tasks]

    # ── Active chain ────────────────────────────────────────────────────

    def get_active_chain(self) -> ActiveChain | None:
        """
        The active epic and its active task (task may be None).

        Returns None when no epic is active. A stale active_epic_id
        falls back to the first epic whose status is active.
        """
        epic = None
        if self.store.active_epic_id:
            candidate = self.find_epic(self.store.active_epic_id)
            if candidate and candidate.status == "active":
                epic = candidate
        if epic is None:
            epic = next((e for e in self.store.epics if e.status == "active"), None)
        if epic is None:
            return None

        task = next((t for t in epic.tasks if t.status == "active"), None)
        return ActiveChain(
            epic=epic,
            task=task,
            pending_subtasks=task.pending_subtasks() if task else [],
        )

    def active_task(self) -> Task | None:
        chain = self.get_active_chain()
        return chain.task if chain else None

    # ── Creation ────────────────────────────────────────────────────────

    def create_epic(
        self,
        name: str,
        category: WorkStreamCategory = "development",
        governance_level: GovernanceLevel | None = None,
    ) -> TaskEpic:
        """New epic. Becomes the active epic when none is active yet."""
        if not name.strip():
            raise ValidationError("Epic name must not be empty.")
        if category not in CATEGORY_DEFAULTS:
            raise ValidationError(f"Unknown category '{category}'. Valid: {', '.join(CATEGORY_DEFAULTS)}")

        now = self._clock()
        activate = self.get_active_chain() is None
        epic = TaskEpic(
            id=_new_id("epic"),
            name=name.strip(),
            status="active" if activate else "planned",
            category=category,
            governance_level=governance_level or CATEGORY_DEFAULTS[category],
            created_at=now,
            modified_at=now,
        )
        self.store.epics.append(epic)
        if activate:
            self.store.active_epic_id = epic.id
        return epic

    def create_task(self, epic_id: str, name: str, assignee: str | None = None) -> Task:
        if not name.strip():
            raise ValidationError("Task name must not be empty.")
        epic = self.find_epic(epic_id)
        if epic is None:
            raise LinkageError(f"Epic '{epic_id}' not found.")
        if epic.status in EPIC_TERMINAL:
            raise LinkageError(f"Epic '{epic.name}' is {epic.status}; it cannot take new tasks.")

        now = self._clock()
        task = Task(
            id=_new_id("task"),
            epic_id=epic.id,
            name=name.strip(),
            assignee=assignee,
            created_at=now,
            modified_at=now,
        )
        epic.tasks.append(task)
        epic.modified_at = now
        return task

    def create_subtask(self, task_id: str, name: str) -> Subtask:
        if not name.strip():
            raise ValidationError("Subtask name must not be empty.")
        task = self.find_task(task_id)
        if task is None:
            raise LinkageError(f"Task '{task_id}' not found.")
        if task.status in TASK_TERMINAL:
            raise LinkageError(f"Task '{task.name}' is {task.status}; it cannot take new subtasks.")

        now = self._clock()
        sub = Subtask(id=_new_id("sub"), task_id=task.id, name=name.strip(), timestamp=now)
        task.subtasks.append(sub)
        task.modified_at = now
        return sub

    # ── Task transitions ────────────────────────────────────────────────

    def start_task(self, task_id: str) -> Task:
        """
        Make a task active, activating its epic if needed.

        Refuses when any other task is active, or when a different epic
        already holds the active slot.
        """
        task = self._require_task(task_id)
        self._check_task_transition(task, "active")
        epic = self._require_parent_epic(task)
        if epic.status in EPIC_TERMINAL:
            raise LinkageError(f"Epic '{epic.name}' is {epic.status}; its tasks cannot be started.")

        others = [t for t in self.active_tasks() if t.id != task.id]
        if others:
            names = ", ".join(f"'{t.name}'" for t in others)
            raise ChainConflict(f"Cannot start '{task.name}': {names} already active. Complete, block or defer it first.")

        chain = self.get_active_chain()
        if chain is not None and chain.epic.id != epic.id:
            raise ChainConflict(f"Epic '{chain.epic.name}' is active; '{epic.name}' cannot take the active chain.")

        now = self._clock()
        if epic.status != "active":
            epic.status = "active"
            epic.modified_at = now
        self.store.active_epic_id = epic.id
        task.status = "active"
        task.modified_at = now
        return task

    def validate_completion(self, task: Task, override: bool = False) -> None:
        """
        Raise if the task may not be completed right now.

        IncompleteSubtasks when subtasks are pending (unless override),
        ChainConflict when more than one task is marked active.
        """
        active = self.active_tasks()
        if len(active) > 1:
            names = ", ".join(f"'{t.name}'" for t in active)
            raise ChainConflict(f"Chain integrity violation: {len(active)} tasks are active ({names}).")

        pending = task.pending_subtasks()
        if pending and not override:
            listing = "\n".join(f"  - [ ] {s.name}" for s in pending)
            raise IncompleteSubtasks(
                f"BLOCKED: Task '{task.name}' has {len(pending)} pending subtask(s):\n{listing}\n"
                "Complete or skip these first, or pass override.",
                pending=[s.id for s in pending],
            )

    def complete_task(
        self,
        task_id: str,
        evidence: str | None = None,
        override: bool = False,
        require_evidence: bool = False,
    ) -> Task:
        task = self._require_task(task_id)
        self._check_task_transition(task, "completed")
        self.validate_completion(task, override=override)
        if require_evidence and not (evidence and evidence.strip()):
            raise ValidationError(
                f"Cannot complete '{task.name}' without evidence. "
                "Provide proof: test results, files created, behavior verified."
            )

        task.status = "completed"
        if evidence:
            task.evidence = evidence.strip()
        task.modified_at = self._clock()
        return task

    def block_task(self, task_id: str, reason: str | None = None) -> Task:
        task = self._require_task(task_id)
        self._check_task_transition(task, "blocked")
        task.status = "blocked"
        if reason:
            task.evidence = f"blocked: {reason}"
        task.modified_at = self._clock()
        return task

    def unblock_task(self, task_id: str) -> Task:
        task = self._require_task(task_id)
        if task.status != "blocked":
            raise InvalidTaskTransition(f"Task '{task.name}' is {task.status}, not blocked.")
        return self.start_task(task_id)

    def defer_task(self, task_id: str, reason: str | None = None) -> Task:
        task = self._require_task(task_id)
        self._check_task_transition(task, "deferred")
        task.status = "deferred"
        if reason:
            task.evidence = f"deferred: {reason}"
        task.modified_at = self._clock()
        return task

    # ── Subtask transitions ─────────────────────────────────────────────

    def complete_subtask(self, subtask_id: str, tool_used: str | None = None) -> Subtask:
        return self._finish_subtask(subtask_id, "done", tool_used)

    def skip_subtask(self, subtask_id: str) -> Subtask:
        return self._finish_subtask(subtask_id, "skipped", None)

    def _finish_subtask(self, subtask_id: str, status: SubtaskStatus, tool_used: str | None) -> Subtask:
        sub = self.find_subtask(subtask_id)
        if sub is None:
            raise LinkageError(f"Subtask '{subtask_id}' not found.")
        if sub.status != "pending":
            raise InvalidTaskTransition(f"Subtask '{sub.name}' is already {sub.status}.")
        parent = self.find_parent_task(subtask_id)

        now = self._clock()
        sub.status = status
        sub.timestamp = now
        if tool_used:
            sub.tool_used = tool_used
        if parent is not None:
            parent.modified_at = now
        return sub

    # ── Epic transitions ────────────────────────────────────────────────

    def activate_epic(self, epic_id: str) -> TaskEpic:
        epic = self._require_epic(epic_id)
        self._check_epic_transition(epic, "active")
        chain = self.get_active_chain()
        if chain is not None and chain.epic.id != epic.id:
            raise ChainConflict(f"Epic '{chain.epic.name}' is already active.")
        epic.status = "active"
        epic.modified_at = self._clock()
        self.store.active_epic_id = epic.id
        return epic

    def complete_epic(self, epic_id: str) -> TaskEpic:
        epic = self._require_epic(epic_id)
        self._check_epic_transition(epic, "completed")
        open_tasks = [t for t in epic.tasks if t.status in ("active", "blocked", "planned")]
        if open_tasks:
            names = ", ".join(f"'{t.name}'" for t in open_tasks)
            raise InvalidTaskTransition(
                f"Epic '{epic.name}' still has open tasks: {names}. Complete or defer them first."
            )
        return self._close_epic(epic, "completed")

    def defer_epic(self, epic_id: str) -> TaskEpic:
        epic = self._require_epic(epic_id)
        self._check_epic_transition(epic, "deferred")
        return self._close_epic(epic, "deferred")

    def abandon_epic(self, epic_id: str) -> TaskEpic:
        epic = self._require_epic(epic_id)
        self._check_epic_transition(epic, "abandoned")
        return self._close_epic(epic, "abandoned")

    def _close_epic(self, epic: TaskEpic, status: EpicStatus) -> TaskEpic:
        """Terminal epic: open tasks are deferred along with it."""
        now = self._clock()
        for task in epic.tasks:
            if task.status not in TASK_TERMINAL:
                task.status = "deferred"
                task.modified_at = now
        epic.status = status
        epic.modified_at = now
        if self.store.active_epic_id == epic.id:
            self.store.active_epic_id = None
        return epic

    # ── Diagnostics ─────────────────────────────────────────────────────

    def find_orphan_tasks(self) -> list[Task]:
        """Tasks whose epic_id does not name an existing epic."""
        epic_ids = {e.id for e in self.store.epics}
        return [t for t in self._all_tasks() if t.epic_id not in epic_ids]

    def find_orphan_subtasks(self) -> list[Subtask]:
        task_ids = {t.id for t in self._all_tasks()}
        return [s for t in self._all_tasks() for s in t.subtasks if s.task_id not in task_ids]

    def find_stale_tasks(self, threshold_ms: int | None = None) -> list[Task]:
        """Active tasks untouched for longer than threshold_ms."""
        limit = self.stale_threshold_ms if threshold_ms is None else threshold_ms
        now = self._clock()
        return [t for t in self.active_tasks() if now - t.modified_at > limit]

    def detect_chain_breaks(self) -> list[ChainWarning]:
        """Structural audit. Never mutates the store."""
        warnings: list[ChainWarning] = []

        for task in self.find_orphan_tasks():
            warnings.append(ChainWarning(
                kind="dangling_reference",
                task_id=task.id,
                epic_id=task.epic_id,
                message=f"Task '{task.name}' references missing epic '{task.epic_id}'.",
            ))
        for sub in self.find_orphan_subtasks():
            warnings.append(ChainWarning(
                kind="dangling_reference",
                task_id=sub.task_id,
                message=f"Subtask '{sub.name}' references missing task '{sub.task_id}'.",
            ))
        if self.store.active_epic_id and self.find_epic(self.store.active_epic_id) is None:
            warnings.append(ChainWarning(
                kind="dangling_reference",
                epic_id=self.store.active_epic_id,
                message=f"active_epic_id points to missing epic '{self.store.active_epic_id}'.",
            ))

        active_epics = [e for e in self.store.epics if e.status == "active"]
        if len(active_epics) > 1:
            warnings.append(ChainWarning(
                kind="multiple_active_epics",
                message="Multiple active epics: " + ", ".join(f"'{e.name}'" for e in active_epics),
            ))

        active = self.active_tasks()
        if len(active) > 1:
            warnings.append(ChainWarning(
                kind="multiple_active_tasks",
                message="Multiple active tasks: " + ", ".join(f"'{t.name}'" for t in active),
            ))

        now = self._clock()
        for epic in self.store.epics:
            if epic.status == "active" and epic.tasks and not any(t.status == "active" for t in epic.tasks):
                planned = [t for t in epic.tasks if t.status == "planned"]
                hint = f" {len(planned)} planned task(s) waiting." if planned else " Create a task first."
                warnings.append(ChainWarning(
                    kind="no_active_tasks",
                    epic_id=epic.id,
                    message=f"Epic '{epic.name}' is active but has no active tasks.{hint}",
                ))

            for task in epic.tasks:
                if task.status == "completed" and task.pending_subtasks():
                    warnings.append(ChainWarning(
                        kind="completed_with_pending",
                        epic_id=epic.id,
                        task_id=task.id,
                        message=f"Task '{task.name}' is completed but has {len(task.pending_subtasks())} pending subtask(s).",
                    ))
                if task.status == "active" and now - task.modified_at > self.stale_threshold_ms:
                    mins = round((now - task.modified_at) / MINUTE_MS)
                    warnings.append(ChainWarning(
                        kind="stale_task",
                        epic_id=epic.id,
                        task_id=task.id,
                        message=f"Task '{task.name}' has been active for {mins} min with no activity.",
                    ))

        return warnings

    # ── Guards ──────────────────────────────────────────────────────────

    def _require_epic(self, epic_id: str) -> TaskEpic:
        epic = self.find_epic(epic_id)
        if epic is None:
            raise LinkageError(f"Epic '{epic_id}' not found.")
        return epic

    def _require_task(self, task_id: str) -> Task:
        task = self.find_task(task_id)
        if task is None:
            raise LinkageError(f"Task '{task_id}' not found.")
        return task

    def _require_parent_epic(self, task: Task) -> TaskEpic:
        epic = self.find_epic(task.epic_id)
        if epic is None:
            raise LinkageError(f"Task '{task.name}' references missing epic '{task.epic_id}'.")
        return epic

    @staticmethod
    def _check_task_transition(task: Task, target: str) -> None:
        if target not in TASK_TRANSITIONS[task.status]:
            raise InvalidTaskTransition(f"Task '{task.name}' cannot go from {task.status} to {target}.")

    @staticmethod
    def _check_epic_transition(epic: TaskEpic, target: str) -> None:
        if target not in EPIC_TRANSITIONS[epic.status]:
            raise InvalidTaskTransition(f"Epic '{epic.name}' cannot go from {epic.status} to {target}.")


# ---------------------------------------------------------------------------
# Display
# ---------------------------------------------------------------------------

STATUS_ICONS = {
    "planned": "⬜",
    "active": "🔄",
    "completed": "✅",
    "deferred": "⏸️",
    "abandoned": "❌",
    "blocked": "🚫",
    "pending": "☐",
    "done": "☑",
    "skipped": "⊘",
}


def format_task_tree(store: TaskStore) -> str:
    if not store.epics:
        return "=== Task Hierarchy ===\n\nNo epics created yet."

    lines = ["=== Task Hierarchy ===", ""]
    for epic in store.epics:
        done = sum(1 for t in epic.tasks if t.status == "completed")
        marker = " ◀ ACTIVE" if epic.id == store.active_epic_id else ""
        lines.append(
            f"{STATUS_ICONS.get(epic.status, '?')} EPIC: \"{epic.name}\" "
            f"[{epic.category}/{epic.governance_level}] ({done}/{len(epic.tasks)} tasks){marker}"
        )
        for task in epic.tasks:
            assignee = f" [{task.assignee}]" if task.assignee else ""
            evidence = f" (evidence: {task.evidence})" if task.evidence else ""
            lines.append(f"  {STATUS_ICONS.get(task.status, '?')} {task.name}{assignee}{evidence}")
            for sub in task.subtasks:
                via = f" (via: {sub.tool_used})" if sub.tool_used else ""
                lines.append(f"     {STATUS_ICONS.get(sub.status, '?')} {sub.name}{via}")
        lines.append("")
    return "\n".join(lines).rstrip()


def build_governance_reminder(graph: TaskGraph) -> str:
    """Next-action footer appended to every task tool response."""
    chain = graph.get_active_chain()
    if chain is None:
        return "--- Governance Reminder ---\nNo active plan. Create an epic first."

    done = sum(1 for t in chain.epic.tasks if t.status == "completed")
    lines = [
        "--- Governance Reminder ---",
        f"Active Epic: \"{chain.epic.name}\" ({done}/{len(chain.epic.tasks)} tasks)",
    ]
    if chain.task:
        subs = chain.task.subtasks
        subs_done = sum(1 for s in subs if s.status == "done")
        progress = f"{subs_done}/{len(subs)} subtasks done" if subs else "no subtasks"
        lines.append(f"Current Task: \"{chain.task.name}\" ({progress})")
        if chain.pending_subtasks:
            lines.append(f"Next: Complete subtask \"{chain.pending_subtasks[0].name}\"")
        elif subs:
            lines.append("Next: All subtasks done, complete the task with evidence")
    else:
        planned = [t for t in chain.epic.tasks if t.status == "planned"]
        if planned:
            lines.append(f"Next: Start task \"{planned[0].name}\"")
        else:
            lines.append("Next: Create a task")
    return "\n".join(lines)
