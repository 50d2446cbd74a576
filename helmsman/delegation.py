"""
HELMSMAN Delegation Ledger

A delegation is a schema-regulated handoff between agent personas:
  - context transfer (what the delegate needs to know)
  - expected output (what must come back)
  - capability whitelist (which tools/actions the delegate may use)
  - chain tracking (who delegated to whom, bounded depth)

Lifecycle:
  pending → accepted → completed
  pending | accepted → rejected
  pending | accepted → expired   (lazy: evaluated on every read)

There are no timers. Expiry is re-evaluated whenever records are read,
so every reader sees a consistent view without a background sweep.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from helmsman.clock import MINUTE_MS, Clock, now_ms
from helmsman.errors import DepthExceeded, InvalidTransition, ValidationError
from helmsman.tasks import TaskGraph

DELEGATION_STORE_VERSION = "1.0.0"
MAX_DELEGATION_DEPTH = 3
DELEGATION_EXPIRY_MS = 30 * MINUTE_MS

DEFAULT_ALLOWED_TOOLS = ["helmsman_task", "helmsman_anchor"]
DEFAULT_ALLOWED_ACTIONS = ["status", "add_subtask", "complete"]

DelegationStatus = Literal["pending", "accepted", "completed", "rejected", "expired"]

OPEN_STATUSES = {"pending", "accepted"}
# Statuses that still count as links in a delegation chain
CHAIN_STATUSES = {"pending", "accepted", "completed"}

DELEGATION_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"accepted", "rejected", "expired"},
    "accepted": {"completed", "rejected", "expired"},
    "completed": set(),
    "rejected": set(),
    "expired": set(),
}

# Lower number = more authority. Delegation flows downward or sideways only.
DEFAULT_HIERARCHY: dict[str, int] = {
    "coordinator": 0,
    "investigator": 1,
    "executor": 1,
}

DEFAULT_CATEGORY_ROUTING: dict[str, list[str]] = {
    "development": ["executor"],
    "research": ["investigator"],
    "governance": ["coordinator"],
    "maintenance": ["executor", "investigator"],
    "spec-kit": ["investigator"],
}


class DelegationResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    evidence: str = ""
    files_modified: list[str] = Field(default_factory=list)
    tests_run: str = ""
    created_knowledge_ids: list[str] = Field(default_factory=list)


class DelegationRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    from_agent: str
    to_agent: str
    task_id: str
    context: str = ""
    expected_output: str = ""
    allowed_tools: list[str] = Field(default_factory=list)
    allowed_actions: list[str] = Field(default_factory=list)
    max_depth: int = MAX_DELEGATION_DEPTH
    depth: int = 1
    parent_id: str | None = None
    status: DelegationStatus = "pending"
    created_at: int
    completed_at: int | None = None
    expires_at: int
    result: DelegationResult | None = None


class DelegationStore(BaseModel):
    """All delegation records, persisted as delegations.json."""
    model_config = ConfigDict(extra="allow")

    version: str = DELEGATION_STORE_VERSION
    delegations: list[DelegationRecord] = Field(default_factory=list)


@dataclass
class DelegationValidation:
    valid: bool
    reason: str


def create_empty_delegation_store() -> DelegationStore:
    return DelegationStore()


def load_delegation_store(raw: dict[str, Any] | None) -> DelegationStore:
    if not raw:
        return create_empty_delegation_store()
    data = dict(raw)
    data.setdefault("delegations", [])
    data["version"] = DELEGATION_STORE_VERSION
    return DelegationStore.model_validate(data)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def expire_stale_delegations(store: DelegationStore, now: int) -> DelegationStore:
    """
    Flip overdue pending/accepted records to expired.

    Pure: the input is never modified. When nothing is overdue the
    input store is returned as-is.
    """
    overdue = {d.id for d in store.delegations if d.status in OPEN_STATUSES and now > d.expires_at}
    if not overdue:
        return store

    fresh = store.model_copy(deep=True)
    for record in fresh.delegations:
        if record.id in overdue:
            record.status = "expired"
            record.completed_at = now
    return fresh


def _find_parent(record: DelegationRecord, store: DelegationStore) -> DelegationRecord | None:
    """
    The live delegation that handed this task to record.from_agent.

    Only used when a record is created; the answer is stored as
    parent_id. The newest candidate wins, store order breaking ties.
    """
    parent = None
    for d in store.delegations:
        if (
            d.id != record.id
            and d.task_id == record.task_id
            and d.to_agent == record.from_agent
            and d.status in CHAIN_STATUSES
            and (parent is None or d.created_at >= parent.created_at)
        ):
            parent = d
    return parent


def get_delegation_depth(
    record: DelegationRecord,
    store: DelegationStore,
    max_depth: int = MAX_DELEGATION_DEPTH,
) -> int:
    """
    Chain depth of record: 1 for a root handoff, +1 per ancestor.

    Follows parent_id links. The walk visits at most max_depth + 1
    ancestors, so it always terminates. A record id seen twice means
    the chain is cyclic and raises DepthExceeded. A parent_id that no
    longer resolves ends the chain.
    """
    by_id = {d.id: d for d in store.delegations}
    depth = 1
    visited = {record.id}
    current = record
    for _ in range(max_depth + 1):
        if current.parent_id is None:
            break
        parent = by_id.get(current.parent_id)
        if parent is None:
            break
        if parent.id in visited:
            raise DepthExceeded(
                f"Delegation chain for task '{record.task_id}' is cyclic at '{parent.id}'.",
                depth=depth,
                max_depth=max_depth,
            )
        visited.add(parent.id)
        depth += 1
        current = parent
    return depth


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class DelegationLedger:
    """
    Owns a DelegationStore and the rules that govern it.

    Every read path runs expire_stale_delegations first, so callers
    never observe a pending record that is past its deadline.
    """

    def __init__(
        self,
        store: DelegationStore | None = None,
        clock: Clock = now_ms,
        max_depth: int = MAX_DELEGATION_DEPTH,
        expiry_ms: int = DELEGATION_EXPIRY_MS,
        hierarchy: dict[str, int] | None = None,
        category_routing: dict[str, list[str]] | None = None,
    ):
        self._store = store or create_empty_delegation_store()
        self._clock = clock
        self.max_depth = max_depth
        self.expiry_ms = expiry_ms
        self.hierarchy = DEFAULT_HIERARCHY if hierarchy is None else hierarchy
        self.category_routing = DEFAULT_CATEGORY_ROUTING if category_routing is None else category_routing

    @property
    def store(self) -> DelegationStore:
        self._store = expire_stale_delegations(self._store, self._clock())
        return self._store

    # ── Lookup ──────────────────────────────────────────────────────────

    def records(self) -> list[DelegationRecord]:
        return list(self.store.delegations)

    def find(self, delegation_id: str) -> DelegationRecord | None:
        return next((d for d in self.store.delegations if d.id == delegation_id), None)

    def for_task(self, task_id: str) -> list[DelegationRecord]:
        return [d for d in self.store.delegations if d.task_id == task_id]

    def from_agent(self, agent: str) -> list[DelegationRecord]:
        return [d for d in self.store.delegations if d.from_agent == agent]

    def to_agent(self, agent: str) -> list[DelegationRecord]:
        return [d for d in self.store.delegations if d.to_agent == agent]

    def active(self) -> list[DelegationRecord]:
        return [d for d in self.store.delegations if d.status in OPEN_STATUSES]

    def depth_of(self, record: DelegationRecord) -> int:
        return get_delegation_depth(record, self.store, self.max_depth)

    # ── Validation ──────────────────────────────────────────────────────

    def validate(self, record: DelegationRecord, graph: TaskGraph) -> DelegationValidation:
        """
        Structural checks against the task graph and agent hierarchy.

        Returns a failure signal instead of raising so tool handlers can
        branch on it.
        """
        task = graph.find_task(record.task_id)
        if task is None:
            return DelegationValidation(False, f"Task '{record.task_id}' not found.")
        if task.status in ("completed", "deferred"):
            return DelegationValidation(False, f"Task '{task.name}' is {task.status}; nothing left to delegate.")
        if record.from_agent == record.to_agent:
            return DelegationValidation(False, f"Cannot delegate to self ({record.from_agent}).")
        if record.expected_output.strip() and not record.allowed_tools:
            return DelegationValidation(False, "A delegation that expects output must grant at least one tool.")

        if self.hierarchy:
            from_level = self.hierarchy.get(record.from_agent)
            to_level = self.hierarchy.get(record.to_agent)
            if from_level is None:
                return DelegationValidation(False, f"Unknown agent '{record.from_agent}'.")
            if to_level is None:
                known = ", ".join(self.hierarchy)
                return DelegationValidation(False, f"Unknown agent '{record.to_agent}'. Known agents: {known}")
            if to_level < from_level:
                return DelegationValidation(
                    False,
                    f"Cannot delegate up: '{record.from_agent}' (level {from_level}) → "
                    f"'{record.to_agent}' (level {to_level}).",
                )

        epic = graph.find_parent_epic(task.id)
        if epic is not None:
            allowed = self.category_routing.get(epic.category)
            if allowed and record.to_agent not in allowed:
                return DelegationValidation(
                    False,
                    f"Agent '{record.to_agent}' is not routed for category '{epic.category}'. "
                    f"Allowed: {', '.join(allowed)}.",
                )

        return DelegationValidation(True, "Delegation allowed.")

    # ── Lifecycle ───────────────────────────────────────────────────────

    def create(
        self,
        from_agent: str,
        to_agent: str,
        task_id: str,
        context: str = "",
        expected_output: str = "",
        allowed_tools: list[str] | None = None,
        allowed_actions: list[str] | None = None,
        max_depth: int | None = None,
        graph: TaskGraph | None = None,
    ) -> DelegationRecord:
        """
        Record a new pending delegation.

        Raises DepthExceeded when the new link would push the chain past
        max_depth (never above the ledger's own bound), and
        ValidationError when a graph is supplied and validate() fails.
        """
        bound = self.max_depth if max_depth is None else min(max_depth, self.max_depth)
        now = self._clock()
        record = DelegationRecord(
            id=f"deleg-{now}-{uuid.uuid4().hex[:6]}",
            from_agent=from_agent,
            to_agent=to_agent,
            task_id=task_id,
            context=context,
            expected_output=expected_output,
            allowed_tools=list(DEFAULT_ALLOWED_TOOLS if allowed_tools is None else allowed_tools),
            allowed_actions=list(DEFAULT_ALLOWED_ACTIONS if allowed_actions is None else allowed_actions),
            max_depth=bound,
            created_at=now,
            expires_at=now + self.expiry_ms,
        )

        if graph is not None:
            check = self.validate(record, graph)
            if not check.valid:
                raise ValidationError(check.reason)

        store = self.store
        parent = _find_parent(record, store)
        record.parent_id = parent.id if parent else None
        depth = get_delegation_depth(record, store, bound)
        if depth > bound:
            raise DepthExceeded(
                f"Max delegation depth ({bound}) reached for task '{task_id}'. "
                f"'{from_agent}' → '{to_agent}' would be depth {depth}.",
                depth=depth,
                max_depth=bound,
            )

        record.depth = depth
        self._store = store.model_copy(update={"delegations": [*store.delegations, record]})
        return record

    def accept(self, delegation_id: str) -> DelegationRecord:
        record = self._require(delegation_id)
        self._check_transition(record, "accepted")
        record.status = "accepted"
        return record

    def complete(self, delegation_id: str, result: DelegationResult | None = None) -> DelegationRecord:
        record = self._require(delegation_id)
        self._check_transition(record, "completed")
        record.status = "completed"
        record.completed_at = self._clock()
        record.result = result or DelegationResult()
        return record

    def reject(self, delegation_id: str) -> DelegationRecord:
        record = self._require(delegation_id)
        self._check_transition(record, "rejected")
        record.status = "rejected"
        record.completed_at = self._clock()
        return record

    def _require(self, delegation_id: str) -> DelegationRecord:
        record = self.find(delegation_id)
        if record is None:
            raise ValidationError(f"Delegation '{delegation_id}' not found.")
        return record

    @staticmethod
    def _check_transition(record: DelegationRecord, target: str) -> None:
        if target not in DELEGATION_TRANSITIONS[record.status]:
            raise InvalidTransition(
                f"Delegation '{record.id}' is {record.status}; it cannot become {target}."
            )


# ---------------------------------------------------------------------------
# Display
# ---------------------------------------------------------------------------

def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def format_delegation_record(record: DelegationRecord, now: int | None = None) -> str:
    ts = now if now is not None else now_ms()
    elapsed = round((ts - record.created_at) / MINUTE_MS)
    lines = [
        f"  {record.id}: {record.from_agent} → {record.to_agent} [{record.status}] ({elapsed}m ago)",
        f"    Task: {record.task_id}",
        f"    Context: {_clip(record.context, 80)}",
    ]
    if record.result:
        lines.append(f"    Evidence: {_clip(record.result.evidence, 60)}")
        if record.result.files_modified:
            lines.append(f"    Files: {', '.join(record.result.files_modified)}")
    return "\n".join(lines)


def format_delegation_store(store: DelegationStore, now: int | None = None) -> str:
    if not store.delegations:
        return "No delegations recorded."

    groups = [
        ("📋 Active", [d for d in store.delegations if d.status in OPEN_STATUSES]),
        ("✅ Completed", [d for d in store.delegations if d.status == "completed"]),
        ("⛔ Rejected", [d for d in store.delegations if d.status == "rejected"]),
        ("⏰ Expired", [d for d in store.delegations if d.status == "expired"]),
    ]
    lines = ["=== Delegation Status ===", ""]
    for title, records in groups:
        if not records:
            continue
        lines.append(f"{title} ({len(records)}):")
        lines.extend(format_delegation_record(d, now) for d in records)
        lines.append("")
    return "\n".join(lines).rstrip()


def build_delegation_instruction(record: DelegationRecord, depth: int | None = None) -> str:
    """The handoff message the delegator passes to the delegate."""
    depth = record.depth if depth is None else depth
    expiry_minutes = max(0, round((record.expires_at - record.created_at) / MINUTE_MS))
    return "\n".join([
        f"## 📋 DELEGATION — {record.id}",
        "",
        f"**From:** {record.from_agent}",
        f"**To:** {record.to_agent}",
        f"**Task:** {record.task_id}",
        f"**Created:** {_iso(record.created_at)}",
        f"**Expires:** {_iso(record.expires_at)}",
        "",
        "### Context",
        record.context or "(none)",
        "",
        "### Expected Output",
        record.expected_output or "(none)",
        "",
        "### Allowed Tools",
        "\n".join(f"- {t}" for t in record.allowed_tools) or "- (none)",
        "",
        "### Allowed Actions",
        "\n".join(f"- {a}" for a in record.allowed_actions) or "- (none)",
        "",
        "### Rules",
        f"- Delegation depth remaining: {max(0, record.max_depth - depth)}",
        "- Report back with: evidence, files modified, tests run",
        f"- Delegation expires in {expiry_minutes} minutes",
    ])
