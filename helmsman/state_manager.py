"""
HELMSMAN State Manager — the single owner of governance state.

Every component reads and writes through one StateManager instance
handed to it at construction time. Session-scoped state (active task,
captured agent, last block, anchors) lives in keyed maps owned by that
instance; the task and delegation stores are process-wide.

Persistence contract:
  - Mutations are applied to memory first; callers see their own
    writes immediately.
  - Durable writes are atomic replace-on-write (temp file + rename),
    retried with backoff, and may be batched.
  - When the backend cannot be written, the manager enters degraded
    mode: it logs, keeps serving from memory, and keeps the dirty
    state so a later force_save() can still land it.
  - A store written by a newer version is never overwritten: the
    manager stays degraded for the rest of its life.

Layout (relative to <project>/<governance_dir>):
  state.json        GovernanceState aggregate
  tasks.json        TaskStore
  delegations.json  DelegationStore
  config.json       engine configuration (read by config_loader)
  backups/          rolling copies of state.json
"""

from __future__ import annotations

import json
import os
import shutil
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable

from loguru import logger
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from helmsman.anchors import Anchor, AnchorStore
from helmsman.clock import Clock, now_ms
from helmsman.config_loader import HelmsmanConfig
from helmsman.delegation import DelegationStore, create_empty_delegation_store, load_delegation_store
from helmsman.errors import PersistenceError
from helmsman.state import (
    ActiveTaskRef,
    BlockRecord,
    GovernanceState,
    HistoryEntry,
    Phase,
    SessionInfo,
    SessionState,
)
from helmsman.tasks import Task, TaskEpic, TaskGraph, TaskStore, create_empty_store, load_task_store

STATE_FILE = "state.json"
TASKS_FILE = "tasks.json"
DELEGATIONS_FILE = "delegations.json"
BACKUP_DIR = "backups"
MAX_BACKUPS = 10


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------

class StorageAdapter(ABC):
    """
    What every persistence backend must provide.

    Consumers only ever see this interface, so a document store and a
    relational store are interchangeable.
    """

    # Lifecycle
    @abstractmethod
    def init(self, project_dir: Path) -> None: ...

    @abstractmethod
    def close(self) -> None: ...

    # Sessions
    @abstractmethod
    def get_session(self, session_id: str) -> SessionState: ...

    @abstractmethod
    def set_active_task(self, session_id: str, task: ActiveTaskRef | None) -> None: ...

    @abstractmethod
    def get_active_task(self, session_id: str) -> ActiveTaskRef | None: ...

    @abstractmethod
    def set_captured_agent(self, session_id: str, agent: str) -> None: ...

    @abstractmethod
    def get_captured_agent(self, session_id: str) -> str | None: ...

    @abstractmethod
    def set_last_block(self, session_id: str, block: BlockRecord | None) -> None: ...

    @abstractmethod
    def get_last_block(self, session_id: str) -> BlockRecord | None: ...

    # Anchors
    @abstractmethod
    def add_anchor(self, session_id: str, anchor: Anchor) -> Anchor: ...

    @abstractmethod
    def get_anchors(self, session_id: str) -> list[Anchor]: ...

    # Tasks
    @abstractmethod
    def get_task_store(self) -> TaskStore: ...

    @abstractmethod
    def set_task_store(self, store: TaskStore) -> None: ...

    @abstractmethod
    def get_active_epic(self) -> TaskEpic | None: ...

    @abstractmethod
    def get_smart_active_task(self) -> Task | None: ...

    # Delegations
    @abstractmethod
    def get_delegation_store(self) -> DelegationStore: ...

    @abstractmethod
    def set_delegation_store(self, store: DelegationStore) -> None: ...

    # Persistence
    @abstractmethod
    def force_save(self) -> bool: ...

    @abstractmethod
    def is_degraded(self) -> bool: ...

    @abstractmethod
    def clear(self) -> None: ...


# ---------------------------------------------------------------------------
# JSON file backend
# ---------------------------------------------------------------------------

def atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(content, encoding="utf-8")
    os.replace(tmp, path)


class StateManager(StorageAdapter):
    """
    JSON-file StorageAdapter.

    Constructed without a project directory it is a pure in-memory
    store (useful for tests and dry runs); init() binds it to disk.
    """

    def __init__(
        self,
        config: HelmsmanConfig | None = None,
        clock: Clock = now_ms,
        on_degraded: Callable[[str], None] | None = None,
    ):
        self.config = config or HelmsmanConfig()
        self._clock = clock
        self.on_degraded = on_degraded
        self._lock = threading.RLock()

        self._gov_dir: Path | None = None
        self._degraded = False
        self._frozen: str | None = None
        self._pending_writes = 0
        self._dirty = False

        self._state = GovernanceState()
        self._anchors = AnchorStore(clock=clock, stale_after_hours=self.config.anchors.stale_after_hours)
        self._tasks: TaskStore = create_empty_store()
        self._delegations: DelegationStore = create_empty_delegation_store()

    # ── Lifecycle ───────────────────────────────────────────────────────

    @property
    def governance_dir(self) -> Path | None:
        return self._gov_dir

    @property
    def anchor_store(self) -> AnchorStore:
        return self._anchors

    def init(self, project_dir: Path) -> None:
        """Bind to <project_dir>/<governance_dir> and load whatever is there."""
        with self._lock:
            self._gov_dir = project_dir.resolve() / self.config.governance_dir

            if self.config.persistence.force_degraded:
                self._enter_degraded("persistence disabled by configuration")
                return

            try:
                self._gov_dir.mkdir(parents=True, exist_ok=True)
                (self._gov_dir / BACKUP_DIR).mkdir(exist_ok=True)
            except OSError as e:
                self._enter_degraded(f"cannot create {self._gov_dir}: {e}")
                return

            state_raw = self._read_json(STATE_FILE)
            if state_raw is not None:
                try:
                    self._state = GovernanceState.model_validate(state_raw)
                except ValueError as e:
                    self._quarantine(STATE_FILE, e)
                    self._state = GovernanceState()
            self._anchors.load(self._state.anchors)

            tasks_raw = self._read_json(TASKS_FILE)
            try:
                self._tasks = load_task_store(tasks_raw)
            except PersistenceError as e:
                # Written by a newer version: keep it intact and stay off disk
                self._tasks = create_empty_store()
                self._frozen = str(e)
                self._enter_degraded(f"{TASKS_FILE}: {e}")
            except (ValueError, TypeError, KeyError, AttributeError) as e:
                self._quarantine(TASKS_FILE, e)
                self._tasks = create_empty_store()

            deleg_raw = self._read_json(DELEGATIONS_FILE)
            try:
                self._delegations = load_delegation_store(deleg_raw)
            except ValueError as e:
                self._quarantine(DELEGATIONS_FILE, e)
                self._delegations = create_empty_delegation_store()

            logger.debug(
                f"[STATE] Loaded {self._gov_dir}: {len(self._anchors.all())} anchors, "
                f"{len(self._tasks.epics)} epics, {len(self._delegations.delegations)} delegations"
            )

    def close(self) -> None:
        with self._lock:
            if self._dirty:
                self.force_save()

    # ── Sessions ────────────────────────────────────────────────────────

    def get_session(self, session_id: str) -> SessionState:
        with self._lock:
            return self._state.session_views.setdefault(session_id, SessionState())

    def set_active_task(self, session_id: str, task: ActiveTaskRef | None) -> None:
        with self._lock:
            self.get_session(session_id).active_task = task
            self._touch_session(session_id)
            self._mark_dirty()

    def get_active_task(self, session_id: str) -> ActiveTaskRef | None:
        with self._lock:
            view = self._state.session_views.get(session_id)
            return view.active_task if view else None

    def resolve_active_task(self, session_id: str) -> ActiveTaskRef | None:
        """
        The session's explicit task, else the active chain's task.

        Only task verbs default through the chain; the gate and the
        context injectors read get_active_task.
        """
        with self._lock:
            explicit = self.get_active_task(session_id)
            if explicit is not None:
                return explicit
            task = self.get_smart_active_task()
            return ActiveTaskRef(id=task.id, name=task.name) if task else None

    def clear_active_task_refs(self, task_id: str) -> list[str]:
        """Drop task_id from every session that points at it. Returns those sessions."""
        with self._lock:
            cleared = [
                sid for sid, view in self._state.session_views.items()
                if view.active_task is not None and view.active_task.id == task_id
            ]
            for sid in cleared:
                self._state.session_views[sid].active_task = None
            if cleared:
                self._mark_dirty()
            return cleared

    def set_captured_agent(self, session_id: str, agent: str) -> None:
        with self._lock:
            self.get_session(session_id).captured_agent = agent
            info = self._state.sessions.get(session_id)
            if info is not None and info.agent_role is None:
                info.agent_role = agent
            self._mark_dirty(soft=True)

    def get_captured_agent(self, session_id: str) -> str | None:
        with self._lock:
            view = self._state.session_views.get(session_id)
            return view.captured_agent if view else None

    def set_last_block(self, session_id: str, block: BlockRecord | None) -> None:
        with self._lock:
            self.get_session(session_id).last_block = block
            self._mark_dirty(soft=True)

    def get_last_block(self, session_id: str) -> BlockRecord | None:
        with self._lock:
            view = self._state.session_views.get(session_id)
            return view.last_block if view else None

    def record_first_tool(self, session_id: str, tool: str) -> None:
        with self._lock:
            view = self.get_session(session_id)
            if view.first_tool is None:
                view.first_tool = tool

    def register_session(
        self,
        session_id: str,
        parent_id: str | None = None,
        agent_role: str | None = None,
    ) -> SessionInfo:
        """Create (or return) session metadata. Child depth = parent depth + 1."""
        with self._lock:
            existing = self._state.sessions.get(session_id)
            if existing is not None:
                return existing
            parent = self._state.sessions.get(parent_id) if parent_id else None
            now = self._clock()
            info = SessionInfo(
                id=session_id,
                parent_id=parent_id,
                agent_role=agent_role,
                depth=parent.depth + 1 if parent else 0,
                created_at=now,
                last_activity=now,
            )
            self._state.sessions[session_id] = info
            self.get_session(session_id)
            self._mark_dirty()
            return info

    def get_session_info(self, session_id: str) -> SessionInfo | None:
        with self._lock:
            return self._state.sessions.get(session_id)

    def set_session_status(self, session_id: str, status: str) -> None:
        with self._lock:
            info = self.register_session(session_id)
            info.status = status
            info.last_activity = self._clock()
            self._mark_dirty()

    def _touch_session(self, session_id: str) -> None:
        info = self._state.sessions.get(session_id)
        if info is not None:
            info.last_activity = self._clock()

    # ── Anchors ─────────────────────────────────────────────────────────

    def add_anchor(self, session_id: str, anchor: Anchor) -> Anchor:
        with self._lock:
            stored = self._anchors.add(session_id, anchor)
            self._touch_session(session_id)
            self._mark_dirty()
            return stored

    def get_anchors(self, session_id: str) -> list[Anchor]:
        with self._lock:
            return self._anchors.list(session_id)

    # ── Tasks ───────────────────────────────────────────────────────────

    def get_task_store(self) -> TaskStore:
        with self._lock:
            return self._tasks

    def set_task_store(self, store: TaskStore) -> None:
        """Last writer wins; the caller audits the result with detect_chain_breaks."""
        with self._lock:
            self._tasks = store
            self._mark_dirty()

    def task_graph(self) -> TaskGraph:
        return TaskGraph(
            self.get_task_store(),
            clock=self._clock,
            stale_threshold_ms=self.config.tasks.stale_after_minutes * 60 * 1000,
        )

    def get_active_epic(self) -> TaskEpic | None:
        chain = self.task_graph().get_active_chain()
        return chain.epic if chain else None

    def get_smart_active_task(self) -> Task | None:
        return self.task_graph().active_task()

    # ── Delegations ─────────────────────────────────────────────────────

    def get_delegation_store(self) -> DelegationStore:
        with self._lock:
            return self._delegations

    def set_delegation_store(self, store: DelegationStore) -> None:
        with self._lock:
            self._delegations = store
            self._mark_dirty()

    # ── Aggregate ───────────────────────────────────────────────────────

    def get_state(self) -> GovernanceState:
        """A detached snapshot of the aggregate, anchors included."""
        with self._lock:
            self._sync_anchors()
            return self._state.model_copy(deep=True)

    def set_phase(self, phase: Phase) -> None:
        with self._lock:
            self._state.phase = phase
            self._mark_dirty()

    def record_validation(self) -> int:
        with self._lock:
            self._state.validation_count += 1
            self._state.last_validation = self._clock()
            self._mark_dirty()
            return self._state.validation_count

    def record_history(self, entry: HistoryEntry) -> None:
        with self._lock:
            self._state.add_history(entry)
            self._mark_dirty(soft=True)

    def history(self, session_id: str | None = None) -> list[HistoryEntry]:
        with self._lock:
            entries = list(self._state.history)
        if session_id is None:
            return entries
        return [e for e in entries if e.session_id == session_id]

    # ── Persistence ─────────────────────────────────────────────────────

    def is_degraded(self) -> bool:
        return self._degraded

    def force_save(self) -> bool:
        """
        Flush memory to disk now. Returns True when the write landed.

        A successful flush lifts degraded mode; a failed one enters it.
        Never raises.
        """
        with self._lock:
            if self._gov_dir is None or self.config.persistence.force_degraded or self._frozen:
                return False
            try:
                self._flush()
            except (OSError, PersistenceError, TypeError, ValueError) as e:
                self._enter_degraded(f"write failed: {e}")
                return False
            if self._degraded:
                logger.info("[STATE] Persistence recovered — leaving degraded mode")
                self._degraded = False
            return True

    def clear(self) -> None:
        """Reset everything in memory. Disk is untouched until the next save."""
        with self._lock:
            self._state = GovernanceState()
            self._anchors.clear()
            self._tasks = create_empty_store()
            self._delegations = create_empty_delegation_store()
            self._pending_writes = 0
            self._dirty = False

    def _mark_dirty(self, soft: bool = False) -> None:
        """
        Record an unsaved change.

        Soft changes (history, last block) ride along with the next hard
        write instead of triggering one, keeping the gate hot path off disk.
        """
        self._dirty = True
        if soft:
            return
        self._pending_writes += 1
        if self._pending_writes >= self.config.persistence.batch_size:
            self.force_save()

    def _sync_anchors(self) -> None:
        self._state.anchors = self._anchors.all()

    def _flush(self) -> None:
        assert self._gov_dir is not None
        self._sync_anchors()
        payloads = {
            STATE_FILE: self._state.model_dump(mode="json"),
            TASKS_FILE: self._tasks.model_dump(mode="json"),
            DELEGATIONS_FILE: self._delegations.model_dump(mode="json"),
        }
        if self.config.persistence.backup:
            self._backup(STATE_FILE)
        for name, payload in payloads.items():
            self._write_with_retry(self._gov_dir / name, json.dumps(payload, indent=2))
        self._pending_writes = 0
        self._dirty = False

    def _write_with_retry(self, path: Path, content: str) -> None:
        retrying = Retrying(
            stop=stop_after_attempt(max(1, self.config.persistence.retry_attempts)),
            wait=wait_exponential(multiplier=0.05, max=0.5),
            retry=retry_if_exception_type(OSError),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                atomic_write_text(path, content)

    def _backup(self, name: str) -> None:
        assert self._gov_dir is not None
        source = self._gov_dir / name
        if not source.exists():
            return
        backup_dir = self._gov_dir / BACKUP_DIR
        try:
            backup_dir.mkdir(exist_ok=True)
            target = backup_dir / f"{source.stem}-{self._clock()}.json"
            shutil.copyfile(source, target)
            backups = sorted(backup_dir.glob(f"{source.stem}-[0-9]*.json"))
            for old in backups[:-MAX_BACKUPS]:
                old.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"[STATE] Backup of {name} failed: {e}")

    def _read_json(self, name: str) -> dict[str, Any] | None:
        assert self._gov_dir is not None
        path = self._gov_dir / name
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            self._quarantine(name, e)
            return None
        except OSError as e:
            self._enter_degraded(f"cannot read {path}: {e}")
            return None
        if not isinstance(data, dict):
            self._quarantine(name, ValueError(f"expected an object, got {type(data).__name__}"))
            return None
        return data

    def _quarantine(self, name: str, error: Exception) -> None:
        """Move an unparseable file aside so the next save cannot destroy it."""
        assert self._gov_dir is not None
        path = self._gov_dir / name
        target = self._gov_dir / BACKUP_DIR / f"{path.stem}-corrupt-{self._clock()}.json"
        logger.error(f"[STATE] {name} is unreadable ({error}); moved to {target.name}, starting fresh")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            os.replace(path, target)
        except OSError as e:
            self._enter_degraded(f"cannot quarantine {path}: {e}")

    def _enter_degraded(self, reason: str) -> None:
        if self._degraded:
            logger.debug(f"[STATE] Still degraded: {reason}")
            return
        logger.error(f"[STATE] Entering degraded mode (in-memory only): {reason}")
        self._degraded = True
        if self.on_degraded is not None:
            try:
                self.on_degraded(reason)
            except Exception as e:
                logger.warning(f"[STATE] degraded-mode callback failed: {e}")
