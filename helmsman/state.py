from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from helmsman.anchors import Anchor
from helmsman.clock import now_ms

STATE_VERSION = "2.0.0"
MAX_HISTORY = 100

Phase = Literal["init", "research", "planning", "execution", "validation", "completed"]
HistoryResult = Literal["pass", "fail", "partial", "blocked", "skipped"]
SessionStatus = Literal["active", "idle", "completed", "error"]


class ActiveTaskRef(BaseModel):
    """The task a session is currently working under."""
    id: str
    name: str


class BlockRecord(BaseModel):
    """The most recent tool a session was denied."""
    tool: str
    timestamp: int
    reason: str = ""


class SessionState(BaseModel):
    """Per-session working view kept by the StateManager."""
    active_task: ActiveTaskRef | None = None
    last_block: BlockRecord | None = None
    captured_agent: str | None = None
    first_tool: str | None = None


class SessionInfo(BaseModel):
    """Conversation-session metadata, persisted in the aggregate."""
    id: str
    parent_id: str | None = None
    agent_role: str | None = None
    depth: int = 0
    status: SessionStatus = "active"
    created_at: int = Field(default_factory=now_ms)
    last_activity: int = Field(default_factory=now_ms)


class HistoryEntry(BaseModel):
    """One governance action, as recorded by the after-tool hook."""
    timestamp: int = Field(default_factory=now_ms)
    action: str
    result: HistoryResult
    session_id: str | None = None
    agent: str | None = None
    tool: str | None = None
    details: str = ""


class GovernanceState(BaseModel):
    """
    The persisted aggregate (state.json).

    Owned by the StateManager. Nothing else writes these fields; the
    manager keeps this snapshot consistent with its session caches.
    """

    version: str = STATE_VERSION
    initialized: int = Field(default_factory=now_ms)
    phase: Phase = "init"
    framework: str = "helmsman"
    validation_count: int = 0
    last_validation: int | None = None
    anchors: list[Anchor] = Field(default_factory=list)
    history: list[HistoryEntry] = Field(default_factory=list)
    sessions: dict[str, SessionInfo] = Field(default_factory=dict)
    session_views: dict[str, SessionState] = Field(default_factory=dict)

    def add_history(self, entry: HistoryEntry) -> None:
        """Append to the ring buffer, keeping the newest MAX_HISTORY entries."""
        self.history.append(entry)
        if len(self.history) > MAX_HISTORY:
            del self.history[: len(self.history) - MAX_HISTORY]

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)
