"""
HELMSMAN Anchors — context that survives compaction.

An anchor is a small, priced unit of preserved context. Agents add
them explicitly; the compaction injector selects the best ones that
fit a character budget and re-injects them after the host discards
the conversation.

Selection policy (deterministic, no bin-packing):
  1. Drop stale anchors unless they are critical
  2. Stable sort by score, descending
  3. Accept greedily until the next anchor would overflow, then stop
"""

from __future__ import annotations

import uuid
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from helmsman.clock import HOUR_MS, Clock, now_ms

AnchorType = Literal["decision", "context", "checkpoint", "error", "attention"]
AnchorPriority = Literal["critical", "high", "medium", "low"]

ANCHOR_TYPES: tuple[str, ...] = ("decision", "context", "checkpoint", "error", "attention")
ANCHOR_PRIORITIES: tuple[str, ...] = ("critical", "high", "medium", "low")

PRIORITY_WEIGHTS: dict[str, int] = {
    "critical": 4,
    "high": 3,
    "medium": 2,
    "low": 1,
}

STALE_AFTER_HOURS = 48
STALE_PENALTY = 0.25
MAX_CONTENT_CHARS = 2000

# Rendering overhead charged per anchor on top of its content length
ANCHOR_OVERHEAD_CHARS = 40


class Anchor(BaseModel):
    """A durable unit of preserved context, scoped to one session."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str = ""
    type: AnchorType
    priority: AnchorPriority
    content: str
    created_at: int = Field(default_factory=now_ms)
    modified_at: int = Field(default_factory=now_ms)

    @model_validator(mode="after")
    def _modified_after_created(self) -> "Anchor":
        if self.modified_at < self.created_at:
            self.modified_at = self.created_at
        return self

    @property
    def cost(self) -> int:
        return len(self.content) + ANCHOR_OVERHEAD_CHARS


def create_anchor(
    type: AnchorType,
    priority: AnchorPriority,
    content: str,
    session_id: str = "",
    now: int | None = None,
) -> Anchor:
    ts = now if now is not None else now_ms()
    return Anchor(
        session_id=session_id,
        type=type,
        priority=priority,
        content=content,
        created_at=ts,
        modified_at=ts,
    )


def touch(anchor: Anchor, now: int | None = None) -> None:
    """Refresh modified_at. The only in-place mutation an anchor allows."""
    anchor.modified_at = max(anchor.created_at, now if now is not None else now_ms())


def staleness_hours(anchor: Anchor, now: int | None = None) -> float:
    ts = now if now is not None else now_ms()
    return max(0.0, (ts - anchor.modified_at) / HOUR_MS)


def is_stale(anchor: Anchor, now: int | None = None, stale_after_hours: float = STALE_AFTER_HOURS) -> bool:
    return staleness_hours(anchor, now) > stale_after_hours


def score(anchor: Anchor, now: int | None = None, stale_after_hours: float = STALE_AFTER_HOURS) -> float:
    """Priority weight, quartered once the anchor goes stale."""
    weight = PRIORITY_WEIGHTS[anchor.priority]
    return weight * (STALE_PENALTY if is_stale(anchor, now, stale_after_hours) else 1.0)


def select_anchors(
    anchors: list[Anchor],
    budget_chars: int,
    now: int | None = None,
    stale_after_hours: float = STALE_AFTER_HOURS,
    max_anchors: int | None = None,
) -> list[Anchor]:
    """
    Pick the anchors to re-inject, never exceeding budget_chars.

    Each anchor costs len(content) + ANCHOR_OVERHEAD_CHARS. Ties keep
    insertion order. Selection stops at the first anchor that would
    overflow; nothing after it is considered.
    """
    ts = now if now is not None else now_ms()

    eligible = [
        a for a in anchors
        if a.priority == "critical" or not is_stale(a, ts, stale_after_hours)
    ]
    ranked = sorted(eligible, key=lambda a: -score(a, ts, stale_after_hours))

    selected: list[Anchor] = []
    total = 0
    for anchor in ranked:
        if max_anchors is not None and len(selected) >= max_anchors:
            break
        if total + anchor.cost > budget_chars:
            break
        selected.append(anchor)
        total += anchor.cost
    return selected


class AnchorStore:
    """
    Session-keyed anchor storage.

    Append-only: no dedup, no deletion. Callers own duplicate avoidance
    and input validation happens at the tool boundary, not here.
    """

    def __init__(self, clock: Clock = now_ms, stale_after_hours: float = STALE_AFTER_HOURS):
        self._clock = clock
        self.stale_after_hours = stale_after_hours
        self._by_session: dict[str, list[Anchor]] = {}

    def add(self, session_id: str, anchor: Anchor) -> Anchor:
        if anchor.session_id != session_id:
            anchor = anchor.model_copy(update={"session_id": session_id})
        self._by_session.setdefault(session_id, []).append(anchor)
        return anchor

    def list(self, session_id: str) -> list[Anchor]:
        return list(self._by_session.get(session_id, []))

    def all(self) -> list[Anchor]:
        """Every anchor across sessions, grouped by session in first-seen order."""
        return [a for anchors in self._by_session.values() for a in anchors]

    def sessions(self) -> list[str]:
        return list(self._by_session)

    def load(self, anchors: list[Anchor]) -> None:
        """Replace contents from a persisted flat list."""
        self._by_session = {}
        for anchor in anchors:
            self._by_session.setdefault(anchor.session_id, []).append(anchor)

    def clear(self) -> None:
        self._by_session.clear()

    def score(self, anchor: Anchor) -> float:
        return score(anchor, self._clock(), self.stale_after_hours)

    def is_stale(self, anchor: Anchor) -> bool:
        return is_stale(anchor, self._clock(), self.stale_after_hours)

    def select(self, anchors: list[Anchor], budget_chars: int, max_anchors: int | None = None) -> list[Anchor]:
        return select_anchors(
            anchors,
            budget_chars,
            now=self._clock(),
            stale_after_hours=self.stale_after_hours,
            max_anchors=max_anchors,
        )
