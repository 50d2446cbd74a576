import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, get_args

from loguru import logger
from pydantic import BaseModel, Field

EventType = Literal[
    "anchor_added",
    "tool_allowed",
    "tool_blocked",
    "tool_completed",
    "tool_executed_despite_denial",
    "compaction_injected",
    "system_prompt_injected",
    "task_transition",
    "chain_warning",
    "delegation_created",
    "delegation_transition",
    "state_degraded",
]

EVENT_TYPES: frozenset[str] = frozenset(get_args(EventType))

# Events that mean governance was bypassed or could not be enforced
ALERT_EVENTS: frozenset[str] = frozenset({
    "tool_blocked",
    "tool_executed_despite_denial",
    "chain_warning",
    "state_degraded",
})


class GovernanceEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: EventType
    session_id: str
    payload: Dict[str, Any]

    @property
    def is_alert(self) -> bool:
        return self.event_type in ALERT_EVENTS


class EventBus:
    """
    Synchronous fan-out of governance events.

    The engine and the governance tools emit; the audit logger (and any
    host listener) subscribes. Event types are a closed set, so a typo
    at an emit site fails loudly instead of producing an audit line
    nothing reads.
    """

    def __init__(self):
        self._subscribers: List[Callable[[GovernanceEvent], None]] = []

    def subscribe(self, callback: Callable[[GovernanceEvent], None]) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[GovernanceEvent], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def emit(self, event_type: EventType, session_id: str, payload: Dict[str, Any]) -> GovernanceEvent:
        """Validate and broadcast; raises pydantic.ValidationError for an unknown event type."""
        event = GovernanceEvent(
            event_type=event_type,
            session_id=session_id,
            payload=payload,
        )

        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception as e:
                # A failing subscriber (a full disk under the audit log) must not break a hook
                logger.warning(f"[EVENTS] Subscriber failed on {event_type}: {e}")

        if event.is_alert:
            logger.debug(f"[EVENTS] {event_type} session={session_id}")
        return event
