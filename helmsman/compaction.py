"""
HELMSMAN Compaction Injector.

When the host compacts a conversation, everything the agent knew is
reduced to a summary. The injector appends one block to the host's
outgoing context list so the active task and the best anchors survive.

The block is append-only: existing context entries are never touched.
A formatting failure degrades to a no-op; compaction must never fail
because of governance.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from helmsman.anchors import Anchor
from helmsman.config_loader import CompactionConfig
from helmsman.state import ActiveTaskRef
from helmsman.state_manager import StateManager

HEADER = "=== HELMSMAN Governance Context (post-compaction) ==="
FOOTER = "=== End HELMSMAN Context ==="


@dataclass
class InjectionReport:
    session_id: str
    total_anchors: int
    selected_anchors: int
    context_chars: int
    has_active_task: bool


def format_compaction_context(anchors: list[Anchor], active_task: ActiveTaskRef | None) -> str:
    lines = [HEADER, ""]

    # Active task goes first: agents attend most reliably to the start of injected context
    if active_task is not None:
        lines.append(f"## CURRENT TASK: {active_task.name}")
        lines.append(f"Task ID: {active_task.id}")
    else:
        lines.append("## NO ACTIVE TASK — create one with helmsman_task before writing files")
    lines.append("")

    if anchors:
        lines.append(f"## ACTIVE ANCHORS ({len(anchors)}):")
        for anchor in anchors:
            lines.append(f"- [{anchor.priority.upper()}/{anchor.type}] {anchor.content}")
    else:
        lines.append("## No active anchors.")

    lines.append("")
    lines.append(FOOTER)
    return "\n".join(lines)


class CompactionInjector:
    def __init__(self, state: StateManager, config: CompactionConfig | None = None):
        self.state = state
        self.config = config or CompactionConfig()

    def build(self, session_id: str) -> tuple[str, InjectionReport]:
        active_task = self.state.get_active_task(session_id)
        all_anchors = self.state.get_anchors(session_id)
        selected = self.state.anchor_store.select(
            all_anchors,
            self.config.budget_chars,
            max_anchors=self.config.max_anchors,
        )
        text = format_compaction_context(selected, active_task)
        report = InjectionReport(
            session_id=session_id,
            total_anchors=len(all_anchors),
            selected_anchors=len(selected),
            context_chars=len(text),
            has_active_task=active_task is not None,
        )
        return text, report

    def on_compaction(self, session_id: str, context: list[str]) -> InjectionReport | None:
        """Append the governance block to context. Returns None when it had to give up."""
        try:
            text, report = self.build(session_id)
            context.append(text)
        except Exception as e:
            logger.error(f"[COMPACTION] Injection failed for session {session_id}: {e}")
            return None

        logger.info(
            f"[COMPACTION] Injected {report.selected_anchors}/{report.total_anchors} anchors "
            f"({report.context_chars} chars, active task: {report.has_active_task}) session={session_id}"
        )
        return report
