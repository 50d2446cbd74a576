"""
HELMSMAN System Prompt Reminder.

Compaction fires rarely; this fires on every turn. It appends a short
governance block to the host's system prompt list: the session's
current task (or the instruction to create one), its first few
critical anchors, and the two standing rules.

The block is additive and capped at SystemPromptConfig.max_chars so it
can sit beside other instructions. Failures are logged and skipped;
message delivery never depends on governance.
"""

from __future__ import annotations

from loguru import logger

from helmsman.anchors import Anchor
from helmsman.config_loader import SystemPromptConfig
from helmsman.state import ActiveTaskRef
from helmsman.state_manager import StateManager

OPEN_TAG = "<helmsman-governance>"
CLOSE_TAG = "</helmsman-governance>"
RULES = (
    "RULE: Do not write or edit files without an active task.",
    "RULE: Do not override critical decisions without updating anchors first.",
)


def _clip(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 1)] + "…"


def format_system_reminder(
    active_task: ActiveTaskRef | None,
    critical: list[Anchor],
    max_chars: int = 800,
    max_anchors: int = 3,
) -> str:
    """
    Render the reminder, never longer than max_chars.

    The header counts every critical anchor; only the first max_anchors
    are listed. The frame (tags, task line, rules) always survives;
    anchors fill whatever room is left and the last one that fits is
    clipped.
    """
    if active_task is not None:
        task_line = f"CURRENT TASK: {active_task.name}"
    else:
        task_line = "NO ACTIVE TASK. Create one with helmsman_task before writing files."

    frame = [OPEN_TAG, task_line, *RULES, CLOSE_TAG]
    frame_chars = len("\n".join(frame))
    if frame_chars > max_chars:
        # Only a very long task name gets here
        overflow = frame_chars - max_chars
        frame[1] = _clip(task_line, len(task_line) - overflow)
        return "\n".join(frame)[:max_chars]

    anchor_lines: list[str] = []
    room = max_chars - frame_chars
    if critical:
        header = f"CRITICAL DECISIONS ({len(critical)}):"
        if len(header) + 1 <= room:
            anchor_lines.append(header)
            room -= len(header) + 1
            for anchor in critical[:max_anchors]:
                line = f"- {anchor.content}"
                if len(line) + 1 > room:
                    if room > 10:
                        anchor_lines.append(_clip(line, room - 1))
                    break
                anchor_lines.append(line)
                room -= len(line) + 1

    return "\n".join([OPEN_TAG, task_line, *anchor_lines, *RULES, CLOSE_TAG])


class SystemPromptInjector:
    def __init__(self, state: StateManager, config: SystemPromptConfig | None = None):
        self.state = state
        self.config = config or SystemPromptConfig()

    def build(self, session_id: str) -> str:
        active_task = self.state.get_active_task(session_id)
        critical = [a for a in self.state.get_anchors(session_id) if a.priority == "critical"]
        return format_system_reminder(
            active_task,
            critical,
            self.config.max_chars,
            self.config.max_critical_anchors,
        )

    def on_system_prompt(self, session_id: str, system: list[str]) -> str | None:
        """Append the reminder to system. Returns the text, or None when skipped."""
        if not self.config.enabled:
            return None
        try:
            text = self.build(session_id)
            system.append(text)
        except Exception as e:
            logger.error(f"[SYSTEM] Reminder failed for session {session_id}: {e}")
            return None

        logger.debug(f"[SYSTEM] Reminder injected ({len(text)} chars) session={session_id}")
        return text
