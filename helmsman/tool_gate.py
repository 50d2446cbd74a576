"""
HELMSMAN Tool Gate — the permission decision point.

Evaluated before every tool call:
  read / validate  → always allowed
  write            → allowed only while the session has an active task
  execute/delegate → decided by the role's allow/deny lists

A denial is returned as a ToolGateError value, never logged and
forgotten: the host surfaces it to the agent, which must fix the cause
and retry the call itself.

After every call the companion hook records the outcome in the
session history. It only observes; it never blocks and never raises.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from enum import Enum
from fnmatch import fnmatch

from loguru import logger

from helmsman.clock import Clock, now_ms
from helmsman.config_loader import GateConfig, RolePermission
from helmsman.errors import ToolGateError
from helmsman.state import BlockRecord, HistoryEntry
from helmsman.state_manager import StateManager


class ToolCategory(str, Enum):
    READ = "read"
    WRITE = "write"
    EXECUTE = "execute"
    DELEGATE = "delegate"
    VALIDATE = "validate"


TOOL_CATEGORIES: dict[str, ToolCategory] = {
    # Filesystem writes
    "write": ToolCategory.WRITE,
    "edit": ToolCategory.WRITE,
    "multiedit": ToolCategory.WRITE,
    "patch": ToolCategory.WRITE,
    "apply_patch": ToolCategory.WRITE,
    "notebookedit": ToolCategory.WRITE,
    # Shell
    "bash": ToolCategory.EXECUTE,
    "shell": ToolCategory.EXECUTE,
    "exec": ToolCategory.EXECUTE,
    # Handoffs
    "task": ToolCategory.DELEGATE,
    "delegate": ToolCategory.DELEGATE,
    "helmsman_delegate": ToolCategory.DELEGATE,
    # Lookups
    "read": ToolCategory.READ,
    "glob": ToolCategory.READ,
    "grep": ToolCategory.READ,
    "list": ToolCategory.READ,
    "webfetch": ToolCategory.READ,
    "websearch": ToolCategory.READ,
    "todoread": ToolCategory.READ,
    # Governance bookkeeping must work with no active task, or no task could ever be created
    "helmsman_task": ToolCategory.READ,
    "helmsman_anchor": ToolCategory.READ,
    "helmsman_status": ToolCategory.READ,
    # Checks
    "validate": ToolCategory.VALIDATE,
    "test": ToolCategory.VALIDATE,
    "lint": ToolCategory.VALIDATE,
}

WRITE_REMEDIATION = (
    "Create a task and start it (helmsman_task create_task, then start), "
    "then retry this tool."
)


def classify_tool(tool: str, extra: dict[str, str] | None = None) -> ToolCategory:
    """Category for a tool name. Unknown tools are treated as read."""
    name = tool.lower()
    if extra and name in extra:
        return ToolCategory(extra[name])
    return TOOL_CATEGORIES.get(name, ToolCategory.READ)


def detect_role(agent: str | None, agent_roles: dict[str, str], default_role: str = "meta") -> str:
    """First agent-name pattern that matches wins; exact names match themselves."""
    if not agent:
        return default_role
    name = agent.lower()
    for pattern, role in agent_roles.items():
        if fnmatch(name, pattern.lower()):
            return role
    return default_role


def _matches(tool: str, patterns: list[str]) -> bool:
    name = tool.lower()
    return any(fnmatch(name, p.lower()) for p in patterns)


@dataclass
class GateDecision:
    tool: str
    category: ToolCategory
    role: str
    allowed: bool
    reason: str
    remediation: str = ""

    def error(self) -> ToolGateError | None:
        if self.allowed:
            return None
        return ToolGateError(
            tool=self.tool,
            reason=self.reason,
            remediation=self.remediation,
            role=self.role,
            category=self.category.value,
        )


@dataclass
class PermissionCheck:
    timestamp: int
    tool: str
    category: str
    role: str
    allowed: bool
    call_id: str | None = None


class ToolGate:
    def __init__(self, state: StateManager, config: GateConfig | None = None, clock: Clock = now_ms):
        self.state = state
        self.config = config or GateConfig()
        self._clock = clock
        self._checks: dict[str, deque[PermissionCheck]] = {}

    # ── Decision ────────────────────────────────────────────────────────

    def role_for(self, session_id: str) -> str:
        agent = self.state.get_captured_agent(session_id)
        return detect_role(agent, self.config.agent_roles, self.config.default_role)

    def category_of(self, tool: str) -> ToolCategory:
        return classify_tool(tool, self.config.tool_categories)

    def check(self, tool: str, session_id: str) -> GateDecision:
        """Decide without recording anything."""
        category = self.category_of(tool)
        role = self.role_for(session_id)

        if category in (ToolCategory.READ, ToolCategory.VALIDATE):
            return GateDecision(tool, category, role, True, f"{category.value} tools are always allowed")

        permission = self.config.roles.get(role)

        if category == ToolCategory.WRITE:
            if permission is not None and _matches(tool, permission.denied_tools):
                return GateDecision(
                    tool, category, role, False,
                    f"Role '{role}' may not use '{tool}'.",
                    "Delegate file changes to a builder agent.",
                )
            if self.state.get_active_task(session_id) is None:
                return GateDecision(
                    tool, category, role, False,
                    "No active task. File changes must be tied to a task.",
                    WRITE_REMEDIATION,
                )
            return GateDecision(tool, category, role, True, "active task present")

        return self._check_role_lists(tool, category, role, permission)

    def _check_role_lists(
        self,
        tool: str,
        category: ToolCategory,
        role: str,
        permission: RolePermission | None,
    ) -> GateDecision:
        if permission is None:
            return GateDecision(tool, category, role, True, f"no permission profile for role '{role}'")
        if _matches(tool, permission.denied_tools):
            return GateDecision(
                tool, category, role, False,
                f"Role '{role}' is denied {category.value} tool '{tool}'.",
                self._role_remediation(category),
            )
        if _matches(tool, permission.allowed_tools):
            return GateDecision(tool, category, role, True, f"allowed for role '{role}'")
        return GateDecision(
            tool, category, role, False,
            f"'{tool}' is not in the {category.value} allow list for role '{role}'.",
            self._role_remediation(category),
        )

    @staticmethod
    def _role_remediation(category: ToolCategory) -> str:
        if category == ToolCategory.EXECUTE:
            return "Delegate command execution to a builder agent."
        return "Report back to the coordinator instead of delegating further."

    # ── Hooks ───────────────────────────────────────────────────────────

    def before_tool(self, tool: str, session_id: str, call_id: str | None = None) -> ToolGateError | None:
        self.state.record_first_tool(session_id, tool)
        decision = self.check(tool, session_id)
        self._remember(session_id, decision, call_id)

        if decision.allowed:
            logger.debug(f"[TOOL-GATE] allow {tool} ({decision.category.value}) session={session_id}")
            return None

        now = self._clock()
        self.state.set_last_block(session_id, BlockRecord(tool=tool, timestamp=now, reason=decision.reason))
        self.state.record_history(HistoryEntry(
            timestamp=now,
            action="tool_blocked",
            result="blocked",
            session_id=session_id,
            agent=self.state.get_captured_agent(session_id),
            tool=tool,
            details=decision.reason,
        ))
        logger.info(f"[TOOL-GATE] BLOCK {tool} ({decision.category.value}, role={decision.role}): {decision.reason}")
        return decision.error()

    def after_tool(
        self,
        tool: str,
        session_id: str,
        call_id: str | None = None,
        outcome: str | None = None,
    ) -> str:
        """Record the executed call; returns the history action written."""
        check = self._last_check(session_id, tool, call_id)
        if check is not None and not check.allowed:
            logger.warning(f"[TOOL-GATE] {tool} executed despite denial (session={session_id})")
            action, result = "tool_executed_despite_denial", "fail"
        else:
            action, result = "tool_completed", "pass"

        self.state.record_history(HistoryEntry(
            timestamp=self._clock(),
            action=action,
            result=result,
            session_id=session_id,
            agent=self.state.get_captured_agent(session_id),
            tool=tool,
            details=(outcome or "")[:200],
        ))
        return action

    # ── History ─────────────────────────────────────────────────────────

    def _remember(self, session_id: str, decision: GateDecision, call_id: str | None) -> None:
        checks = self._checks.get(session_id)
        if checks is None:
            checks = self._checks[session_id] = deque(maxlen=max(1, self.config.history_limit))
        checks.append(PermissionCheck(
            timestamp=self._clock(),
            tool=decision.tool,
            category=decision.category.value,
            role=decision.role,
            allowed=decision.allowed,
            call_id=call_id,
        ))

    def _last_check(self, session_id: str, tool: str, call_id: str | None) -> PermissionCheck | None:
        """
        The permission check an executed call answers to.

        With a call_id, the newest check for that id. Without one, the
        session's most recent check, and only if it was for this tool.
        """
        checks = self._checks.get(session_id)
        if not checks:
            return None
        if call_id is not None:
            return next((c for c in reversed(checks) if c.call_id == call_id), None)
        last = checks[-1]
        return last if last.tool == tool else None

    def permission_history(self, session_id: str) -> list[PermissionCheck]:
        return list(self._checks.get(session_id, ()))
