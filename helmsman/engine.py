"""
HELMSMAN Engine — the hook boundary.

Wires one StateManager into every component and exposes the four
callbacks a host runtime invokes:

  before_tool(tool, session_id, call_id)           → ToolGateError | None
  after_tool(tool, session_id, call_id, outcome)   → None
  on_compaction(session_id, context)               → None (appends to context)
  on_system_prompt(session_id, system)             → None (appends to system)

Nothing raised inside the engine crosses these methods. Gate denials
come back as values; any other failure is logged and the hook degrades
to a no-op so the host's control flow is never broken.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from loguru import logger

from helmsman.audit_logger import AuditLogger
from helmsman.clock import Clock, now_ms
from helmsman.compaction import CompactionInjector
from helmsman.config_loader import HelmsmanConfig, load_config
from helmsman.errors import ToolGateError
from helmsman.event_bus import EventBus
from helmsman.state_manager import StateManager
from helmsman.system_prompt import SystemPromptInjector
from helmsman.tool_gate import ToolGate
from helmsman.tools import GovernanceTools


class GovernanceEngine:
    """
    Everything a host needs, constructed once per project.

    Components receive the same StateManager at construction time;
    none of them reaches for a module-level singleton.
    """

    def __init__(
        self,
        project_dir: Path | None = None,
        config: HelmsmanConfig | None = None,
        state: StateManager | None = None,
        bus: EventBus | None = None,
        clock: Clock = now_ms,
        log_to_file: bool = True,
    ):
        self.project_dir = project_dir.resolve() if project_dir else None
        self.config = config or load_config(self.project_dir)
        self.bus = bus or EventBus()
        self._clock = clock

        # Core state
        self.state = state or StateManager(self.config, clock=clock)
        self.state.on_degraded = self._on_degraded
        if self.project_dir is not None and self.state.governance_dir is None:
            self.state.init(self.project_dir)

        # Components
        self.gate = ToolGate(self.state, self.config.gate, clock=clock)
        self.compaction = CompactionInjector(self.state, self.config.compaction)
        self.system_prompt = SystemPromptInjector(self.state, self.config.system_prompt)
        self.tools = GovernanceTools(self.state, self.config, bus=self.bus, clock=clock)

        # Observability
        self.audit: AuditLogger | None = None
        self._log_sink: int | None = None
        gov_dir = self.state.governance_dir
        if gov_dir is not None and not self.state.is_degraded():
            self.audit = AuditLogger(gov_dir / self.config.logging.audit_file, self.config.logging.audit_batch_size)
            self.bus.subscribe(self.audit)
            if log_to_file:
                self._log_sink = logger.add(
                    gov_dir / self.config.logging.file,
                    level=self.config.logging.level,
                    rotation="5 MB",
                    retention=3,
                    enqueue=False,
                )

    def _on_degraded(self, reason: str) -> None:
        self.bus.emit("state_degraded", "engine", {"reason": reason})

    # ── Sessions ────────────────────────────────────────────────────────

    def capture_agent(self, session_id: str, agent: str, parent_id: str | None = None) -> None:
        """Bind an agent persona to a session. Roles for the gate derive from it."""
        try:
            self.state.register_session(session_id, parent_id=parent_id, agent_role=agent)
            self.state.set_captured_agent(session_id, agent)
            logger.debug(f"[ENGINE] session {session_id} → agent '{agent}' (role {self.gate.role_for(session_id)})")
        except Exception as e:
            logger.error(f"[ENGINE] capture_agent failed for {session_id}: {e}")

    # ── Hooks ───────────────────────────────────────────────────────────

    def before_tool(self, tool: str, session_id: str, call_id: str | None = None) -> ToolGateError | None:
        try:
            denial = self.gate.before_tool(tool, session_id, call_id)
        except Exception as e:
            # Internal failure: let the call through rather than break the host
            logger.error(f"[TOOL-GATE] before_tool failed for {tool}: {e}")
            return None

        if denial is None:
            self.bus.emit("tool_allowed", session_id, {"tool": tool, "call_id": call_id})
        else:
            self.bus.emit("tool_blocked", session_id, {
                "tool": tool,
                "call_id": call_id,
                "role": denial.role,
                "category": denial.category,
                "reason": denial.reason,
            })
        return denial

    def after_tool(
        self,
        tool: str,
        session_id: str,
        call_id: str | None = None,
        outcome: str | None = None,
    ) -> None:
        try:
            action = self.gate.after_tool(tool, session_id, call_id, outcome)
            self.bus.emit(action, session_id, {"tool": tool, "call_id": call_id})
        except Exception as e:
            logger.error(f"[TOOL-GATE] after_tool failed for {tool}: {e}")

    def on_compaction(self, session_id: str, context: list[str]) -> None:
        report = self.compaction.on_compaction(session_id, context)
        if report is not None:
            self.bus.emit("compaction_injected", session_id, {
                "selected_anchors": report.selected_anchors,
                "total_anchors": report.total_anchors,
                "chars": report.context_chars,
                "has_active_task": report.has_active_task,
            })

    def on_system_prompt(self, session_id: str, system: list[str]) -> None:
        if not session_id:
            return
        text = self.system_prompt.on_system_prompt(session_id, system)
        if text is not None:
            self.bus.emit("system_prompt_injected", session_id, {"chars": len(text)})

    def handle_tool(self, tool: str, args: dict[str, Any], session_id: str) -> str:
        """Run one of the governance tools; always returns text for the agent."""
        try:
            return self.tools.handle(tool, args, session_id)
        except Exception as e:
            logger.exception(f"[ENGINE] {tool} crashed")
            return f"ERROR: {tool} failed internally: {e}"

    # ── Lifecycle ───────────────────────────────────────────────────────

    def close(self) -> None:
        self.state.close()
        if self.audit is not None:
            self.audit.close()
            self.bus.unsubscribe(self.audit)
            self.audit = None
        if self._log_sink is not None:
            logger.remove(self._log_sink)
            self._log_sink = None

    def __enter__(self) -> "GovernanceEngine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
