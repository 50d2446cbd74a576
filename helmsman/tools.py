"""
HELMSMAN governance tools — the surface agents call.

Three tools, each with a small set of actions:
  helmsman_anchor    add | list
  helmsman_task      create_epic | create_task | start | add_subtask |
                     complete_subtask | skip_subtask | complete | block |
                     unblock | defer | complete_epic | abandon_epic | status
  helmsman_delegate  create | accept | complete | reject | status

The typed methods validate their input and raise GovernanceError.
handle() is the string boundary the host sees: errors come back as
"ERROR: ..." text the agent can act on, never as exceptions.

The task store is process-wide and last-writer-wins. Every task
mutation is followed by detect_chain_breaks so conflicts between
sessions show up as warnings instead of being silently merged.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from loguru import logger

from helmsman.anchors import ANCHOR_PRIORITIES, ANCHOR_TYPES, Anchor, create_anchor, staleness_hours
from helmsman.clock import MINUTE_MS, Clock, now_ms
from helmsman.config_loader import HelmsmanConfig
from helmsman.delegation import (
    DelegationLedger,
    DelegationRecord,
    DelegationResult,
    build_delegation_instruction,
    format_delegation_store,
)
from helmsman.errors import GovernanceError, ToolGateError, ValidationError
from helmsman.event_bus import EventBus
from helmsman.state import ActiveTaskRef
from helmsman.state_manager import StateManager
from helmsman.tasks import (
    ChainWarning,
    Subtask,
    Task,
    TaskEpic,
    TaskGraph,
    build_governance_reminder,
    format_task_tree,
)

DEFAULT_DELEGATOR = "coordinator"


@dataclass
class AnchorView:
    anchor: Anchor
    stale_hours: float | None = None

    def render(self) -> str:
        a = self.anchor
        stale = f" [STALE: {self.stale_hours:.1f}h]" if self.stale_hours is not None else ""
        return f"- [{a.priority.upper()}/{a.type}] {a.content}{stale}\n  ID: {a.id}"


def _require(args: dict[str, Any], *names: str) -> None:
    missing = [n for n in names if not args.get(n)]
    if missing:
        raise ValidationError(f"Missing required argument(s): {', '.join(missing)}.")


class GovernanceTools:
    def __init__(
        self,
        state: StateManager,
        config: HelmsmanConfig | None = None,
        bus: EventBus | None = None,
        clock: Clock = now_ms,
    ):
        self.state = state
        self.config = config or state.config
        self.bus = bus
        self._clock = clock

    def _emit(self, event_type: str, session_id: str, payload: dict[str, Any]) -> None:
        if self.bus is not None:
            self.bus.emit(event_type, session_id, payload)

    # ── Anchors ─────────────────────────────────────────────────────────

    def add_anchor(self, session_id: str, type: str, priority: str, content: str) -> Anchor:
        if type not in ANCHOR_TYPES:
            raise ValidationError(f"Unknown anchor type '{type}'. Valid: {', '.join(ANCHOR_TYPES)}.")
        if priority not in ANCHOR_PRIORITIES:
            raise ValidationError(f"Unknown priority '{priority}'. Valid: {', '.join(ANCHOR_PRIORITIES)}.")
        if not content or not content.strip():
            raise ValidationError("Anchor content must not be empty.")
        limit = self.config.anchors.max_content_chars
        if len(content) > limit:
            raise ValidationError(f"Anchor content must be ≤{limit} characters. Summarize the key information.")

        anchor = self.state.add_anchor(
            session_id,
            create_anchor(type, priority, content, session_id=session_id, now=self._clock()),
        )
        logger.debug(f"[ANCHORS] {anchor.priority}/{anchor.type} anchor {anchor.id} session={session_id}")
        self._emit("anchor_added", session_id, {"anchor_id": anchor.id, "priority": priority, "type": type})
        return anchor

    def list_anchors(self, session_id: str) -> list[AnchorView]:
        store = self.state.anchor_store
        views = []
        for anchor in self.state.get_anchors(session_id):
            stale = None
            if store.is_stale(anchor):
                stale = staleness_hours(anchor, self._clock())
            views.append(AnchorView(anchor, stale))
        return views

    # ── Tasks ───────────────────────────────────────────────────────────

    def _commit_tasks(self, graph: TaskGraph, session_id: str, action: str, subject: str) -> list[ChainWarning]:
        """Save the mutated store, then audit it."""
        self.state.set_task_store(graph.store)
        self._emit("task_transition", session_id, {"action": action, "id": subject})
        warnings = graph.detect_chain_breaks()
        for warning in warnings:
            logger.warning(f"[TASKS] Chain warning ({warning.kind}): {warning.message}")
            self._emit("chain_warning", session_id, {
                "kind": warning.kind,
                "message": warning.message,
                "epic_id": warning.epic_id,
                "task_id": warning.task_id,
            })
        return warnings

    def _session_task_id(self, session_id: str, task_id: str | None) -> str:
        if task_id:
            return task_id
        ref = self.state.resolve_active_task(session_id)
        if ref is None:
            raise ValidationError("No task_id given and no active task. Start a task first.")
        return ref.id

    def create_epic(self, session_id: str, name: str, category: str = "development") -> TaskEpic:
        graph = self.state.task_graph()
        epic = graph.create_epic(name, category=category)
        self._commit_tasks(graph, session_id, "create_epic", epic.id)
        return epic

    def create_task(
        self,
        session_id: str,
        name: str,
        epic_id: str | None = None,
        assignee: str | None = None,
    ) -> Task:
        graph = self.state.task_graph()
        if epic_id is None:
            chain = graph.get_active_chain()
            if chain is None:
                raise ValidationError("No active epic. Create an epic first.")
            epic_id = chain.epic.id
        task = graph.create_task(epic_id, name, assignee=assignee or self.state.get_captured_agent(session_id))
        self._commit_tasks(graph, session_id, "create_task", task.id)
        return task

    def start_task(self, session_id: str, task_id: str) -> Task:
        graph = self.state.task_graph()
        current = graph.find_task(task_id)
        if current is not None and current.status == "active":
            # Already holds the chain (e.g. the bootstrap task); bind this session to it
            self.state.set_active_task(session_id, ActiveTaskRef(id=current.id, name=current.name))
            logger.debug(f"[TASKS] session {session_id} joined active task {current.id}")
            return current
        task = graph.start_task(task_id)
        self.state.set_active_task(session_id, ActiveTaskRef(id=task.id, name=task.name))
        self._commit_tasks(graph, session_id, "start_task", task.id)
        return task

    def add_subtask(self, session_id: str, name: str, task_id: str | None = None) -> Subtask:
        graph = self.state.task_graph()
        sub = graph.create_subtask(self._session_task_id(session_id, task_id), name)
        self._commit_tasks(graph, session_id, "add_subtask", sub.id)
        return sub

    def complete_subtask(self, session_id: str, subtask_id: str, tool_used: str | None = None) -> Subtask:
        graph = self.state.task_graph()
        sub = graph.complete_subtask(subtask_id, tool_used=tool_used)
        self._commit_tasks(graph, session_id, "complete_subtask", sub.id)
        return sub

    def skip_subtask(self, session_id: str, subtask_id: str) -> Subtask:
        graph = self.state.task_graph()
        sub = graph.skip_subtask(subtask_id)
        self._commit_tasks(graph, session_id, "skip_subtask", sub.id)
        return sub

    def complete_task(
        self,
        session_id: str,
        task_id: str | None = None,
        evidence: str | None = None,
        override: bool = False,
    ) -> Task:
        graph = self.state.task_graph()
        task = graph.complete_task(
            self._session_task_id(session_id, task_id),
            evidence=evidence,
            override=override,
            require_evidence=self.config.tasks.require_evidence,
        )
        self.state.clear_active_task_refs(task.id)
        self._commit_tasks(graph, session_id, "complete_task", task.id)
        return task

    def block_task(self, session_id: str, task_id: str | None = None, reason: str | None = None) -> Task:
        graph = self.state.task_graph()
        task = graph.block_task(self._session_task_id(session_id, task_id), reason=reason)
        self.state.clear_active_task_refs(task.id)
        self._commit_tasks(graph, session_id, "block_task", task.id)
        return task

    def unblock_task(self, session_id: str, task_id: str) -> Task:
        graph = self.state.task_graph()
        task = graph.unblock_task(task_id)
        self.state.set_active_task(session_id, ActiveTaskRef(id=task.id, name=task.name))
        self._commit_tasks(graph, session_id, "unblock_task", task.id)
        return task

    def defer_task(self, session_id: str, task_id: str | None = None, reason: str | None = None) -> Task:
        graph = self.state.task_graph()
        task = graph.defer_task(self._session_task_id(session_id, task_id), reason=reason)
        self.state.clear_active_task_refs(task.id)
        self._commit_tasks(graph, session_id, "defer_task", task.id)
        return task

    def complete_epic(self, session_id: str, epic_id: str) -> TaskEpic:
        graph = self.state.task_graph()
        epic = graph.complete_epic(epic_id)
        self._commit_tasks(graph, session_id, "complete_epic", epic.id)
        return epic

    def abandon_epic(self, session_id: str, epic_id: str) -> TaskEpic:
        graph = self.state.task_graph()
        epic = graph.abandon_epic(epic_id)
        for task in epic.tasks:
            self.state.clear_active_task_refs(task.id)
        self._commit_tasks(graph, session_id, "abandon_epic", epic.id)
        return epic

    def task_status(self) -> str:
        graph = self.state.task_graph()
        return f"{format_task_tree(graph.store)}\n\n{build_governance_reminder(graph)}"

    # ── Delegation ──────────────────────────────────────────────────────

    def ledger(self) -> DelegationLedger:
        cfg = self.config.delegation
        return DelegationLedger(
            self.state.get_delegation_store(),
            clock=self._clock,
            max_depth=cfg.max_depth,
            expiry_ms=cfg.expiry_minutes * MINUTE_MS,
            hierarchy=cfg.hierarchy or None,
            category_routing=cfg.category_routing or None,
        )

    def delegate(
        self,
        session_id: str,
        to_agent: str,
        task_id: str | None = None,
        context: str = "",
        expected_output: str = "",
        allowed_tools: list[str] | None = None,
        allowed_actions: list[str] | None = None,
        from_agent: str | None = None,
    ) -> tuple[DelegationRecord, str]:
        """Record a handoff and return it with the instruction text for the delegate."""
        if not to_agent:
            raise ValidationError("Delegation needs a target agent (to_agent).")
        ledger = self.ledger()
        graph = self.state.task_graph()
        record = ledger.create(
            from_agent=from_agent or self.state.get_captured_agent(session_id) or DEFAULT_DELEGATOR,
            to_agent=to_agent,
            task_id=self._session_task_id(session_id, task_id),
            context=context,
            expected_output=expected_output,
            allowed_tools=allowed_tools,
            allowed_actions=allowed_actions,
            graph=graph,
        )
        self.state.set_delegation_store(ledger.store)

        task = graph.find_task(record.task_id)
        if task is not None:
            task.delegated_to = record.to_agent
            task.delegation_id = record.id
            task.modified_at = self._clock()
            self.state.set_task_store(graph.store)

        depth = record.depth
        logger.info(f"[DELEGATION] {record.from_agent} → {record.to_agent} ({record.id}, depth {depth})")
        self._emit("delegation_created", session_id, {
            "delegation_id": record.id,
            "from_agent": record.from_agent,
            "to_agent": record.to_agent,
            "task_id": record.task_id,
            "depth": depth,
        })
        return record, build_delegation_instruction(record)

    def _transition_delegation(
        self,
        session_id: str,
        delegation_id: str,
        apply: Callable[[DelegationLedger], DelegationRecord],
    ) -> DelegationRecord:
        ledger = self.ledger()
        record = apply(ledger)
        self.state.set_delegation_store(ledger.store)
        logger.info(f"[DELEGATION] {delegation_id} → {record.status}")
        self._emit("delegation_transition", session_id, {"delegation_id": delegation_id, "status": record.status})
        return record

    def accept_delegation(self, session_id: str, delegation_id: str) -> DelegationRecord:
        return self._transition_delegation(session_id, delegation_id, lambda l: l.accept(delegation_id))

    def complete_delegation(
        self,
        session_id: str,
        delegation_id: str,
        evidence: str = "",
        files_modified: list[str] | None = None,
        tests_run: str = "",
    ) -> DelegationRecord:
        result = DelegationResult(evidence=evidence, files_modified=files_modified or [], tests_run=tests_run)
        return self._transition_delegation(session_id, delegation_id, lambda l: l.complete(delegation_id, result))

    def reject_delegation(self, session_id: str, delegation_id: str) -> DelegationRecord:
        return self._transition_delegation(session_id, delegation_id, lambda l: l.reject(delegation_id))

    def delegation_status(self) -> str:
        return format_delegation_store(self.ledger().store, now=self._clock())

    # ── String boundary ─────────────────────────────────────────────────

    def handle(self, tool: str, args: dict[str, Any], session_id: str) -> str:
        """Run a tool call and render the outcome for the agent."""
        handlers = {
            "helmsman_anchor": self._handle_anchor,
            "helmsman_task": self._handle_task,
            "helmsman_delegate": self._handle_delegate,
        }
        handler = handlers.get(tool)
        if handler is None:
            return f"ERROR: Unknown tool '{tool}'. Valid: {', '.join(handlers)}."
        try:
            return handler(args, session_id)
        except ToolGateError as e:
            return e.render()
        except GovernanceError as e:
            logger.debug(f"[TOOLS] {tool} {args.get('action')} rejected: {e}")
            return f"ERROR: {e}"

    def _handle_anchor(self, args: dict[str, Any], session_id: str) -> str:
        action = args.get("action")
        if action == "add":
            _require(args, "type", "priority", "content")
            anchor = self.add_anchor(session_id, args["type"], args["priority"], args["content"])
            return "\n".join([
                "Anchor created.",
                f"  ID: {anchor.id}",
                f"  Type: {anchor.type}",
                f"  Priority: {anchor.priority}",
                f"  Content: {anchor.content}",
                "",
                "This anchor will be preserved across compaction events.",
            ])
        if action == "list":
            views = self.list_anchors(session_id)
            if not views:
                return "No anchors for this session. Use action='add' to create one."
            return "\n".join([f"Active anchors ({len(views)}):", *(v.render() for v in views)])
        return f"ERROR: Unknown action '{action}'. Valid actions: add, list."

    def _handle_task(self, args: dict[str, Any], session_id: str) -> str:
        action = args.get("action")
        if action == "status":
            return self.task_status()

        if action == "create_epic":
            _require(args, "name")
            epic = self.create_epic(session_id, args["name"], args.get("category", "development"))
            message = f"Epic created: \"{epic.name}\" ({epic.id}) [{epic.status}]"
        elif action == "create_task":
            _require(args, "name")
            task = self.create_task(session_id, args["name"], args.get("epic_id"), args.get("assignee"))
            message = f"Task created: \"{task.name}\" ({task.id}). Start it before writing files."
        elif action == "start":
            _require(args, "task_id")
            task = self.start_task(session_id, args["task_id"])
            message = f"Task started: \"{task.name}\" ({task.id}). Writes are now allowed."
        elif action == "add_subtask":
            _require(args, "name")
            sub = self.add_subtask(session_id, args["name"], args.get("task_id"))
            message = f"Subtask added: \"{sub.name}\" ({sub.id})"
        elif action == "complete_subtask":
            _require(args, "subtask_id")
            sub = self.complete_subtask(session_id, args["subtask_id"], args.get("tool_used"))
            message = f"Subtask done: \"{sub.name}\""
        elif action == "skip_subtask":
            _require(args, "subtask_id")
            sub = self.skip_subtask(session_id, args["subtask_id"])
            message = f"Subtask skipped: \"{sub.name}\""
        elif action == "complete":
            task = self.complete_task(
                session_id, args.get("task_id"), args.get("evidence"), bool(args.get("override", False))
            )
            message = f"Task completed: \"{task.name}\""
        elif action == "block":
            task = self.block_task(session_id, args.get("task_id"), args.get("reason"))
            message = f"Task blocked: \"{task.name}\""
        elif action == "unblock":
            _require(args, "task_id")
            task = self.unblock_task(session_id, args["task_id"])
            message = f"Task resumed: \"{task.name}\""
        elif action == "defer":
            task = self.defer_task(session_id, args.get("task_id"), args.get("reason"))
            message = f"Task deferred: \"{task.name}\""
        elif action == "complete_epic":
            _require(args, "epic_id")
            epic = self.complete_epic(session_id, args["epic_id"])
            message = f"Epic completed: \"{epic.name}\""
        elif action == "abandon_epic":
            _require(args, "epic_id")
            epic = self.abandon_epic(session_id, args["epic_id"])
            message = f"Epic abandoned: \"{epic.name}\""
        else:
            return (
                f"ERROR: Unknown action '{action}'. Valid actions: create_epic, create_task, start, "
                "add_subtask, complete_subtask, skip_subtask, complete, block, unblock, defer, "
                "complete_epic, abandon_epic, status."
            )
        return f"{message}\n\n{build_governance_reminder(self.state.task_graph())}"

    def _handle_delegate(self, args: dict[str, Any], session_id: str) -> str:
        action = args.get("action")
        if action == "status":
            return self.delegation_status()
        if action == "create":
            _require(args, "to_agent")
            record, instruction = self.delegate(
                session_id,
                to_agent=args["to_agent"],
                task_id=args.get("task_id"),
                context=args.get("context", ""),
                expected_output=args.get("expected_output", ""),
                allowed_tools=args.get("allowed_tools"),
                allowed_actions=args.get("allowed_actions"),
            )
            return f"Delegation {record.id} created.\n\n{instruction}"

        _require(args, "delegation_id")
        delegation_id = args["delegation_id"]
        if action == "accept":
            record = self.accept_delegation(session_id, delegation_id)
        elif action == "complete":
            record = self.complete_delegation(
                session_id,
                delegation_id,
                evidence=args.get("evidence", ""),
                files_modified=args.get("files_modified"),
                tests_run=args.get("tests_run", ""),
            )
        elif action == "reject":
            record = self.reject_delegation(session_id, delegation_id)
        else:
            return f"ERROR: Unknown action '{action}'. Valid actions: create, accept, complete, reject, status."
        return f"Delegation {record.id}: {record.status}"
