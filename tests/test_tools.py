import pytest

from helmsman.errors import ChainConflict, ValidationError
from helmsman.event_bus import EventBus
from helmsman.tasks import create_bootstrap_store
from helmsman.tools import GovernanceTools


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def events(bus):
    received = []
    bus.subscribe(received.append)
    return received


@pytest.fixture
def tools(state, config, bus, clock):
    return GovernanceTools(state, config, bus=bus, clock=clock)


def _kinds(events):
    return [e.event_type for e in events]


# ── Anchors ─────────────────────────────────────────────────────────────

def test_add_anchor_validates_at_the_boundary(tools, state):
    with pytest.raises(ValidationError):
        tools.add_anchor("s1", "decision", "urgent", "x")
    with pytest.raises(ValidationError):
        tools.add_anchor("s1", "musing", "high", "x")
    with pytest.raises(ValidationError):
        tools.add_anchor("s1", "decision", "high", "x" * 2001)
    with pytest.raises(ValidationError):
        tools.add_anchor("s1", "decision", "high", "   ")

    assert state.get_anchors("s1") == []


def test_list_anchors_annotates_staleness(tools, clock, events):
    tools.add_anchor("s1", "decision", "high", "use postgres")
    clock.advance_hours(50)

    views = tools.list_anchors("s1")

    assert views[0].stale_hours == pytest.approx(50)
    assert "[STALE: 50.0h]" in views[0].render()
    assert _kinds(events) == ["anchor_added"]


def test_anchor_tool_text(tools):
    assert "No anchors" in tools.handle("helmsman_anchor", {"action": "list"}, "s1")

    out = tools.handle(
        "helmsman_anchor",
        {"action": "add", "type": "decision", "priority": "critical", "content": "no ORMs"},
        "s1",
    )
    assert out.startswith("Anchor created.")
    assert "[CRITICAL/decision] no ORMs" in tools.handle("helmsman_anchor", {"action": "list"}, "s1")

    assert tools.handle("helmsman_anchor", {"action": "add", "type": "decision"}, "s1").startswith("ERROR:")


# ── Tasks ───────────────────────────────────────────────────────────────

def test_start_task_sets_session_active_task(tools, state):
    tools.create_epic("s1", "Login")
    task = tools.create_task("s1", "Password reset")

    assert state.get_active_task("s1") is None
    tools.start_task("s1", task.id)

    assert state.get_active_task("s1").id == task.id
    assert state.get_active_task("s2") is None


def test_session_joins_an_already_active_task(tools, state):
    state.set_task_store(create_bootstrap_store())
    task = state.get_smart_active_task()

    assert state.get_active_task("s1") is None
    joined = tools.start_task("s1", task.id)

    assert joined.id == task.id
    assert state.get_active_task("s1").id == task.id
    assert state.get_active_task("s2") is None


def test_create_task_needs_an_epic(tools):
    with pytest.raises(ValidationError):
        tools.create_task("s1", "Homeless task")


def test_complete_task_requires_evidence_and_clears_refs(tools, state):
    tools.create_epic("s1", "Login")
    task = tools.create_task("s1", "Password reset")
    tools.start_task("s1", task.id)

    with pytest.raises(ValidationError):
        tools.complete_task("s1")

    tools.complete_task("s1", evidence="pytest: 14 passed")
    assert state.get_active_task("s1") is None
    assert state.get_smart_active_task() is None


def test_subtask_defaults_to_session_task(tools):
    tools.create_epic("s1", "Login")
    task = tools.create_task("s1", "Password reset")
    tools.start_task("s1", task.id)

    sub = tools.add_subtask("s1", "email template")
    assert sub.task_id == task.id


def test_conflicting_sessions_surface_chain_warnings(tools, state, events):
    tools.create_epic("s1", "Login")
    first = tools.create_task("s1", "Password reset")
    second = tools.create_task("s2", "Two factor")
    tools.start_task("s1", first.id)

    with pytest.raises(ChainConflict):
        tools.start_task("s2", second.id)

    # Another writer forced a second active task into the shared store
    store = state.get_task_store()
    store.epics[0].tasks[1].status = "active"
    tools.add_subtask("s1", "audit log", task_id=first.id)

    warnings = [e for e in events if e.event_type == "chain_warning"]
    assert any(e.payload["kind"] == "multiple_active_tasks" for e in warnings)


def test_task_tool_text(tools):
    out = tools.handle("helmsman_task", {"action": "create_epic", "name": "Login"}, "s1")
    assert out.startswith("Epic created")
    assert "--- Governance Reminder ---" in out

    assert tools.handle("helmsman_task", {"action": "start"}, "s1").startswith("ERROR: Missing")
    assert tools.handle("helmsman_task", {"action": "fly"}, "s1").startswith("ERROR: Unknown action")
    assert "=== Task Hierarchy ===" in tools.handle("helmsman_task", {"action": "status"}, "s1")


# ── Delegation ──────────────────────────────────────────────────────────

def _active_task(tools):
    tools.create_epic("s1", "Login")
    task = tools.create_task("s1", "Password reset")
    tools.start_task("s1", task.id)
    return task


def test_delegate_stamps_task_and_returns_instruction(tools, state, events):
    task = _active_task(tools)
    state.set_captured_agent("s1", "coordinator")

    record, instruction = tools.delegate("s1", "executor", context="wire the endpoint", expected_output="patch")

    stored = state.task_graph().find_task(task.id)
    assert stored.delegated_to == "executor"
    assert stored.delegation_id == record.id
    assert record.from_agent == "coordinator"
    assert "## 📋 DELEGATION" in instruction
    assert "delegation_created" in _kinds(events)
    assert state.get_delegation_store().delegations[0].id == record.id


def test_delegate_rejects_routing_violation(tools, state):
    _active_task(tools)
    with pytest.raises(ValidationError):
        tools.delegate("s1", "investigator")  # development work routes to executor
    assert state.get_delegation_store().delegations == []


def test_delegation_lifecycle_via_handle(tools, state):
    _active_task(tools)
    created = tools.handle("helmsman_delegate", {"action": "create", "to_agent": "executor"}, "s1")
    delegation_id = state.get_delegation_store().delegations[0].id
    assert delegation_id in created

    assert tools.handle("helmsman_delegate", {"action": "complete", "delegation_id": delegation_id}, "s2") \
        .startswith("ERROR:")
    assert tools.handle("helmsman_delegate", {"action": "accept", "delegation_id": delegation_id}, "s2") \
        .endswith("accepted")
    assert tools.handle(
        "helmsman_delegate",
        {"action": "complete", "delegation_id": delegation_id, "evidence": "done"},
        "s2",
    ).endswith("completed")

    assert "Completed (1)" in tools.handle("helmsman_delegate", {"action": "status"}, "s1")


def test_unknown_tool(tools):
    assert tools.handle("helmsman_nope", {}, "s1").startswith("ERROR: Unknown tool")
