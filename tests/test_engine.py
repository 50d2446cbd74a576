import json

import pytest

from helmsman import state_manager as sm
from helmsman.anchors import create_anchor
from helmsman.engine import GovernanceEngine
from helmsman.errors import ToolGateError


@pytest.fixture
def engine(tmp_path, config, clock):
    eng = GovernanceEngine(tmp_path, config=config, clock=clock, log_to_file=False)
    yield eng
    eng.close()


@pytest.fixture
def events(engine):
    received = []
    engine.bus.subscribe(received.append)
    return received


def _start_task(engine, session_id="s1"):
    engine.handle_tool("helmsman_task", {"action": "create_epic", "name": "Login"}, session_id)
    engine.handle_tool("helmsman_task", {"action": "create_task", "name": "Reset"}, session_id)
    task_id = engine.state.get_task_store().epics[0].tasks[0].id
    engine.handle_tool("helmsman_task", {"action": "start", "task_id": task_id}, session_id)
    return task_id


def test_write_blocked_until_a_task_starts(engine, events):
    denial = engine.before_tool("write", "s1", "call-1")

    assert isinstance(denial, ToolGateError)
    assert events[-1].event_type == "tool_blocked"
    assert events[-1].payload["call_id"] == "call-1"

    _start_task(engine)
    assert engine.before_tool("write", "s1", "call-2") is None
    assert events[-1].event_type == "tool_allowed"


def test_roles_follow_captured_agent(engine):
    engine.capture_agent("s1", "coordinator")
    engine.capture_agent("s2", "executor", parent_id="s1")

    assert engine.before_tool("bash", "s1") is not None
    assert engine.before_tool("bash", "s2") is None
    assert engine.state.get_session_info("s2").depth == 1


def test_hooks_never_raise(engine, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("gate exploded")

    monkeypatch.setattr(engine.gate, "before_tool", boom)
    monkeypatch.setattr(engine.gate, "after_tool", boom)
    monkeypatch.setattr(engine.state, "get_anchors", boom)

    assert engine.before_tool("write", "s1") is None
    engine.after_tool("write", "s1", outcome="ok")
    context = ["keep"]
    engine.on_compaction("s1", context)
    assert context == ["keep"]
    system = ["keep"]
    engine.on_system_prompt("s1", system)
    assert system == ["keep"]


def test_compaction_emits_report(engine, events, clock):
    engine.state.add_anchor("s1", create_anchor("decision", "high", "no ORMs", now=clock()))
    context: list[str] = []

    engine.on_compaction("s1", context)

    assert "no ORMs" in context[0]
    injected = [e for e in events if e.event_type == "compaction_injected"]
    assert injected[0].payload["selected_anchors"] == 1


def test_audit_log_written_on_close(tmp_path, config, clock):
    engine = GovernanceEngine(tmp_path, config=config, clock=clock, log_to_file=False)
    engine.before_tool("write", "s1")
    engine.after_tool("write", "s1")
    engine.close()

    audit_file = tmp_path / ".helmsman" / "logs" / "audit.jsonl"
    entries = [json.loads(line) for line in audit_file.read_text().splitlines()]
    assert [e["event_type"] for e in entries] == ["tool_blocked", "tool_executed_despite_denial"]


def test_write_failure_emits_degraded_event(engine, events, monkeypatch):
    def failing_write(path, content):
        raise OSError("read-only filesystem")

    monkeypatch.setattr(sm, "atomic_write_text", failing_write)
    _start_task(engine)

    degraded = [e for e in events if e.event_type == "state_degraded"]
    assert degraded and "read-only filesystem" in degraded[0].payload["reason"]
    # Governance keeps working from memory
    assert engine.before_tool("write", "s1") is None


def test_in_memory_engine_has_no_audit_log(config, clock):
    with GovernanceEngine(config=config, clock=clock) as engine:
        assert engine.audit is None
        assert engine.before_tool("read", "s1") is None


def test_system_prompt_reminder_every_turn(engine, events):
    system = ["You are a helpful assistant."]
    engine.on_system_prompt("s1", system)

    assert system[0] == "You are a helpful assistant."
    assert "NO ACTIVE TASK" in system[1]

    _start_task(engine)
    system = []
    engine.on_system_prompt("s1", system)

    assert "CURRENT TASK: Reset" in system[0]
    injected = [e for e in events if e.event_type == "system_prompt_injected"]
    assert len(injected) == 2
    assert injected[-1].payload["chars"] == len(system[0])


def test_system_prompt_hook_never_raises(engine, events, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("state exploded")

    monkeypatch.setattr(engine.state, "get_active_task", boom)
    system = ["base"]

    engine.on_system_prompt("s1", system)
    engine.on_system_prompt("", system)

    assert system == ["base"]
    assert not [e for e in events if e.event_type == "system_prompt_injected"]


def test_executed_despite_denial_reaches_the_bus(engine, events):
    engine.before_tool("write", "s1", "call-1")
    engine.after_tool("write", "s1", "call-1")

    assert events[-1].event_type == "tool_executed_despite_denial"
    assert events[-1].is_alert
