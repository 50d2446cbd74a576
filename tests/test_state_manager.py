import json

import pytest

from helmsman import state_manager as sm
from helmsman.anchors import create_anchor
from helmsman.config_loader import HelmsmanConfig, PersistenceConfig
from helmsman.state import ActiveTaskRef, BlockRecord, HistoryEntry, MAX_HISTORY
from helmsman.state_manager import StateManager, StorageAdapter
from helmsman.tasks import TaskGraph, create_bootstrap_store


@pytest.fixture
def disk_state(tmp_path, config, clock):
    manager = StateManager(config, clock=clock)
    manager.init(tmp_path)
    return manager


def _gov(tmp_path):
    return tmp_path / ".helmsman"


def test_is_a_storage_adapter(state):
    assert isinstance(state, StorageAdapter)


def test_session_state_is_isolated(state):
    state.set_active_task("s1", ActiveTaskRef(id="t1", name="One"))
    state.set_captured_agent("s1", "executor")
    state.set_last_block("s2", BlockRecord(tool="write", timestamp=1))

    assert state.get_active_task("s1").id == "t1"
    assert state.get_active_task("s2") is None
    assert state.get_captured_agent("s2") is None
    assert state.get_last_block("s1") is None
    assert state.get_last_block("s2").tool == "write"


def test_resolve_prefers_explicit_task_over_chain(state):
    state.set_task_store(create_bootstrap_store())
    assert state.resolve_active_task("s1").name == "Initial System Setup"

    state.set_active_task("s1", ActiveTaskRef(id="mine", name="Mine"))
    assert state.resolve_active_task("s1").id == "mine"


def test_clear_active_task_refs(state):
    state.set_active_task("s1", ActiveTaskRef(id="t1", name="One"))
    state.set_active_task("s2", ActiveTaskRef(id="t1", name="One"))
    state.set_active_task("s3", ActiveTaskRef(id="t2", name="Two"))

    assert sorted(state.clear_active_task_refs("t1")) == ["s1", "s2"]
    assert state.get_active_task("s3").id == "t2"


def test_derived_active_epic_and_task(state):
    assert state.get_active_epic() is None
    state.set_task_store(create_bootstrap_store())

    assert state.get_active_epic().name == "Bootstrap Initialization"
    assert state.get_smart_active_task().name == "Initial System Setup"


def test_register_session_tracks_depth(state):
    root = state.register_session("root", agent_role="coordinator")
    child = state.register_session("child", parent_id="root")
    grandchild = state.register_session("grandchild", parent_id="child")

    assert (root.depth, child.depth, grandchild.depth) == (0, 1, 2)
    assert state.register_session("child") is child


def test_history_is_a_bounded_ring(state):
    for i in range(MAX_HISTORY + 5):
        state.record_history(HistoryEntry(action=f"a{i}", result="pass", session_id="s1"))

    history = state.history()
    assert len(history) == MAX_HISTORY
    assert history[0].action == "a5"
    assert state.history("other") == []


def test_phase_and_validation(state, clock):
    state.set_phase("execution")
    assert state.record_validation() == 1
    assert state.record_validation() == 2

    snapshot = state.get_state()
    assert snapshot.phase == "execution"
    assert snapshot.last_validation == clock()


def test_round_trip_through_disk(tmp_path, disk_state, config, clock):
    disk_state.add_anchor("s1", create_anchor("decision", "high", "use sqlite", now=clock()))
    disk_state.set_active_task("s1", ActiveTaskRef(id="t1", name="One"))
    disk_state.set_task_store(create_bootstrap_store(now=clock()))
    disk_state.close()

    gov = _gov(tmp_path)
    for name in ("state.json", "tasks.json", "delegations.json"):
        assert (gov / name).exists()

    reloaded = StateManager(config, clock=clock)
    reloaded.init(tmp_path)

    assert [a.content for a in reloaded.get_anchors("s1")] == ["use sqlite"]
    assert reloaded.get_active_task("s1").id == "t1"
    assert reloaded.get_smart_active_task().name == "Initial System Setup"


def test_writes_are_atomic_and_backed_up(tmp_path, disk_state, clock):
    disk_state.set_phase("planning")
    clock.advance(1)
    disk_state.set_phase("execution")

    gov = _gov(tmp_path)
    assert not list(gov.glob("*.tmp"))
    assert list((gov / "backups").glob("state-*.json"))
    assert json.loads((gov / "state.json").read_text())["phase"] == "execution"


def test_old_task_store_is_migrated_on_load(tmp_path, config, clock):
    gov = _gov(tmp_path)
    gov.mkdir()
    (gov / "tasks.json").write_text(json.dumps({
        "version": "1.0.0",
        "epics": [{"id": "e1", "name": "Legacy", "status": "active", "tasks": []}],
    }))

    manager = StateManager(config, clock=clock)
    manager.init(tmp_path)

    assert manager.get_task_store().active_epic_id == "e1"
    assert manager.get_task_store().epics[0].category == "development"


def test_corrupt_file_is_quarantined(tmp_path, config, clock):
    gov = _gov(tmp_path)
    gov.mkdir()
    (gov / "state.json").write_text("{not json")

    manager = StateManager(config, clock=clock)
    manager.init(tmp_path)

    assert not manager.is_degraded()
    assert list((gov / "backups").glob("state-corrupt-*.json"))
    assert manager.get_state().anchors == []


def test_write_failure_enters_degraded_mode_and_recovers(tmp_path, disk_state, monkeypatch):
    events = []
    disk_state.on_degraded = events.append
    real_write = sm.atomic_write_text

    def failing_write(path, content):
        raise OSError("disk full")

    monkeypatch.setattr(sm, "atomic_write_text", failing_write)
    disk_state.set_active_task("s1", ActiveTaskRef(id="t1", name="One"))

    # Still serving from memory
    assert disk_state.is_degraded()
    assert disk_state.get_active_task("s1").id == "t1"
    assert events and "disk full" in events[0]

    monkeypatch.setattr(sm, "atomic_write_text", real_write)
    assert disk_state.force_save() is True
    assert not disk_state.is_degraded()

    saved = json.loads((_gov(tmp_path) / "state.json").read_text())
    assert saved["session_views"]["s1"]["active_task"]["id"] == "t1"


def test_forced_degraded_mode_never_touches_disk(tmp_path, clock):
    config = HelmsmanConfig(persistence=PersistenceConfig(force_degraded=True))
    manager = StateManager(config, clock=clock)
    manager.init(tmp_path)

    manager.set_phase("research")

    assert manager.is_degraded()
    assert manager.force_save() is False
    assert not _gov(tmp_path).exists()


def test_batching_defers_writes(tmp_path, clock):
    config = HelmsmanConfig(persistence=PersistenceConfig(batch_size=3, backup=False))
    manager = StateManager(config, clock=clock)
    manager.init(tmp_path)
    state_file = _gov(tmp_path) / "state.json"

    manager.set_phase("research")
    manager.set_phase("planning")
    assert not state_file.exists()

    manager.set_phase("execution")
    assert json.loads(state_file.read_text())["phase"] == "execution"


def test_soft_changes_ride_along(tmp_path, disk_state):
    disk_state.record_history(HistoryEntry(action="tool_completed", result="pass"))
    assert not (_gov(tmp_path) / "state.json").exists()

    disk_state.close()
    saved = json.loads((_gov(tmp_path) / "state.json").read_text())
    assert saved["history"][0]["action"] == "tool_completed"


def test_clear_resets_memory(state, clock):
    state.add_anchor("s1", create_anchor("context", "low", "x", now=clock()))
    state.set_task_store(create_bootstrap_store())
    state.clear()

    assert state.get_anchors("s1") == []
    assert state.get_task_store().epics == []
    assert TaskGraph(state.get_task_store()).get_active_chain() is None


@pytest.mark.parametrize("epics", [
    [{"id": "e1", "name": "Legacy", "tasks": None}],
    ["not-an-epic"],
    [{"id": "e1", "name": "Legacy", "tasks": [{"id": "t1", "subtasks": 7}]}],
])
def test_malformed_old_task_store_is_quarantined(tmp_path, config, clock, epics):
    gov = _gov(tmp_path)
    gov.mkdir()
    (gov / "tasks.json").write_text(json.dumps({"version": "1.0.0", "epics": epics}))

    manager = StateManager(config, clock=clock)
    manager.init(tmp_path)

    assert not manager.is_degraded()
    assert manager.get_task_store().epics == []
    assert list((gov / "backups").glob("tasks-corrupt-*.json"))


def test_newer_task_store_is_left_untouched(tmp_path, config, clock):
    gov = _gov(tmp_path)
    gov.mkdir()
    newer = json.dumps({"version": "3.0.0", "epics": [], "workstreams": ["x"]})
    (gov / "tasks.json").write_text(newer)

    manager = StateManager(config, clock=clock)
    manager.init(tmp_path)
    manager.set_task_store(create_bootstrap_store(now=clock()))

    assert manager.is_degraded()
    assert manager.force_save() is False
    assert (gov / "tasks.json").read_text() == newer
