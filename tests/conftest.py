import pytest

from helmsman.clock import HOUR_MS, MINUTE_MS
from helmsman.config_loader import load_config
from helmsman.state_manager import StateManager

START_MS = 1_700_000_000_000


class FakeClock:
    """Deterministic millisecond clock for staleness and expiry tests."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms

    def advance_minutes(self, minutes: float) -> None:
        self.now += int(minutes * MINUTE_MS)

    def advance_hours(self, hours: float) -> None:
        self.now += int(hours * HOUR_MS)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in ("HELMSMAN_LOG_LEVEL", "HELMSMAN_COMPACTION_BUDGET", "HELMSMAN_DEGRADED"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config():
    return load_config()


@pytest.fixture
def state(config, clock) -> StateManager:
    """In-memory StateManager (no project directory)."""
    return StateManager(config, clock=clock)
