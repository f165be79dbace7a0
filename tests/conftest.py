"""Shared builders: a small primary/replica world on the in-memory service."""

import copy

import pytest

from dirsync.config.loader import config_from_dict
from dirsync.directory.memory import InMemoryDirectoryService
from dirsync.engine import SyncEngine

PRIMARY = "100"
REPLICA_A = "200"
REPLICA_B = "300"

BASE_CONFIG = {
    "primary": {"directory_id": PRIMARY, "member_grant_id": "m", "pending_grant_id": "p"},
    "groups": [
        {"name": "Tsunami", "grant_id": "g1", "replicas": {REPLICA_A: "r1", REPLICA_B: "s1"}},
        {"name": "Hurricane", "grant_id": "g2", "replicas": {REPLICA_A: "r2"}},
    ],
    "selection_sets": [
        {
            "id": "weapon",
            "title": "Weapon",
            "exclusive": True,
            "grants": [
                {"grant_id": "w1", "name": "SNS / GS", "category": "Tank", "emoji": "🛡️"},
                {"grant_id": "w2", "name": "Staff", "category": "Healer"},
                {"grant_id": "w3", "name": "Bow", "category": "DPS"},
            ],
        },
        {
            "id": "extras",
            "title": "Extras",
            "exclusive": False,
            "grants": [
                {"grant_id": "x1", "name": "Crafter"},
                {"grant_id": "x2", "name": "PvP"},
            ],
        },
    ],
    "timing": {
        "debounce_window": 0.01,
        "dedup_window": 30.0,
        "retry_max_attempts": 3,
        "retry_initial_delay": 1.0,
        "sweep_interval": 3600,
        "sweep_batch_size": 10,
        "sweep_batch_pause": 0.5,
        "sweep_on_startup": True,
    },
    "service": {"base_url": "http://directory.test"},
}


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Awaitable sleep replacement that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_config_data(**overrides) -> dict:
    data = copy.deepcopy(BASE_CONFIG)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(data.get(key), dict):
            data[key].update(value)
        else:
            data[key] = value
    return data


def make_config(**overrides):
    return config_from_dict(make_config_data(**overrides))


def make_service() -> InMemoryDirectoryService:
    service = InMemoryDirectoryService()
    service.add_directory(
        PRIMARY,
        "Primary",
        grants={
            "m": "Member",
            "p": "Pending",
            "g1": "Tsunami",
            "g2": "Hurricane",
            "w1": "SNS / GS",
            "w2": "Staff",
            "w3": "Bow",
            "x1": "Crafter",
            "x2": "PvP",
        },
    )
    service.add_directory(REPLICA_A, "Replica A", grants={"r1": "Tsunami", "r2": "Hurricane", "z2": "Local"})
    service.add_directory(REPLICA_B, "Replica B", grants={"s1": "Tsunami", "z3": "Local"})
    return service


def make_engine(service=None, config=None, *, clock=None, wall_clock=None, sleep=None, **overrides) -> SyncEngine:
    return SyncEngine(
        config or make_config(**overrides),
        service or make_service(),
        clock=clock or FakeClock(),
        wall_clock=wall_clock or FakeClock(),
        sleep=sleep or SleepRecorder(),
    )


@pytest.fixture
def service():
    return make_service()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return SleepRecorder()
