from __future__ import annotations

import importlib
import json
import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from minesite.blocks import WeightedRandomPicker  # noqa: E402
from minesite.orchestrator import RefreshOrchestrator  # noqa: E402
from minesite.store import JsonSiteStore  # noqa: E402
from minesite.world import MemoryWorld  # noqa: E402

API_TOKEN = "test-token"
AUTH_HEADERS = {"X-MineSite-Token": API_TOKEN}

# 2026-10-21 is a Wednesday (weekday 3 in site records).
WEDNESDAY_NOON = datetime(2026, 10, 21, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ManualScheduler:
    """Scheduler double that only runs tasks when the test advances time."""

    def __init__(self, clock: FixedClock) -> None:
        self.clock = clock
        self.tasks: dict[str, tuple[float, Callable[[], None]]] = {}
        self.resets = 0

    def start(self) -> None:
        pass

    def stop(self) -> None:
        self.tasks.clear()

    def schedule(self, key: str, fire_at, action: Callable[[], None]) -> None:
        when = fire_at.timestamp() if isinstance(fire_at, datetime) else float(fire_at)
        self.tasks[key] = (when, action)

    def schedule_in(self, key: str, delay_seconds: float, action: Callable[[], None]) -> None:
        self.schedule(key, self.clock.timestamp() + max(0.0, delay_seconds), action)

    def cancel(self, key: str) -> bool:
        return self.tasks.pop(key, None) is not None

    def pending(self) -> list[str]:
        return sorted(self.tasks)

    def reset(self) -> None:
        self.tasks.clear()
        self.resets += 1

    def delay_of(self, key: str) -> float:
        return self.tasks[key][0] - self.clock.timestamp()

    def run_due(self, limit: int = 10_000) -> list[str]:
        ran: list[str] = []
        for _ in range(limit):
            due = [(when, key) for key, (when, _) in self.tasks.items() if when <= self.clock.timestamp()]
            if not due:
                return ran
            _, key = min(due)
            _, action = self.tasks.pop(key)
            action()
            ran.append(key)
        raise AssertionError("Scheduled tasks kept rescheduling themselves")

    def advance(self, seconds: float) -> list[str]:
        ran: list[str] = []
        target = self.clock.timestamp() + seconds
        # Step through each deadline so chained one-second tasks see the right time.
        while True:
            upcoming = [when for when, _ in self.tasks.values() if when <= target]
            if not upcoming:
                break
            step = max(0.0, min(upcoming) - self.clock.timestamp())
            self.clock.advance(step)
            ran.extend(self.run_due())
        self.clock.advance(target - self.clock.timestamp())
        return ran


def site_record(name: str = "mine1", **overrides: object) -> dict:
    record = {
        "name": name,
        "creator": "tester",
        "description": "Test mine",
        "world": "minecraft:overworld",
        "pos1": "0,60,0",
        "pos2": "2,61,1",
        "safetyPoint": "10,64,10",
        "status": "active",
        "broadcastInterval": 300,
        "refreshInterval": 60,
        "timeTable": [{"weekday": day, "startTime": "00:00", "endTime": "23:59"} for day in range(7)],
        "mines": [{"block": "minecraft:stone", "weight": 1}],
        "createTime": "2026-10-01T00:00:00Z",
        "lastUpdateTime": "2026-10-01T00:00:00Z",
        "lastRefreshTime": None,
    }
    record.update(overrides)
    return record


def write_config(path: Path, records: list) -> None:
    path.write_text(json.dumps({"version": "1.1", "sites": records}, indent=2), encoding="utf-8")


def run_ticks(orchestrator: RefreshOrchestrator, limit: int = 1000) -> int:
    ticks = 0
    while orchestrator.mutations.sites():
        orchestrator.tick()
        ticks += 1
        if ticks > limit:
            raise AssertionError("Mutation queue never drained")
    return ticks


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock(WEDNESDAY_NOON)


@pytest.fixture()
def scheduler(clock: FixedClock) -> ManualScheduler:
    return ManualScheduler(clock)


@pytest.fixture()
def world() -> MemoryWorld:
    return MemoryWorld()


@pytest.fixture()
def config_path(tmp_path: Path) -> Path:
    return tmp_path / "minesite.json"


@pytest.fixture()
def build(config_path: Path, clock: FixedClock, scheduler: ManualScheduler, world: MemoryWorld):
    def _build(*records: dict, blocks_per_tick: int = 100, seed: int = 7, load: bool = True) -> RefreshOrchestrator:
        write_config(config_path, list(records))
        orchestrator = RefreshOrchestrator(
            JsonSiteStore(config_path),
            world,
            scheduler,
            picker=WeightedRandomPicker(random.Random(seed)),
            clock=clock,
            blocks_per_tick=blocks_per_tick,
        )
        if load:
            orchestrator.load()
        return orchestrator

    return _build


@pytest.fixture()
def app_module(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    path = tmp_path / "config" / "minesite.json"
    path.parent.mkdir(parents=True)
    write_config(path, [site_record(status="inactive")])

    monkeypatch.setenv("MINESITE_API_TOKEN", API_TOKEN)
    monkeypatch.setenv("MINESITE_CONFIG_PATH", str(path))
    monkeypatch.setenv("MINESITE_TIMEZONE", "UTC")
    monkeypatch.setenv("MINESITE_TICK_INTERVAL_MS", "5")
    monkeypatch.setenv("MINESITE_SCHEDULER_WORKERS", "2")

    if "minesite.main" in sys.modules:
        module = importlib.reload(sys.modules["minesite.main"])
    else:
        module = importlib.import_module("minesite.main")
    return module


@pytest.fixture()
def client(app_module):
    with TestClient(app_module.app) as test_client:
        yield test_client


def read_sites(path: Path) -> list[dict]:
    return json.loads(path.read_text(encoding="utf-8"))["sites"]


def find_site(path: Path, name: str) -> Optional[dict]:
    return next((site for site in read_sites(path) if site.get("name") == name), None)
