"""Shared fixtures: a controllable clock and in-memory logs/engines."""

import os
from datetime import datetime, timedelta, timezone

import pytest

from tt_timing.config import EngineConfig
from tt_timing.engine import TimingEngine
from tt_timing.execution_log import ExecutionLog, LogGateway
from tt_timing.models import Frequency, WorkItem, WorkItemKind

# 2025-01-25 12:00 in JST
NOON_JST = datetime(2025, 1, 25, 3, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock returning a fixed instant until told to move."""

    def __init__(self, start: datetime = NOON_JST):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, instant: datetime) -> datetime:
        self.now = instant
        return self.now


def make_task(work_item_id: str = "task-1") -> WorkItem:
    return WorkItem(id=work_item_id, kind=WorkItemKind.TASK, title=work_item_id)


def make_habit(work_item_id: str = "habit-1", frequency: Frequency = Frequency.DAILY) -> WorkItem:
    return WorkItem(id=work_item_id, kind=WorkItemKind.HABIT, frequency=frequency, title=work_item_id)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep TT_* settings of the surrounding shell out of every test."""
    for name in list(os.environ):
        if name.startswith("TT_"):
            monkeypatch.delenv(name)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def log():
    log = ExecutionLog.open_in_memory()
    yield log
    log.close()


@pytest.fixture
def gateway(log):
    gateway = LogGateway(log)
    yield gateway
    gateway.shutdown()


@pytest.fixture
def engine(clock):
    engine = TimingEngine(ExecutionLog.open_in_memory(), config=EngineConfig(), clock=clock)
    for item in (make_task("task-1"), make_task("task-2"), make_habit("habit-1")):
        engine.log.upsert_work_item(item)
    yield engine
    engine.close()
