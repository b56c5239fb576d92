"""Data model for executions, aggregates and streaks."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def to_utc(instant: datetime) -> datetime:
    """Return an aware UTC datetime. Naive values are taken to be UTC."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def format_timestamp(instant: datetime) -> str:
    """Format an instant as a sortable ISO 8601 UTC string."""
    return to_utc(instant).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(ts: str) -> datetime:
    """Parse ISO 8601 timestamp to an aware UTC datetime."""
    return to_utc(datetime.fromisoformat(ts.replace("Z", "+00:00")))


def span_ms(start: datetime, end: datetime) -> int:
    return int((to_utc(end) - to_utc(start)).total_seconds() * 1000)


class WorkItemKind(str, Enum):
    TASK = "task"
    HABIT = "habit"


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ResetScope(str, Enum):
    SESSION = "session"
    TODAY = "today"
    TOTAL = "total"


class ExecutionPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"


class StreakStatus(str, Enum):
    ACTIVE = "active"
    AT_RISK = "at-risk"
    EXPIRED = "expired"


class WorkItem(BaseModel):
    """A task or habit owned by the surrounding application.

    Habits always carry a frequency (daily when unspecified); tasks never do.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    kind: WorkItemKind = WorkItemKind.TASK
    frequency: Frequency | None = None
    title: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _default_habit_frequency(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("kind") == "habit" and data.get("frequency") is None:
            return {**data, "frequency": Frequency.DAILY}
        return data

    @model_validator(mode="after")
    def _task_without_frequency(self) -> WorkItem:
        if self.kind is WorkItemKind.TASK and self.frequency is not None:
            raise ValueError("Tasks do not have a frequency")
        return self

    @property
    def is_habit(self) -> bool:
        return self.kind is WorkItemKind.HABIT


class ExecutionInterval(BaseModel):
    """One start/stop pair. Immutable once closed."""

    model_config = ConfigDict(frozen=True)

    id: int
    work_item_id: str
    session_id: str
    started_at: datetime
    ended_at: datetime | None = None
    device_type: str = "desktop"

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    @property
    def duration_ms(self) -> int | None:
        if self.ended_at is None:
            return None
        return span_ms(self.started_at, self.ended_at)


class ActiveSessionRecord(BaseModel):
    """The persisted owner of the single active execution."""

    model_config = ConfigDict(frozen=True)

    work_item_id: str
    session_id: str
    started_at: datetime
    paused: bool = False
    device_type: str = "desktop"


class ActiveExecutionState(BaseModel):
    """In-memory view of the active execution.

    `started_at` is the start of the currently running segment and is None
    while paused. `accumulated_ms` holds the time of all closed segments of
    the session.
    """

    model_config = ConfigDict(frozen=True)

    phase: ExecutionPhase = ExecutionPhase.IDLE
    work_item_id: str | None = None
    session_id: str | None = None
    started_at: datetime | None = None
    accumulated_ms: int = 0
    device_type: str = "desktop"

    @property
    def is_running(self) -> bool:
        return self.phase is ExecutionPhase.RUNNING

    @property
    def is_idle(self) -> bool:
        return self.phase is ExecutionPhase.IDLE

    def elapsed_ms(self, now: datetime) -> int:
        """Session clock at `now`. Pure; never touches persistence."""
        if self.phase is ExecutionPhase.RUNNING and self.started_at is not None:
            return self.accumulated_ms + max(0, span_ms(self.started_at, now))
        return self.accumulated_ms


IDLE_STATE = ActiveExecutionState()


class Aggregate(BaseModel):
    """Derived totals for a work item. A cache, never a source of truth."""

    model_config = ConfigDict(frozen=True)

    work_item_id: str
    day_key: str
    session_elapsed_ms: int = 0
    today_total_ms: int = 0
    lifetime_total_ms: int = 0
    session_count: int = 0
    computed_at: datetime
    stale: bool = False


class ActivityCell(BaseModel):
    """Executions started in one local (weekday, hour) slot. Monday is 0."""

    model_config = ConfigDict(frozen=True)

    weekday: int = Field(ge=0, le=6)
    hour: int = Field(ge=0, le=23)
    count: int = 0
    total_ms: int = 0
    # 0.6 * relative count + 0.4 * relative duration, in [0, 1]
    intensity: float = 0.0


class ActivityMatrix(BaseModel):
    """When work happens: a 7x24 weekday/hour heatmap over closed intervals."""

    model_config = ConfigDict(frozen=True)

    work_item_id: str | None = None
    since: datetime
    until: datetime
    total_count: int = 0
    total_ms: int = 0
    cells: list[list[ActivityCell]]

    def cell(self, weekday: int, hour: int) -> ActivityCell:
        return self.cells[weekday][hour]


class StreakRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    work_item_id: str
    frequency: Frequency
    current_streak: int = Field(default=0, ge=0)
    longest_streak: int = Field(default=0, ge=0)
    status: StreakStatus = StreakStatus.EXPIRED
    last_completed_at: datetime | None = None
    computed_at: datetime
    stale: bool = False


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ResetPolicy(str, Enum):
    AUTO_STOP = "auto_stop"
    REJECT = "reject"
