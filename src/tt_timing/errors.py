"""Exceptions raised by the execution log and surfaced by the engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime

    from tt_timing.models import ActiveSessionRecord, ExecutionInterval


class TimingError(Exception):
    """Base exception for timing engine errors."""

    pass


class ConflictingExecution(TimingError):
    """Raised when another work item already owns the active execution."""

    def __init__(self, work_item_id: str | None) -> None:
        self.work_item_id = work_item_id
        super().__init__(
            f"Another execution is already active ({work_item_id}). "
            "Only one active execution at a time."
        )


class AlreadyOpenElsewhere(TimingError):
    """Raised by the log when an open interval or active session already exists."""

    def __init__(
        self,
        *,
        interval: ExecutionInterval | None = None,
        session: ActiveSessionRecord | None = None,
    ) -> None:
        self.interval = interval
        self.session = session
        owner = session.work_item_id if session else interval.work_item_id if interval else None
        self.work_item_id = owner
        super().__init__(f"An execution is already open for {owner}")


class NotOpen(TimingError):
    """Raised when closing or transitioning something that is not open."""

    pass


class NoPausedSession(TimingError):
    """Raised when resuming without a paused session."""

    def __init__(self) -> None:
        super().__init__("There is no paused session to resume.")


class InvalidRange(TimingError):
    """Raised when an interval would end before it started (clock skew)."""

    def __init__(self, started_at: datetime, ended_at: datetime) -> None:
        self.started_at = started_at
        self.ended_at = ended_at
        super().__init__(
            f"Interval would end at {ended_at.isoformat()} before it started "
            f"at {started_at.isoformat()}"
        )


class PersistenceUnavailable(TimingError):
    """Raised when the backing store cannot be read or written."""

    pass


class ActiveExecutionInProgress(TimingError):
    """Raised when a reset targets a work item whose execution is still active."""

    def __init__(self, work_item_id: str) -> None:
        self.work_item_id = work_item_id
        super().__init__(f"Stop the active execution of {work_item_id} before resetting it.")


class UnknownWorkItem(TimingError):
    """Raised when a work item is not known to the directory."""

    def __init__(self, work_item_id: str) -> None:
        self.work_item_id = work_item_id
        super().__init__(f"Unknown work item: {work_item_id}")


class NotAHabit(TimingError):
    """Raised when a streak is requested for a work item that is not a habit."""

    def __init__(self, work_item_id: str) -> None:
        self.work_item_id = work_item_id
        super().__init__(f"{work_item_id} is not a habit")
