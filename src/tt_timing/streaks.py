"""Habit streaks over day/week/month buckets."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from tt_timing.boundary import DayBoundary
from tt_timing.errors import PersistenceUnavailable
from tt_timing.execution_log import ExecutionLog, LogGateway
from tt_timing.models import (
    Clock,
    Frequency,
    StreakRecord,
    StreakStatus,
    WorkItem,
    to_utc,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Result of recomputing every habit's streak in one pass."""

    checked: int = 0
    broken: list[str] = field(default_factory=list)
    at_risk: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    records: dict[str, StreakRecord] = field(default_factory=dict)


def _qualifying_times(log: ExecutionLog, work_item_id: str, include_executions: bool) -> list[datetime]:
    times = log.completion_times(work_item_id)
    if include_executions:
        times += [i.started_at for i in log.list_intervals(work_item_id, closed_only=True)]
    return times


def evaluate_streak(
    completions: Iterable[datetime],
    frequency: Frequency,
    now: datetime,
    boundary: DayBoundary,
    *,
    at_risk_threshold: float = 0.0,
) -> tuple[int, int, StreakStatus]:
    """Compute (current_streak, longest_streak, status).

    The current streak is the run of consecutive qualifying buckets ending
    at the current bucket, or at the previous one while the current bucket
    is still open. Once a whole bucket passes without a completion the
    streak is expired and current drops to 0; longest keeps the history.

    Args:
        at_risk_threshold: Fraction of the current bucket that must have
            elapsed before an uncompleted current bucket counts as at-risk
            instead of active. 0.0 flags it as soon as the bucket opens.
    """
    now = to_utc(now)
    current_idx = boundary.bucket_index(now, frequency)
    indices = {
        boundary.bucket_index(t, frequency) for t in completions if to_utc(t) <= now
    }
    if not indices:
        return 0, 0, StreakStatus.EXPIRED

    longest = run = 0
    previous: int | None = None
    for idx in sorted(indices):
        run = run + 1 if previous is not None and idx == previous + 1 else 1
        longest = max(longest, run)
        previous = idx

    def run_ending_at(idx: int) -> int:
        count = 0
        while idx in indices:
            count += 1
            idx -= 1
        return count

    if current_idx in indices:
        return run_ending_at(current_idx), longest, StreakStatus.ACTIVE
    if current_idx - 1 in indices:
        start = boundary.bucket_start(now, frequency)
        end = boundary.bucket_end(now, frequency)
        elapsed = (now - start) / (end - start)
        status = StreakStatus.AT_RISK if elapsed >= at_risk_threshold else StreakStatus.ACTIVE
        return run_ending_at(current_idx - 1), longest, status
    return 0, longest, StreakStatus.EXPIRED


class StreakEngine:
    """Computes StreakRecords for habits from completions and closed intervals."""

    def __init__(
        self,
        gateway: LogGateway,
        boundary: DayBoundary,
        *,
        clock: Clock = utc_now,
        at_risk_threshold: float = 0.0,
        executions_count_as_completion: bool = True,
    ) -> None:
        self._gateway = gateway
        self._log = gateway.log
        self._boundary = boundary
        self._clock = clock
        self._at_risk_threshold = at_risk_threshold
        self._executions_count = executions_count_as_completion
        self._cache: dict[str, StreakRecord] = {}

    async def compute(
        self, work_item_id: str, frequency: Frequency, *, now: datetime | None = None
    ) -> StreakRecord:
        """Recompute a habit's streak as of `now`; stale cache on read failure."""
        now = to_utc(now or self._clock())
        try:
            times = await self._gateway.run(
                _qualifying_times, self._log, work_item_id, self._executions_count
            )
        except PersistenceUnavailable:
            cached = self._cache.get(work_item_id)
            if cached is None:
                raise
            logger.warning("Serving stale streak for %s", work_item_id)
            return cached.model_copy(update={"stale": True})

        current, longest, status = evaluate_streak(
            times, frequency, now, self._boundary, at_risk_threshold=self._at_risk_threshold
        )
        past = [t for t in times if t <= now]
        record = StreakRecord(
            work_item_id=work_item_id,
            frequency=frequency,
            current_streak=current,
            longest_streak=longest,
            status=status,
            last_completed_at=max(past) if past else None,
            computed_at=now,
        )
        previous = self._cache.get(work_item_id)
        if previous is not None and previous.current_streak > 0 and current == 0:
            logger.info("Streak of %s expired after %d", work_item_id, previous.current_streak)
        self._cache[work_item_id] = record
        return record

    async def time_remaining(self, work_item_id: str, frequency: Frequency) -> timedelta | None:
        """Time left to complete the current bucket; None unless at-risk."""
        now = to_utc(self._clock())
        record = await self.compute(work_item_id, frequency, now=now)
        if record.status is not StreakStatus.AT_RISK:
            return None
        return self._boundary.bucket_end(now, frequency) - now

    async def sweep(self, work_items: Iterable[WorkItem]) -> SweepReport:
        """Recompute every habit, reporting broken and at-risk streaks.

        A failed read skips that habit and continues with the rest.
        """
        report = SweepReport()
        for item in work_items:
            if not item.is_habit or item.frequency is None:
                continue
            report.checked += 1
            previous = self._cache.get(item.id)
            try:
                record = await self.compute(item.id, item.frequency)
            except PersistenceUnavailable as e:
                logger.warning("Skipping streak of %s: %s", item.id, e)
                report.failed.append(item.id)
                continue
            report.records[item.id] = record
            if record.stale:
                report.failed.append(item.id)
            elif previous is not None and previous.current_streak > 0 and record.current_streak == 0:
                report.broken.append(item.id)
            if record.status is StreakStatus.AT_RISK:
                report.at_risk.append(item.id)
        logger.info(
            "Streak sweep: %d habits, %d broken, %d at risk",
            report.checked,
            len(report.broken),
            len(report.at_risk),
        )
        return report

    def cached(self, work_item_id: str) -> StreakRecord | None:
        return self._cache.get(work_item_id)

    def invalidate(self, work_item_id: str | None = None) -> None:
        if work_item_id is None:
            self._cache.clear()
        else:
            self._cache.pop(work_item_id, None)
