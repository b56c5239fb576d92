"""Session, today and lifetime totals derived from the execution log."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from tt_timing.boundary import DayBoundary
from tt_timing.errors import PersistenceUnavailable
from tt_timing.execution_log import IntervalTotals, LogGateway
from tt_timing.manager import ActiveExecutionManager
from tt_timing.models import (
    ActivityCell,
    ActivityMatrix,
    Aggregate,
    Clock,
    span_ms,
    to_utc,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Snapshot:
    """Closed totals as last read from the log, before the live segment."""

    day_key: str
    closed: IntervalTotals
    session_id: str | None


class TimeAggregator:
    """Recomputes Aggregates from closed intervals plus the live open segment.

    `recompute` reads the log and is idempotent. `tick` only adds the live
    segment to the last snapshot and never performs I/O, so it is safe to
    call every second from a UI.
    """

    def __init__(
        self,
        gateway: LogGateway,
        manager: ActiveExecutionManager,
        boundary: DayBoundary,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._gateway = gateway
        self._log = gateway.log
        self._manager = manager
        self._boundary = boundary
        self._clock = clock
        self._snapshots: dict[str, _Snapshot] = {}
        self._cache: dict[str, Aggregate] = {}

    async def recompute(self, work_item_id: str) -> Aggregate:
        """Fresh Aggregate for a work item.

        On a failed read the previous Aggregate is returned marked stale;
        with nothing cached the PersistenceUnavailable propagates.
        """
        now = self._clock()
        state = self._manager.state
        session_id = state.session_id if state.work_item_id == work_item_id else None
        day_start, day_end = self._boundary.day_range(now)
        try:
            closed = await self._gateway.run(
                self._log.totals,
                work_item_id,
                day_start=day_start,
                day_end=day_end,
                session_id=session_id,
            )
        except PersistenceUnavailable:
            cached = self._cache.get(work_item_id)
            if cached is None:
                raise
            logger.warning("Serving stale totals for %s", work_item_id)
            return cached.model_copy(update={"stale": True})

        snapshot = _Snapshot(self._boundary.day_key(now), closed, session_id)
        self._snapshots[work_item_id] = snapshot
        aggregate = self._build(work_item_id, snapshot, now)
        self._cache[work_item_id] = aggregate
        return aggregate

    def tick(self, work_item_id: str) -> Aggregate | None:
        """Advance the cached Aggregate's live segment to now. No I/O.

        Returns None when nothing has been computed yet or the local day has
        rolled over since the last recompute.
        """
        snapshot = self._snapshots.get(work_item_id)
        now = self._clock()
        if snapshot is None or snapshot.day_key != self._boundary.day_key(now):
            return None
        return self._build(work_item_id, snapshot, now)

    async def activity_matrix(self, work_item_id: str | None = None, days: int = 30) -> ActivityMatrix:
        """Weekday/hour heatmap of closed intervals started in the last `days` days.

        Each interval counts once, with its whole duration, in the local
        weekday and hour of its start. Covers every work item when
        `work_item_id` is None. Nothing is cached; a failed read propagates.
        """
        if days < 1:
            raise ValueError("days must be at least 1")
        until = to_utc(self._clock())
        since = until - timedelta(days=days)
        intervals = await self._gateway.run(
            self._log.list_intervals, work_item_id, started_from=since, closed_only=True
        )
        counts = [[0] * 24 for _ in range(7)]
        durations = [[0] * 24 for _ in range(7)]
        for interval in intervals:
            local = self._boundary.local(interval.started_at)
            counts[local.weekday()][local.hour] += 1
            durations[local.weekday()][local.hour] += interval.duration_ms or 0

        max_count = max(max(row) for row in counts) or 1
        max_ms = max(max(row) for row in durations) or 1
        cells = [
            [
                ActivityCell(
                    weekday=weekday,
                    hour=hour,
                    count=counts[weekday][hour],
                    total_ms=durations[weekday][hour],
                    intensity=0.6 * counts[weekday][hour] / max_count
                    + 0.4 * durations[weekday][hour] / max_ms,
                )
                for hour in range(24)
            ]
            for weekday in range(7)
        ]
        return ActivityMatrix(
            work_item_id=work_item_id,
            since=since,
            until=until,
            total_count=len(intervals),
            total_ms=sum(sum(row) for row in durations),
            cells=cells,
        )

    def cached(self, work_item_id: str) -> Aggregate | None:
        return self._cache.get(work_item_id)

    def invalidate(self, work_item_id: str | None = None) -> None:
        if work_item_id is None:
            self._snapshots.clear()
            self._cache.clear()
        else:
            self._snapshots.pop(work_item_id, None)
            self._cache.pop(work_item_id, None)

    def _build(self, work_item_id: str, snapshot: _Snapshot, now: datetime) -> Aggregate:
        state = self._manager.state
        live_ms = 0
        live_today = False
        if (
            state.is_running
            and state.work_item_id == work_item_id
            and state.session_id == snapshot.session_id
            and state.started_at is not None
        ):
            live_ms = max(0, span_ms(state.started_at, now))
            live_today = self._boundary.is_same_day(state.started_at, now)

        session_elapsed = snapshot.closed.session_ms + live_ms if snapshot.session_id else 0
        return Aggregate(
            work_item_id=work_item_id,
            day_key=snapshot.day_key,
            session_elapsed_ms=session_elapsed,
            today_total_ms=snapshot.closed.today_ms + (live_ms if live_today else 0),
            lifetime_total_ms=snapshot.closed.lifetime_ms + live_ms,
            session_count=snapshot.closed.session_count,
            computed_at=now,
        )
