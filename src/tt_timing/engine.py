"""Library entry point wiring the timing components together."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timedelta
from typing import Protocol, TypeVar

from tt_timing.aggregator import TimeAggregator
from tt_timing.boundary import DayBoundary
from tt_timing.config import EngineConfig
from tt_timing.errors import NotAHabit, PersistenceUnavailable, UnknownWorkItem
from tt_timing.execution_log import ExecutionLog, LogGateway
from tt_timing.manager import ActiveExecutionManager
from tt_timing.models import (
    ActivityMatrix,
    Aggregate,
    Clock,
    ResetScope,
    StreakRecord,
    WorkItem,
    WorkItemKind,
    utc_now,
)
from tt_timing.reset import ResetController
from tt_timing.results import TransitionResult, TransitionStatus
from tt_timing.retry import with_backoff
from tt_timing.streaks import StreakEngine, SweepReport

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WorkItemDirectory(Protocol):
    """Where the engine looks up a work item's kind and frequency."""

    def get_work_item(self, work_item_id: str) -> WorkItem | None: ...


class TimingEngine:
    """Start/pause/resume/stop, resets, totals and streaks behind one object.

    Mutating calls return TransitionResult and never raise for state-machine
    failures. Reads raise PersistenceUnavailable only when no cached value
    exists to fall back on.
    """

    def __init__(
        self,
        log: ExecutionLog,
        *,
        config: EngineConfig | None = None,
        clock: Clock = utc_now,
        directory: WorkItemDirectory | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.log = log
        self.boundary = DayBoundary.from_minutes(self.config.utc_offset_minutes)
        self._clock = clock
        self._gateway = LogGateway(log)
        self._directory: WorkItemDirectory = directory or log
        self.manager = ActiveExecutionManager(
            self._gateway, clock=clock, device_type=self.config.device_type
        )
        self.aggregator = TimeAggregator(self._gateway, self.manager, self.boundary, clock=clock)
        self.streaks = StreakEngine(
            self._gateway,
            self.boundary,
            clock=clock,
            at_risk_threshold=self.config.at_risk_threshold,
            executions_count_as_completion=self.config.executions_count_as_completion,
        )
        self.resets = ResetController(
            self._gateway,
            self.manager,
            self.aggregator,
            self.streaks,
            self.boundary,
            clock=clock,
            policy=self.config.reset_policy,
        )

    @classmethod
    def open(cls, config: EngineConfig | None = None, *, clock: Clock = utc_now) -> TimingEngine:
        """Open the engine on the SQLite log at config.db_path (TT_* settings by default)."""
        config = config or EngineConfig()
        return cls(ExecutionLog.open(config.db_path), config=config, clock=clock)

    def __enter__(self) -> TimingEngine:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    def close(self) -> None:
        self._gateway.shutdown()
        self.log.close()

    # ---- Work items ----

    async def register_work_item(self, item: WorkItem) -> None:
        """Add or update a work item in the log's own catalog."""
        await self._gateway.run(self.log.upsert_work_item, item)

    async def _work_item(self, work_item_id: str) -> WorkItem:
        item = await self._gateway.run(self._directory.get_work_item, work_item_id)
        if item is None:
            raise UnknownWorkItem(work_item_id)
        return item

    async def _habit(self, work_item_id: str) -> WorkItem:
        item = await self._work_item(work_item_id)
        if not item.is_habit or item.frequency is None:
            raise NotAHabit(work_item_id)
        return item

    # ---- Transitions ----

    async def start(self, work_item_id: str) -> TransitionResult:
        try:
            await self._work_item(work_item_id)
        except UnknownWorkItem as e:
            return TransitionResult(
                TransitionStatus.REJECTED, state=self.manager.state, error=e, work_item_id=work_item_id
            )
        except PersistenceUnavailable as e:
            return TransitionResult(
                TransitionStatus.ROLLED_BACK, state=self.manager.state, error=e, work_item_id=work_item_id
            )
        return await self._settle(await self.manager.start(work_item_id))

    async def pause(self) -> TransitionResult:
        return await self._settle(await self.manager.pause())

    async def resume(self) -> TransitionResult:
        return await self._settle(await self.manager.resume())

    async def stop(self) -> TransitionResult:
        """Finish the active session; the result carries fresh totals and streak."""
        return await self._settle(await self.manager.stop(), with_streak=True)

    async def reset(self, work_item_id: str, scope: ResetScope | str) -> TransitionResult:
        result = await self.resets.reset(work_item_id, ResetScope(scope))
        if not result.ok:
            return result
        return dataclasses.replace(result, streak=await self._streak_if_habit(work_item_id))

    async def recover(self) -> TransitionResult:
        """Restore the active session from the log, e.g. on app start."""
        result = await self.manager.recover()
        self.aggregator.invalidate()
        return result

    async def force_cleanup(self) -> TransitionResult:
        result = await self.manager.force_cleanup()
        if result.ok and result.work_item_id:
            return await self._settle(result, with_streak=True)
        return result

    async def _settle(self, result: TransitionResult, *, with_streak: bool = False) -> TransitionResult:
        """Attach recomputed totals (and streak) once a transition is durable."""
        if not result.ok or result.work_item_id is None:
            return result
        aggregate = await self._aggregate_or_none(result.work_item_id)
        streak = await self._streak_if_habit(result.work_item_id) if with_streak else None
        return dataclasses.replace(result, aggregate=aggregate, streak=streak)

    async def _aggregate_or_none(self, work_item_id: str) -> Aggregate | None:
        try:
            return await self.aggregator.recompute(work_item_id)
        except PersistenceUnavailable:
            logger.warning("Totals for %s unavailable after transition", work_item_id)
            return None

    async def _streak_if_habit(self, work_item_id: str) -> StreakRecord | None:
        try:
            item = await self._work_item(work_item_id)
            if not item.is_habit or item.frequency is None:
                return None
            return await self.streaks.compute(work_item_id, item.frequency)
        except (UnknownWorkItem, PersistenceUnavailable) as e:
            logger.warning("Streak for %s not updated: %s", work_item_id, e)
            return None

    # ---- Reads ----

    async def get_aggregate(self, work_item_id: str) -> Aggregate:
        return await self.aggregator.recompute(work_item_id)

    async def get_activity_matrix(self, work_item_id: str | None = None, days: int = 30) -> ActivityMatrix:
        """Weekday/hour heatmap for one work item, or all of them."""
        return await self.aggregator.activity_matrix(work_item_id, days)

    def tick(self, work_item_id: str) -> Aggregate | None:
        """Per-second display refresh of cached totals. No I/O."""
        return self.aggregator.tick(work_item_id)

    def elapsed_ms(self) -> int:
        return self.manager.elapsed_ms()

    async def get_streak(self, work_item_id: str) -> StreakRecord:
        item = await self._habit(work_item_id)
        return await self.streaks.compute(work_item_id, item.frequency)

    async def get_time_remaining(self, work_item_id: str) -> timedelta | None:
        item = await self._habit(work_item_id)
        return await self.streaks.time_remaining(work_item_id, item.frequency)

    # ---- Habit completions ----

    async def complete(self, work_item_id: str) -> StreakRecord:
        """Mark a habit done for the current local day."""
        item = await self._habit(work_item_id)
        now = self._clock()
        recorded = await self._gateway.run(
            self.log.record_completion, work_item_id, now, day_key=self.boundary.day_key(now)
        )
        if recorded:
            logger.info("Completed %s for %s", work_item_id, self.boundary.day_key(now))
        return await self.streaks.compute(work_item_id, item.frequency)

    async def uncomplete(self, work_item_id: str, day: datetime | None = None) -> StreakRecord:
        """Remove the completion marker of `day` (default: today)."""
        item = await self._habit(work_item_id)
        day_key = self.boundary.day_key(day or self._clock())
        await self._gateway.run(self.log.remove_completion, work_item_id, day_key=day_key)
        return await self.streaks.compute(work_item_id, item.frequency)

    async def sweep_streaks(self, work_items: Iterable[WorkItem] | None = None) -> SweepReport:
        """Recompute all habit streaks (the daily expiry check)."""
        if work_items is None:
            work_items = await self._gateway.run(self.log.list_work_items, kind=WorkItemKind.HABIT)
        return await self.streaks.sweep(work_items)

    async def with_retry(self, call: Callable[[], Awaitable[T]]) -> T:
        """Retry `call` with the configured backoff, e.g. `with_retry(lambda: engine.start(id))`."""
        return await with_backoff(
            call,
            attempts=self.config.retry_attempts,
            base_delay=self.config.retry_base_delay,
        )
