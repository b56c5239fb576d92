"""Destructive resets of a work item's recorded time."""

from __future__ import annotations

import logging

from tt_timing.aggregator import TimeAggregator
from tt_timing.boundary import DayBoundary
from tt_timing.errors import ActiveExecutionInProgress, PersistenceUnavailable
from tt_timing.execution_log import LogGateway, LogScope
from tt_timing.manager import ActiveExecutionManager, ExclusiveAccess
from tt_timing.models import Clock, ResetPolicy, ResetScope, utc_now
from tt_timing.results import TransitionResult, TransitionStatus
from tt_timing.streaks import StreakEngine

logger = logging.getLogger(__name__)


class ResetController:
    """Applies session/today/total resets and invalidates derived caches.

    `today` and `total` need the target to be idle. With AUTO_STOP the
    active session is finalized first; with REJECT the reset returns
    ActiveExecutionInProgress. An execution on a different work item never
    blocks a reset. `session` drops the active session on the target with
    every segment it recorded. The whole check-and-delete runs under the
    manager's transition lock.
    """

    def __init__(
        self,
        gateway: LogGateway,
        manager: ActiveExecutionManager,
        aggregator: TimeAggregator,
        streaks: StreakEngine,
        boundary: DayBoundary,
        *,
        clock: Clock = utc_now,
        policy: ResetPolicy = ResetPolicy.AUTO_STOP,
    ) -> None:
        self._gateway = gateway
        self._log = gateway.log
        self._manager = manager
        self._aggregator = aggregator
        self._streaks = streaks
        self._boundary = boundary
        self._clock = clock
        self._policy = policy

    async def reset(self, work_item_id: str, scope: ResetScope) -> TransitionResult:
        async with self._manager.exclusive() as access:
            outcome = await self._apply(access, work_item_id, scope)
        if outcome is not None:
            return outcome

        self._aggregator.invalidate(work_item_id)
        self._streaks.invalidate(work_item_id)
        try:
            aggregate = await self._aggregator.recompute(work_item_id)
        except PersistenceUnavailable:
            logger.warning("Reset of %s applied but totals could not be reread", work_item_id)
            aggregate = None
        return TransitionResult(
            TransitionStatus.CONFIRMED,
            state=self._manager.state,
            work_item_id=work_item_id,
            aggregate=aggregate,
        )

    async def _apply(
        self, access: ExclusiveAccess, work_item_id: str, scope: ResetScope
    ) -> TransitionResult | None:
        """Run the reset while transitions are locked out.

        Returns the failed outcome, or None once the log has been changed.
        """
        if scope is ResetScope.SESSION:
            if access.owns(work_item_id):
                discarded = await access.abandon()
                if not discarded.ok:
                    return discarded
            return None

        if access.owns(work_item_id):
            if self._policy is ResetPolicy.REJECT:
                return TransitionResult(
                    TransitionStatus.REJECTED,
                    state=access.state,
                    error=ActiveExecutionInProgress(work_item_id),
                    work_item_id=work_item_id,
                )
            stopped = await access.stop()
            if not stopped.ok:
                return stopped
        try:
            deleted = await self._delete(work_item_id, scope)
        except PersistenceUnavailable as e:
            return TransitionResult(
                TransitionStatus.ROLLED_BACK,
                state=access.state,
                error=e,
                work_item_id=work_item_id,
            )
        logger.info("Reset %s of %s: %d intervals deleted", scope.value, work_item_id, deleted)
        return None

    async def _delete(self, work_item_id: str, scope: ResetScope) -> int:
        if scope is ResetScope.TODAY:
            return await self._gateway.run(
                self._log.delete_for_scope,
                work_item_id,
                LogScope.TODAY,
                day_range=self._boundary.day_range(self._clock()),
            )
        return await self._gateway.run(self._log.delete_for_scope, work_item_id, LogScope.ALL)
