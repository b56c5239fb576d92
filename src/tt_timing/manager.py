"""Single active execution state machine.

One manager owns the only timer that may run across all work items. Every
transition is persisted through the execution log before the local state
advances; while the write is in flight the proposed state is visible through
`view()` and is withdrawn if the write fails.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import AsyncIterator, Callable
from datetime import datetime
from typing import Any

from tt_timing.errors import (
    AlreadyOpenElsewhere,
    ConflictingExecution,
    InvalidRange,
    NoPausedSession,
    NotOpen,
    PersistenceUnavailable,
    TimingError,
)
from tt_timing.execution_log import LogGateway
from tt_timing.formatting import format_duration
from tt_timing.models import (
    IDLE_STATE,
    ActiveExecutionState,
    Clock,
    ExecutionPhase,
    utc_now,
)
from tt_timing.results import TransitionResult, TransitionStatus

logger = logging.getLogger(__name__)


class ActiveExecutionManager:
    """Owns the idle/running/paused state shared by all work items.

    Transitions are serialized by an asyncio lock. Elapsed time is always
    derived from instants, so missed ticks or a suspended process never
    cause drift.
    """

    def __init__(
        self,
        gateway: LogGateway,
        *,
        clock: Clock = utc_now,
        device_type: str = "desktop",
    ) -> None:
        self._gateway = gateway
        self._log = gateway.log
        self._clock = clock
        self._device_type = device_type
        self._lock = asyncio.Lock()
        self._state: ActiveExecutionState = IDLE_STATE
        self._proposed: ActiveExecutionState | None = None

    # ---- Read-only views ----

    @property
    def state(self) -> ActiveExecutionState:
        """Last confirmed state."""
        return self._state

    def view(self) -> ActiveExecutionState:
        """State to display: the in-flight proposal if any, else the confirmed state."""
        return self._proposed or self._state

    def elapsed_ms(self, now: datetime | None = None) -> int:
        """Session clock for display ticks. No I/O."""
        return self.view().elapsed_ms(now or self._clock())

    def owns(self, work_item_id: str) -> bool:
        return not self._state.is_idle and self._state.work_item_id == work_item_id

    # ---- Transitions ----

    async def start(self, work_item_id: str) -> TransitionResult:
        async with self._lock:
            if not self._state.is_idle:
                return self._reject(ConflictingExecution(self._state.work_item_id))
            now = self._clock()
            proposed = ActiveExecutionState(
                phase=ExecutionPhase.RUNNING,
                work_item_id=work_item_id,
                session_id=str(uuid.uuid4()),
                started_at=now,
                device_type=self._device_type,
            )
            try:
                result = await self._apply(
                    proposed,
                    self._log.begin_session,
                    work_item_id,
                    proposed.session_id,
                    now,
                    device_type=self._device_type,
                )
            except AlreadyOpenElsewhere as e:
                if e.work_item_id == work_item_id:
                    return await self._reconcile(e, proposed)
                return self._reject(ConflictingExecution(e.work_item_id), proposed)
            if result.ok:
                logger.info("Started %s (session %s)", work_item_id, proposed.session_id)
            return result

    async def pause(self) -> TransitionResult:
        async with self._lock:
            state = self._state
            if not state.is_running:
                return self._reject(NotOpen("No running execution to pause"))
            now = self._clock()
            proposed = state.model_copy(
                update={
                    "phase": ExecutionPhase.PAUSED,
                    "started_at": None,
                    "accumulated_ms": state.elapsed_ms(now),
                }
            )
            try:
                try:
                    result = await self._apply(proposed, self._log.pause_session, state.session_id, now)
                except InvalidRange as e:
                    logger.warning("Clock skew pausing %s, discarding open interval: %s", state.work_item_id, e)
                    proposed = proposed.model_copy(update={"accumulated_ms": state.accumulated_ms})
                    result = await self._apply(
                        proposed, self._log.pause_session, state.session_id, now, discard_open=True
                    )
            except NotOpen as e:
                return self._lost_session(e)
            if result.ok:
                logger.info("Paused %s at %s", state.work_item_id, format_duration(proposed.accumulated_ms))
            return result

    async def resume(self) -> TransitionResult:
        async with self._lock:
            state = self._state
            if state.phase is not ExecutionPhase.PAUSED:
                return self._reject(NoPausedSession())
            now = self._clock()
            proposed = state.model_copy(update={"phase": ExecutionPhase.RUNNING, "started_at": now})
            try:
                result = await self._apply(proposed, self._log.resume_session, state.session_id, now)
            except AlreadyOpenElsewhere as e:
                return self._reject(ConflictingExecution(e.work_item_id), proposed)
            except NotOpen as e:
                return self._lost_session(e)
            if result.ok:
                logger.info("Resumed %s", state.work_item_id)
            return result

    async def stop(self) -> TransitionResult:
        async with self._lock:
            return await self._stop()

    async def abandon(self) -> TransitionResult:
        """Release the active session and drop all the time it recorded."""
        async with self._lock:
            return await self._abandon()

    @contextlib.asynccontextmanager
    async def exclusive(self) -> AsyncIterator[ExclusiveAccess]:
        """Hold the transition lock for a multi-step operation such as a reset.

        No start/pause/resume/stop can interleave until the block exits. Use
        the yielded handle to stop or abandon from inside the block.
        """
        async with self._lock:
            yield ExclusiveAccess(self)

    async def _stop(self) -> TransitionResult:
        state = self._state
        if state.is_idle:
            return self._reject(NotOpen("No active execution to stop"))
        now = self._clock()
        elapsed = state.elapsed_ms(now)
        try:
            try:
                result = await self._apply(IDLE_STATE, self._log.end_session, state.session_id, now)
            except InvalidRange as e:
                logger.warning("Clock skew stopping %s, discarding open interval: %s", state.work_item_id, e)
                elapsed = state.accumulated_ms
                result = await self._apply(
                    IDLE_STATE, self._log.end_session, state.session_id, now, discard_open=True
                )
        except NotOpen:
            # Cleaned up by another device; nothing left to record
            logger.warning("Session of %s was already released elsewhere", state.work_item_id)
            self._state = IDLE_STATE
            return TransitionResult(
                TransitionStatus.CONFIRMED,
                state=IDLE_STATE,
                proposed=IDLE_STATE,
                work_item_id=state.work_item_id,
            )
        if result.ok:
            logger.info("Stopped %s after %s", state.work_item_id, format_duration(elapsed))
            return TransitionResult(
                result.status,
                state=result.state,
                proposed=result.proposed,
                work_item_id=state.work_item_id,
                elapsed_ms=elapsed,
            )
        return result

    async def _abandon(self) -> TransitionResult:
        state = self._state
        if state.is_idle:
            return self._reject(NotOpen("No active execution to discard"))
        try:
            result = await self._apply(IDLE_STATE, self._log.abandon_session, state.session_id)
        except NotOpen as e:
            return self._lost_session(e)
        if result.ok:
            logger.info("Discarded session of %s", state.work_item_id)
        return TransitionResult(
            result.status,
            state=result.state,
            proposed=result.proposed,
            error=result.error,
            work_item_id=state.work_item_id,
        )

    async def recover(self) -> TransitionResult:
        """Adopt whatever session the log holds, e.g. after an app restart."""
        async with self._lock:
            try:
                persisted = await self._read_persisted()
            except PersistenceUnavailable as e:
                return TransitionResult(TransitionStatus.ROLLED_BACK, state=self._state, error=e)
            if persisted.is_idle and not self._state.is_idle:
                logger.warning("Session of %s was released elsewhere", self._state.work_item_id)
            elif not persisted.is_idle:
                logger.info("Recovered %s session of %s", persisted.phase.value, persisted.work_item_id)
            self._state = persisted
            return TransitionResult(
                TransitionStatus.RECONCILED,
                state=persisted,
                work_item_id=persisted.work_item_id,
                elapsed_ms=persisted.elapsed_ms(self._clock()),
            )

    async def force_cleanup(self) -> TransitionResult:
        """Close anything open in the log and return to idle."""
        async with self._lock:
            now = self._clock()
            try:
                released = await self._gateway.run(self._log.force_release, now)
            except PersistenceUnavailable as e:
                return TransitionResult(TransitionStatus.ROLLED_BACK, state=self._state, error=e)
            if released is not None:
                logger.warning("Force-released session of %s", released.work_item_id)
            self._state = IDLE_STATE
            return TransitionResult(
                TransitionStatus.CONFIRMED,
                state=IDLE_STATE,
                work_item_id=released.work_item_id if released else None,
            )

    # ---- Internals ----

    async def _apply(
        self,
        proposed: ActiveExecutionState,
        method: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> TransitionResult:
        """Show `proposed`, persist, then confirm or roll back.

        TimingErrors other than PersistenceUnavailable propagate to the caller
        with the proposal already withdrawn.
        """
        self._proposed = proposed
        try:
            await self._gateway.run(method, *args, **kwargs)
        except PersistenceUnavailable as e:
            logger.warning("Rolling back %s transition: %s", proposed.phase.value, e)
            return TransitionResult(
                TransitionStatus.ROLLED_BACK,
                state=self._state,
                proposed=proposed,
                error=e,
                work_item_id=proposed.work_item_id or self._state.work_item_id,
            )
        finally:
            self._proposed = None
        self._state = proposed
        return TransitionResult(
            TransitionStatus.CONFIRMED,
            state=proposed,
            proposed=proposed,
            work_item_id=proposed.work_item_id,
        )

    async def _read_persisted(self) -> ActiveExecutionState:
        session = await self._gateway.run(self._log.get_active_session)
        if session is None:
            return IDLE_STATE
        open_interval = await self._gateway.run(self._log.get_open_interval)
        accumulated = await self._gateway.run(
            self._log.sum_duration, session.work_item_id, session_id=session.session_id
        )
        running = (
            not session.paused
            and open_interval is not None
            and open_interval.session_id == session.session_id
        )
        return ActiveExecutionState(
            phase=ExecutionPhase.RUNNING if running else ExecutionPhase.PAUSED,
            work_item_id=session.work_item_id,
            session_id=session.session_id,
            started_at=open_interval.started_at if running and open_interval else None,
            accumulated_ms=accumulated,
            device_type=session.device_type,
        )

    async def _reconcile(
        self, conflict: AlreadyOpenElsewhere, proposed: ActiveExecutionState
    ) -> TransitionResult:
        """A start for the same work item already went through; adopt it."""
        try:
            persisted = await self._read_persisted()
        except PersistenceUnavailable as e:
            return TransitionResult(
                TransitionStatus.ROLLED_BACK, state=self._state, proposed=proposed, error=e
            )
        if persisted.is_idle or persisted.work_item_id != proposed.work_item_id:
            # Orphaned open interval without a session row; needs force_cleanup
            return self._reject(ConflictingExecution(conflict.work_item_id), proposed)
        logger.info("Reconciled start of %s to existing session %s", persisted.work_item_id, persisted.session_id)
        self._state = persisted
        return TransitionResult(
            TransitionStatus.RECONCILED,
            state=persisted,
            proposed=proposed,
            work_item_id=persisted.work_item_id,
        )

    def _reject(
        self, error: TimingError, proposed: ActiveExecutionState | None = None
    ) -> TransitionResult:
        logger.info("Rejected transition: %s", error)
        return TransitionResult(
            TransitionStatus.REJECTED,
            state=self._state,
            proposed=proposed,
            error=error,
            work_item_id=self._state.work_item_id,
        )

    def _lost_session(self, error: NotOpen) -> TransitionResult:
        logger.warning("Session of %s is gone from the log: %s", self._state.work_item_id, error)
        lost = self._state.work_item_id
        self._state = IDLE_STATE
        return TransitionResult(
            TransitionStatus.REJECTED,
            state=IDLE_STATE,
            error=error,
            work_item_id=lost,
        )


class ExclusiveAccess:
    """Transitions usable while ActiveExecutionManager.exclusive() is held."""

    def __init__(self, manager: ActiveExecutionManager) -> None:
        self._manager = manager

    @property
    def state(self) -> ActiveExecutionState:
        return self._manager.state

    def owns(self, work_item_id: str) -> bool:
        return self._manager.owns(work_item_id)

    async def stop(self) -> TransitionResult:
        return await self._manager._stop()

    async def abandon(self) -> TransitionResult:
        return await self._manager._abandon()
