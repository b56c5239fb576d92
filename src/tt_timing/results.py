"""Tagged outcomes of execution state transitions."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from tt_timing.errors import TimingError
from tt_timing.models import ActiveExecutionState, Aggregate, StreakRecord


class TransitionStatus(str, Enum):
    CONFIRMED = "confirmed"  # persisted, local state advanced
    RECONCILED = "reconciled"  # local state adopted from the persisted log
    REJECTED = "rejected"  # invalid from the current state, nothing persisted
    ROLLED_BACK = "rolled_back"  # persistence failed, proposal withdrawn


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a start/pause/resume/stop/reset call.

    `proposed` is the state that was shown optimistically while the write was
    in flight; `state` is the state the manager settled on. Failures are
    carried in `error` instead of being raised.
    """

    status: TransitionStatus
    state: ActiveExecutionState
    proposed: ActiveExecutionState | None = None
    error: TimingError | None = None
    work_item_id: str | None = None
    elapsed_ms: int = 0
    aggregate: Aggregate | None = None
    streak: StreakRecord | None = None

    @property
    def ok(self) -> bool:
        return self.status in (TransitionStatus.CONFIRMED, TransitionStatus.RECONCILED)
