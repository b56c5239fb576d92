"""Caller-side retries for transient persistence failures."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tt_timing.errors import PersistenceUnavailable
from tt_timing.results import TransitionResult, TransitionStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_DELAY = 30.0


async def with_backoff(
    call: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = MAX_DELAY,
) -> T:
    """Run `call`, retrying with exponential backoff while the store is down.

    Retries a raised PersistenceUnavailable or a rolled-back TransitionResult.
    Rejections are returned immediately; retrying them cannot help. A start
    retried after a lost acknowledgement reconciles to the session it
    already created instead of opening a second one.

    Returns the last outcome once attempts are exhausted (or re-raises the
    last PersistenceUnavailable).
    """
    backoff = base_delay
    attempt = 0
    while True:
        attempt += 1
        try:
            outcome = await call()
        except PersistenceUnavailable as e:
            if attempt >= attempts:
                raise
            logger.info("Store unavailable (attempt %d/%d): %s", attempt, attempts, e)
        else:
            rolled_back = (
                isinstance(outcome, TransitionResult)
                and outcome.status is TransitionStatus.ROLLED_BACK
            )
            if not rolled_back or attempt >= attempts:
                return outcome
            logger.info("Transition rolled back (attempt %d/%d): %s", attempt, attempts, outcome.error)
        await asyncio.sleep(min(max_delay, backoff))
        backoff = min(max_delay, backoff * 2)
