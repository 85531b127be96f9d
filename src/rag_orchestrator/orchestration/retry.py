"""Exponential backoff and the retry scheduler."""

from __future__ import annotations

import logging
import math
import random
from collections import Counter
from collections.abc import Awaitable, Callable
from datetime import datetime

from pydantic import BaseModel, Field

from rag_orchestrator.errors import ErrorCategory
from rag_orchestrator.orchestration.classifier import RetryStrategy
from rag_orchestrator.orchestration.scheduling import DelayQueue

logger = logging.getLogger(__name__)

RetryCallback = Callable[[], Awaitable[bool | None]]


def compute_delay(
    retry_count: int,
    strategy: RetryStrategy,
    rng: random.Random | None = None,
) -> int:
    """Return the delay in milliseconds before retry number *retry_count*.

    The first retry (``retry_count == 1``) waits ``initial_delay_ms``; each
    further retry multiplies by ``backoff_multiplier``, capped at
    ``max_delay_ms``. With jitter enabled the delay moves by up to
    ``jitter_range`` of itself in either direction, still clamped to
    ``[0, max_delay_ms]``.

    Parameters
    ----------
    retry_count:
        1-based retry number.
    strategy:
        Backoff parameters.
    rng:
        Random source for jitter; pass a seeded instance for determinism.
    """
    exponent = max(retry_count - 1, 0)
    delay = min(
        strategy.initial_delay_ms * strategy.backoff_multiplier**exponent,
        strategy.max_delay_ms,
    )
    if strategy.jitter and strategy.jitter_range > 0:
        spread = delay * strategy.jitter_range
        delay += (rng or random).uniform(-spread, spread)
        delay = min(max(delay, 0), strategy.max_delay_ms)
    return math.floor(delay)


class RetryStats(BaseModel):
    total_retries: int = 0
    successful_retries: int = 0
    failed_retries: int = 0
    retry_count_by_category: dict[str, int] = Field(default_factory=dict)
    last_retry_at: datetime | None = None


class PendingRetry(BaseModel):
    task_id: str
    category: ErrorCategory
    retry_count: int
    delay_ms: int
    due_at: datetime
    error: str


class RetryScheduler:
    """Arms one deferred retry per task on a :class:`DelayQueue`.

    Parameters
    ----------
    queue:
        The delay queue retries run on; its clock decides when they fire.
    rng:
        Random source for jitter.
    """

    def __init__(self, queue: DelayQueue, *, rng: random.Random | None = None) -> None:
        self.queue = queue
        self._rng = rng or random.Random()
        self._pending: dict[str, PendingRetry] = {}
        self._attempts = Counter()
        self._successes = Counter()
        self._failures = Counter()
        self._last_retry_at: datetime | None = None

    @staticmethod
    def _key(task_id: str) -> str:
        return f"retry:{task_id}"

    def schedule_retry(
        self,
        task_id: str,
        error: BaseException | str,
        category: ErrorCategory,
        retry_count: int,
        strategy: RetryStrategy,
        callback: RetryCallback,
    ) -> int:
        """Schedule *callback* as retry number *retry_count* and return its delay (ms).

        A retry already pending for *task_id* is replaced.
        """
        delay_ms = compute_delay(retry_count, strategy, self._rng)

        async def _fire() -> None:
            self._pending.pop(task_id, None)
            self._attempts[category.value] += 1
            self._last_retry_at = self.queue.clock.now()
            logger.info("Running retry %d for task %s (%s)", retry_count, task_id, category.value)
            try:
                outcome = await callback()
            except Exception:
                self._failures[category.value] += 1
                raise
            if outcome is False:
                self._failures[category.value] += 1
            else:
                self._successes[category.value] += 1

        job = self.queue.schedule(self._key(task_id), delay_ms / 1000, _fire)
        self._pending[task_id] = PendingRetry(
            task_id=task_id,
            category=category,
            retry_count=retry_count,
            delay_ms=delay_ms,
            due_at=job.due,
            error=str(error),
        )
        logger.info(
            "Scheduled retry %d/%d for task %s in %dms (%s)",
            retry_count,
            strategy.max_retries,
            task_id,
            delay_ms,
            category.value,
        )
        return delay_ms

    def cancel_retry(self, task_id: str) -> bool:
        self._pending.pop(task_id, None)
        cancelled = self.queue.cancel(self._key(task_id))
        if cancelled:
            logger.info("Cancelled pending retry for task %s", task_id)
        return cancelled

    def has_pending(self, task_id: str) -> bool:
        return task_id in self._pending

    def pending(self) -> list[PendingRetry]:
        return sorted(self._pending.values(), key=lambda p: p.due_at)

    @property
    def stats(self) -> RetryStats:
        return RetryStats(
            total_retries=sum(self._attempts.values()),
            successful_retries=sum(self._successes.values()),
            failed_retries=sum(self._failures.values()),
            retry_count_by_category=dict(self._attempts),
            last_retry_at=self._last_retry_at,
        )

    def reset_stats(self) -> None:
        self._attempts.clear()
        self._successes.clear()
        self._failures.clear()
        self._last_retry_at = None
