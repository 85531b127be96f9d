"""Clocks and the delay queue that drives every deferred job.

Retries and periodic maintenance are all jobs on one :class:`DelayQueue`.
Production code runs :meth:`DelayQueue.run_forever` on a
:class:`SystemClock`, which starts each due job as its own task; tests
use a :class:`VirtualClock`, move time with :meth:`VirtualClock.advance`
and fire due jobs with :meth:`DelayQueue.run_due`.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

logger = logging.getLogger(__name__)

JobCallback = Callable[[], Awaitable[Any]]


class Clock(ABC):
    """Source of "now" for everything time-dependent."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current timezone-aware UTC time."""
        ...

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class VirtualClock(Clock):
    """Manually advanced clock for deterministic tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float = 0.0, *, ms: float = 0.0) -> datetime:
        self._now += timedelta(seconds=seconds, milliseconds=ms)
        return self._now

    async def sleep(self, seconds: float) -> None:
        self.advance(seconds)
        await asyncio.sleep(0)


@dataclass(order=True)
class ScheduledJob:
    due: datetime
    seq: int
    key: str = field(compare=False)
    callback: JobCallback = field(compare=False, repr=False)
    cancelled: bool = field(default=False, compare=False)


class DelayQueue:
    """Keyed min-heap of deferred coroutine jobs.

    At most one job is pending per key; scheduling a key again replaces the
    earlier job. Cancellation is lazy: cancelled entries stay in the heap
    and are skipped when they surface.

    Parameters
    ----------
    clock:
        Time source deciding which jobs are due.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()
        self._heap: list[ScheduledJob] = []
        self._jobs: dict[str, ScheduledJob] = {}
        self._seq = itertools.count()
        self._active: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, key: str) -> bool:
        return key in self._jobs

    def schedule(self, key: str, delay_seconds: float, callback: JobCallback) -> ScheduledJob:
        """Run *callback* once *delay_seconds* have elapsed on the clock."""
        self.cancel(key)
        job = ScheduledJob(
            due=self.clock.now() + timedelta(seconds=max(0.0, delay_seconds)),
            seq=next(self._seq),
            key=key,
            callback=callback,
        )
        heapq.heappush(self._heap, job)
        self._jobs[key] = job
        logger.debug("Scheduled job %s at %s", key, job.due.isoformat())
        return job

    def cancel(self, key: str) -> bool:
        job = self._jobs.pop(key, None)
        if job is None:
            return False
        job.cancelled = True
        return True

    def get(self, key: str) -> ScheduledJob | None:
        return self._jobs.get(key)

    def keys(self) -> list[str]:
        return list(self._jobs)

    def next_due(self) -> datetime | None:
        while self._heap and self._heap[0].cancelled:
            heapq.heappop(self._heap)
        return self._heap[0].due if self._heap else None

    def clear(self) -> None:
        for job in self._jobs.values():
            job.cancelled = True
        self._jobs.clear()
        self._heap.clear()

    def _pop_due(self) -> list[ScheduledJob]:
        now = self.clock.now()
        due: list[ScheduledJob] = []
        while self._heap and self._heap[0].due <= now:
            job = heapq.heappop(self._heap)
            if job.cancelled:
                continue
            del self._jobs[job.key]
            due.append(job)
        return due

    async def run_due(self) -> int:
        """Run every job due at the current clock time and wait for all of them.

        Returns the number of jobs run. Jobs scheduled by a running
        callback are not picked up until the next call.
        """
        due = self._pop_due()
        if due:
            await asyncio.gather(*(self._invoke(job) for job in due))
        return len(due)

    def start_due(self) -> int:
        """Start every due job in the background and return how many started."""
        due = self._pop_due()
        for job in due:
            running = asyncio.create_task(self._call(job), name=f"job:{job.key}")
            self._active.add(running)
            running.add_done_callback(self._job_done)
        return len(due)

    @property
    def running(self) -> int:
        """Number of background jobs started by :meth:`start_due` still in flight."""
        return len(self._active)

    async def cancel_running(self) -> None:
        """Cancel background jobs and wait until they have unwound."""
        active = list(self._active)
        for running in active:
            running.cancel()
        if active:
            await asyncio.gather(*active, return_exceptions=True)

    async def run_forever(self, poll_interval: float = 1.0) -> None:
        """Start jobs as they come due until cancelled.

        Each job runs as its own task, so a long job never delays the
        ones due after it.
        """
        while True:
            self.start_due()
            wait = poll_interval
            next_due = self.next_due()
            if next_due is not None:
                until_due = (next_due - self.clock.now()).total_seconds()
                wait = min(poll_interval, max(0.0, until_due))
            await self.clock.sleep(wait)

    def _job_done(self, running: asyncio.Task) -> None:
        self._active.discard(running)
        if running.cancelled():
            return
        exc = running.exception()
        if exc is not None:
            logger.error("Scheduled %s failed", running.get_name(), exc_info=exc)

    async def _call(self, job: ScheduledJob) -> None:
        await job.callback()

    async def _invoke(self, job: ScheduledJob) -> None:
        try:
            await job.callback()
        except Exception:
            logger.exception("Scheduled job %s failed", job.key)
