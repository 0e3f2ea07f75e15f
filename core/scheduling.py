"""
Timer scheduling for the lifecycle managers.

Every manager arms single-shot timers and re-arms them after each tick, so
ticks inside one manager never overlap. Two schedulers share that contract:

- LoopScheduler: wall-clock timers on APScheduler's AsyncIOScheduler. Sync
  and coroutine callbacks both run on the event loop.
- VirtualScheduler: a manual clock for deterministic tests. ``advance()``
  runs due callbacks in timestamp order and awaits coroutine callbacks.

Usage:
    from core.scheduling import LoopScheduler, VirtualScheduler

    scheduler = VirtualScheduler()
    handle = scheduler.call_later(30, on_tick)
    await scheduler.advance(31)     # on_tick has run
    handle.cancel()
"""

import asyncio
import heapq
import inspect
import itertools
import logging
import time
from typing import Any, Callable, Optional, Protocol

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from core.timestamps import from_epoch

logger = logging.getLogger(__name__)

# Arbitrary fixed epoch so virtual-time tests are reproducible
DEFAULT_VIRTUAL_EPOCH = 1_700_000_000.0


class TimerHandle:
    """A scheduled callback that can be cancelled before it fires."""

    __slots__ = ("when", "_callback", "_args", "_cancelled", "_fired", "_on_cancel")

    def __init__(self, when: float, callback: Callable[..., Any], args: tuple = ()):
        self.when = when
        self._callback = callback
        self._args = args
        self._cancelled = False
        self._fired = False
        self._on_cancel: Optional[Callable[[], None]] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def active(self) -> bool:
        return not (self._cancelled or self._fired)

    def cancel(self) -> None:
        if self._cancelled or self._fired:
            return
        self._cancelled = True
        if self._on_cancel is not None:
            self._on_cancel()

    def run(self) -> Any:
        self._fired = True
        return self._callback(*self._args)


class Scheduler(Protocol):
    """Clock plus single-shot timers."""

    def time(self) -> float:
        ...

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        ...


# =============================================================================
# Wall-clock scheduler
# =============================================================================

class LoopScheduler:
    """Wall-clock timers backed by APScheduler.

    Must be used from inside a running asyncio event loop; the underlying
    AsyncIOScheduler is started on the first ``call_later``.
    """

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None):
        self._scheduler = scheduler

    @property
    def scheduler(self) -> AsyncIOScheduler:
        """Get or create the APScheduler instance."""
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(
                jobstores={'default': MemoryJobStore()},
                executors={'default': AsyncIOExecutor()},
                job_defaults={
                    'coalesce': True,
                    'max_instances': 1,
                    'misfire_grace_time': None,  # late timers still fire
                },
                event_loop=asyncio.get_running_loop(),
                timezone='UTC',
            )
        return self._scheduler

    def time(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.debug("Timer scheduler started")

        handle = TimerHandle(self.time() + max(0.0, delay), callback, args)
        job = self.scheduler.add_job(
            self._fire,
            trigger=DateTrigger(run_date=from_epoch(handle.when), timezone='UTC'),
            args=[handle],
        )
        handle._on_cancel = lambda: self._remove_job(job)
        return handle

    @staticmethod
    def _remove_job(job) -> None:
        try:
            job.remove()
        except JobLookupError:
            pass  # already fired

    @staticmethod
    async def _fire(handle: TimerHandle) -> None:
        if not handle.active:
            return
        try:
            result = handle.run()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Scheduled callback raised")

    def shutdown(self) -> None:
        """Stop the underlying scheduler, dropping pending timers."""
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.debug("Timer scheduler stopped")


# =============================================================================
# Virtual-time scheduler
# =============================================================================

class VirtualScheduler:
    """Manually advanced clock with an ordered timer queue."""

    def __init__(self, start: float = DEFAULT_VIRTUAL_EPOCH, max_steps: int = 100_000):
        self._now = start
        self._queue: list[tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()
        self._max_steps = max_steps

    def time(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        handle = TimerHandle(self._now + max(0.0, delay), callback, args)
        heapq.heappush(self._queue, (handle.when, next(self._seq), handle))
        return handle

    def pending(self) -> int:
        """Number of timers still waiting to fire."""
        return sum(1 for _, _, handle in self._queue if handle.active)

    async def advance(self, seconds: float) -> None:
        """Move the clock forward, running every timer that comes due."""
        await self.run_until(self._now + seconds)

    async def run_until(self, target: float) -> None:
        steps = 0
        while self._queue and self._queue[0][0] <= target:
            when, _, handle = heapq.heappop(self._queue)
            if not handle.active:
                continue
            steps += 1
            if steps > self._max_steps:
                raise RuntimeError(f"Timer loop did not settle after {self._max_steps} callbacks")
            self._now = max(self._now, when)
            result = handle.run()
            if inspect.isawaitable(result):
                await result
        self._now = max(self._now, target)
