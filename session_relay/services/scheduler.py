"""Delayed and periodic task scheduling against a swappable clock.

Background maintenance (room sweep, connection sweep, queue purge and the
per-connection cleanups) is expressed as tasks on a single ``TaskScheduler``.
In production the scheduler is pumped by ``run()`` on the event loop; tests
use a ``ManualClock`` and call ``run_pending()`` after advancing it, so no
test ever waits on wall-clock time.

Tasks run to completion one at a time and never interleave with an event
handler, but they may observe state that changed after they were scheduled.
Callbacks are expected to re-check whatever they act on.
"""

import asyncio
import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class Clock(Protocol):
    def now(self) -> float:
        ...


class SystemClock:
    def now(self) -> float:
        return time.time()


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = start

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> float:
        if seconds < 0:
            raise ValueError("cannot move a clock backwards")
        self._now += seconds
        return self._now


@dataclass(order=True)
class ScheduledTask:
    due: float
    seq: int
    callback: Callable[..., Any] = field(compare=False)
    args: tuple = field(compare=False, default=())
    name: str = field(compare=False, default="")
    interval: Optional[float] = field(compare=False, default=None)
    cancelled: bool = field(compare=False, default=False)

    def cancel(self) -> None:
        self.cancelled = True


class TaskScheduler:
    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self._queue: list[ScheduledTask] = []
        self._seq = itertools.count()

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any, name: str = "") -> ScheduledTask:
        task = ScheduledTask(
            due=self.clock.now() + max(0.0, delay),
            seq=next(self._seq),
            callback=callback,
            args=args,
            name=name or getattr(callback, "__name__", "task"),
        )
        heapq.heappush(self._queue, task)
        return task

    def call_every(self, interval: float, callback: Callable[..., Any], *args: Any, name: str = "") -> ScheduledTask:
        if interval <= 0:
            raise ValueError("interval must be positive")
        task = self.call_later(interval, callback, *args, name=name)
        task.interval = interval
        return task

    @property
    def pending(self) -> int:
        return sum(1 for task in self._queue if not task.cancelled)

    def run_pending(self) -> int:
        """Run every task that is due, oldest first. Returns how many ran."""
        now = self.clock.now()
        ran = 0
        while self._queue and self._queue[0].due <= now:
            task = heapq.heappop(self._queue)
            if task.cancelled:
                continue
            try:
                task.callback(*task.args)
            except Exception:
                logger.exception(f"Scheduled task {task.name} failed")
            ran += 1
            if task.interval is not None and not task.cancelled:
                task.due += task.interval
                task.seq = next(self._seq)
                heapq.heappush(self._queue, task)
        return ran

    async def run(self, tick: float = 0.5) -> None:
        logger.info(f"🔧 Maintenance scheduler started (tick={tick:.2f}s)")
        try:
            while True:
                self.run_pending()
                await asyncio.sleep(tick)
        finally:
            logger.info("Maintenance scheduler stopped")
