"""
Timers for the pipeline worker.

The clock is injectable so tests can drive delays without waiting: anything that
sleeps (delayed re-runs, the daily schedule, the classification rate limiter)
goes through ``Clock.sleep``.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional
from zoneinfo import ZoneInfo

from app.core.logging import get_logger

logger = get_logger()

JobFactory = Callable[[], Awaitable[object]]


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class DelayedTaskScheduler:
    """
    Runs a coroutine factory once after a delay, detached from the caller.

    Failures of the scheduled job are logged; they never reach the code that
    scheduled it.
    """

    def __init__(self, clock: Optional[SystemClock] = None) -> None:
        self.clock = clock or SystemClock()
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    def schedule(self, delay_s: float, factory: JobFactory, *, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._run(delay_s, factory, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("delayed_task_scheduled", task=name, delay_s=delay_s)
        return task

    async def _run(self, delay_s: float, factory: JobFactory, name: str) -> None:
        await self.clock.sleep(delay_s)
        logger.info("delayed_task_started", task=name)
        try:
            await factory()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("delayed_task_failed", task=name, error=str(exc), exc_info=True)

    async def join(self) -> None:
        """Wait until no scheduled task is left, including ones scheduled meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks: List[asyncio.Task] = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


def next_daily_run(now: datetime, *, hour: int, minute: int, tz: str) -> datetime:
    """
    Next wall-clock occurrence of hour:minute in ``tz`` strictly after ``now``.
    Returned in UTC.
    """
    zone = ZoneInfo(tz)
    local_now = now.astimezone(zone)
    candidate = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= local_now:
        candidate = candidate + timedelta(days=1)
    return candidate.astimezone(timezone.utc)


async def run_daily(
    job: JobFactory,
    *,
    hour: int,
    minute: int,
    tz: str,
    stop_event: asyncio.Event,
    clock: Optional[SystemClock] = None,
    name: str = "daily_job",
) -> None:
    clock = clock or SystemClock()
    while not stop_event.is_set():
        due = next_daily_run(clock.now(), hour=hour, minute=minute, tz=tz)
        wait_s = (due - clock.now()).total_seconds()
        logger.info("recurring_job_waiting", job=name, next_run_at=due.isoformat(), wait_s=round(wait_s, 1))
        if await _wait_or_stop(stop_event, clock, wait_s):
            break
        await job()


async def run_every(
    job: JobFactory,
    *,
    interval_s: float,
    stop_event: asyncio.Event,
    clock: Optional[SystemClock] = None,
    name: str = "interval_job",
) -> None:
    clock = clock or SystemClock()
    while not stop_event.is_set():
        if await _wait_or_stop(stop_event, clock, interval_s):
            break
        logger.info("recurring_job_started", job=name)
        await job()


async def _wait_or_stop(stop_event: asyncio.Event, clock: SystemClock, seconds: float) -> bool:
    """Sleep up to ``seconds``; True when the stop event fired first."""
    sleeper = asyncio.ensure_future(clock.sleep(seconds))
    stopper = asyncio.ensure_future(stop_event.wait())
    done, pending = await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    return stopper in done
