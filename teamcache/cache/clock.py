"""
Clock and periodic-task abstractions.

Cache components read time through a Clock so tests can advance virtual time
instead of sleeping.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Protocol

logger = logging.getLogger("cache.clock")


class Clock(Protocol):
    """Source of the current instant in epoch seconds."""

    def now(self) -> float:
        ...


class SystemClock:
    """Wall-clock time."""

    def now(self) -> float:
        return time.time()


class ManualClock:
    """
    Clock that only moves when told to.

    Usage:
        clock = ManualClock(start=1000.0)
        clock.advance(0.15)
    """

    def __init__(self, start: float = 0.0):
        self._now = start

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> float:
        self._now += seconds
        return self._now

    def set(self, instant: float) -> None:
        self._now = instant


def to_datetime(instant: float) -> datetime:
    """Convert an epoch instant to an aware UTC datetime."""
    return datetime.fromtimestamp(instant, tz=timezone.utc)


def to_iso(instant: float) -> str:
    return to_datetime(instant).isoformat().replace("+00:00", "Z")


class PeriodicTask:
    """
    Runs an async callback every ``interval`` seconds on the running loop.

    Failures of a single tick are logged and the schedule continues.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[object]],
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.name = name
        self.interval = interval
        self._callback = callback
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        logger.debug(f"Started periodic task {self.name} (every {self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.debug(f"Stopped periodic task {self.name}")

    async def _run(self) -> None:
        while True:
            await self._sleep(self.interval)
            try:
                await self._callback()
            except Exception as e:
                logger.error(f"Periodic task {self.name} failed: {e}")
