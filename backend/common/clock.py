"""
Clock and Ticker primitives.

Every component that needs "now" or a periodic loop receives a Clock so
tests can drive time explicitly with ManualClock instead of sleeping.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class Clock(Protocol):
    def now(self) -> datetime:
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Wall clock backed by asyncio.sleep."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class ManualClock:
    """
    Deterministic clock for tests.

    sleep() advances the clock by the requested amount and yields to the
    event loop once, so backoff schedules complete instantly while still
    recording how long they would have waited.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2026, 1, 20, 8, 0, 0, tzinfo=timezone.utc)
        self.slept: list = []

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        self._now = self._now + timedelta(seconds=seconds)
        return self._now

    async def sleep(self, seconds: float) -> None:
        seconds = max(0.0, seconds)
        self.slept.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)


TickCallback = Callable[[], Awaitable[None]]


class Ticker:
    """
    Interval loop owned by a single component.

    Waits `interval` seconds on the injected clock, then awaits the
    callback. A failing callback is logged and the loop keeps going.
    stop() cancels the task and waits for it to finish.
    """

    def __init__(self, name: str, interval: float, callback: TickCallback, clock: Clock):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self._callback = callback
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        logger.debug(f"Ticker {self.name} started ({self.interval}s)")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug(f"Ticker {self.name} stopped")

    async def _run(self) -> None:
        while True:
            await self._clock.sleep(self.interval)
            try:
                await self._callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Ticker {self.name} callback failed: {e}")
