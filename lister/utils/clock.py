"""Time and cancellation primitives for the scheduler.

Every wait in the lister goes through a Clock so tests can advance time
without sleeping. A StopToken is checked at each suspension point.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, tzinfo
from typing import Protocol


class StopToken:
    """Cooperative cancellation flag shared by the runner and the scheduler."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    def set(self, reason: str = "") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class Clock(Protocol):
    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall clock in local time (or `tz`) backed by asyncio.sleep.

    sleep() returns early when the stop token fires.
    """

    def __init__(self, stop: StopToken | None = None, tz: tzinfo | None = None):
        self._stop = stop
        self._tz = tz

    def now(self) -> datetime:
        if self._tz is not None:
            return datetime.now(self._tz)
        return datetime.now().astimezone()

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self._stop is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


def next_top_of_hour(now: datetime) -> datetime:
    """The next hour boundary strictly after `now`."""
    return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
