"""
Time sources for sweeps and waits.

Components read the current time and sleep through a Clock so tests can
drive them with virtual time. Sleeps take an optional asyncio.Event and
return early (True) when it is set; that is how every loop is made
pre-emptible.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Optional


class SystemClock:
    """Wall-clock time."""

    def now(self) -> datetime:
        return datetime.now()

    async def sleep(self, seconds: float, stop_event: Optional[asyncio.Event] = None) -> bool:
        """Sleep for seconds. Returns True if stop_event fired first."""
        if stop_event is None:
            await asyncio.sleep(max(seconds, 0))
            return False
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=max(seconds, 0))
            return True
        except asyncio.TimeoutError:
            return False


class ManualClock:
    """Virtual clock that only moves when told to.

    sleep() advances the clock instead of waiting, yielding once to the
    event loop so other tasks get a turn.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2025, 1, 1, 12, 0, 0)
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        self._now += timedelta(seconds=seconds)
        return self._now

    async def sleep(self, seconds: float, stop_event: Optional[asyncio.Event] = None) -> bool:
        self.sleeps.append(seconds)
        await asyncio.sleep(0)
        if stop_event is not None and stop_event.is_set():
            return True
        self.advance(seconds)
        return False


default_clock = SystemClock()
