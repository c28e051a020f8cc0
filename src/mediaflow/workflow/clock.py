"""Time sources for the engine.

All timing in the engine (deadlines, Wait suspensions, retry backoff)
goes through a :class:`Clock` so tests and simulations can run hours of
pipeline time instantly.
"""

from __future__ import annotations

import asyncio
import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Wall-clock reads plus a non-blocking sleep."""

    def now(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Real time.  Sleeps are event-loop timers, never blocking sleeps."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class ManualClock:
    """Virtual time that jumps forward instead of sleeping.

    Every :meth:`sleep` returns after one event-loop turn with the clock
    moved to the end of the sleep.  Overlapping sleeps started at the
    same instant do not add up: the clock only moves forward to the
    latest wake-up time requested.

    Attributes:
        sleeps: Durations passed to :meth:`sleep`, in call order.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds

    async def sleep(self, seconds: float) -> None:
        seconds = max(0.0, seconds)
        self.sleeps.append(seconds)
        wake_at = self._now + seconds
        await asyncio.sleep(0)
        self._now = max(self._now, wake_at)
