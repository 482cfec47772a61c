"""
Clock abstraction.

The scheduler, rate limiter and retry backoff read time and sleep only
through a Clock, so tests can drive them on discrete ticks instead of
wall-clock sleeps.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock:
    """Wall clock backed by the event loop."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class ManualClock(Clock):
    """
    Clock that only moves when told to.

    ``sleep`` advances the clock by the requested amount and yields
    once to the event loop, so backoff and rate-limit waits complete
    immediately while still being observable through ``sleeps``.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)
        self._mono = 0.0
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._mono

    def advance(self, seconds: float = 0.0, **kwargs) -> None:
        delta = timedelta(seconds=seconds, **kwargs)
        self._now += delta
        self._mono += delta.total_seconds()

    async def sleep(self, seconds: float) -> None:
        seconds = max(0.0, seconds)
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)
