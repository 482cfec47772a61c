"""
Per-source rate limiting.

Each source gets its own lock, last-request timestamp and sliding
one-minute window. A permit holds the source's lock until released, so
requests to one source are serialized while different sources never
wait on each other.
"""

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

import structlog

from grants_engine.errors import RateLimitTimeoutError

from .clock import Clock
from .models import RateLimitOverride

logger = structlog.get_logger(__name__)

WINDOW_SECONDS = 60.0


@dataclass
class RateLimitPolicy:
    """Effective limits for one source."""
    requests_per_minute: int = 10
    delay_between_requests: int = 2000  # ms

    @property
    def delay_seconds(self) -> float:
        return self.delay_between_requests / 1000


@dataclass
class SourceWindow:
    """Rate limit state of a single source."""
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_request: Optional[float] = None
    requests: deque = field(default_factory=deque)

    def purge(self, now: float) -> None:
        cutoff = now - WINDOW_SECONDS
        while self.requests and self.requests[0] <= cutoff:
            self.requests.popleft()


@dataclass
class RateLimitInfo:
    remaining: int
    reset_in: float  # seconds until the oldest request leaves the window


class Permit:
    """Grant to issue one request to a source. Release when done."""

    def __init__(self, source_id: str, window: SourceWindow, waited: float):
        self.source_id = source_id
        self.waited = waited
        self._window = window
        self._released = False

    def release(self) -> None:
        if not self._released:
            self._released = True
            self._window.lock.release()

    @property
    def released(self) -> bool:
        return self._released


class RateLimiter:
    """
    Gate requests per source by minimum delay and requests-per-minute.

    Usage:
        async with limiter.permit(source.id, source.rate_limit):
            response = await client.get(source.url)
    """

    def __init__(
        self,
        requests_per_minute: int = 10,
        delay_between_requests: int = 2000,
        max_wait: int = 120_000,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize rate limiter.

        Args:
            requests_per_minute: Default per-source budget
            delay_between_requests: Default minimum gap in ms
            max_wait: Upper bound on any wait in ms
            clock: Time source (wall clock by default)
        """
        self.default_policy = RateLimitPolicy(
            requests_per_minute=requests_per_minute,
            delay_between_requests=delay_between_requests,
        )
        self.max_wait = max_wait / 1000
        self.clock = clock or Clock()
        self._windows: dict[str, SourceWindow] = {}

    @classmethod
    def from_config(cls, config, clock: Optional[Clock] = None) -> "RateLimiter":
        return cls(
            requests_per_minute=config.requests_per_minute,
            delay_between_requests=config.delay_between_requests,
            max_wait=config.max_wait,
            clock=clock,
        )

    def policy_for(self, override: Optional[RateLimitOverride] = None) -> RateLimitPolicy:
        """Merge a per-source override over the global defaults."""
        if override is None:
            return self.default_policy
        return RateLimitPolicy(
            requests_per_minute=override.requests_per_minute or self.default_policy.requests_per_minute,
            delay_between_requests=(
                override.delay_between_requests
                if override.delay_between_requests is not None
                else self.default_policy.delay_between_requests
            ),
        )

    def _window(self, source_id: str) -> SourceWindow:
        if source_id not in self._windows:
            self._windows[source_id] = SourceWindow()
        return self._windows[source_id]

    def _required_wait(self, window: SourceWindow, policy: RateLimitPolicy, now: float) -> float:
        wait = 0.0

        if window.last_request is not None:
            wait = window.last_request + policy.delay_seconds - now

        window.purge(now)
        if len(window.requests) >= policy.requests_per_minute:
            wait = max(wait, window.requests[0] + WINDOW_SECONDS - now)

        return wait

    async def acquire(
        self,
        source_id: str,
        override: Optional[RateLimitOverride] = None,
    ) -> Permit:
        """
        Wait for a request slot for the source.

        Args:
            source_id: Source to gate
            override: Optional per-source limits

        Returns:
            Permit holding the source's lock

        Raises:
            RateLimitTimeoutError: if the wait would exceed max_wait
        """
        policy = self.policy_for(override)
        window = self._window(source_id)
        started = self.clock.monotonic()
        deadline = started + self.max_wait

        try:
            await asyncio.wait_for(window.lock.acquire(), timeout=self.max_wait)
        except asyncio.TimeoutError:
            raise RateLimitTimeoutError(
                f"Timed out waiting for in-flight request to {source_id}",
                source_id=source_id,
            ) from None

        try:
            while True:
                now = self.clock.monotonic()
                wait = self._required_wait(window, policy, now)
                if wait <= 0:
                    break
                if now + wait > deadline:
                    raise RateLimitTimeoutError(
                        f"Rate limit wait of {wait:.1f}s for {source_id} exceeds "
                        f"max wait of {self.max_wait:.1f}s",
                        source_id=source_id,
                    )
                logger.debug("rate_limit_wait", source=source_id, seconds=round(wait, 3))
                await self.clock.sleep(wait)

            now = self.clock.monotonic()
            window.last_request = now
            window.requests.append(now)
        except BaseException:
            window.lock.release()
            raise

        return Permit(source_id, window, waited=now - started)

    @asynccontextmanager
    async def permit(
        self,
        source_id: str,
        override: Optional[RateLimitOverride] = None,
    ) -> AsyncIterator[Permit]:
        """Context manager form of acquire/release."""
        granted = await self.acquire(source_id, override)
        try:
            yield granted
        finally:
            granted.release()

    def info(self, source_id: str, override: Optional[RateLimitOverride] = None) -> RateLimitInfo:
        """Remaining budget in the current window for the source."""
        policy = self.policy_for(override)
        window = self._window(source_id)
        now = self.clock.monotonic()
        window.purge(now)

        remaining = max(0, policy.requests_per_minute - len(window.requests))
        reset_in = (window.requests[0] + WINDOW_SECONDS - now) if window.requests else 0.0
        return RateLimitInfo(remaining=remaining, reset_in=max(0.0, reset_in))

    def reset(self, source_id: Optional[str] = None) -> None:
        """Forget request history (one source or all). Locks are kept."""
        windows = [self._windows[source_id]] if source_id in self._windows else []
        if source_id is None:
            windows = list(self._windows.values())
        for window in windows:
            window.last_request = None
            window.requests.clear()
