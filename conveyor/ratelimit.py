"""Sliding-window admission gates for rate limiting handler calls."""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Deque, Optional

from conveyor.errors import ConfigError

if TYPE_CHECKING:
    from conveyor.config import EngineConfig
    from conveyor.telemetry.metrics import Metrics

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[Any]]


@dataclass
class RateLimitStats:
    """Counters for monitoring a rate limiter.

    Attributes
    ----------
    admitted:
        Number of calls to ``acquire`` that returned.
    throttled:
        Number of times a caller had to sleep before being admitted.
    wait_seconds:
        Total time callers spent sleeping.
    """

    admitted: int = 0
    throttled: int = 0
    wait_seconds: float = 0.0


class WindowRateLimiter(ABC):
    """Shared state and validation for the two limiter variants."""

    def __init__(
        self,
        limit: int,
        interval: float,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
        metrics: Optional["Metrics"] = None,
        name: Optional[str] = None,
    ) -> None:
        """Create a limiter admitting at most ``limit`` calls per ``interval``.

        Parameters
        ----------
        limit:
            Maximum admissions inside any trailing window. Must be positive.
        interval:
            Window length in seconds. Must be positive.
        clock, sleep:
            Monotonic time source and matching sleep coroutine. Injected so
            tests can drive the limiter on a simulated clock.
        metrics:
            Optional metrics sink for throttle counts.
        """
        if limit <= 0:
            raise ConfigError(f"rate limit must be positive, got {limit}")
        if interval <= 0:
            raise ConfigError(f"rate interval must be positive, got {interval}")
        self.limit = limit
        self.interval = interval
        self.name = name or type(self).__name__
        self._clock = clock
        self._sleep = sleep
        self._metrics = metrics
        self._history: Deque[float] = deque()
        self._lock = asyncio.Lock()
        self._stats = RateLimitStats()

    @property
    def stats(self) -> RateLimitStats:
        return self._stats

    def _prune(self, now: float) -> None:
        history = self._history
        while history and now - history[0] >= self.interval:
            history.popleft()

    def _record_wait(self, wait: float) -> None:
        self._stats.throttled += 1
        self._stats.wait_seconds += wait
        if self._metrics is not None:
            self._metrics.inc("rate_limit_waits", 1)
            self._metrics.observe_stage(f"{self.name}_wait", wait)

    @abstractmethod
    async def acquire(self) -> None:
        """Suspend until one more call fits in the window, then record it."""
        raise NotImplementedError

    async def __aenter__(self) -> "WindowRateLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None


class SlidingWindowRateLimiter(WindowRateLimiter):
    """
    Retry-loop sliding window limiter.

    Callers that find the window full sleep until the oldest admission ages
    out, then race for the lock again. Several callers can wake for the same
    freed slot; the losers sleep again. Admission order among waiting callers
    is therefore not FIFO.
    """

    async def acquire(self) -> None:
        """Wait until admitting this call keeps the window within ``limit``."""
        waited = False
        while True:
            async with self._lock:
                now = self._clock()
                self._prune(now)
                if len(self._history) < self.limit:
                    self._history.append(now)
                    self._stats.admitted += 1
                    if waited:
                        logger.debug("%s: admitted after throttling", self.name)
                    return
                remaining = self.interval - (now - self._history[0])

            # sleep outside the lock so other callers can prune and admit
            waited = True
            self._record_wait(remaining)
            logger.debug("%s: window full, sleeping %.3fs", self.name, remaining)
            await self._sleep(remaining)


class ReservingRateLimiter(WindowRateLimiter):
    """
    Slot-reserving sliding window limiter.

    Each caller reserves the earliest timestamp that keeps every window of
    ``interval`` seconds within ``limit`` admissions, then sleeps until that
    timestamp. Exactly one waiter is released per freed slot, in arrival
    order. A caller cancelled while waiting forfeits its slot.
    """

    async def acquire(self) -> None:
        """Reserve the next admissible slot and wait for it."""
        async with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._history) < self.limit:
                slot = now
            else:
                slot = max(now, self._history[-self.limit] + self.interval)
            self._history.append(slot)
            self._stats.admitted += 1

        wait = slot - now
        if wait > 0:
            self._record_wait(wait)
            logger.debug("%s: reserved slot in %.3fs", self.name, wait)
            await self._sleep(wait)


RateLimiter = SlidingWindowRateLimiter


def build_rate_limiter(
    config: "EngineConfig",
    *,
    metrics: Optional["Metrics"] = None,
    clock: Clock = time.monotonic,
    sleep: Sleeper = asyncio.sleep,
) -> WindowRateLimiter:
    """Return the limiter variant selected by ``config.rate_strategy``."""
    cls = ReservingRateLimiter if config.rate_strategy == "reserving" else SlidingWindowRateLimiter
    return cls(
        config.rate_limit,
        config.rate_window,
        clock=clock,
        sleep=sleep,
        metrics=metrics,
    )
