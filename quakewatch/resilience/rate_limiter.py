"""Sliding-window rate limiter.

Keeps a log of the timestamps of the last ``max_calls`` grants.  A permit is
granted only when fewer than ``max_calls`` grants fall inside the trailing
``period_s`` window, so **no window of that length ever contains more than
``max_calls`` permits**.  Fixed windows and token buckets both allow bursts
of up to twice the limit at a boundary; the log does not.

Waiters are served in arrival order: the lock is held while the current
waiter sleeps, so later callers queue behind it.

Typical usage::

    limiter = RateLimiter(max_calls=60, period_s=60.0)
    await limiter.acquire(stop_event)      # blocks until a permit is free
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from quakewatch.core import events
from quakewatch.core.exceptions import OperationCancelledError
from quakewatch.resilience.cancellation import cancellable_sleep

__all__ = ["RateLimiter"]

logger = logging.getLogger(__name__)

Sleeper = Callable[[float, "asyncio.Event | None"], Awaitable[None]]


class RateLimiter:
    """Grant at most *max_calls* permits in any *period_s*-second window.

    Args:
        max_calls: Permits per window (``>= 1``).
        period_s: Window length in seconds (``> 0``).
        clock: Monotonic clock; override in tests.
        sleep: ``async sleep(delay, stop_event)`` that raises
            :class:`OperationCancelledError` when the event fires.
            Defaults to :func:`~quakewatch.resilience.cancellation.cancellable_sleep`.
    """

    def __init__(
        self,
        max_calls: int,
        period_s: float,
        *,
        clock: Callable[[], float] | None = None,
        sleep: Sleeper | None = None,
    ) -> None:
        if max_calls < 1:
            raise ValueError(f"max_calls must be >= 1, got {max_calls!r}")
        if period_s <= 0:
            raise ValueError(f"period_s must be > 0, got {period_s!r}")
        self.max_calls = max_calls
        self.period_s = period_s
        self._clock = clock or time.monotonic
        self._sleep = sleep or cancellable_sleep
        self._grants: deque[float] = deque()
        self._lock = asyncio.Lock()
        self._total_granted = 0
        self._total_waited_s = 0.0

    def _prune(self, now: float) -> None:
        while self._grants and now - self._grants[0] >= self.period_s:
            self._grants.popleft()

    def _grant(self, now: float) -> None:
        self._grants.append(now)
        self._total_granted += 1

    def try_acquire(self) -> bool:
        """Take a permit if one is free right now; never waits."""
        if self._lock.locked():
            # Someone is already queued for the next permit.
            return False
        now = self._clock()
        self._prune(now)
        if len(self._grants) < self.max_calls:
            self._grant(now)
            return True
        return False

    async def acquire(self, stop_event: asyncio.Event | None = None) -> None:
        """Wait for a permit.

        Args:
            stop_event: Shutdown signal; waiting ends early when it fires.

        Raises:
            OperationCancelledError: If *stop_event* fires before a permit is
                granted.  No permit is consumed in that case.
        """
        async with self._lock:
            while True:
                if stop_event is not None and stop_event.is_set():
                    raise OperationCancelledError("Rate limiter wait interrupted by shutdown")
                now = self._clock()
                self._prune(now)
                if len(self._grants) < self.max_calls:
                    self._grant(now)
                    return
                wait = self._grants[0] + self.period_s - now
                logger.debug(
                    "Rate limit reached (%d / %.0f s) — waiting %.2f s.",
                    self.max_calls,
                    self.period_s,
                    wait,
                    extra={"event": events.RATE_LIMITED},
                )
                self._total_waited_s += wait
                await self._sleep(wait, stop_event)

    def stats(self) -> dict[str, Any]:
        """Diagnostic counters."""
        self._prune(self._clock())
        return {
            "max_calls": self.max_calls,
            "period_s": self.period_s,
            "in_window": len(self._grants),
            "total_granted": self._total_granted,
            "total_waited_s": round(self._total_waited_s, 3),
        }
