"""Waits that end early when the shutdown event fires.

The scheduler owns a single :class:`asyncio.Event`.  The tick wait, retry
backoff and rate-limiter waits all suspend through these helpers, so setting
that one event wakes every pending wait at once.
"""

from __future__ import annotations

import asyncio
import contextlib

from quakewatch.core.exceptions import OperationCancelledError

__all__ = ["wait_for_stop", "cancellable_sleep"]


async def wait_for_stop(stop_event: asyncio.Event, timeout: float | None) -> bool:
    """Wait up to *timeout* seconds for *stop_event*.

    Args:
        stop_event: Shared shutdown signal.
        timeout: Maximum wait in seconds; ``None`` waits indefinitely.
            Non-positive values only poll the event.

    Returns:
        ``True`` if the event fired, ``False`` if the timeout elapsed.
    """
    if stop_event.is_set():
        return True
    if timeout is not None and timeout <= 0:
        return False
    with contextlib.suppress(TimeoutError):
        await asyncio.wait_for(stop_event.wait(), timeout)
    return stop_event.is_set()


async def cancellable_sleep(delay: float, stop_event: asyncio.Event | None = None) -> None:
    """Sleep for *delay* seconds unless *stop_event* fires first.

    Raises:
        OperationCancelledError: If the event is (or becomes) set.
    """
    if stop_event is None:
        await asyncio.sleep(max(delay, 0.0))
        return
    if await wait_for_stop(stop_event, max(delay, 0.0)):
        raise OperationCancelledError(f"Wait of {delay:.1f} s interrupted by shutdown")
