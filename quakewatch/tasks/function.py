"""Wrap an in-process callable as a scheduled task."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Sequence
from typing import Any

from quakewatch.core.models import TaskResult
from quakewatch.tasks.base import BaseTask

__all__ = ["FunctionTask"]

logger = logging.getLogger(__name__)


class FunctionTask(BaseTask):
    """Adapt a sync or async callable to the task contract.

    The callable receives the scheduler's args as a tuple and may return a
    :class:`~quakewatch.core.models.TaskResult`, an ``int`` item count, or
    ``None`` (no count reported).  Synchronous callables run in a worker
    thread via :func:`asyncio.to_thread`, so a slow one does not block the
    event loop; it cannot be interrupted once started.

    Args:
        fn: The callable to schedule.
        name: Task identity; defaults to the callable's ``__name__``.
    """

    def __init__(self, fn: Callable[[tuple[str, ...]], Any], name: str | None = None) -> None:
        self._fn = fn
        self.name = name or getattr(fn, "__name__", "function")

    async def run(self, args: Sequence[str]) -> TaskResult:
        if inspect.iscoroutinefunction(self._fn):
            outcome = await self._fn(tuple(args))
        else:
            outcome = await asyncio.to_thread(self._fn, tuple(args))
            if inspect.isawaitable(outcome):
                outcome = await outcome
        return _to_result(outcome)


def _to_result(outcome: Any) -> TaskResult:
    if isinstance(outcome, TaskResult):
        return outcome
    if outcome is None:
        return TaskResult()
    if isinstance(outcome, int) and not isinstance(outcome, bool):
        return TaskResult(items_produced=outcome)
    raise TypeError(f"Task returned unsupported value of type {type(outcome).__name__}")
