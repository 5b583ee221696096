"""Task interface contract for everything the interval runner can schedule.

Every schedulable unit of work (an external command, an in-process
callable or a feed poll) subclasses :class:`BaseTask` and implements
:meth:`run`.

Design decisions
----------------
* **Abstract base class (ABC)** rather than a ``Protocol``: an ABC lets
  subclasses share lifecycle helpers (``close``, ``__aenter__`` /
  ``__aexit__``) without duplication.
* **Failures are exceptions.**  :meth:`run` returns a
  :class:`~quakewatch.core.models.TaskResult` on success and raises on
  failure.  The executor classifies whatever is raised exactly once, so a
  task should raise the most specific
  :class:`~quakewatch.core.exceptions.TaskError` subclass it can.
* **Async context manager built-in**: tasks that hold an HTTP client or
  similar resource get deterministic teardown.  Tasks that hold nothing can
  leave ``close()`` as-is (a no-op).

Typical usage::

    from quakewatch.tasks.base import BaseTask
    from quakewatch.core.models import TaskResult


    class CountTask(BaseTask):
        name = "count"

        async def run(self, args):
            return TaskResult(items_produced=len(args))

    async with CountTask() as task:
        result = await task.run(("a", "b"))
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from types import TracebackType

from quakewatch.core.models import TaskResult

__all__ = ["BaseTask"]

logger = logging.getLogger(__name__)


class BaseTask(ABC):
    """Abstract base for all schedulable tasks.

    Attributes:
        name: Identity of the task, recorded on every
            :class:`~quakewatch.core.models.Execution`.  Subclasses set it
            either at class level or in ``__init__``.
    """

    name: str = "task"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:  # noqa: B027
        """Release any resources held by this task.

        The default implementation is a no-op.
        """

    async def __aenter__(self) -> BaseTask:
        """Enter the async context manager.  Returns ``self``."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Exit the async context manager by delegating to :meth:`close`."""
        await self.close()

    # ------------------------------------------------------------------
    # Core contract
    # ------------------------------------------------------------------

    @abstractmethod
    async def run(self, args: Sequence[str]) -> TaskResult:
        """Perform one unit of work.

        Implementations should:

        * Return a :class:`~quakewatch.core.models.TaskResult`, reporting
          ``items_produced`` when a count is known (``0`` enables
          skip-after-empty scheduling).
        * **Not** retry internally; the executor owns the retry budget.
        * Use ``await`` for every I/O call; never block the event loop.

        Args:
            args: Arguments supplied when the scheduler was started.

        Returns:
            The task's :class:`~quakewatch.core.models.TaskResult`.

        Raises:
            :class:`~quakewatch.core.exceptions.TaskError`: or any other
            exception on failure; the executor classifies it.
        """

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"
