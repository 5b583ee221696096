"""Run one tick of a task with classified retries.

:class:`TaskExecutor` turns a single scheduled tick into an
:class:`~quakewatch.core.models.Execution`.  Attempts are driven by
:mod:`tenacity`:

* **stop** — ``max_attempts`` attempts per tick, initial try included.
* **retry** — only failures whose :class:`~quakewatch.core.models.ErrorKind`
  is retryable.  The exception is classified once, where the task raised
  it; the predicate reads the recorded kind.
* **wait** — the configured backoff policy.  An upstream ``Retry-After``
  hint wins when it is longer, still capped at the policy's maximum.
* **sleep** — the shutdown-aware sleep, so a stop request interrupts the
  backoff wait instead of outlasting it.

The executor never raises for a task failure: exhausted retries,
non-retryable errors and shutdown all come back as an ``Execution``.
A hard :class:`asyncio.CancelledError` (the surrounding asyncio task being
cancelled) is recorded and then propagated.

Typical usage::

    executor = TaskExecutor(backoff, max_attempts=4, metrics=metrics)
    execution = await executor.run(task, args, stop_event, sequence=1)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime
from uuid import uuid4

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from quakewatch.core import events
from quakewatch.core.exceptions import OperationCancelledError, RateLimitError
from quakewatch.core.logging_config import TICK_ID_CTX
from quakewatch.core.models import AttemptRecord, ErrorKind, Execution
from quakewatch.orchestrator.metrics import ExecutionMetrics
from quakewatch.resilience.backoff import BackoffStrategy
from quakewatch.resilience.cancellation import cancellable_sleep
from quakewatch.resilience.classification import classify, is_retryable
from quakewatch.tasks.base import BaseTask

__all__ = ["TaskExecutor"]

logger = logging.getLogger(__name__)

Sleeper = Callable[[float, "asyncio.Event | None"], Awaitable[None]]


class _AttemptFailed(Exception):
    """Internal: carries a task failure together with its classified kind.

    Never escapes :meth:`TaskExecutor.run`.
    """

    def __init__(self, error: Exception, kind: ErrorKind) -> None:
        self.error = error
        self.kind = kind
        super().__init__(str(error))


def _should_retry(exc: BaseException) -> bool:
    return isinstance(exc, _AttemptFailed) and is_retryable(exc.kind)


class TaskExecutor:
    """Execute ticks with retry, backoff and per-attempt metrics.

    Args:
        backoff: Delay policy between attempts.
        max_attempts: Attempts per tick including the initial try (``>= 1``).
        metrics: Recorder receiving one entry per attempt.
        sleep: ``async sleep(delay, stop_event)``; defaults to
            :func:`~quakewatch.resilience.cancellation.cancellable_sleep`.
        clock: Monotonic clock used for durations.
        now: UTC wall clock used for timestamps.
    """

    def __init__(
        self,
        backoff: BackoffStrategy,
        max_attempts: int = 4,
        metrics: ExecutionMetrics | None = None,
        *,
        sleep: Sleeper | None = None,
        clock: Callable[[], float] | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts!r}")
        self.backoff = backoff
        self.max_attempts = max_attempts
        self.metrics = metrics
        self._sleep = sleep or cancellable_sleep
        self._clock = clock or time.monotonic
        self._now = now or (lambda: datetime.now(UTC))

    # ------------------------------------------------------------------
    # tenacity hooks
    # ------------------------------------------------------------------

    def _wait(self, retry_state: RetryCallState) -> float:
        """Backoff delay, stretched to honour a rate-limit hint."""
        delay = self.backoff.delay(retry_state.attempt_number)
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, _AttemptFailed) and isinstance(exc.error, RateLimitError):
            hint = exc.error.retry_after
            if hint is not None and hint > delay:
                logger.debug("Honouring upstream Retry-After of %.1f s", hint)
                delay = min(hint, self.backoff.max_backoff)
        return delay

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        wait = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.info(
            "Retry attempt %d/%d in %.1f s",
            retry_state.attempt_number + 1,
            self.max_attempts,
            wait,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        task: BaseTask,
        args: Sequence[str],
        stop_event: asyncio.Event,
        sequence: int,
    ) -> Execution:
        """Run one tick of *task*.

        Args:
            task: The task to invoke.
            args: Arguments passed to every attempt.
            stop_event: Shutdown signal; interrupts backoff waits.
            sequence: 1-based tick number.

        Returns:
            The finished :class:`~quakewatch.core.models.Execution`.

        Raises:
            asyncio.CancelledError: Only if the calling asyncio task itself
                is cancelled.
        """
        execution_id = uuid4().hex
        token = TICK_ID_CTX.set(execution_id[:8])
        started_at = self._now()
        t0 = self._clock()
        attempts = 0
        items: int | None = None
        failure: _AttemptFailed | None = None
        cancelled = False
        self.backoff.reset()

        async def _sleep(delay: float) -> None:
            await self._sleep(delay, stop_event)

        logger.info(
            "Execution #%d started: %s %s",
            sequence,
            task.name,
            " ".join(args),
            extra={"event": events.TICK_START, "sequence": sequence},
        )

        try:
            if stop_event.is_set():
                cancelled = True
            else:
                async for attempt in AsyncRetrying(
                    wait=self._wait,
                    stop=stop_after_attempt(self.max_attempts),
                    retry=retry_if_exception(_should_retry),
                    sleep=_sleep,
                    reraise=True,
                    before_sleep=self._before_sleep,
                ):
                    with attempt:
                        attempts += 1
                        items = await self._attempt(task, args, execution_id, attempts)
        except _AttemptFailed as exc:
            failure = exc
            cancelled = exc.kind == ErrorKind.CANCELLATION
        except OperationCancelledError:
            # Shutdown fired during a backoff wait.
            cancelled = True
        except asyncio.CancelledError:
            self._record(
                self._build(
                    execution_id, sequence, task, args, started_at, t0, attempts,
                    None, failure, cancelled=True,
                )
            )
            raise
        finally:
            TICK_ID_CTX.reset(token)

        execution = self._build(
            execution_id, sequence, task, args, started_at, t0, attempts,
            items, failure, cancelled=cancelled,
        )
        self._record(execution)
        return execution

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _attempt(
        self,
        task: BaseTask,
        args: Sequence[str],
        execution_id: str,
        number: int,
    ) -> int | None:
        """Run one attempt, classifying and recording its outcome."""
        attempt_started = self._now()
        a0 = self._clock()
        try:
            result = await task.run(args)
        except Exception as exc:
            kind = classify(exc)
            self._record_attempt(
                execution_id, number, attempt_started, a0, success=False, kind=kind, error=exc
            )
            log = logger.info if kind == ErrorKind.CANCELLATION else logger.warning
            log(
                "Attempt %d/%d failed [%s]: %s",
                number,
                self.max_attempts,
                kind,
                exc,
                extra={"event": events.ATTEMPT_FAILED, "error_kind": str(kind)},
            )
            raise _AttemptFailed(exc, kind) from exc
        self._record_attempt(execution_id, number, attempt_started, a0, success=True)
        return result.items_produced

    def _record_attempt(
        self,
        execution_id: str,
        number: int,
        started_at: datetime,
        a0: float,
        *,
        success: bool,
        kind: ErrorKind | None = None,
        error: Exception | None = None,
    ) -> None:
        if self.metrics is None:
            return
        self.metrics.record_attempt(
            AttemptRecord(
                execution_id=execution_id,
                attempt=number,
                started_at=started_at,
                duration_s=max(self._clock() - a0, 0.0),
                success=success,
                error_kind=kind,
                error=str(error) if error is not None else None,
            )
        )

    def _build(
        self,
        execution_id: str,
        sequence: int,
        task: BaseTask,
        args: Sequence[str],
        started_at: datetime,
        t0: float,
        attempts: int,
        items: int | None,
        failure: _AttemptFailed | None,
        *,
        cancelled: bool,
    ) -> Execution:
        error_kind = failure.kind if failure is not None else None
        if cancelled:
            error_kind = ErrorKind.CANCELLATION
        return Execution(
            id=execution_id,
            sequence=sequence,
            task_name=task.name,
            args=tuple(args),
            started_at=started_at,
            finished_at=self._now(),
            duration_s=max(self._clock() - t0, 0.0),
            success=failure is None and not cancelled,
            error=str(failure.error) if failure is not None else None,
            error_kind=error_kind,
            attempts=attempts,
            items_produced=items if failure is None and not cancelled else None,
            cancelled=cancelled,
        )

    def _record(self, execution: Execution) -> None:
        if self.metrics is not None:
            self.metrics.record_execution(execution)
