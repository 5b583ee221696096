"""Fixed-interval tick loop.

:class:`IntervalScheduler` invokes a task repeatedly on a fixed cadence
until a bound is reached or it is told to stop.

Cadence
~~~~~~~
Tick boundaries are anchored to the start time: boundary *k* falls at
``start + k × interval``.  The first tick runs at boundary 0 (immediately)
when ``run_immediately`` is set, otherwise at boundary 1.  A tick that
overruns boundaries does not cause catch-up ticks: the most recent boundary
that has passed runs as soon as the overrun ends, and the boundaries before
it are dropped.  A boundary counts as missed only once the following one
has also passed, so a tick that starts a little late is never skipped.
Ticks never overlap.

Stopping
~~~~~~~~
The loop ends at whichever comes first:

* ``max_executions`` executions completed (cancelled ticks do not count);
* ``max_runtime_s`` elapsed: the wait for the next boundary is cut short
  at the deadline, and a tick already running is allowed to finish;
* :meth:`IntervalScheduler.stop`: the shared stop event wakes the tick
  wait, any backoff wait and any rate-limiter wait at once;
* a failed tick while ``continue_on_error`` is off, in which case
  :meth:`~IntervalScheduler.start` raises
  :class:`~quakewatch.core.exceptions.TickFailedError`.

After every tick the heartbeat file and the JSON stats file are rewritten
(success *and* failure) so operators can tell a live-but-failing process
from a hung one.  Health checks run as a separate asyncio task on their own
cadence and never influence the tick loop.

Typical usage::

    import asyncio
    from quakewatch.core.models import ScheduleConfig
    from quakewatch.orchestrator.scheduler import IntervalScheduler
    from quakewatch.tasks import CommandTask

    scheduler = IntervalScheduler(ScheduleConfig(interval_s=300, max_executions=12))
    asyncio.run(scheduler.start(CommandTask("./collect.sh"), ["--region", "ca"]))
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path

from quakewatch.core import events
from quakewatch.core.exceptions import AlreadyRunningError, TickFailedError
from quakewatch.core.models import Execution, ScheduleConfig, SchedulerState, SchedulerStatus
from quakewatch.orchestrator.executor import TaskExecutor
from quakewatch.orchestrator.health import HealthMonitor
from quakewatch.orchestrator.metrics import DEFAULT_HISTORY_SIZE, ExecutionMetrics, write_stats_file
from quakewatch.resilience.backoff import get_backoff_strategy
from quakewatch.resilience.cancellation import wait_for_stop
from quakewatch.tasks.base import BaseTask

__all__ = ["IntervalScheduler", "write_heartbeat"]

logger = logging.getLogger(__name__)

Waiter = Callable[[asyncio.Event, "float | None"], Awaitable[bool]]

# Tolerance when mapping elapsed time onto boundary indices.
_BOUNDARY_EPSILON = 1e-9


# ---------------------------------------------------------------------------
# Heartbeat
# ---------------------------------------------------------------------------


def write_heartbeat(path: str | Path) -> None:
    """Write the current epoch timestamp to the heartbeat file.

    Called after every tick (success *and* failure).  Errors are logged at
    WARNING level and never propagated, so a heartbeat write failure cannot
    crash the tick loop.

    Args:
        path: Destination file path.
    """
    try:
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(str(time.time()))
    except OSError:
        logger.warning("Failed to write heartbeat file '%s'.", path, exc_info=True)


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class IntervalScheduler:
    """Run a task every ``config.interval_s`` seconds.

    Only the scheduler mutates its status; :meth:`status` returns an atomic
    copy.  A scheduler runs once: after it has stopped, build a new one.

    Args:
        config: Frozen run configuration.
        executor: Tick executor.  Built from *config* when omitted.  A
            supplied executor is expected to report into *metrics* itself.
        metrics: Execution recorder shared with the executor and health
            monitor.
        health_monitor: Advisory health checks.  Built from *config* when
            omitted and ``health_check_interval_s`` is set.
        clock: Monotonic clock driving the cadence.
        now: UTC wall clock for reported timestamps.
        waiter: ``async waiter(stop_event, timeout) -> bool`` used for the
            inter-tick wait; defaults to
            :func:`~quakewatch.resilience.cancellation.wait_for_stop`.
        stats_path: JSON stats file rewritten after every tick, if given.
        heartbeat_path: Heartbeat file rewritten after every tick, if given.
    """

    def __init__(
        self,
        config: ScheduleConfig,
        executor: TaskExecutor | None = None,
        metrics: ExecutionMetrics | None = None,
        health_monitor: HealthMonitor | None = None,
        *,
        clock: Callable[[], float] | None = None,
        now: Callable[[], datetime] | None = None,
        waiter: Waiter | None = None,
        stats_path: str | Path | None = None,
        heartbeat_path: str | Path | None = None,
    ) -> None:
        self.config = config
        self.metrics = metrics or ExecutionMetrics()
        self.executor = executor or TaskExecutor(
            get_backoff_strategy(
                config.backoff_strategy, config.backoff_base_s, config.max_backoff_s
            ),
            max_attempts=config.max_attempts,
            metrics=self.metrics,
        )
        if health_monitor is None and config.health_check_interval_s is not None:
            health_monitor = HealthMonitor(self.metrics, config.health_check_interval_s)
        self.health_monitor = health_monitor
        self._clock = clock or time.monotonic
        self._now = now or (lambda: datetime.now(UTC))
        self._waiter = waiter or wait_for_stop
        self._stats_path = stats_path
        self._heartbeat_path = heartbeat_path

        self._lock = threading.Lock()
        self._stop_event = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._history: deque[Execution] = deque(maxlen=DEFAULT_HISTORY_SIZE)

        self._state = SchedulerState.IDLE
        self._task_name: str | None = None
        self._started_at: datetime | None = None
        self._last_execution_at: datetime | None = None
        self._next_execution_at: datetime | None = None
        self._executions = 0
        self._failures = 0
        self._skipped_ticks = 0
        self._total_runtime_s = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def stop_event(self) -> asyncio.Event:
        """The shared shutdown signal (for wiring guarded clients)."""
        return self._stop_event

    @property
    def executions(self) -> list[Execution]:
        """Copy of the execution history, oldest first."""
        with self._lock:
            return list(self._history)

    def status(self) -> SchedulerStatus:
        """Return an atomic snapshot of the scheduler's counters."""
        with self._lock:
            done = self._executions
            return SchedulerStatus(
                state=self._state,
                started_at=self._started_at,
                last_execution_at=self._last_execution_at,
                next_execution_at=self._next_execution_at,
                executions=done,
                failures=self._failures,
                skipped_ticks=self._skipped_ticks,
                success_rate=(done - self._failures) / done * 100.0 if done else 0.0,
                total_runtime_s=self._total_runtime_s,
                average_runtime_s=self._total_runtime_s / done if done else 0.0,
                task_name=self._task_name,
                interval_s=self.config.interval_s,
                max_executions=self.config.max_executions,
                max_runtime_s=self.config.max_runtime_s,
            )

    def stop(self) -> None:
        """Request shutdown.

        Moves ``running → stopping`` and sets the stop event.  A no-op in
        any other state, so repeated calls are harmless.  Safe to call from
        a signal handler or another thread.
        """
        with self._lock:
            if self._state != SchedulerState.RUNNING:
                return
            self._state = SchedulerState.STOPPING
        logger.info("Stop requested — finishing current work.")

        loop = self._loop
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if loop is None or running is loop:
            self._stop_event.set()
        else:
            loop.call_soon_threadsafe(self._stop_event.set)

    async def start(self, task: BaseTask, args: Sequence[str] = ()) -> None:
        """Run the tick loop until a bound is reached or :meth:`stop` is called.

        Args:
            task: What to run on every tick.
            args: Arguments passed to every invocation.

        Raises:
            AlreadyRunningError: If the scheduler is not idle.
            TickFailedError: If the last tick failed while
                ``continue_on_error`` is off.
        """
        with self._lock:
            if self._state != SchedulerState.IDLE:
                raise AlreadyRunningError(f"Scheduler is {self._state}, expected idle")
            self._state = SchedulerState.RUNNING
            self._task_name = task.name
            self._started_at = self._now()
        self._loop = asyncio.get_running_loop()

        cfg = self.config
        logger.info(
            "Scheduler started — task=%s interval=%.0f s max_executions=%s max_runtime=%s",
            task.name,
            cfg.interval_s,
            cfg.max_executions if cfg.max_executions is not None else "unbounded",
            f"{cfg.max_runtime_s:.0f} s" if cfg.max_runtime_s is not None else "unbounded",
            extra={"event": events.SCHEDULER_START},
        )

        health_task: asyncio.Task[None] | None = None
        if self.health_monitor is not None:
            health_task = asyncio.create_task(
                self.health_monitor.run(self._stop_event),
                name="quakewatch-health",
            )

        terminal: Execution | None = None
        try:
            terminal = await self._tick_loop(task, list(args))
        finally:
            if health_task is not None:
                health_task.cancel()
                await asyncio.gather(health_task, return_exceptions=True)
            with self._lock:
                self._state = SchedulerState.STOPPED
                self._next_execution_at = None
            self._write_stats()
            logger.info(
                "Scheduler stopped.\n%s",
                self.metrics.format_summary(),
                extra={"event": events.SCHEDULER_STOP},
            )

        if terminal is not None:
            raise TickFailedError(terminal)

    # ------------------------------------------------------------------
    # Tick loop
    # ------------------------------------------------------------------

    async def _tick_loop(self, task: BaseTask, args: list[str]) -> Execution | None:
        """Drive ticks; return the failed execution that ended the loop, if any."""
        cfg = self.config
        start = self._clock()
        deadline = start + cfg.max_runtime_s if cfg.max_runtime_s is not None else None
        next_index = 0 if cfg.run_immediately else 1
        sequence = 0
        skip_next = False

        while not self._stop_event.is_set():
            if cfg.max_executions is not None and self._executions >= cfg.max_executions:
                logger.info("Execution limit reached (%d).", cfg.max_executions)
                return None

            now = self._clock()
            # Latest boundary already reached; anything before it is missed.
            reached = math.floor((now - start) / cfg.interval_s + _BOUNDARY_EPSILON)
            index = max(next_index, reached)
            if index > next_index:
                logger.warning(
                    "Dropped %d missed tick boundary(ies) after an overrun.",
                    index - next_index,
                )
            wait = start + index * cfg.interval_s - now
            if deadline is not None:
                wait = min(wait, deadline - now)

            with self._lock:
                self._next_execution_at = self._now() + timedelta(seconds=max(wait, 0.0))
            if wait > 0:
                logger.debug("Next tick in %.1f s.", wait)
                if await self._waiter(self._stop_event, wait):
                    return None

            if deadline is not None and self._clock() >= deadline:
                logger.info("Runtime limit reached (%.0f s).", cfg.max_runtime_s)
                return None
            if self._stop_event.is_set():
                return None

            next_index = index + 1
            if skip_next:
                skip_next = False
                with self._lock:
                    self._skipped_ticks += 1
                logger.info(
                    "Skipping tick — previous execution produced no data.",
                    extra={"event": events.TICK_SKIPPED},
                )
                continue

            sequence += 1
            execution = await self.executor.run(task, args, self._stop_event, sequence)
            self._record(execution)

            if execution.cancelled:
                logger.info(
                    "Execution #%d cancelled by shutdown after %d attempt(s).",
                    execution.sequence,
                    execution.attempts,
                    extra={"event": events.TICK_CANCELLED},
                )
                return None

            if execution.success:
                logger.info(
                    "Execution #%d succeeded in %.2f s (%d attempt(s), items=%s).",
                    execution.sequence,
                    execution.duration_s,
                    execution.attempts,
                    execution.items_produced if execution.items_produced is not None else "-",
                    extra={"event": events.TICK_COMPLETE, "sequence": execution.sequence},
                )
                if cfg.skip_empty and execution.produced_nothing:
                    skip_next = True
                continue

            logger.error(
                "Execution #%d failed after %d attempt(s) [%s]: %s",
                execution.sequence,
                execution.attempts,
                execution.error_kind,
                execution.error,
                extra={
                    "event": events.TICK_FAILED,
                    "sequence": execution.sequence,
                    "error_kind": str(execution.error_kind),
                },
            )
            if not cfg.continue_on_error:
                return execution

        return None

    def _record(self, execution: Execution) -> None:
        with self._lock:
            self._history.append(execution)
            if not execution.cancelled:
                self._executions += 1
                self._total_runtime_s += execution.duration_s
                self._last_execution_at = execution.finished_at
                if not execution.success:
                    self._failures += 1
        if self._heartbeat_path is not None:
            write_heartbeat(self._heartbeat_path)
        self._write_stats()

    def _write_stats(self) -> None:
        if self._stats_path is not None:
            write_stats_file(self.metrics, self.status(), self._stats_path)
