"""Execution statistics for the interval runner.

:class:`ExecutionMetrics` is a passive recorder: the executor reports every
attempt and the scheduler reports every finished tick.  It never drives
control flow.  Two output paths:

1. **Log summary** — :meth:`ExecutionMetrics.format_summary` returns a
   human-readable string suitable for a single ``logger.info()`` call.
2. **JSON stats file** — :func:`write_stats_file` serialises
   :meth:`ExecutionMetrics.as_dict` together with the scheduler status to
   a file (``STATS_PATH`` setting, default ``./quakewatch-stats.json``).  The CLI
   ``status`` command reads it back, so a detached daemon can be inspected
   with ``quakewatch status`` or ``cat quakewatch-stats.json``.

The stats file is rewritten after *every* tick (success or failure).  Write
errors are logged at WARNING level and never propagated, so a stats-file
failure cannot crash the tick loop.

Cancelled ticks are kept in the history but do not count as executions or
failures.

Typical usage::

    from quakewatch.orchestrator.metrics import ExecutionMetrics, write_stats_file

    metrics = ExecutionMetrics()
    metrics.record_execution(execution)
    write_stats_file(metrics, scheduler.status(), path)
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import threading
import time
from collections import Counter, deque
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

from quakewatch.core.models import AttemptRecord, ErrorKind, Execution, SchedulerStatus

__all__ = [
    "DEFAULT_HISTORY_SIZE",
    "ExecutionMetrics",
    "write_stats_file",
]

logger = logging.getLogger(__name__)

#: Executions (and attempts) kept in memory before the oldest are dropped.
DEFAULT_HISTORY_SIZE: Final[int] = 1000


class ExecutionMetrics:
    """Thread-safe counters and bounded history of ticks and attempts.

    Args:
        history_size: Maximum executions and attempts retained in memory.
    """

    def __init__(self, history_size: int = DEFAULT_HISTORY_SIZE) -> None:
        if history_size < 1:
            raise ValueError(f"history_size must be >= 1, got {history_size!r}")
        self._history_size = history_size
        self._lock = threading.Lock()
        self._reset_locked()

    def _reset_locked(self) -> None:
        self._start_monotonic = time.monotonic()
        self._started_at = datetime.now(UTC)
        self._executions = 0
        self._failures = 0
        self._cancelled = 0
        self._attempts = 0
        self._failed_attempts = 0
        self._total_runtime_s = 0.0
        self._items_produced = 0
        self._last_execution_at: datetime | None = None
        self._failures_by_kind: Counter[ErrorKind] = Counter()
        self._attempt_errors_by_kind: Counter[ErrorKind] = Counter()
        self._history: deque[Execution] = deque(maxlen=self._history_size)
        self._attempt_history: deque[AttemptRecord] = deque(maxlen=self._history_size)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def record_attempt(self, attempt: AttemptRecord) -> None:
        """Record one attempt inside a tick."""
        with self._lock:
            self._attempts += 1
            if not attempt.success:
                self._failed_attempts += 1
                if attempt.error_kind is not None:
                    self._attempt_errors_by_kind[attempt.error_kind] += 1
            self._attempt_history.append(attempt)

    def record_execution(self, execution: Execution) -> None:
        """Record a finished tick."""
        with self._lock:
            self._history.append(execution)
            if execution.cancelled:
                self._cancelled += 1
                return
            self._executions += 1
            self._total_runtime_s += execution.duration_s
            self._last_execution_at = execution.finished_at
            if execution.items_produced:
                self._items_produced += execution.items_produced
            if not execution.success:
                self._failures += 1
                if execution.error_kind is not None:
                    self._failures_by_kind[execution.error_kind] += 1

    def reset(self) -> None:
        """Clear every counter and the history."""
        with self._lock:
            self._reset_locked()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def executions(self) -> int:
        return self._executions

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def success_rate(self) -> float:
        """Percentage of successful executions; ``0.0`` before the first."""
        with self._lock:
            return self._success_rate_locked()

    def _success_rate_locked(self) -> float:
        if self._executions == 0:
            return 0.0
        return (self._executions - self._failures) / self._executions * 100.0

    @property
    def total_runtime_s(self) -> float:
        return self._total_runtime_s

    @property
    def average_runtime_s(self) -> float:
        with self._lock:
            return self._total_runtime_s / self._executions if self._executions else 0.0

    @property
    def last_execution_at(self) -> datetime | None:
        return self._last_execution_at

    @property
    def uptime_s(self) -> float:
        """Seconds since this recorder was created or last reset."""
        return time.monotonic() - self._start_monotonic

    def history(self) -> list[Execution]:
        """Copy of the retained executions, oldest first."""
        with self._lock:
            return list(self._history)

    def attempt_history(self) -> list[AttemptRecord]:
        """Copy of the retained attempts, oldest first."""
        with self._lock:
            return list(self._attempt_history)

    def failures_by_kind(self) -> dict[str, int]:
        with self._lock:
            return {str(k): v for k, v in sorted(self._failures_by_kind.items())}

    # ------------------------------------------------------------------
    # Serialisation / formatting
    # ------------------------------------------------------------------

    def format_summary(self) -> str:
        """Return a human-readable two-line summary for logging.

        Example output::

            execution stats — uptime: 2h00m05s | executions=3 failures=1 success_rate=66.7%
              attempts=6 avg_runtime=1.42s items=187 failures_by_kind: network=1
        """
        with self._lock:
            uptime = time.monotonic() - self._start_monotonic
            hours, rem = divmod(int(uptime), 3600)
            minutes, seconds = divmod(rem, 60)
            avg = self._total_runtime_s / self._executions if self._executions else 0.0
            header = (
                f"execution stats — uptime: {hours}h{minutes:02d}m{seconds:02d}s | "
                f"executions={self._executions} failures={self._failures} "
                f"success_rate={self._success_rate_locked():.1f}%"
            )
            detail = (
                f"  attempts={self._attempts} avg_runtime={avg:.2f}s "
                f"items={self._items_produced}"
            )
            if self._cancelled:
                detail += f" cancelled={self._cancelled}"
            if self._failures_by_kind:
                kinds = " ".join(f"{k}={v}" for k, v in sorted(self._failures_by_kind.items()))
                detail += f" failures_by_kind: {kinds}"
        return f"{header}\n{detail}"

    def as_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable representation of the counters.

        Timestamps are ISO-8601 strings in UTC; ``last_execution`` is the
        most recent retained execution, or ``None``.
        """
        with self._lock:
            last = self._history[-1] if self._history else None
            return {
                "started_at": self._started_at.isoformat(),
                "uptime_s": round(time.monotonic() - self._start_monotonic, 1),
                "executions": self._executions,
                "failures": self._failures,
                "cancelled": self._cancelled,
                "success_rate": round(self._success_rate_locked(), 2),
                "attempts": self._attempts,
                "failed_attempts": self._failed_attempts,
                "total_runtime_s": round(self._total_runtime_s, 3),
                "average_runtime_s": round(
                    self._total_runtime_s / self._executions if self._executions else 0.0, 3
                ),
                "items_produced": self._items_produced,
                "last_execution_at": (
                    self._last_execution_at.isoformat() if self._last_execution_at else None
                ),
                "failures_by_kind": {str(k): v for k, v in sorted(self._failures_by_kind.items())},
                "attempt_errors_by_kind": {
                    str(k): v for k, v in sorted(self._attempt_errors_by_kind.items())
                },
                "last_execution": last.model_dump(mode="json") if last else None,
            }


# ---------------------------------------------------------------------------
# Stats file writer
# ---------------------------------------------------------------------------


def write_stats_file(
    metrics: ExecutionMetrics,
    status: SchedulerStatus | None,
    path: str | Path,
) -> None:
    """Write a JSON snapshot of *metrics* and *status* to *path*.

    Called after every tick so the file reflects the most recent completed
    execution.  Errors are logged at ``WARNING`` level and never propagated.

    Args:
        metrics: Recorder to serialise.
        status: Current scheduler snapshot, if a scheduler is running.
        path: Destination file path.
    """
    payload: dict[str, Any] = {
        "written_at": datetime.now(UTC).isoformat(),
        "status": status.model_dump(mode="json") if status is not None else None,
        "metrics": metrics.as_dict(),
    }
    # Readers only ever see a complete file: write beside the target, then rename.
    target = Path(path)
    tmp = target.with_name(f".{target.name}.{os.getpid()}.tmp")
    try:
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp, target)
    except OSError:
        logger.warning("Failed to write stats file '%s'.", path, exc_info=True)
        with contextlib.suppress(OSError):
            tmp.unlink(missing_ok=True)
