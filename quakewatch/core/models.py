"""QuakeWatch core domain models.

This module defines the value types shared by the resilience, task and
orchestrator layers:

* :class:`ScheduleConfig` — immutable run configuration supplied at start.
* :class:`TaskResult` — what a task reports back after one successful call.
* :class:`Execution` — the recorded outcome of one tick.
* :class:`AttemptRecord` — the outcome of a single attempt inside a tick.
* :class:`SchedulerStatus` — read-only snapshot of the scheduler.

Typical usage::

    from quakewatch.core.models import ScheduleConfig

    config = ScheduleConfig(interval_s=300, max_executions=12)
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import IntEnum, StrEnum

from pydantic import BaseModel, Field, model_validator

__all__ = [
    "ErrorKind",
    "BackoffKind",
    "ExitCode",
    "SchedulerState",
    "ScheduleConfig",
    "TaskResult",
    "AttemptRecord",
    "Execution",
    "SchedulerStatus",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ErrorKind(StrEnum):
    """Classification tag attached to every failure at the call boundary.

    Using :class:`enum.StrEnum` means the value serialises as a plain string
    (e.g. ``"network"``) in logs and the JSON stats file.
    """

    NETWORK = "network"
    UPSTREAM_SERVER = "upstream_server"
    RATE_LIMIT = "rate_limit"
    UPSTREAM_CLIENT = "upstream_client"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    CIRCUIT_OPEN = "circuit_open"
    ALREADY_RUNNING = "already_running"
    CANCELLATION = "cancellation"
    UNKNOWN = "unknown"


class BackoffKind(StrEnum):
    """Names accepted by ``--backoff``."""

    NONE = "none"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class ExitCode(IntEnum):
    """Process exit statuses of the ``quakewatch`` command."""

    OK = 0
    FAILURE = 1
    CONFIG_ERROR = 2
    ALREADY_RUNNING = 3


class SchedulerState(StrEnum):
    """Lifecycle of an :class:`~quakewatch.orchestrator.scheduler.IntervalScheduler`."""

    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ScheduleConfig(BaseModel):
    """Immutable configuration for one scheduler run.

    Built from :class:`~quakewatch.core.settings.Settings` via
    :meth:`~quakewatch.core.settings.Settings.to_schedule_config`, with CLI
    flags applied as overrides.  When both :attr:`max_runtime_s` and
    :attr:`max_executions` are set the loop stops at whichever bound is
    reached first.
    """

    model_config = {"frozen": True}

    interval_s: float = Field(gt=0, description="Seconds between tick boundaries.")
    max_runtime_s: float | None = Field(
        None, gt=0, description="Stop after this many seconds; None = unbounded."
    )
    max_executions: int | None = Field(
        None, ge=1, description="Stop after this many executions; None = unbounded."
    )
    backoff_strategy: BackoffKind = Field(
        BackoffKind.EXPONENTIAL, description="Delay policy between retry attempts."
    )
    backoff_base_s: float = Field(5.0, ge=0, description="Base retry delay in seconds.")
    max_backoff_s: float = Field(1800.0, ge=0, description="Upper bound on any retry delay.")
    max_attempts: int = Field(4, ge=1, description="Attempts per tick, initial try included.")
    continue_on_error: bool = Field(True, description="Keep ticking after a failed tick.")
    skip_empty: bool = Field(False, description="Skip the tick after an empty result.")
    health_check_interval_s: float | None = Field(
        300.0, gt=0, description="Seconds between health checks; None disables them."
    )
    run_immediately: bool = Field(True, description="Run the first tick at start.")
    daemon: bool = Field(False, description="Detach into the background.")
    pid_file: str = Field("./quakewatch-scraper.pid", description="PID file path.")
    log_file: str = Field("./logs/interval.log", description="Daemon log file path.")
    shutdown_grace_s: float = Field(
        30.0, ge=0, description="Seconds to wait for a signalled scheduler to stop."
    )


# ---------------------------------------------------------------------------
# Task outcome
# ---------------------------------------------------------------------------


class TaskResult(BaseModel):
    """Successful outcome of a single task call.

    Attributes:
        items_produced: Number of items the task collected, or ``None`` when
            the task does not report a count.
        detail: Optional free-form note for the log.
    """

    model_config = {"frozen": True}

    items_produced: int | None = Field(None, ge=0)
    detail: str = ""


class AttemptRecord(BaseModel):
    """Outcome of one attempt inside a tick (retries are recorded individually)."""

    model_config = {"frozen": True}

    execution_id: str
    attempt: int = Field(ge=1)
    started_at: datetime
    duration_s: float = Field(ge=0)
    success: bool
    error_kind: ErrorKind | None = None
    error: str | None = None


class Execution(BaseModel):
    """Recorded outcome of one tick, including its internal retries.

    Created by the executor when the tick starts and frozen once the tick
    finishes.  The scheduler appends it to its in-memory history and
    forwards it to :class:`~quakewatch.orchestrator.metrics.ExecutionMetrics`.

    Attributes:
        id: Unique identifier (``uuid4().hex``).
        sequence: 1-based position in tick order.
        task_name: Identity of the scheduled task.
        args: Arguments the task was invoked with.
        started_at: Wall-clock start (UTC).
        finished_at: Wall-clock end (UTC).
        duration_s: Monotonic duration including backoff waits.
        success: ``True`` if the final attempt succeeded.
        error: Text of the final error, if any.
        error_kind: Classified kind of the final error, if any.
        attempts: Attempts actually used.
        items_produced: Task-reported item count, if any.
        cancelled: ``True`` when the shutdown signal interrupted the tick.
    """

    model_config = {"frozen": True}

    id: str
    sequence: int = Field(ge=1)
    task_name: str
    args: tuple[str, ...] = ()
    started_at: datetime
    finished_at: datetime
    duration_s: float = Field(ge=0)
    success: bool
    error: str | None = None
    error_kind: ErrorKind | None = None
    attempts: int = Field(ge=0)
    items_produced: int | None = None
    cancelled: bool = False

    @model_validator(mode="after")
    def _check_outcome(self) -> Execution:
        """A failed (non-cancelled) execution must carry its error kind."""
        if not self.success and not self.cancelled and self.error_kind is None:
            raise ValueError("failed execution requires error_kind")
        return self

    @property
    def produced_nothing(self) -> bool:
        """``True`` when the task explicitly reported zero items."""
        return self.success and self.items_produced == 0


# ---------------------------------------------------------------------------
# Status snapshot
# ---------------------------------------------------------------------------


class SchedulerStatus(BaseModel):
    """Point-in-time, read-only copy of the scheduler's counters.

    Derived fields are computed when the snapshot is taken, so repeated
    snapshots without an intervening tick compare equal.
    """

    model_config = {"frozen": True}

    state: SchedulerState = SchedulerState.IDLE
    started_at: datetime | None = None
    last_execution_at: datetime | None = None
    next_execution_at: datetime | None = None
    executions: int = 0
    failures: int = 0
    skipped_ticks: int = 0
    success_rate: float = 0.0
    total_runtime_s: float = 0.0
    average_runtime_s: float = 0.0
    task_name: str | None = None
    interval_s: float | None = None
    max_executions: int | None = None
    max_runtime_s: float | None = None

    @property
    def running(self) -> bool:
        """``True`` while the tick loop is active."""
        return self.state == SchedulerState.RUNNING
