"""QuakeWatch exception taxonomy.

Every custom exception inherits from :class:`QuakewatchError`.  Exceptions
are organised by architectural layer so callers can catch at the right
granularity:

    Layer hierarchy
    ---------------
    QuakewatchError
    ├── ConfigError
    ├── TaskError
    │   ├── NetworkError
    │   ├── UpstreamServerError
    │   ├── UpstreamClientError
    │   ├── RateLimitError
    │   ├── PayloadValidationError
    │   └── CommandFailedError
    ├── CircuitOpenError
    ├── OperationCancelledError
    └── SchedulerError
        ├── AlreadyRunningError
        │   └── DaemonAlreadyRunningError
        ├── TickFailedError
        └── ShutdownTimeoutError

Exceptions that can surface from a scheduled task carry a ``kind`` class
attribute (an :class:`~quakewatch.core.models.ErrorKind`
value) so the classifier can tag them without a type switch.

Usage:

    from quakewatch.core.exceptions import NetworkError

    raise NetworkError("usgs", "Connection reset by peer") from exc
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from quakewatch.core.models import Execution

__all__ = [
    "QuakewatchError",
    # Config
    "ConfigError",
    # Task
    "TaskError",
    "NetworkError",
    "UpstreamServerError",
    "UpstreamClientError",
    "RateLimitError",
    "PayloadValidationError",
    "CommandFailedError",
    # Resilience
    "CircuitOpenError",
    "OperationCancelledError",
    # Scheduler / daemon
    "SchedulerError",
    "AlreadyRunningError",
    "DaemonAlreadyRunningError",
    "TickFailedError",
    "ShutdownTimeoutError",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class QuakewatchError(Exception):
    """Root exception for all QuakeWatch errors.

    Catch this to handle any application-level error uniformly.  Prefer
    catching layer-specific subclasses wherever possible.

    Attributes:
        kind: Error-kind label used by the retry classifier.  ``None`` on
            exceptions that never cross the task call boundary.
    """

    kind: ClassVar[str | None] = None


# ---------------------------------------------------------------------------
# Config layer
# ---------------------------------------------------------------------------


class ConfigError(QuakewatchError):
    """Raised when the configuration is invalid or incomplete.

    Examples:
        - ``interval`` is zero or negative.
        - An unknown backoff strategy name is selected.
    """

    kind = "configuration"


# ---------------------------------------------------------------------------
# Task layer
# ---------------------------------------------------------------------------


class TaskError(QuakewatchError):
    """Base class for failures raised by a scheduled task.

    Args:
        source: Short name of the task or upstream (e.g. ``"usgs"``).
        message: Human-readable error description.
    """

    kind = "unknown"

    def __init__(self, source: str, message: str) -> None:
        self.source = source
        super().__init__(f"[{source}] {message}")


class NetworkError(TaskError):
    """Connection reset, DNS failure, read timeout and similar transport faults."""

    kind = "network"


class UpstreamServerError(TaskError):
    """The upstream answered with a 5xx-equivalent transient failure.

    Args:
        source: Upstream label.
        message: Human-readable error description.
        status_code: HTTP status code, if the upstream speaks HTTP.
    """

    kind = "upstream_server"

    def __init__(self, source: str, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(source, message)


class UpstreamClientError(TaskError):
    """The upstream rejected the request (4xx-equivalent); retrying will not help.

    Args:
        source: Upstream label.
        message: Human-readable error description.
        status_code: HTTP status code, if the upstream speaks HTTP.
    """

    kind = "upstream_client"

    def __init__(self, source: str, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(source, message)


class RateLimitError(TaskError):
    """Raised when the upstream signals that a quota was exceeded (HTTP 429).

    Callers should back off and retry after a suitable delay.

    Args:
        source: Upstream label.
        retry_after: Recommended back-off interval in seconds, if known.
    """

    kind = "rate_limit"

    def __init__(self, source: str, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        detail = f"retry after {retry_after}s" if retry_after is not None else "no retry hint"
        super().__init__(source, f"Rate limited — {detail}")


class PayloadValidationError(TaskError):
    """Raised when an upstream payload is malformed or fails schema checks."""

    kind = "validation"


class CommandFailedError(TaskError):
    """Raised when an external command exits with a non-zero status.

    Exit status ``2`` follows the common command-line convention for usage
    errors and is classified as a configuration failure (not retried).
    Every other status is classified as ``unknown`` and retried.

    Args:
        source: Program name.
        returncode: Process exit status.
        stderr_tail: Last few lines of the command's standard error.
    """

    kind = "unknown"

    def __init__(self, source: str, returncode: int, stderr_tail: str = "") -> None:
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        if returncode == 2:
            self.kind = "configuration"  # type: ignore[misc]
        detail = f": {stderr_tail}" if stderr_tail else ""
        super().__init__(source, f"Command exited with status {returncode}{detail}")


# ---------------------------------------------------------------------------
# Resilience layer
# ---------------------------------------------------------------------------


class CircuitOpenError(QuakewatchError):
    """Raised instead of calling a dependency whose circuit is OPEN.

    No call is attempted when this is raised.

    Args:
        name: Name of the guarded resource.
        retry_in: Seconds until the circuit will allow a probe, if known.
    """

    kind = "circuit_open"

    def __init__(self, name: str, retry_in: float | None = None) -> None:
        self.name = name
        self.retry_in = retry_in
        detail = f" (probe in {retry_in:.0f} s)" if retry_in is not None else ""
        super().__init__(f"Circuit open for {name!r}{detail}")


class OperationCancelledError(QuakewatchError):
    """Raised when a pending wait is interrupted by the shutdown signal.

    Never treated as a task failure.
    """

    kind = "cancellation"


# ---------------------------------------------------------------------------
# Scheduler / daemon layer
# ---------------------------------------------------------------------------


class SchedulerError(QuakewatchError):
    """Raised for errors originating in the scheduling or daemon layer."""


class AlreadyRunningError(SchedulerError):
    """Raised when a scheduler (or daemon) is started while already running."""

    kind = "already_running"


class DaemonAlreadyRunningError(AlreadyRunningError):
    """Raised when the PID file names a live process.

    Args:
        pid: Process ID found in the PID file.
        pid_file: Path of the PID file.
    """

    def __init__(self, pid: int, pid_file: str) -> None:
        self.pid = pid
        self.pid_file = pid_file
        super().__init__(f"Daemon is already running (PID {pid}, PID file {pid_file})")


class TickFailedError(SchedulerError):
    """Terminal error: a tick failed while ``continue_on_error`` is disabled.

    Args:
        execution: The failed :class:`~quakewatch.core.models.Execution`.
    """

    def __init__(self, execution: Execution) -> None:
        self.execution = execution
        self.error_kind = execution.error_kind
        super().__init__(
            f"Execution #{execution.sequence} failed after {execution.attempts} "
            f"attempt(s) [{execution.error_kind}]: {execution.error}"
        )


class ShutdownTimeoutError(SchedulerError):
    """Raised when the scheduler does not stop within the grace period.

    Args:
        grace_s: Grace period that elapsed, in seconds.
    """

    def __init__(self, grace_s: float) -> None:
        self.grace_s = grace_s
        super().__init__(f"Scheduler did not stop within {grace_s:.0f} s grace period")
