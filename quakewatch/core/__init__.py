"""Core domain models, settings, logging configuration, and shared utilities."""

from quakewatch.core.exceptions import (
    AlreadyRunningError,
    CircuitOpenError,
    CommandFailedError,
    ConfigError,
    DaemonAlreadyRunningError,
    NetworkError,
    OperationCancelledError,
    PayloadValidationError,
    QuakewatchError,
    RateLimitError,
    SchedulerError,
    ShutdownTimeoutError,
    TaskError,
    TickFailedError,
    UpstreamClientError,
    UpstreamServerError,
)
from quakewatch.core.logging_config import JsonFormatter, configure_logging
from quakewatch.core.models import (
    AttemptRecord,
    BackoffKind,
    ExitCode,
    ErrorKind,
    Execution,
    ScheduleConfig,
    SchedulerState,
    SchedulerStatus,
    TaskResult,
)
from quakewatch.core.settings import Settings

__all__ = [
    # Logging
    "configure_logging",
    "JsonFormatter",
    # Domain models
    "AttemptRecord",
    "BackoffKind",
    "ExitCode",
    "ErrorKind",
    "Execution",
    "ScheduleConfig",
    "SchedulerState",
    "SchedulerStatus",
    "TaskResult",
    # Settings
    "Settings",
    # Exceptions: base
    "QuakewatchError",
    # Exceptions: config
    "ConfigError",
    # Exceptions: task
    "TaskError",
    "NetworkError",
    "UpstreamServerError",
    "UpstreamClientError",
    "RateLimitError",
    "PayloadValidationError",
    "CommandFailedError",
    # Exceptions: resilience
    "CircuitOpenError",
    "OperationCancelledError",
    # Exceptions: scheduler
    "SchedulerError",
    "AlreadyRunningError",
    "DaemonAlreadyRunningError",
    "TickFailedError",
    "ShutdownTimeoutError",
]
