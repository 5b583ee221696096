"""Scheduling, tick execution, metrics, health checks and daemon control.

Public API
----------
* :class:`~quakewatch.orchestrator.scheduler.IntervalScheduler` — fixed
  cadence tick loop with execution and runtime bounds.
* :class:`~quakewatch.orchestrator.executor.TaskExecutor` — one tick with
  classified retries and backoff (tenacity).
* :class:`~quakewatch.orchestrator.metrics.ExecutionMetrics` /
  :func:`~quakewatch.orchestrator.metrics.write_stats_file` — counters and
  the JSON stats snapshot read by ``quakewatch status``.
* :class:`~quakewatch.orchestrator.health.HealthMonitor` — advisory
  process and success-rate checks.
* :func:`~quakewatch.orchestrator.daemon.start_daemon` /
  :func:`~quakewatch.orchestrator.daemon.supervise` /
  :func:`~quakewatch.orchestrator.daemon.stop_daemon` — background
  execution with PID-file bookkeeping and signal handling.
"""

from quakewatch.orchestrator.daemon import (
    DaemonHandle,
    DaemonManager,
    ForegroundDaemonManager,
    PosixDaemonManager,
    check_not_running,
    get_daemon_manager,
    start_daemon,
    stop_daemon,
    supervise,
)
from quakewatch.orchestrator.executor import TaskExecutor
from quakewatch.orchestrator.health import HealthMonitor, HealthReport, HealthStatus
from quakewatch.orchestrator.metrics import ExecutionMetrics, write_stats_file
from quakewatch.orchestrator.scheduler import IntervalScheduler, write_heartbeat

__all__ = [
    # Tick loop
    "IntervalScheduler",
    "TaskExecutor",
    "write_heartbeat",
    # Metrics / health
    "ExecutionMetrics",
    "write_stats_file",
    "HealthMonitor",
    "HealthReport",
    "HealthStatus",
    # Daemon
    "DaemonHandle",
    "DaemonManager",
    "ForegroundDaemonManager",
    "PosixDaemonManager",
    "check_not_running",
    "get_daemon_manager",
    "start_daemon",
    "stop_daemon",
    "supervise",
]
