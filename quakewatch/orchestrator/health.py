"""Advisory health monitoring for long-running schedules.

:class:`HealthMonitor` runs as its own asyncio task next to the tick loop,
on its own cadence.  Each check samples the process with :mod:`psutil`
(RSS, CPU, threads, open descriptors), counts live asyncio tasks and looks
at the execution metrics.  Findings are logged; nothing here ever stops the
scheduler.

Checks
~~~~~~
* RSS above ``max_rss_mb`` (default 1000 MB) — *critical*.
* More than ``max_asyncio_tasks`` live asyncio tasks (default 1000), a
  likely task leak — *critical*.
* Success rate below ``min_success_rate`` % once more than
  ``min_executions`` executions were recorded — *degraded*.
* No execution within ``stale_after_s`` (default 30 min) — *degraded*.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import psutil

from quakewatch.core import events
from quakewatch.orchestrator.metrics import ExecutionMetrics
from quakewatch.resilience.cancellation import wait_for_stop

__all__ = ["HealthStatus", "HealthThresholds", "HealthReport", "HealthMonitor"]

logger = logging.getLogger(__name__)


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


@dataclass(frozen=True)
class HealthThresholds:
    max_rss_mb: float = 1000.0
    max_asyncio_tasks: int = 1000
    min_success_rate: float = 80.0
    min_executions: int = 10
    stale_after_s: float = 1800.0


@dataclass(frozen=True)
class HealthReport:
    """Result of one health check.

    Attributes:
        status: Worst severity found.
        issues: Human-readable findings, empty when healthy.
        resources: Process snapshot (``rss_mb``, ``cpu_percent``,
            ``threads``, ``open_fds``, ``asyncio_tasks``); keys are absent
            when a reading is unavailable on this platform.
        checked_at: When the check ran (UTC).
    """

    status: HealthStatus
    issues: tuple[str, ...] = ()
    resources: dict[str, Any] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


class HealthMonitor:
    """Periodic advisory health checks.

    Args:
        metrics: Execution recorder inspected for success rate and staleness.
        interval_s: Seconds between checks.
        thresholds: Limits that turn a reading into an issue.
        process: :class:`psutil.Process` to sample; defaults to this process.
        now: UTC clock; override in tests.
    """

    def __init__(
        self,
        metrics: ExecutionMetrics,
        interval_s: float = 300.0,
        thresholds: HealthThresholds | None = None,
        *,
        process: psutil.Process | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        if interval_s <= 0:
            raise ValueError(f"interval_s must be > 0, got {interval_s!r}")
        self._metrics = metrics
        self.interval_s = interval_s
        self.thresholds = thresholds or HealthThresholds()
        self._process = process or psutil.Process(os.getpid())
        self._now = now or (lambda: datetime.now(UTC))
        self.last_report: HealthReport | None = None

    def resource_snapshot(self) -> dict[str, Any]:
        """Sample the process.  Readings psutil cannot take are omitted."""
        snapshot: dict[str, Any] = {}
        try:
            with self._process.oneshot():
                snapshot["rss_mb"] = round(self._process.memory_info().rss / (1024 * 1024), 1)
                snapshot["cpu_percent"] = self._process.cpu_percent(interval=None)
                snapshot["threads"] = self._process.num_threads()
                if hasattr(self._process, "num_fds"):
                    snapshot["open_fds"] = self._process.num_fds()
        except psutil.Error as exc:
            logger.debug("Failed to sample process resources: %s", exc)
        try:
            snapshot["asyncio_tasks"] = len(asyncio.all_tasks())
        except RuntimeError:
            # No running loop (check called synchronously).
            pass
        return snapshot

    def check(self) -> HealthReport:
        """Run every check once and return the report (no logging)."""
        t = self.thresholds
        resources = self.resource_snapshot()
        critical: list[str] = []
        degraded: list[str] = []

        rss = resources.get("rss_mb")
        if rss is not None and rss > t.max_rss_mb:
            critical.append(f"High memory usage: {rss:.0f} MB > {t.max_rss_mb:.0f} MB")

        tasks = resources.get("asyncio_tasks")
        if tasks is not None and tasks > t.max_asyncio_tasks:
            critical.append(f"High asyncio task count: {tasks} — potential leak")

        executions = self._metrics.executions
        rate = self._metrics.success_rate
        if executions > t.min_executions and rate < t.min_success_rate:
            degraded.append(f"Low success rate: {rate:.1f}% over {executions} executions")

        last = self._metrics.last_execution_at
        if last is not None:
            idle = (self._now() - last).total_seconds()
            if idle > t.stale_after_s:
                degraded.append(f"No execution for {idle / 60:.0f} min")

        if critical:
            status = HealthStatus.CRITICAL
        elif degraded:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY
        report = HealthReport(
            status=status,
            issues=tuple(critical + degraded),
            resources=resources,
            checked_at=self._now(),
        )
        self.last_report = report
        return report

    def check_and_log(self) -> HealthReport:
        report = self.check()
        if report.healthy:
            logger.debug(
                "Health check passed %s",
                report.resources,
                extra={"event": events.HEALTH_OK},
            )
        else:
            logger.warning(
                "Health %s: %s",
                report.status,
                "; ".join(report.issues),
                extra={"event": events.HEALTH_WARNING, "resources": report.resources},
            )
        return report

    async def run(self, stop_event: asyncio.Event) -> None:
        """Check every :attr:`interval_s` until *stop_event* fires."""
        logger.info("Health monitor started (every %.0f s).", self.interval_s)
        while not await wait_for_stop(stop_event, self.interval_s):
            self.check_and_log()
        logger.debug("Health monitor stopped.")
