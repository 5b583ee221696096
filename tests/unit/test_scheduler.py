"""Unit tests for IntervalScheduler: cadence, bounds, stop and status.

Most tests use a fake monotonic clock plus a waiter that advances it, so
they run instantly while exercising real tick-boundary arithmetic.  A few
run on the real clock with short intervals.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any

import pytest

from quakewatch.core import events
from quakewatch.core.exceptions import (
    AlreadyRunningError,
    OperationCancelledError,
    TickFailedError,
)
from quakewatch.core.models import ErrorKind, ScheduleConfig, SchedulerState, TaskResult
from quakewatch.orchestrator.health import HealthMonitor, HealthStatus, HealthThresholds
from quakewatch.orchestrator.metrics import ExecutionMetrics
from quakewatch.orchestrator.scheduler import IntervalScheduler, write_heartbeat
from quakewatch.tasks import FunctionTask


class _FakeTime:
    """Monotonic clock and matching inter-tick waiter."""

    def __init__(self) -> None:
        self.now = 0.0
        self.waits: list[float] = []

    def clock(self) -> float:
        return self.now

    async def waiter(self, stop_event: asyncio.Event, timeout: float | None) -> bool:
        if stop_event.is_set():
            return True
        self.waits.append(timeout or 0.0)
        self.now += timeout or 0.0
        return stop_event.is_set()


def _config(**overrides: Any) -> ScheduleConfig:
    values: dict[str, Any] = {
        "interval_s": 60.0,
        "max_executions": 3,
        "max_runtime_s": None,
        "health_check_interval_s": None,
        "backoff_base_s": 0.0,
        "max_attempts": 2,
    }
    values.update(overrides)
    return ScheduleConfig(**values)


def _scheduler(fake: _FakeTime, config: ScheduleConfig, **kwargs: Any) -> IntervalScheduler:
    return IntervalScheduler(config, clock=fake.clock, waiter=fake.waiter, **kwargs)


def _recording_task(fake: _FakeTime, result: Any = 1) -> tuple[FunctionTask, list[float]]:
    starts: list[float] = []

    def run(args: tuple[str, ...]) -> Any:
        starts.append(fake.now)
        return result

    return FunctionTask(run, name="collect"), starts


class TestCadence:
    @pytest.mark.asyncio
    async def test_runs_max_executions_on_interval(self) -> None:
        fake = _FakeTime()
        task, starts = _recording_task(fake)
        scheduler = _scheduler(fake, _config())
        await scheduler.start(task, ["--region", "ca"])

        assert starts == [0.0, 60.0, 120.0]
        assert len(scheduler.executions) == 3
        assert all(e.args == ("--region", "ca") for e in scheduler.executions)
        assert [e.sequence for e in scheduler.executions] == [1, 2, 3]
        assert scheduler.status().state == SchedulerState.STOPPED

    @pytest.mark.asyncio
    async def test_wait_first(self) -> None:
        fake = _FakeTime()
        task, starts = _recording_task(fake)
        await _scheduler(fake, _config(run_immediately=False, max_executions=2)).start(task)
        assert starts == [60.0, 120.0]

    @pytest.mark.asyncio
    async def test_overrun_runs_latest_boundary_and_drops_the_rest(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        fake = _FakeTime()
        starts: list[float] = []

        def slow(args: tuple[str, ...]) -> int:
            starts.append(fake.now)
            fake.now += 150.0
            return 1

        with caplog.at_level(logging.WARNING, logger="quakewatch.orchestrator.scheduler"):
            await _scheduler(fake, _config(max_executions=2)).start(FunctionTask(slow))

        assert starts == [0.0, 150.0]
        assert any("Dropped 1 missed" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_slightly_late_tick_is_not_dropped(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        fake = _FakeTime()
        starts: list[float] = []

        def just_over(args: tuple[str, ...]) -> int:
            starts.append(fake.now)
            fake.now += 61.0
            return 1

        with caplog.at_level(logging.WARNING, logger="quakewatch.orchestrator.scheduler"):
            await _scheduler(fake, _config(max_executions=2)).start(FunctionTask(just_over))

        assert starts == [0.0, 61.0]
        assert not any("Dropped" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_max_runtime_cuts_the_wait_short(self) -> None:
        fake = _FakeTime()
        task, starts = _recording_task(fake)
        scheduler = _scheduler(fake, _config(max_executions=None, max_runtime_s=150.0))
        await scheduler.start(task)

        assert starts == [0.0, 60.0, 120.0]
        assert fake.now == pytest.approx(150.0)

    @pytest.mark.asyncio
    async def test_skip_empty_skips_one_tick(self, caplog: pytest.LogCaptureFixture) -> None:
        fake = _FakeTime()
        task, starts = _recording_task(fake, result=0)
        scheduler = _scheduler(fake, _config(skip_empty=True))
        with caplog.at_level(logging.INFO, logger="quakewatch.orchestrator.scheduler"):
            await scheduler.start(task)

        assert starts == [0.0, 120.0, 240.0]
        assert scheduler.status().skipped_ticks == 2
        assert any(getattr(r, "event", None) == events.TICK_SKIPPED for r in caplog.records)

    @pytest.mark.asyncio
    async def test_unknown_count_never_skips(self) -> None:
        fake = _FakeTime()
        task, starts = _recording_task(fake, result=None)
        await _scheduler(fake, _config(skip_empty=True)).start(task)
        assert starts == [0.0, 60.0, 120.0]


class TestErrors:
    @pytest.mark.asyncio
    async def test_continue_on_error_keeps_ticking(self) -> None:
        fake = _FakeTime()

        def broken(args: tuple[str, ...]) -> None:
            raise ValueError("bad payload")

        scheduler = _scheduler(fake, _config())
        await scheduler.start(FunctionTask(broken))

        status = scheduler.status()
        assert status.executions == 3
        assert status.failures == 3
        assert status.success_rate == 0.0

    @pytest.mark.asyncio
    async def test_stop_on_error_raises_tick_failed(self) -> None:
        fake = _FakeTime()

        def broken(args: tuple[str, ...]) -> None:
            raise ValueError("bad payload")

        scheduler = _scheduler(fake, _config(continue_on_error=False))
        with pytest.raises(TickFailedError) as excinfo:
            await scheduler.start(FunctionTask(broken))

        assert excinfo.value.error_kind == ErrorKind.VALIDATION
        assert excinfo.value.execution.attempts == 1
        assert len(scheduler.executions) == 1
        assert scheduler.status().state == SchedulerState.STOPPED


class TestStopAndStatus:
    @pytest.mark.asyncio
    async def test_stop_during_tick_finishes_it_and_exits(self) -> None:
        fake = _FakeTime()
        scheduler = _scheduler(fake, _config(max_executions=None))

        def stop_after_first(args: tuple[str, ...]) -> int:
            scheduler.stop()
            scheduler.stop()
            return 5

        await scheduler.start(FunctionTask(stop_after_first))
        status = scheduler.status()
        assert status.executions == 1
        assert status.state == SchedulerState.STOPPED
        assert scheduler.executions[0].success is True

    @pytest.mark.asyncio
    async def test_stop_while_waiting(self) -> None:
        config = _config(max_executions=None, interval_s=3600.0)
        scheduler = IntervalScheduler(config)
        task = FunctionTask(lambda args: 1, name="collect")
        running = asyncio.create_task(scheduler.start(task))
        while scheduler.status().executions < 1:
            await asyncio.sleep(0)
        assert scheduler.status().next_execution_at is not None
        scheduler.stop()
        await asyncio.wait_for(running, timeout=5.0)
        assert scheduler.status().executions == 1

    def test_stop_before_start_is_noop(self) -> None:
        scheduler = IntervalScheduler(_config())
        scheduler.stop()
        assert scheduler.status().state == SchedulerState.IDLE
        assert not scheduler.stop_event.is_set()

    @pytest.mark.asyncio
    async def test_cannot_restart(self) -> None:
        fake = _FakeTime()
        task, _ = _recording_task(fake)
        scheduler = _scheduler(fake, _config(max_executions=1))
        await scheduler.start(task)
        with pytest.raises(AlreadyRunningError):
            await scheduler.start(task)

    @pytest.mark.asyncio
    async def test_status_is_a_stable_snapshot(self) -> None:
        fake = _FakeTime()
        task, _ = _recording_task(fake)
        scheduler = _scheduler(fake, _config(max_executions=2))
        assert scheduler.status().state == SchedulerState.IDLE
        await scheduler.start(task)

        first, second = scheduler.status(), scheduler.status()
        assert first == second
        assert first.executions == 2
        assert first.task_name == "collect"
        assert first.interval_s == 60.0
        assert first.next_execution_at is None

    @pytest.mark.asyncio
    async def test_cancelled_tick_not_counted(self) -> None:
        fake = _FakeTime()
        scheduler = _scheduler(fake, _config(max_executions=None))

        async def interrupted(args: tuple[str, ...]) -> TaskResult:
            scheduler.stop()
            raise OperationCancelledError("rate limiter wait interrupted")

        await scheduler.start(FunctionTask(interrupted))
        status = scheduler.status()
        assert status.executions == 0
        assert status.failures == 0
        assert scheduler.executions[0].cancelled is True


class TestFiles:
    @pytest.mark.asyncio
    async def test_stats_and_heartbeat_written(self, tmp_path: Path) -> None:
        fake = _FakeTime()
        task, _ = _recording_task(fake, result=4)
        stats = tmp_path / "stats.json"
        heartbeat = tmp_path / "heartbeat"
        metrics = ExecutionMetrics()
        scheduler = _scheduler(
            fake, _config(max_executions=2), metrics=metrics,
            stats_path=stats, heartbeat_path=heartbeat,
        )
        await scheduler.start(task)

        payload = json.loads(stats.read_text())
        assert payload["status"]["state"] == "stopped"
        assert payload["metrics"]["executions"] == 2
        assert payload["metrics"]["items_produced"] == 8
        assert float(heartbeat.read_text()) > 0

    def test_heartbeat_write_failure_is_swallowed(self, tmp_path: Path) -> None:
        write_heartbeat(tmp_path / "missing" / "heartbeat")


class TestRealClock:
    @pytest.mark.asyncio
    async def test_first_tick_runs_immediately(self, caplog: pytest.LogCaptureFixture) -> None:
        origin = time.monotonic()
        starts: list[float] = []

        def collect(args: tuple[str, ...]) -> int:
            starts.append(time.monotonic() - origin)
            return 1

        scheduler = IntervalScheduler(_config(interval_s=2.0, max_executions=1))
        with caplog.at_level(logging.WARNING, logger="quakewatch.orchestrator.scheduler"):
            await scheduler.start(FunctionTask(collect))

        assert starts[0] < 0.5
        assert not any("Dropped" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_ticks_follow_the_interval(self) -> None:
        origin = time.monotonic()
        starts: list[float] = []

        def collect(args: tuple[str, ...]) -> int:
            starts.append(time.monotonic() - origin)
            return 1

        await IntervalScheduler(_config(interval_s=0.2, max_executions=3)).start(
            FunctionTask(collect)
        )

        assert len(starts) == 3
        assert starts[0] < 0.1
        assert starts[1] == pytest.approx(0.2, abs=0.1)
        assert starts[2] == pytest.approx(0.4, abs=0.1)


class TestHealthDuringTicks:
    @staticmethod
    def _health_records(caplog: pytest.LogCaptureFixture) -> list[logging.LogRecord]:
        return [r for r in caplog.records if getattr(r, "event", None) == events.HEALTH_WARNING]

    @pytest.mark.asyncio
    async def test_critical_report_only_logs(self, caplog: pytest.LogCaptureFixture) -> None:
        metrics = ExecutionMetrics()
        # Any running loop has more than zero tasks, so every check is critical.
        monitor = HealthMonitor(metrics, 0.05, HealthThresholds(max_asyncio_tasks=0))

        async def slow(args: tuple[str, ...]) -> int:
            await asyncio.sleep(0.3)
            return 2

        scheduler = IntervalScheduler(
            _config(interval_s=0.1, max_executions=2), metrics=metrics, health_monitor=monitor
        )
        with caplog.at_level(logging.WARNING, logger="quakewatch.orchestrator.health"):
            await scheduler.start(FunctionTask(slow))

        assert scheduler.status().executions == 2
        assert scheduler.status().failures == 0
        assert scheduler.status().state == SchedulerState.STOPPED
        assert monitor.last_report is not None
        assert monitor.last_report.status == HealthStatus.CRITICAL
        assert len(self._health_records(caplog)) >= 2

    @pytest.mark.asyncio
    async def test_blocking_sync_task_does_not_stall_health_checks(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        metrics = ExecutionMetrics()
        monitor = HealthMonitor(metrics, 0.05, HealthThresholds(max_asyncio_tasks=0))

        def blocking(args: tuple[str, ...]) -> int:
            time.sleep(0.6)
            return 1

        scheduler = IntervalScheduler(
            _config(interval_s=1.0, max_executions=1), metrics=metrics, health_monitor=monitor
        )
        with caplog.at_level(logging.WARNING, logger="quakewatch.orchestrator.health"):
            await scheduler.start(FunctionTask(blocking))

        stamps = [r.created for r in self._health_records(caplog)]
        assert len(stamps) >= 5
        assert max(b - a for a, b in zip(stamps, stamps[1:])) < 0.3
