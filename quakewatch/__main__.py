"""QuakeWatch process entry-point.

Usage:
    python -m quakewatch run [flags] -- PROGRAM [ARGS...]
    python -m quakewatch feed [flags] [--url URL] [KEY=VALUE...]
    python -m quakewatch status [--pid-file PATH] [--stats-path PATH]
    python -m quakewatch stop [--pid-file PATH]

The scheduling logic lives in ``quakewatch.orchestrator``.  This module is
intentionally thin: it loads settings, calls ``configure_logging()``, applies
CLI flags as overrides and hands off to the scheduler (in the foreground or
as a daemon).

Durations accept a bare number of seconds or a unit suffix: ``30``,
``30s``, ``5m``, ``1h``, ``7d``.  ``0`` disables ``--max-runtime``,
``--max-executions`` and ``--health-check-interval``.

Exit codes:
    0  clean stop or bound reached
    1  tick failure with --stop-on-error, or a failed shutdown
    2  configuration error
    3  daemon already running
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import re
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from quakewatch import __version__
from quakewatch.core import configure_logging
from quakewatch.core.exceptions import (
    ConfigError,
    DaemonAlreadyRunningError,
    ShutdownTimeoutError,
)
from quakewatch.core.models import BackoffKind, ExitCode, ScheduleConfig
from quakewatch.core.settings import Settings

logger = logging.getLogger(__name__)

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$", re.IGNORECASE)
_UNIT_SECONDS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(text: str) -> float:
    """Parse ``30``, ``30s``, ``5m``, ``1h`` or ``7d`` into seconds.

    Raises:
        argparse.ArgumentTypeError: On anything else.
    """
    match = _DURATION_RE.match(text)
    if not match:
        raise argparse.ArgumentTypeError(
            f"invalid duration {text!r} (expected e.g. 30, 30s, 5m, 1h, 7d)"
        )
    value, unit = match.groups()
    return float(value) * _UNIT_SECONDS[unit.lower()]


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_schedule_flags(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("schedule")
    group.add_argument("--interval", dest="interval_s", type=parse_duration, metavar="DURATION",
                       help="Time between ticks (default: INTERVAL_S or 1h).")
    group.add_argument("--max-runtime", dest="max_runtime_s", type=parse_duration,
                       metavar="DURATION", help="Stop after this long; 0 = unbounded.")
    group.add_argument("--max-executions", type=int, metavar="N",
                       help="Stop after N executions; 0 = unbounded.")
    group.add_argument("--wait-first", dest="run_immediately", action="store_const", const=False,
                       help="Wait one interval before the first tick.")
    group.add_argument("--skip-empty", action="store_const", const=True,
                       help="Skip the tick after one that produced no items.")
    errors = group.add_mutually_exclusive_group()
    errors.add_argument("--continue-on-error", dest="continue_on_error",
                        action="store_const", const=True,
                        help="Keep ticking after a failed tick (default).")
    errors.add_argument("--stop-on-error", dest="continue_on_error",
                        action="store_const", const=False,
                        help="Stop with exit code 1 after a failed tick.")

    retry = parser.add_argument_group("retry")
    retry.add_argument("--backoff", dest="backoff_strategy",
                       choices=[k.value for k in BackoffKind],
                       help="Delay policy between attempts (default: exponential).")
    retry.add_argument("--backoff-base", dest="backoff_base_s", type=parse_duration,
                       metavar="DURATION", help="Base retry delay.")
    retry.add_argument("--max-backoff", dest="max_backoff_s", type=parse_duration,
                       metavar="DURATION", help="Retry delay cap.")
    retry.add_argument("--max-attempts", type=int, metavar="N",
                       help="Attempts per tick including the first.")

    ops = parser.add_argument_group("operation")
    ops.add_argument("--health-check-interval", dest="health_check_interval_s",
                     type=parse_duration, metavar="DURATION",
                     help="Time between health checks; 0 disables them.")
    ops.add_argument("--daemon", action="store_const", const=True,
                     help="Detach and run in the background.")
    ops.add_argument("--pid-file", metavar="PATH", help="PID file (daemon mode).")
    ops.add_argument("--log-file", metavar="PATH", help="Log file (daemon mode).")
    ops.add_argument("--shutdown-grace", dest="shutdown_grace_s", type=parse_duration,
                     metavar="DURATION", help="Time a signalled scheduler gets to stop.")


def _add_logging_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--log-level", default=None, metavar="LEVEL",
                        help="Override LOG_LEVEL env var (DEBUG|INFO|WARNING|ERROR).")
    parser.add_argument("--log-format", default=None, metavar="FORMAT",
                        help="Override LOG_FORMAT env var (text|json).")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="quakewatch",
        description="Run a data-collection task on a fixed interval.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Schedule an external command.")
    _add_schedule_flags(run)
    _add_logging_flags(run)
    run.add_argument("program", metavar="PROGRAM", help="Executable to run on every tick.")
    run.add_argument("program_args", nargs="*", metavar="ARGS",
                     help="Arguments for PROGRAM (put them after --).")

    feed = sub.add_parser("feed", help="Poll a GeoJSON earthquake feed.")
    _add_schedule_flags(feed)
    _add_logging_flags(feed)
    feed.add_argument("--url", default=None, help="Feed URL (default: FEED_URL setting).")
    feed.add_argument("program_args", nargs="*", metavar="KEY=VALUE",
                      help="Extra query parameters.")

    status = sub.add_parser("status", help="Show daemon liveness and the latest stats.")
    status.add_argument("--pid-file", metavar="PATH")
    status.add_argument("--stats-path", metavar="PATH")
    _add_logging_flags(status)

    stop = sub.add_parser("stop", help="Ask a running daemon to stop.")
    stop.add_argument("--pid-file", metavar="PATH")
    stop.add_argument("--timeout", type=parse_duration, default=None, metavar="DURATION",
                      help="How long to wait for the daemon to exit.")
    _add_logging_flags(stop)
    return parser


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

_SCHEDULE_ARGS = (
    "interval_s",
    "max_runtime_s",
    "max_executions",
    "backoff_strategy",
    "backoff_base_s",
    "max_backoff_s",
    "max_attempts",
    "continue_on_error",
    "skip_empty",
    "health_check_interval_s",
    "run_immediately",
    "daemon",
    "pid_file",
    "log_file",
    "shutdown_grace_s",
)


def _schedule_config(settings: Settings, args: argparse.Namespace) -> ScheduleConfig:
    overrides: dict[str, Any] = {name: getattr(args, name, None) for name in _SCHEDULE_ARGS}
    return settings.to_schedule_config(**overrides)


def _run_scheduled(settings: Settings, config: ScheduleConfig, task_factory: Any,
                   task_args: Sequence[str], args: argparse.Namespace) -> int:
    from quakewatch.orchestrator.daemon import start_daemon, supervise  # noqa: PLC0415
    from quakewatch.orchestrator.metrics import ExecutionMetrics  # noqa: PLC0415
    from quakewatch.orchestrator.scheduler import IntervalScheduler  # noqa: PLC0415

    scheduler = IntervalScheduler(
        config,
        metrics=ExecutionMetrics(),
        stats_path=settings.stats_path,
        heartbeat_path=settings.heartbeat_path,
    )
    task = task_factory(scheduler)

    if config.daemon:
        return start_daemon(
            scheduler,
            task,
            task_args,
            log_level=args.log_level or settings.log_level,
            log_format=args.log_format or settings.log_format,
        )
    logger.info("Running in the foreground (Ctrl+C to stop).")
    return asyncio.run(supervise(scheduler, task, task_args))


def _cmd_run(settings: Settings, args: argparse.Namespace) -> int:
    from quakewatch.tasks.command import CommandTask  # noqa: PLC0415

    config = _schedule_config(settings, args)
    task_args = list(args.program_args)
    if task_args[:1] == ["--"]:
        task_args = task_args[1:]
    return _run_scheduled(
        settings, config, lambda _scheduler: CommandTask(args.program), task_args, args
    )


def _cmd_feed(settings: Settings, args: argparse.Namespace) -> int:
    from quakewatch.resilience.circuit_breaker import CircuitBreaker  # noqa: PLC0415
    from quakewatch.resilience.http_client import GuardedHttpClient  # noqa: PLC0415
    from quakewatch.resilience.rate_limiter import RateLimiter  # noqa: PLC0415
    from quakewatch.tasks.feed import FeedPollTask  # noqa: PLC0415

    config = _schedule_config(settings, args)
    url = args.url or settings.feed_url

    def _factory(scheduler: Any) -> FeedPollTask:
        client = GuardedHttpClient(
            source="usgs",
            rate_limiter=RateLimiter(settings.rate_limit_per_minute, 60.0),
            circuit_breaker=CircuitBreaker(
                "usgs",
                failure_threshold=settings.circuit_breaker_threshold,
                open_timeout=settings.circuit_breaker_timeout_s,
                success_threshold=settings.circuit_breaker_success_threshold,
            ),
            stop_event=scheduler.stop_event,
            timeout=settings.http_timeout_s,
        )
        return FeedPollTask(client, url)

    return _run_scheduled(settings, config, _factory, list(args.program_args), args)


def _cmd_status(settings: Settings, args: argparse.Namespace) -> int:
    from quakewatch.orchestrator.daemon import is_process_alive, read_pid  # noqa: PLC0415

    pid_file = args.pid_file or settings.pid_file
    stats_path = Path(args.stats_path or settings.stats_path)
    pid = read_pid(pid_file)
    alive = pid is not None and is_process_alive(pid)

    if alive:
        print(f"quakewatch is running (PID {pid}, PID file {pid_file})")  # noqa: T201
    elif pid is not None:
        print(f"quakewatch is not running (stale PID file {pid_file}, PID {pid})")  # noqa: T201
    else:
        print("quakewatch is not running")  # noqa: T201

    try:
        snapshot = json.loads(stats_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        print(f"No stats file at {stats_path}")  # noqa: T201
    except (OSError, ValueError) as exc:
        print(f"Unreadable stats file {stats_path}: {exc}")  # noqa: T201
    else:
        status = snapshot.get("status") or {}
        metrics = snapshot.get("metrics") or {}
        print(  # noqa: T201
            f"state={status.get('state', '?')} task={status.get('task_name', '?')} "
            f"executions={metrics.get('executions', 0)} failures={metrics.get('failures', 0)} "
            f"success_rate={metrics.get('success_rate', 0.0)}% "
            f"last={metrics.get('last_execution_at') or '-'} "
            f"next={status.get('next_execution_at') or '-'}"
        )
    return ExitCode.OK if alive else ExitCode.FAILURE


def _cmd_stop(settings: Settings, args: argparse.Namespace) -> int:
    from quakewatch.orchestrator.daemon import stop_daemon  # noqa: PLC0415

    pid_file = args.pid_file or settings.pid_file
    timeout = args.timeout if args.timeout is not None else settings.shutdown_grace_s + 5.0
    try:
        stopped = stop_daemon(pid_file, timeout)
    except ShutdownTimeoutError as exc:
        print(f"quakewatch: {exc}", file=sys.stderr)  # noqa: T201
        return ExitCode.FAILURE
    if not stopped:
        print("quakewatch is not running")  # noqa: T201
        return ExitCode.FAILURE
    print("quakewatch stopped")  # noqa: T201
    return ExitCode.OK


_COMMANDS = {
    "run": _cmd_run,
    "feed": _cmd_feed,
    "status": _cmd_status,
    "stop": _cmd_stop,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry-point registered in ``pyproject.toml``."""
    args = build_parser().parse_args(argv)

    try:
        settings = Settings()
    except ValidationError as exc:
        print(f"quakewatch: configuration error: {exc}", file=sys.stderr)  # noqa: T201
        sys.exit(ExitCode.CONFIG_ERROR)

    # Configure logging before anything else so every module logs correctly.
    try:
        configure_logging(
            level=args.log_level or settings.log_level,
            fmt=args.log_format or settings.log_format,
        )
    except ValueError as exc:
        print(f"quakewatch: configuration error: {exc}", file=sys.stderr)  # noqa: T201
        sys.exit(ExitCode.CONFIG_ERROR)

    try:
        code = _COMMANDS[args.command](settings, args)
    except ConfigError as exc:
        logger.critical("Configuration error: %s", exc)
        sys.exit(ExitCode.CONFIG_ERROR)
    except DaemonAlreadyRunningError as exc:
        logger.error("%s", exc)
        sys.exit(ExitCode.ALREADY_RUNNING)
    except KeyboardInterrupt:
        logger.info("Interrupted — exiting.")
        sys.exit(ExitCode.OK)
    sys.exit(int(code))


if __name__ == "__main__":
    main()
