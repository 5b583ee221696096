"""Background (daemon) execution of a scheduler.

:func:`start_daemon` is the whole lifecycle in one call::

    check PID file ─▶ detach ─▶ write PID file ─▶ redirect logs
        ─▶ asyncio.run(supervise(...)) ─▶ remove PID file (always)

Platform handling
~~~~~~~~~~~~~~~~~
* :class:`PosixDaemonManager` performs the classic double fork: the
  launching process forks, the child calls ``setsid()`` to drop its
  controlling terminal and forks again, and the grandchild becomes the
  daemon (``umask 022``, stdin from ``/dev/null``, stdout and stderr
  ``dup2``-ed onto the log file).  The launching process learns the
  daemon's PID through a pipe, reports it, and returns.
* :class:`ForegroundDaemonManager` is used where ``fork`` is unavailable:
  it does not detach but still writes the PID file, redirects logging to
  the log file and handles termination signals.

Shutdown
~~~~~~~~
:func:`supervise` installs SIGINT, SIGTERM and SIGHUP handlers on the
running loop.  Each one calls
:meth:`~quakewatch.orchestrator.scheduler.IntervalScheduler.stop`; the
scheduler then has ``shutdown_grace_s`` seconds to wind down before its
asyncio task is cancelled and the shutdown is reported as failed.  The
handlers are removed in a ``finally`` block so they do not leak into any
subsequent :func:`asyncio.run` call.

The process working directory is left unchanged so relative task programs
and paths keep resolving; PID and log file paths are made absolute before
detaching.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from quakewatch.core import events
from quakewatch.core.exceptions import (
    DaemonAlreadyRunningError,
    ShutdownTimeoutError,
    TickFailedError,
)
from quakewatch.core.logging_config import configure_logging
from quakewatch.core.models import ExitCode
from quakewatch.orchestrator.scheduler import IntervalScheduler
from quakewatch.tasks.base import BaseTask

__all__ = [
    "DaemonHandle",
    "DaemonManager",
    "PosixDaemonManager",
    "ForegroundDaemonManager",
    "get_daemon_manager",
    "read_pid",
    "is_process_alive",
    "check_not_running",
    "write_pid_file",
    "remove_pid_file",
    "supervise",
    "start_daemon",
    "stop_daemon",
]

logger = logging.getLogger(__name__)


def _termination_signals() -> tuple[signal.Signals, ...]:
    names = ("SIGINT", "SIGTERM", "SIGHUP")
    return tuple(getattr(signal, n) for n in names if hasattr(signal, n))


# ---------------------------------------------------------------------------
# PID file helpers
# ---------------------------------------------------------------------------


def read_pid(path: str | Path) -> int | None:
    """Return the PID recorded in *path*, or ``None`` if absent or unreadable."""
    try:
        text = Path(path).read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except OSError:
        logger.warning("Could not read PID file '%s'.", path, exc_info=True)
        return None
    try:
        pid = int(text)
    except ValueError:
        logger.warning("PID file '%s' does not contain a PID: %r", path, text[:40])
        return None
    return pid if pid > 0 else None


def is_process_alive(pid: int) -> bool:
    """Probe *pid* with signal 0."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but owned by someone else.
        return True
    except OSError:
        return False
    return True


def check_not_running(pid_file: str | Path) -> None:
    """Refuse to start over a live daemon; clear a stale PID file.

    Raises:
        DaemonAlreadyRunningError: If *pid_file* names a live process.
            Nothing is written or removed in that case.
    """
    path = Path(pid_file)
    if not path.exists():
        return
    pid = read_pid(path)
    if pid is not None and pid != os.getpid() and is_process_alive(pid):
        raise DaemonAlreadyRunningError(pid, str(path))
    logger.info("Removing stale PID file '%s' (PID %s).", path, pid)
    remove_pid_file(path)


def write_pid_file(path: str | Path, pid: int | None = None) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{pid or os.getpid()}\n", encoding="utf-8")


def remove_pid_file(path: str | Path) -> None:
    """Delete *path*; a missing file is not an error."""
    try:
        Path(path).unlink()
    except FileNotFoundError:
        pass
    except OSError:
        logger.warning("Failed to remove PID file '%s'.", path, exc_info=True)


# ---------------------------------------------------------------------------
# Managers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DaemonHandle:
    """A started daemon.

    The launching process gets one without a stop event.  Inside the daemon
    the handle carries the scheduler's stop event, which the signal
    handlers set through :meth:`IntervalScheduler.stop`.
    """

    pid: int
    pid_file: str
    log_file: str
    stop_event: asyncio.Event | None = None


class DaemonManager(ABC):
    """Platform strategy for detaching and redirecting output.

    Args:
        pid_file: PID file path (made absolute).
        log_file: Log file path (made absolute).
    """

    def __init__(self, pid_file: str | Path, log_file: str | Path) -> None:
        self.pid_file = str(Path(pid_file).resolve())
        self.log_file = str(Path(log_file).resolve())

    @abstractmethod
    def detach(self) -> DaemonHandle | None:
        """Leave the foreground.

        Returns:
            A :class:`DaemonHandle` in the launching process, ``None`` in
            the process that must go on to run the scheduler.
        """

    def redirect_logs(self, level: str | None = None, fmt: str | None = None) -> None:
        """Send all logging to :attr:`log_file`."""
        configure_logging(level, fmt, log_file=self.log_file, force=True)


class PosixDaemonManager(DaemonManager):
    """Double-fork detachment for POSIX systems."""

    def detach(self) -> DaemonHandle | None:
        read_fd, write_fd = os.pipe()
        pid = os.fork()
        if pid > 0:
            # Launching process: reap the intermediate child, learn the daemon PID.
            os.close(write_fd)
            os.waitpid(pid, 0)
            with os.fdopen(read_fd, "rb") as pipe:
                data = pipe.read().strip()
            return DaemonHandle(int(data) if data else -1, self.pid_file, self.log_file)

        os.close(read_fd)
        os.setsid()
        if os.fork() > 0:
            os._exit(0)

        os.umask(0o022)
        os.write(write_fd, str(os.getpid()).encode())
        os.close(write_fd)
        self._redirect_stdio()
        return None

    def _redirect_stdio(self) -> None:
        Path(self.log_file).parent.mkdir(parents=True, exist_ok=True)
        devnull = os.open(os.devnull, os.O_RDONLY)
        log_fd = os.open(self.log_file, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
        os.dup2(devnull, 0)
        os.dup2(log_fd, 1)
        os.dup2(log_fd, 2)
        os.close(devnull)
        os.close(log_fd)


class ForegroundDaemonManager(DaemonManager):
    """No detachment; PID file, log redirection and signals still apply."""

    def detach(self) -> DaemonHandle | None:
        logger.info("Detaching is not supported on this platform; running in the foreground.")
        return None


def get_daemon_manager(pid_file: str | Path, log_file: str | Path) -> DaemonManager:
    """Pick the manager for the current platform."""
    if os.name == "posix" and hasattr(os, "fork"):
        return PosixDaemonManager(pid_file, log_file)
    return ForegroundDaemonManager(pid_file, log_file)


# ---------------------------------------------------------------------------
# Supervision
# ---------------------------------------------------------------------------


async def supervise(
    scheduler: IntervalScheduler,
    task: BaseTask,
    args: Sequence[str] = (),
    *,
    grace_s: float | None = None,
    signals: Sequence[signal.Signals] | None = None,
) -> ExitCode:
    """Run *scheduler* until it finishes, stopping it on termination signals.

    The task is closed once the scheduler has finished.

    Args:
        scheduler: Scheduler to run.
        task: Task passed to :meth:`IntervalScheduler.start`.
        args: Arguments for every tick.
        grace_s: Seconds a signalled scheduler gets to stop; defaults to
            ``scheduler.config.shutdown_grace_s``.
        signals: Signals to handle; defaults to SIGINT, SIGTERM and SIGHUP.

    Returns:
        :attr:`ExitCode.OK` on a clean stop or reached bound,
        :attr:`ExitCode.FAILURE` on a terminal tick failure or a shutdown
        that overran the grace period.
    """
    loop = asyncio.get_running_loop()
    grace = scheduler.config.shutdown_grace_s if grace_s is None else grace_s
    handled = tuple(signals) if signals is not None else _termination_signals()
    received: list[str] = []

    def _on_signal(sig: signal.Signals) -> None:
        # Idempotent: log once, stop() itself is a no-op when repeated.
        if not received:
            received.append(sig.name)
            logger.info(
                "Received %s — graceful shutdown requested.",
                sig.name,
                extra={"event": events.DAEMON_SIGNAL},
            )
        scheduler.stop()

    installed: list[signal.Signals] = []
    previous: dict[signal.Signals, object] = {}
    for sig in handled:
        try:
            loop.add_signal_handler(sig, _on_signal, sig)
            installed.append(sig)
        except NotImplementedError:
            # Event loops without signal support (Windows): plain handler.
            previous[sig] = signal.signal(
                sig, lambda signum, _frame: loop.call_soon_threadsafe(_on_signal, signal.Signals(signum))
            )

    run_task = asyncio.create_task(scheduler.start(task, args), name="quakewatch-scheduler")
    stop_wait = asyncio.create_task(scheduler.stop_event.wait(), name="quakewatch-stop-wait")
    try:
        done, _ = await asyncio.wait({run_task, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        if run_task not in done:
            done, _ = await asyncio.wait({run_task}, timeout=grace)
            if run_task not in done:
                logger.error("%s — cancelling.", ShutdownTimeoutError(grace))
                run_task.cancel()
                await asyncio.gather(run_task, return_exceptions=True)
                return ExitCode.FAILURE
        try:
            run_task.result()
        except TickFailedError as exc:
            logger.error("Stopping: %s", exc)
            return ExitCode.FAILURE
        if received:
            logger.info("Graceful shutdown complete (signal: %s).", received[0])
        return ExitCode.OK
    finally:
        stop_wait.cancel()
        await asyncio.gather(stop_wait, return_exceptions=True)
        if not run_task.done():
            run_task.cancel()
            await asyncio.gather(run_task, return_exceptions=True)
        await task.close()
        for sig in installed:
            with contextlib.suppress(Exception):
                loop.remove_signal_handler(sig)
        for sig, handler in previous.items():
            signal.signal(sig, handler)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def start_daemon(
    scheduler: IntervalScheduler,
    task: BaseTask,
    args: Sequence[str] = (),
    *,
    manager: DaemonManager | None = None,
    log_level: str | None = None,
    log_format: str | None = None,
) -> int:
    """Run *scheduler* in the background with PID-file bookkeeping.

    Returns in **both** the launching process (``0`` once the daemon has
    been spawned) and the daemon itself (its final exit code), so the
    caller can pass the result straight to :func:`sys.exit`.

    Raises:
        DaemonAlreadyRunningError: The PID file names a live process.
    """
    cfg = scheduler.config
    manager = manager or get_daemon_manager(cfg.pid_file, cfg.log_file)
    check_not_running(manager.pid_file)

    handle = manager.detach()
    if handle is not None:
        logger.info(
            "Daemon started with PID %d (PID file %s, log %s).",
            handle.pid,
            handle.pid_file,
            handle.log_file,
        )
        return ExitCode.OK

    daemon = DaemonHandle(os.getpid(), manager.pid_file, manager.log_file, scheduler.stop_event)
    try:
        write_pid_file(daemon.pid_file, daemon.pid)
        manager.redirect_logs(log_level, log_format)
        logger.info(
            "Daemon running with PID %d.",
            daemon.pid,
            extra={"event": events.DAEMON_START},
        )
        return asyncio.run(supervise(scheduler, task, args))
    finally:
        remove_pid_file(daemon.pid_file)
        logger.info("Daemon exiting; PID file removed.", extra={"event": events.DAEMON_STOP})


def stop_daemon(
    pid_file: str | Path,
    timeout: float = 30.0,
    *,
    poll_s: float = 0.2,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Send SIGTERM to the daemon named in *pid_file* and wait for it to exit.

    Returns:
        ``True`` if a daemon was signalled and exited, ``False`` if none was
        running (a stale PID file is removed).

    Raises:
        ShutdownTimeoutError: The daemon is still alive after *timeout*.
    """
    pid = read_pid(pid_file)
    if pid is None or not is_process_alive(pid):
        if Path(pid_file).exists():
            logger.info("Removing stale PID file '%s'.", pid_file)
            remove_pid_file(pid_file)
        return False

    logger.info("Sending SIGTERM to daemon PID %d.", pid)
    os.kill(pid, signal.SIGTERM)
    deadline = clock() + timeout
    while clock() < deadline:
        if not Path(pid_file).exists() or not is_process_alive(pid):
            return True
        sleep(poll_s)
    raise ShutdownTimeoutError(timeout)
