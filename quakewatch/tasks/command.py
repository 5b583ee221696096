"""Run an external program as a scheduled task.

The program is launched with :func:`asyncio.create_subprocess_exec` (never
through a shell).  Its standard output and error are forwarded to the log
line by line.  A line matching :data:`ITEMS_PATTERN` (``items_produced=<n>``
by default) reports how many items the run collected; the last match wins.

Exit status ``0`` is success.  Any other status raises
:class:`~quakewatch.core.exceptions.CommandFailedError`; status ``2`` (usage
error) is classified as configuration and not retried.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from collections import deque
from collections.abc import AsyncIterator, Sequence
from typing import Final

from quakewatch.core.exceptions import CommandFailedError, ConfigError
from quakewatch.core.models import TaskResult
from quakewatch.tasks.base import BaseTask

__all__ = ["CommandTask", "ITEMS_PATTERN"]

logger = logging.getLogger(__name__)

#: Default pattern for the item-count line on standard output.
ITEMS_PATTERN: Final[str] = r"\bitems_produced=(\d+)\b"

#: Number of stderr lines kept for the failure message.
_STDERR_TAIL_LINES: Final[int] = 5

#: Bytes requested per read from the child's pipes.
_READ_CHUNK: Final[int] = 64 * 1024

#: Longer output without a newline is split into pieces of this size.
_MAX_LINE_BYTES: Final[int] = 1024 * 1024

#: Characters of each output line copied into the log.
_LOG_LINE_CHARS: Final[int] = 2000


class CommandTask(BaseTask):
    """Schedule ``program *args`` as a subprocess.

    Args:
        program: Executable name or path.
        items_pattern: Regex with one group capturing the item count.
        env: Optional environment for the child; inherits when ``None``.
        cwd: Optional working directory for the child.
    """

    def __init__(
        self,
        program: str,
        *,
        items_pattern: str = ITEMS_PATTERN,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> None:
        if not program:
            raise ConfigError("CommandTask requires a program to run")
        self.program = program
        self.name = program
        self._items_re = re.compile(items_pattern)
        self._env = env
        self._cwd = cwd

    async def run(self, args: Sequence[str]) -> TaskResult:
        argv = [self.program, *args]
        logger.debug("Spawning %s", " ".join(argv))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env,
                cwd=self._cwd,
            )
        except FileNotFoundError as exc:
            raise ConfigError(f"Program not found: {self.program}") from exc
        except PermissionError as exc:
            raise ConfigError(f"Program is not executable: {self.program}") from exc

        items: list[int] = []
        stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        try:
            await asyncio.gather(
                self._pump_stdout(proc.stdout, items),
                self._pump_stderr(proc.stderr, stderr_tail),
            )
            returncode = await proc.wait()
        finally:
            if proc.returncode is None:
                logger.warning("Terminating %s (pid %d)", self.program, proc.pid)
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()

        if returncode != 0:
            raise CommandFailedError(self.program, returncode, " | ".join(stderr_tail))

        count = items[-1] if items else None
        return TaskResult(items_produced=count, detail=f"exit {returncode}")

    async def _pump_stdout(self, stream: asyncio.StreamReader | None, items: list[int]) -> None:
        if stream is None:
            return
        async for line in _read_lines(stream):
            logger.info("[%s] %s", self.name, line[:_LOG_LINE_CHARS])
            match = self._items_re.search(line)
            if match:
                items.append(int(match.group(1)))

    async def _pump_stderr(self, stream: asyncio.StreamReader | None, tail: deque[str]) -> None:
        if stream is None:
            return
        async for line in _read_lines(stream):
            if line:
                tail.append(line[:_LOG_LINE_CHARS])
                logger.warning("[%s] %s", self.name, line[:_LOG_LINE_CHARS])


async def _read_lines(stream: asyncio.StreamReader) -> AsyncIterator[str]:
    """Yield decoded lines from *stream* with no limit on line length."""
    pending = b""
    while chunk := await stream.read(_READ_CHUNK):
        pending += chunk
        *complete, pending = pending.split(b"\n")
        for raw in complete:
            yield raw.decode(errors="replace").rstrip()
        while len(pending) > _MAX_LINE_BYTES:
            head, pending = pending[:_MAX_LINE_BYTES], pending[_MAX_LINE_BYTES:]
            yield head.decode(errors="replace")
    if pending:
        yield pending.decode(errors="replace").rstrip()
