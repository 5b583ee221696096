"""QuakeWatch logging configuration.

Call ``configure_logging()`` once at process startup (e.g. in ``__main__``),
and again from the daemon after it has detached to switch output to the
log file.  Every other module must define its own logger at module scope:

    import logging
    logger = logging.getLogger(__name__)

Supported environment variables (read at call time):
    LOG_LEVEL   DEBUG | INFO | WARNING | ERROR   (default: INFO)
    LOG_FORMAT  text | json                      (default: text)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import traceback
from contextvars import ContextVar
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

__all__ = ["configure_logging", "JsonFormatter", "TICK_ID_CTX", "TickContextFilter"]

# ---------------------------------------------------------------------------
# Tick-scoped context variable
# ---------------------------------------------------------------------------

#: Async-safe context variable holding the identifier of the tick being
#: executed.  Set to a short hex string (``uuid4().hex[:8]``) by the
#: executor for the duration of one tick, so every retry attempt and every
#: log line emitted by the task shares the same correlation ID.  Defaults to
#: ``"-"`` outside of any tick (startup, health checks, shutdown).
TICK_ID_CTX: ContextVar[str] = ContextVar("tick_id", default="-")

# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

logger = logging.getLogger(__name__)

_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_FORMATS = {"text", "json"}

_TEXT_FORMAT = "%(asctime)s %(levelname)-8s [%(tick_id)s] %(name)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class TickContextFilter(logging.Filter):
    """Inject the current tick ID into every log record.

    Reads :data:`TICK_ID_CTX` and sets ``record.tick_id`` before the record
    reaches any formatter.  In text mode the ``%(tick_id)s`` token resolves
    to the tick ID (or ``"-"``); in JSON mode it appears under ``"extra"``.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.tick_id = TICK_ID_CTX.get("-")
        return True


def configure_logging(
    level: str | None = None,
    fmt: str | None = None,
    *,
    log_file: str | os.PathLike[str] | None = None,
    force: bool = False,
) -> None:
    """Configure the root logger for the entire process.

    Args:
        level: Logging level string (DEBUG/INFO/WARNING/ERROR/CRITICAL).
            Falls back to ``$LOG_LEVEL`` env var, then "INFO".
        fmt: Output format ("text" or "json").
            Falls back to ``$LOG_FORMAT`` env var, then "text".
        log_file: When given, records are appended to this file instead of
            ``stderr``.  Parent directories are created.  Used by the daemon
            after detaching from the terminal.
        force: If True, reconfigure even if logging has already been set up.
            Useful in tests and after daemonisation.

    Raises:
        ValueError: If *level* or *fmt* contain an unrecognised value.
        OSError: If *log_file* cannot be opened.
    """
    resolved_level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    resolved_fmt = (fmt or os.environ.get("LOG_FORMAT", "text")).lower()

    if resolved_level not in _VALID_LEVELS:
        raise ValueError(
            f"Unknown LOG_LEVEL {resolved_level!r}. "
            f"Must be one of: {', '.join(sorted(_VALID_LEVELS))}"
        )
    if resolved_fmt not in _VALID_FORMATS:
        raise ValueError(
            f"Unknown LOG_FORMAT {resolved_fmt!r}. "
            f"Must be one of: {', '.join(sorted(_VALID_FORMATS))}"
        )

    root = logging.getLogger()

    if root.handlers and not force:
        # Logging was already configured (e.g. by pytest's log_cli).  Respect
        # the existing setup but still propagate the requested level.
        root.setLevel(resolved_level)
        return

    for old in list(root.handlers):
        root.removeHandler(old)
        if isinstance(old, logging.FileHandler):
            old.close()

    handler: logging.Handler
    if log_file is not None:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(resolved_level)
    handler.addFilter(TickContextFilter())

    if resolved_fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(fmt=_TEXT_FORMAT, datefmt=_DATE_FORMAT))

    root.setLevel(resolved_level)
    root.addHandler(handler)

    # Quieten noisy third-party libraries to WARNING unless DEBUG is active.
    if resolved_level != "DEBUG":
        for noisy in ("httpx", "httpcore", "asyncio"):
            logging.getLogger(noisy).setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# JSON formatter
# ---------------------------------------------------------------------------


class JsonFormatter(logging.Formatter):
    """Emit one JSON object per log record.

    Output shape (all fields always present)::

        {
            "ts":      "2026-02-28T12:34:56.789Z",
            "level":   "INFO",
            "logger":  "quakewatch.orchestrator.scheduler",
            "message": "Execution #3 succeeded",
            "extra":   {"event": "TICK_COMPLETE", "tick_id": "a3f2b1c0"}
        }

    Optional fields (present only when applicable)::

        "exc_info": "<traceback string>"
    """

    # Fields that belong to LogRecord but should NOT appear under "extra".
    _RECORD_ATTRS: frozenset[str] = frozenset(
        {
            "args",
            "created",
            "exc_info",
            "exc_text",
            "filename",
            "funcName",
            "levelname",
            "levelno",
            "lineno",
            "message",
            "module",
            "msecs",
            "msg",
            "name",
            "pathname",
            "process",
            "processName",
            "relativeCreated",
            "stack_info",
            "taskName",
            "thread",
            "threadName",
        }
    )

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        """Serialise *record* to a JSON string."""
        record.message = record.getMessage()

        ts = (
            datetime.fromtimestamp(record.created, tz=UTC).strftime("%Y-%m-%dT%H:%M:%S.")
            + f"{int(record.msecs):03d}Z"
        )

        payload: dict[str, Any] = {
            "ts": ts,
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
        }

        extra = {k: v for k, v in record.__dict__.items() if k not in self._RECORD_ATTRS}
        payload["extra"] = extra

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        elif record.exc_text:
            payload["exc_info"] = record.exc_text

        if record.stack_info:
            payload["stack_info"] = self.formatStack(record.stack_info)

        try:
            return json.dumps(payload, default=str)
        except Exception:  # pragma: no cover
            return json.dumps(
                {
                    "ts": ts,
                    "level": "ERROR",
                    "logger": __name__,
                    "message": "JsonFormatter serialisation error",
                    "exc_info": traceback.format_exc(),
                    "extra": {},
                }
            )
