"""Structured log event name constants for the QuakeWatch runner.

Every key transition in the orchestrator emits a log record with an
``event`` field (passed via ``extra={"event": events.X}``).  In
``LOG_FORMAT=json`` mode the value surfaces as ``extra.event``, which makes
it trivial to query tick outcomes, circuit trips and daemon lifecycle in a
log aggregator.

Usage example::

    import logging
    from quakewatch.core import events

    logger = logging.getLogger(__name__)

    logger.info("Tick started", extra={"event": events.TICK_START})
"""

from __future__ import annotations

__all__ = [
    # Scheduler lifecycle
    "SCHEDULER_START",
    "SCHEDULER_STOP",
    # Tick lifecycle
    "TICK_START",
    "TICK_COMPLETE",
    "TICK_FAILED",
    "TICK_SKIPPED",
    "TICK_CANCELLED",
    "ATTEMPT_FAILED",
    # Resilience
    "CIRCUIT_OPEN",
    "CIRCUIT_HALF_OPEN",
    "CIRCUIT_CLOSED",
    "RATE_LIMITED",
    # Health
    "HEALTH_OK",
    "HEALTH_WARNING",
    # Daemon
    "DAEMON_START",
    "DAEMON_SIGNAL",
    "DAEMON_STOP",
]

# ---------------------------------------------------------------------------
# Scheduler lifecycle
# ---------------------------------------------------------------------------

#: The tick loop entered the RUNNING state.
SCHEDULER_START: str = "SCHEDULER_START"

#: The tick loop reached the STOPPED state.
SCHEDULER_STOP: str = "SCHEDULER_STOP"

# ---------------------------------------------------------------------------
# Tick lifecycle
# ---------------------------------------------------------------------------

#: Executor began a tick.
TICK_START: str = "TICK_START"

#: Tick finished successfully (possibly after retries).
TICK_COMPLETE: str = "TICK_COMPLETE"

#: Tick failed after exhausting retries or on a non-retryable error.
TICK_FAILED: str = "TICK_FAILED"

#: Tick skipped because the previous execution produced no data.
TICK_SKIPPED: str = "TICK_SKIPPED"

#: Tick interrupted by the shutdown signal.
TICK_CANCELLED: str = "TICK_CANCELLED"

#: A single attempt inside a tick failed.
ATTEMPT_FAILED: str = "ATTEMPT_FAILED"

# ---------------------------------------------------------------------------
# Resilience
# ---------------------------------------------------------------------------

#: A circuit breaker tripped to OPEN.
CIRCUIT_OPEN: str = "CIRCUIT_OPEN"

#: A circuit breaker started probing.
CIRCUIT_HALF_OPEN: str = "CIRCUIT_HALF_OPEN"

#: A circuit breaker closed after successful probes.
CIRCUIT_CLOSED: str = "CIRCUIT_CLOSED"

#: A rate limiter made a caller wait for a permit.
RATE_LIMITED: str = "RATE_LIMITED"

# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

#: Health check found no issues.
HEALTH_OK: str = "HEALTH_OK"

#: Health check reported degraded or critical readings (advisory only).
HEALTH_WARNING: str = "HEALTH_WARNING"

# ---------------------------------------------------------------------------
# Daemon
# ---------------------------------------------------------------------------

#: Daemon detached and wrote its PID file.
DAEMON_START: str = "DAEMON_START"

#: Daemon received a termination signal.
DAEMON_SIGNAL: str = "DAEMON_SIGNAL"

#: Daemon removed its PID file and is exiting.
DAEMON_STOP: str = "DAEMON_STOP"
