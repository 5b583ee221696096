"""Circuit breaker guarding a failing upstream.

Prevents a broken dependency from being hammered every tick.  After a
configurable number of consecutive failures the circuit **opens** and calls
are rejected with :class:`~quakewatch.core.exceptions.CircuitOpenError`
without being attempted.  Once the open timeout elapses a limited number of
probe calls are let through; enough consecutive probe successes close the
circuit again, while any probe failure re-opens it.

State machine
~~~~~~~~~~~~~
::

    CLOSED ──(failure_threshold reached)──▶ OPEN
      ▲                                       │
      │                                       │ (open_timeout elapsed)
      │                                       ▼
      └──(success_threshold probes ok)── HALF_OPEN
                                           │
                                           │ (probe fails)
                                           ▼
                                          OPEN  (timeout × backoff_multiplier)

Terminology
~~~~~~~~~~~
* **Trip** — a transition from CLOSED/HALF_OPEN to OPEN.
* **Probe** — a call admitted while HALF_OPEN; at most
  ``half_open_max_calls`` may be in flight at once.
* **Open timeout** — how long the circuit stays OPEN before probing.
  Grows as ``open_timeout × backoff_multiplier^(trips - 1)`` up to
  ``max_open_timeout``.  The default multiplier of ``1.0`` keeps it fixed.

Thread-safety
~~~~~~~~~~~~~
All state transitions happen under a :class:`threading.Lock`, so a breaker
may be shared between the event loop and worker threads.  The lock is never
held while the guarded call runs.

Typical usage::

    from quakewatch.resilience.circuit_breaker import CircuitBreaker

    breaker = CircuitBreaker("usgs", failure_threshold=5, open_timeout=30)
    payload = await breaker.call(lambda: client.get_json(url))
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from enum import StrEnum
from typing import Any, Final, TypeVar

from quakewatch.core import events
from quakewatch.core.exceptions import CircuitOpenError, OperationCancelledError

__all__ = [
    "CircuitState",
    "CircuitSnapshot",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_DEFAULT_FAILURE_THRESHOLD: Final[int] = 5
_DEFAULT_OPEN_TIMEOUT: Final[float] = 30.0
_DEFAULT_SUCCESS_THRESHOLD: Final[int] = 3
_DEFAULT_HALF_OPEN_MAX_CALLS: Final[int] = 1
_DEFAULT_MAX_OPEN_TIMEOUT: Final[float] = 3600.0  # 1 hour


# ---------------------------------------------------------------------------
# State types
# ---------------------------------------------------------------------------


class CircuitState(StrEnum):
    """Possible states for a circuit breaker."""

    CLOSED = "closed"
    """Normal operation; calls are allowed."""

    OPEN = "open"
    """Dependency is failing; calls are rejected until the timeout elapses."""

    HALF_OPEN = "half_open"
    """Timeout elapsed; a limited number of probe calls are allowed."""


@dataclass(frozen=True)
class CircuitSnapshot:
    """Read-only copy of a breaker's counters.

    Attributes:
        name: Guarded resource name.
        state: Current :class:`CircuitState`.
        consecutive_failures: Failures since the last success.
        consecutive_successes: Probe successes while HALF_OPEN.
        trip_count: Trips since the circuit last closed.
        total_calls: Calls admitted over the breaker's lifetime.
        total_failures: Failures recorded over the breaker's lifetime.
        total_rejections: Calls rejected while OPEN.
        retry_in: Seconds until the next probe is allowed (OPEN only).
    """

    name: str
    state: CircuitState
    consecutive_failures: int
    consecutive_successes: int
    trip_count: int
    total_calls: int
    total_failures: int
    total_rejections: int
    retry_in: float | None


# ---------------------------------------------------------------------------
# Breaker
# ---------------------------------------------------------------------------


class CircuitBreaker:
    """Three-state circuit breaker for one guarded resource.

    Args:
        name: Resource label used in logs and errors (e.g. ``"usgs"``).
        failure_threshold: Consecutive failures required to trip the circuit.
        open_timeout: Base seconds to stay OPEN before probing.
        success_threshold: Consecutive probe successes required to close.
        half_open_max_calls: Probes allowed in flight while HALF_OPEN.
        backoff_multiplier: Factor applied per successive trip to escalate
            the open timeout.  ``1.0`` disables escalation.
        max_open_timeout: Hard ceiling on the escalated open timeout.
        clock: Callable returning a monotonic timestamp (seconds).  Defaults
            to :func:`time.monotonic`.  Override in tests for deterministic
            behaviour.

    Raises:
        ValueError: If a threshold or timeout is out of range.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = _DEFAULT_FAILURE_THRESHOLD,
        open_timeout: float = _DEFAULT_OPEN_TIMEOUT,
        success_threshold: int = _DEFAULT_SUCCESS_THRESHOLD,
        half_open_max_calls: int = _DEFAULT_HALF_OPEN_MAX_CALLS,
        backoff_multiplier: float = 1.0,
        max_open_timeout: float = _DEFAULT_MAX_OPEN_TIMEOUT,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if failure_threshold < 1 or success_threshold < 1 or half_open_max_calls < 1:
            raise ValueError("circuit breaker thresholds must be >= 1")
        if open_timeout <= 0:
            raise ValueError(f"open_timeout must be > 0, got {open_timeout!r}")
        if backoff_multiplier < 1.0:
            raise ValueError(f"backoff_multiplier must be >= 1, got {backoff_multiplier!r}")
        self.name = name
        self._failure_threshold = failure_threshold
        self._open_timeout = open_timeout
        self._success_threshold = success_threshold
        self._half_open_max_calls = half_open_max_calls
        self._backoff_multiplier = backoff_multiplier
        self._max_open_timeout = max(max_open_timeout, open_timeout)
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._half_open_in_flight = 0
        self._opened_at: float | None = None
        self._trip_count = 0
        self._total_calls = 0
        self._total_failures = 0
        self._total_rejections = 0

    # ------------------------------------------------------------------
    # Internal helpers (caller holds the lock)
    # ------------------------------------------------------------------

    def _effective_open_timeout(self) -> float:
        """``open_timeout × multiplier^(trip_count - 1)``, capped."""
        exponent = max(self._trip_count - 1, 0)
        raw = self._open_timeout * (self._backoff_multiplier**exponent)
        return min(raw, self._max_open_timeout)

    def _retry_in(self) -> float | None:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return None
        remaining = self._effective_open_timeout() - (self._clock() - self._opened_at)
        return max(remaining, 0.0)

    def _trip(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trip_count += 1
        self._consecutive_successes = 0
        self._half_open_in_flight = 0
        logger.warning(
            "Circuit OPEN for %s — trip #%d, consecutive failures=%d, open timeout=%.0f s.",
            self.name,
            self._trip_count,
            self._consecutive_failures,
            self._effective_open_timeout(),
            extra={"event": events.CIRCUIT_OPEN, "circuit": self.name},
        )

    def _close(self) -> None:
        logger.info(
            "Circuit CLOSED for %s — %d probe(s) succeeded after trip #%d.",
            self.name,
            self._consecutive_successes,
            self._trip_count,
            extra={"event": events.CIRCUIT_CLOSED, "circuit": self.name},
        )
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._half_open_in_flight = 0
        self._opened_at = None
        self._trip_count = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        """Current state.  An elapsed OPEN circuit still reads OPEN until
        the next :meth:`allow_request`."""
        with self._lock:
            return self._state

    def allow_request(self) -> bool:
        """Check whether a call should be attempted, admitting it if so.

        * **CLOSED** → always ``True``.
        * **OPEN** → ``True`` only once the open timeout has elapsed (the
          circuit moves to HALF_OPEN and this call becomes a probe).
        * **HALF_OPEN** → ``True`` while fewer than ``half_open_max_calls``
          probes are in flight.

        Every admitted call must be followed by exactly one
        :meth:`record_success` or :meth:`record_failure`.

        Returns:
            ``True`` if the caller should proceed.
        """
        with self._lock:
            if self._state == CircuitState.OPEN:
                assert self._opened_at is not None  # noqa: S101
                elapsed = self._clock() - self._opened_at
                timeout = self._effective_open_timeout()
                if elapsed < timeout:
                    self._total_rejections += 1
                    logger.debug(
                        "Circuit OPEN for %s — %.0f / %.0f s until probe.",
                        self.name,
                        elapsed,
                        timeout,
                    )
                    return False
                self._state = CircuitState.HALF_OPEN
                self._consecutive_successes = 0
                self._half_open_in_flight = 0
                logger.info(
                    "Circuit HALF_OPEN for %s — open timeout (%.0f s) elapsed, allowing probe.",
                    self.name,
                    timeout,
                    extra={"event": events.CIRCUIT_HALF_OPEN, "circuit": self.name},
                )

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_in_flight >= self._half_open_max_calls:
                    self._total_rejections += 1
                    return False
                self._half_open_in_flight += 1

            self._total_calls += 1
            return True

    def record_success(self) -> None:
        """Record a successful call.

        Resets the failure counter; in HALF_OPEN counts towards
        ``success_threshold`` and closes the circuit when it is reached.
        """
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(self._half_open_in_flight - 1, 0)
                self._consecutive_successes += 1
                if self._consecutive_successes >= self._success_threshold:
                    self._close()
                return

            if self._consecutive_failures > 0:
                logger.debug(
                    "%s recovered — resetting %d consecutive failure(s).",
                    self.name,
                    self._consecutive_failures,
                )
            self._consecutive_failures = 0

    def record_failure(self) -> None:
        """Record a failed call.

        Trips the circuit once ``failure_threshold`` consecutive failures
        accumulate.  A failed probe re-opens the circuit immediately.
        """
        with self._lock:
            self._consecutive_failures += 1
            self._total_failures += 1

            if self._state == CircuitState.HALF_OPEN:
                logger.warning("Half-open probe failed for %s — re-tripping circuit.", self.name)
                self._trip()
                return

            if self._state == CircuitState.OPEN:
                # Late result of a call admitted before the trip.
                return

            if self._consecutive_failures >= self._failure_threshold:
                self._trip()
            else:
                logger.debug(
                    "%s failure %d / %d — circuit remains CLOSED.",
                    self.name,
                    self._consecutive_failures,
                    self._failure_threshold,
                )

    async def call(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        counts_as_failure: Callable[[Exception], bool] | None = None,
    ) -> T:
        """Invoke *fn* through the breaker.

        Args:
            fn: Zero-argument coroutine factory performing the guarded call.
            counts_as_failure: Predicate deciding whether an exception raised
                by *fn* reflects on the upstream.  Exceptions it rejects are
                recorded as successes (the upstream answered).  Defaults to
                counting every exception.

        Returns:
            Whatever *fn* returns.

        Raises:
            CircuitOpenError: If the call was rejected; *fn* is not invoked.
            Exception: Anything *fn* raises, after it is recorded.  An
                :class:`OperationCancelledError` is passed through unrecorded.
        """
        if not self.allow_request():
            with self._lock:
                retry_in = self._retry_in()
            raise CircuitOpenError(self.name, retry_in)
        try:
            result = await fn()
        except OperationCancelledError:
            # Shutdown interrupted the call before it reached the upstream.
            self._release_probe()
            raise
        except Exception as exc:
            if counts_as_failure is None or counts_as_failure(exc):
                self.record_failure()
            else:
                self.record_success()
            raise
        except BaseException:
            # Cancelled mid-call: free the probe slot without judging the upstream.
            self._release_probe()
            raise
        self.record_success()
        return result

    def _release_probe(self) -> None:
        with self._lock:
            self._half_open_in_flight = max(self._half_open_in_flight - 1, 0)

    def reset(self) -> None:
        """Force the circuit CLOSED and clear its counters (operator action)."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._consecutive_successes = 0
            self._half_open_in_flight = 0
            self._opened_at = None
            self._trip_count = 0
        logger.info("Circuit for %s manually reset.", self.name)

    def snapshot(self) -> CircuitSnapshot:
        """Return a consistent copy of the breaker's counters."""
        with self._lock:
            return CircuitSnapshot(
                name=self.name,
                state=self._state,
                consecutive_failures=self._consecutive_failures,
                consecutive_successes=self._consecutive_successes,
                trip_count=self._trip_count,
                total_calls=self._total_calls,
                total_failures=self._total_failures,
                total_rejections=self._total_rejections,
                retry_in=self._retry_in(),
            )

    def as_dict(self) -> dict[str, Any]:
        """JSON-serialisable form of :meth:`snapshot`."""
        data = asdict(self.snapshot())
        data["state"] = str(data["state"])
        return data


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class CircuitBreakerRegistry:
    """Hands out one :class:`CircuitBreaker` per guarded resource name.

    Every breaker is created lazily with the registry's settings, so all
    clients talking to the same upstream share failure state.

    Args:
        **breaker_kwargs: Passed to each new :class:`CircuitBreaker`.
    """

    def __init__(self, **breaker_kwargs: Any) -> None:
        self._breaker_kwargs = breaker_kwargs
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> CircuitBreaker:
        """Return the breaker for *name*, creating it if absent."""
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(name, **self._breaker_kwargs)
                self._breakers[name] = breaker
            return breaker

    def summary(self) -> dict[str, str]:
        """Return a ``{name: state}`` dict of all tracked breakers."""
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.name: str(b.state) for b in breakers}
