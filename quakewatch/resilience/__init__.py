"""Resilience primitives: backoff, failure classification, circuit breaking,
rate limiting, shutdown-aware waits and the guarded HTTP client."""

from quakewatch.resilience.backoff import BackoffStrategy, get_backoff_strategy
from quakewatch.resilience.cancellation import cancellable_sleep, wait_for_stop
from quakewatch.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)
from quakewatch.resilience.classification import classify, is_retryable
from quakewatch.resilience.http_client import GuardedHttpClient
from quakewatch.resilience.rate_limiter import RateLimiter

__all__ = [
    "BackoffStrategy",
    "get_backoff_strategy",
    "cancellable_sleep",
    "wait_for_stop",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "classify",
    "is_retryable",
    "GuardedHttpClient",
    "RateLimiter",
]
