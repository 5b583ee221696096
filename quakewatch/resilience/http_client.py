"""Guarded async HTTP client for upstream feeds.

Wraps :class:`httpx.AsyncClient` with:

* **Circuit breaking** — requests run through a
  :class:`~quakewatch.resilience.circuit_breaker.CircuitBreaker`; while the
  circuit is open they fail fast with
  :class:`~quakewatch.core.exceptions.CircuitOpenError`.
* **Rate limiting** — a request the circuit admits then takes a permit from
  a shared :class:`~quakewatch.resilience.rate_limiter.RateLimiter`, so
  rejected calls never use one up.
* **Structured error mapping** — HTTP 429 raises
  :class:`~quakewatch.core.exceptions.RateLimitError` carrying the
  ``Retry-After`` hint, 5xx raises
  :class:`~quakewatch.core.exceptions.UpstreamServerError`, other 4xx raise
  :class:`~quakewatch.core.exceptions.UpstreamClientError` and transport
  faults raise :class:`~quakewatch.core.exceptions.NetworkError`.

The client does **not** retry.  Retrying is the executor's job, so one
failed request costs exactly one attempt of the tick's retry budget.

Only server-side failures (network, 5xx, 429) count against the circuit; a
4xx means the request was wrong, not that the upstream is down.

Typical usage::

    from quakewatch.resilience.http_client import GuardedHttpClient

    async with GuardedHttpClient(source="usgs") as client:
        payload = await client.get_json(DEFAULT_FEED_URL)
"""

from __future__ import annotations

import asyncio
import logging
from types import TracebackType
from typing import Any, Final

import httpx

from quakewatch.core.exceptions import (
    NetworkError,
    PayloadValidationError,
    RateLimitError,
    UpstreamClientError,
    UpstreamServerError,
)
from quakewatch.resilience.circuit_breaker import CircuitBreaker
from quakewatch.resilience.rate_limiter import RateLimiter

__all__ = ["GuardedHttpClient", "USER_AGENT"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Default overall request timeout in seconds.
_DEFAULT_TIMEOUT: Final[float] = 30.0

#: Default connection timeout in seconds.
_DEFAULT_CONNECT_TIMEOUT: Final[float] = 10.0

#: Fallback back-off when a 429 carries no usable hint.
_DEFAULT_RETRY_AFTER: Final[float] = 1.0

USER_AGENT: Final[str] = "quakewatch-scraper/1.0 (+interval runner)"


class GuardedHttpClient:
    """Async HTTP client with a shared rate limiter and circuit breaker.

    Use as an ``async with`` context manager to guarantee the connection pool
    is closed on exit.

    Args:
        source: Upstream label used in errors and as the breaker name.
        rate_limiter: Shared limiter; defaults to 60 requests per minute.
        circuit_breaker: Shared breaker; defaults to a breaker named *source*.
        stop_event: Shutdown signal forwarded to the rate limiter wait.
        timeout: Overall request timeout in seconds.
        headers: Extra default headers.
        transport: Optional httpx transport (``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        *,
        source: str = "upstream",
        rate_limiter: RateLimiter | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        stop_event: asyncio.Event | None = None,
        timeout: float = _DEFAULT_TIMEOUT,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.source = source
        self.rate_limiter = rate_limiter or RateLimiter(max_calls=60, period_s=60.0)
        self.circuit_breaker = circuit_breaker or CircuitBreaker(source)
        self._stop_event = stop_event
        self._timeout = httpx.Timeout(timeout, connect=min(_DEFAULT_CONNECT_TIMEOUT, timeout))
        self._default_headers: dict[str, str] = headers or {}
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    async def __aenter__(self) -> GuardedHttpClient:
        await self._ensure_client()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Public request methods
    # ------------------------------------------------------------------

    async def get(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Perform one guarded HTTP GET.

        Returns:
            The :class:`httpx.Response` on HTTP 2xx.

        Raises:
            OperationCancelledError: Shutdown fired while waiting for a permit.
            CircuitOpenError: The circuit is open; no request was sent.
            RateLimitError: HTTP 429.
            UpstreamServerError: HTTP 5xx.
            UpstreamClientError: Any other non-2xx status.
            NetworkError: Connection, DNS or timeout failure.
        """

        async def attempt() -> httpx.Response:
            await self.rate_limiter.acquire(self._stop_event)
            return await self._single_request("GET", url, params=params, extra_headers=headers)

        return await self.circuit_breaker.call(attempt, counts_as_failure=_is_upstream_fault)

    async def get_json(self, url: str, *, params: dict[str, Any] | None = None) -> Any:
        """GET *url* and decode the body as JSON.

        Raises:
            PayloadValidationError: The body is not valid JSON.
        """
        response = await self.get(url, params=params)
        try:
            return response.json()
        except ValueError as exc:
            raise PayloadValidationError(self.source, f"Invalid JSON from {url}: {exc}") from exc

    async def close(self) -> None:
        """Close the underlying HTTP client.  Safe to call more than once."""
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
            logger.debug("GuardedHttpClient session closed (%s).", self.source)
        self._http = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Return the open HTTP client, creating it lazily if needed."""
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                transport=self._transport,
                headers={
                    "Accept": "application/geo+json, application/json;q=0.9, */*;q=0.1",
                    "User-Agent": USER_AGENT,
                    **self._default_headers,
                },
            )
            logger.debug("GuardedHttpClient session opened (%s).", self.source)
        return self._http

    async def _single_request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None,
        extra_headers: dict[str, str] | None,
    ) -> httpx.Response:
        """Perform exactly one HTTP request and map failures to the taxonomy."""
        client = await self._ensure_client()

        try:
            response = await client.request(method, url, params=params, headers=extra_headers)
        except httpx.TransportError as exc:
            logger.debug("Transport error on %s %s.", method, url, exc_info=True)
            raise NetworkError(self.source, f"{type(exc).__name__} on {method} {url}: {exc}") from exc

        logger.debug(
            "HTTP %s %s → %d (%d bytes)",
            method,
            url,
            response.status_code,
            len(response.content),
        )

        if response.is_success:
            return response

        if response.status_code == 429:
            retry_after = _parse_retry_after(response, self.source)
            logger.warning(
                "Upstream rate limit (%s) HTTP 429 — retry_after=%.1f s",
                self.source,
                retry_after,
            )
            raise RateLimitError(self.source, retry_after=retry_after)

        if response.status_code >= 500:
            raise UpstreamServerError(
                self.source,
                f"HTTP {response.status_code} from {url}",
                status_code=response.status_code,
            )

        raise UpstreamClientError(
            self.source,
            f"HTTP {response.status_code} from {url}: {response.text[:200]}",
            status_code=response.status_code,
        )


def _is_upstream_fault(exc: Exception) -> bool:
    """A 4xx means the request was wrong, not that the upstream is down."""
    return not isinstance(exc, UpstreamClientError)


# ---------------------------------------------------------------------------
# Response parsing helpers
# ---------------------------------------------------------------------------


def _parse_retry_after(response: httpx.Response, source_label: str) -> float:
    """Extract the back-off duration from an HTTP 429 response.

    Checks the standard ``Retry-After`` header (seconds form); falls back to
    :data:`_DEFAULT_RETRY_AFTER`.

    Returns:
        Seconds to wait before retrying (always ``>= 1.0``).
    """
    header = response.headers.get("retry-after", "")
    if header:
        try:
            return max(float(header), 1.0)
        except ValueError:
            logger.debug("Could not parse Retry-After header %r for %s.", header, source_label)
    return _DEFAULT_RETRY_AFTER
