"""Unit tests for the guarded HTTP client (httpx.MockTransport, no network)."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from quakewatch.core.exceptions import (
    CircuitOpenError,
    NetworkError,
    OperationCancelledError,
    PayloadValidationError,
    RateLimitError,
    UpstreamClientError,
    UpstreamServerError,
)
from quakewatch.resilience.circuit_breaker import CircuitBreaker, CircuitState
from quakewatch.resilience.http_client import USER_AGENT, GuardedHttpClient
from quakewatch.resilience.rate_limiter import RateLimiter

URL = "https://feed.example.test/all_hour.geojson"


def _client(handler, **kwargs: object) -> GuardedHttpClient:
    return GuardedHttpClient(source="usgs", transport=httpx.MockTransport(handler), **kwargs)


class TestGuardedHttpClientSuccess:
    @pytest.mark.asyncio
    async def test_get_json_returns_payload(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"type": "FeatureCollection", "features": []})

        async with _client(handler) as client:
            payload = await client.get_json(URL, params={"minmagnitude": "4"})

        assert payload["type"] == "FeatureCollection"
        assert seen[0].headers["user-agent"] == USER_AGENT
        assert seen[0].url.params["minmagnitude"] == "4"

    @pytest.mark.asyncio
    async def test_invalid_json_is_validation_error(self) -> None:
        async with _client(lambda r: httpx.Response(200, text="<html>")) as client:
            with pytest.raises(PayloadValidationError):
                await client.get_json(URL)

    @pytest.mark.asyncio
    async def test_every_request_takes_a_rate_limit_permit(self) -> None:
        limiter = RateLimiter(10, 60.0)
        async with _client(lambda r: httpx.Response(200, json={}), rate_limiter=limiter) as client:
            await client.get(URL)
            await client.get(URL)
        assert limiter.stats()["total_granted"] == 2


class TestGuardedHttpClientErrorMapping:
    @pytest.mark.asyncio
    async def test_429_carries_retry_after(self) -> None:
        handler = lambda r: httpx.Response(429, headers={"Retry-After": "12"})  # noqa: E731
        async with _client(handler) as client:
            with pytest.raises(RateLimitError) as excinfo:
                await client.get(URL)
        assert excinfo.value.retry_after == 12.0

    @pytest.mark.asyncio
    async def test_429_without_hint_defaults(self) -> None:
        async with _client(lambda r: httpx.Response(429)) as client:
            with pytest.raises(RateLimitError) as excinfo:
                await client.get(URL)
        assert excinfo.value.retry_after == 1.0

    @pytest.mark.asyncio
    async def test_5xx_is_upstream_server_error(self) -> None:
        async with _client(lambda r: httpx.Response(503)) as client:
            with pytest.raises(UpstreamServerError) as excinfo:
                await client.get(URL)
        assert excinfo.value.status_code == 503

    @pytest.mark.asyncio
    async def test_4xx_is_upstream_client_error(self) -> None:
        async with _client(lambda r: httpx.Response(404, text="nope")) as client:
            with pytest.raises(UpstreamClientError):
                await client.get(URL)

    @pytest.mark.asyncio
    async def test_transport_error_is_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(NetworkError):
                await client.get(URL)


class TestGuardedHttpClientResilience:
    @pytest.mark.asyncio
    async def test_server_failures_open_the_circuit(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(500)

        breaker = CircuitBreaker("usgs", failure_threshold=2)
        async with _client(handler, circuit_breaker=breaker) as client:
            for _ in range(2):
                with pytest.raises(UpstreamServerError):
                    await client.get(URL)
            with pytest.raises(CircuitOpenError):
                await client.get(URL)
        assert calls == 2
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_open_circuit_rejects_without_taking_permits(self) -> None:
        breaker = CircuitBreaker("usgs", failure_threshold=1, open_timeout=3600.0)
        limiter = RateLimiter(2, 3600.0)
        async with _client(
            lambda r: httpx.Response(503), circuit_breaker=breaker, rate_limiter=limiter
        ) as client:
            with pytest.raises(UpstreamServerError):
                await client.get(URL)
            for _ in range(3):
                with pytest.raises(CircuitOpenError):
                    await asyncio.wait_for(client.get(URL), timeout=1.0)
        assert limiter.stats()["total_granted"] == 1
        assert limiter.try_acquire() is True

    @pytest.mark.asyncio
    async def test_client_errors_do_not_open_the_circuit(self) -> None:
        breaker = CircuitBreaker("usgs", failure_threshold=1)
        async with _client(lambda r: httpx.Response(400), circuit_breaker=breaker) as client:
            for _ in range(3):
                with pytest.raises(UpstreamClientError):
                    await client.get(URL)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_stop_event_interrupts_rate_limit_wait(self) -> None:
        stop = asyncio.Event()
        limiter = RateLimiter(1, 3600.0)
        async with _client(
            lambda r: httpx.Response(200, json={}), rate_limiter=limiter, stop_event=stop
        ) as client:
            await client.get(URL)
            asyncio.get_running_loop().call_later(0.01, stop.set)
            with pytest.raises(OperationCancelledError):
                await client.get(URL)

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self) -> None:
        client = _client(lambda r: httpx.Response(200))
        await client.get(URL)
        await client.close()
        await client.close()
