"""Unit tests for failure classification and the retry table."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from pydantic import BaseModel, ValidationError

from quakewatch.core.exceptions import (
    CircuitOpenError,
    CommandFailedError,
    ConfigError,
    NetworkError,
    OperationCancelledError,
    PayloadValidationError,
    RateLimitError,
    UpstreamClientError,
    UpstreamServerError,
)
from quakewatch.core.models import ErrorKind
from quakewatch.resilience.classification import RETRYABLE, classify, is_retryable


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://example.test/feed")
    response = httpx.Response(code, request=request)
    return httpx.HTTPStatusError("boom", request=request, response=response)


class _Model(BaseModel):
    value: int


def _validation_error() -> ValidationError:
    try:
        _Model.model_validate({"value": "not-a-number"})
    except ValidationError as exc:
        return exc
    raise AssertionError("expected a ValidationError")


class TestClassifyApplicationErrors:
    @pytest.mark.parametrize(
        ("exc", "kind"),
        [
            (NetworkError("usgs", "reset"), ErrorKind.NETWORK),
            (UpstreamServerError("usgs", "503", 503), ErrorKind.UPSTREAM_SERVER),
            (UpstreamClientError("usgs", "404", 404), ErrorKind.UPSTREAM_CLIENT),
            (RateLimitError("usgs", 5.0), ErrorKind.RATE_LIMIT),
            (PayloadValidationError("usgs", "bad"), ErrorKind.VALIDATION),
            (ConfigError("bad interval"), ErrorKind.CONFIGURATION),
            (CircuitOpenError("usgs", 10.0), ErrorKind.CIRCUIT_OPEN),
            (OperationCancelledError("stop"), ErrorKind.CANCELLATION),
        ],
    )
    def test_kind_attribute_wins(self, exc: Exception, kind: ErrorKind) -> None:
        assert classify(exc) == kind

    def test_command_usage_error_is_configuration(self) -> None:
        assert classify(CommandFailedError("collect", 2)) == ErrorKind.CONFIGURATION

    def test_command_other_status_is_unknown(self) -> None:
        assert classify(CommandFailedError("collect", 1, "oops")) == ErrorKind.UNKNOWN


class TestClassifyLibraryErrors:
    @pytest.mark.parametrize(
        ("code", "kind"),
        [(429, ErrorKind.RATE_LIMIT), (500, ErrorKind.UPSTREAM_SERVER),
         (503, ErrorKind.UPSTREAM_SERVER), (404, ErrorKind.UPSTREAM_CLIENT)],
    )
    def test_http_status(self, code: int, kind: ErrorKind) -> None:
        assert classify(_status_error(code)) == kind

    @pytest.mark.parametrize(
        "exc",
        [httpx.ConnectError("refused"), ConnectionResetError(), TimeoutError(), OSError("io")],
    )
    def test_transport_faults_are_network(self, exc: Exception) -> None:
        assert classify(exc) == ErrorKind.NETWORK

    @pytest.mark.parametrize(
        "exc",
        [json.JSONDecodeError("x", "doc", 0), ValueError("v"), KeyError("k"), TypeError("t")],
    )
    def test_data_errors_are_validation(self, exc: Exception) -> None:
        assert classify(exc) == ErrorKind.VALIDATION

    def test_pydantic_error_is_validation(self) -> None:
        assert classify(_validation_error()) == ErrorKind.VALIDATION

    def test_cancelled_error(self) -> None:
        assert classify(asyncio.CancelledError()) == ErrorKind.CANCELLATION

    def test_anything_else_is_unknown(self) -> None:
        assert classify(RuntimeError("?")) == ErrorKind.UNKNOWN


class TestRetryTable:
    def test_table_covers_every_kind(self) -> None:
        assert set(RETRYABLE) == set(ErrorKind)

    @pytest.mark.parametrize(
        "kind",
        [ErrorKind.NETWORK, ErrorKind.UPSTREAM_SERVER, ErrorKind.RATE_LIMIT, ErrorKind.UNKNOWN],
    )
    def test_transient_kinds_retry(self, kind: ErrorKind) -> None:
        assert is_retryable(kind) is True

    @pytest.mark.parametrize(
        "kind",
        [ErrorKind.UPSTREAM_CLIENT, ErrorKind.VALIDATION, ErrorKind.CONFIGURATION,
         ErrorKind.CIRCUIT_OPEN, ErrorKind.ALREADY_RUNNING, ErrorKind.CANCELLATION],
    )
    def test_permanent_kinds_do_not_retry(self, kind: ErrorKind) -> None:
        assert is_retryable(kind) is False
