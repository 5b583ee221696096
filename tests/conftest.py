"""Shared pytest fixtures and configuration for the QuakeWatch test suite.

This file is loaded automatically by pytest before any test module.
It provides project-wide fixtures used across the unit tests.
"""

from __future__ import annotations

import logging
import os

import pytest
from pydantic_settings import SettingsConfigDict

from quakewatch.core import configure_logging
from quakewatch.core.settings import Settings

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _configure_test_logging() -> None:
    """Force DEBUG logging in text format for every test.

    ``force=True`` ensures the configuration is applied even when pytest's
    own ``log_cli`` handler is already present.
    """
    configure_logging(level="DEBUG", fmt="text", force=True)


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

_SETTINGS_ENV_VARS = (
    "INTERVAL_S",
    "MAX_RUNTIME_S",
    "MAX_EXECUTIONS",
    "CONTINUE_ON_ERROR",
    "SKIP_EMPTY",
    "RUN_IMMEDIATELY",
    "HEALTH_CHECK_INTERVAL_S",
    "BACKOFF_",
    "MAX_BACKOFF_S",
    "MAX_ATTEMPTS",
    "CIRCUIT_BREAKER_",
    "RATE_LIMIT_",
    "HTTP_TIMEOUT_S",
    "FEED_URL",
    "DAEMON",
    "PID_FILE",
    "LOG_FILE",
    "SHUTDOWN_GRACE_S",
    "STATS_PATH",
    "HEARTBEAT_PATH",
    "LOG_LEVEL",
    "LOG_FORMAT",
)


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove every QuakeWatch setting from the environment for one test.

    Also disables pydantic-settings ``.env`` loading so a developer's local
    ``.env`` file does not leak into Settings isolation tests.
    """
    for key in list(os.environ):
        if any(key.upper().startswith(prefix) for prefix in _SETTINGS_ENV_VARS):
            monkeypatch.delenv(key, raising=False)

    monkeypatch.setattr(
        Settings,
        "model_config",
        SettingsConfigDict(
            env_file=None,
            env_file_encoding="utf-8",
            extra="ignore",
        ),
    )


# ---------------------------------------------------------------------------
# Misc helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def logger() -> logging.Logger:
    """Return a logger scoped to test code."""
    return logging.getLogger("tests")

