"""Unit tests for Settings, ScheduleConfig building, models and logging."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

import pytest
from pydantic import ValidationError

from quakewatch.core import events
from quakewatch.core.exceptions import CommandFailedError, ConfigError, TickFailedError
from quakewatch.core.logging_config import TICK_ID_CTX, JsonFormatter, TickContextFilter, configure_logging
from quakewatch.core.models import BackoffKind, ErrorKind, Execution, ScheduleConfig
from quakewatch.core.settings import DEFAULT_FEED_URL, Settings


class TestSettings:
    def test_defaults(self, clean_env: None) -> None:
        s = Settings()
        assert s.interval_s == 3600.0
        assert s.max_runtime_s == 86400.0
        assert s.max_executions == 1000
        assert s.backoff_strategy == BackoffKind.EXPONENTIAL
        assert s.max_backoff_s == 1800.0
        assert s.health_check_interval_s == 300.0
        assert s.feed_url == DEFAULT_FEED_URL
        assert s.log_level == "INFO"

    def test_env_overrides(self, clean_env: None, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("INTERVAL_S", "300")
        monkeypatch.setenv("BACKOFF_STRATEGY", "LINEAR")
        monkeypatch.setenv("CONTINUE_ON_ERROR", "false")
        monkeypatch.setenv("LOG_FORMAT", "JSON")
        s = Settings()
        assert s.interval_s == 300.0
        assert s.backoff_strategy == BackoffKind.LINEAR
        assert s.continue_on_error is False
        assert s.log_format == "json"

    def test_zero_means_unbounded(self, clean_env: None, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MAX_EXECUTIONS", "0")
        monkeypatch.setenv("MAX_RUNTIME_S", "")
        s = Settings()
        assert s.max_executions is None
        assert s.max_runtime_s is None

    def test_invalid_log_level(self, clean_env: None, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "LOUD")
        with pytest.raises(ValidationError):
            Settings()


class TestToScheduleConfig:
    def test_overrides_win_and_none_is_ignored(self, clean_env: None) -> None:
        config = Settings().to_schedule_config(interval_s=60.0, max_attempts=None)
        assert config.interval_s == 60.0
        assert config.max_attempts == 4

    def test_zero_override_disables_bound(self, clean_env: None) -> None:
        config = Settings().to_schedule_config(max_executions=0, health_check_interval_s=0)
        assert config.max_executions is None
        assert config.health_check_interval_s is None

    def test_invalid_value_is_config_error(self, clean_env: None) -> None:
        with pytest.raises(ConfigError):
            Settings().to_schedule_config(interval_s=-5.0)

    def test_unknown_option_is_config_error(self, clean_env: None) -> None:
        with pytest.raises(ConfigError, match="bogus"):
            Settings().to_schedule_config(bogus=1)

    def test_config_is_frozen(self) -> None:
        config = ScheduleConfig(interval_s=10.0)
        with pytest.raises(ValidationError):
            config.interval_s = 20.0  # type: ignore[misc]


class TestModels:
    def test_failed_execution_requires_kind(self) -> None:
        now = datetime.now(UTC)
        with pytest.raises(ValidationError):
            Execution(
                id="x", sequence=1, task_name="t", started_at=now, finished_at=now,
                duration_s=0.0, success=False, attempts=1,
            )

    def test_tick_failed_error_carries_execution(self) -> None:
        now = datetime.now(UTC)
        execution = Execution(
            id="x", sequence=4, task_name="t", started_at=now, finished_at=now,
            duration_s=0.0, success=False, attempts=2, error="boom",
            error_kind=ErrorKind.NETWORK,
        )
        exc = TickFailedError(execution)
        assert exc.error_kind == ErrorKind.NETWORK
        assert "#4" in str(exc)

    def test_command_failed_message(self) -> None:
        exc = CommandFailedError("collect.sh", 3, "disk full")
        assert "status 3" in str(exc)
        assert "disk full" in str(exc)


class TestLogging:
    def test_invalid_level_and_format_rejected(self) -> None:
        with pytest.raises(ValueError):
            configure_logging(level="LOUD", force=True)
        with pytest.raises(ValueError):
            configure_logging(fmt="xml", force=True)

    def test_log_file_receives_records(self, tmp_path: Path) -> None:
        log_file = tmp_path / "logs" / "interval.log"
        configure_logging(level="INFO", fmt="text", log_file=log_file, force=True)
        logging.getLogger("quakewatch.test").info("hello file")
        for handler in logging.getLogger().handlers:
            handler.flush()
        assert "hello file" in log_file.read_text()

    def test_json_formatter_includes_event_and_tick_id(self) -> None:
        record = logging.LogRecord(
            "quakewatch.orchestrator.scheduler", logging.INFO, __file__, 1,
            "Execution #%d succeeded", (3,), None,
        )
        record.event = events.TICK_COMPLETE
        token = TICK_ID_CTX.set("a3f2b1c0")
        try:
            TickContextFilter().filter(record)
        finally:
            TICK_ID_CTX.reset(token)
        payload = json.loads(JsonFormatter().format(record))
        assert payload["message"] == "Execution #3 succeeded"
        assert payload["extra"]["event"] == "TICK_COMPLETE"
        assert payload["extra"]["tick_id"] == "a3f2b1c0"

    def test_tick_id_defaults_to_dash(self) -> None:
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "m", (), None)
        TickContextFilter().filter(record)
        assert record.tick_id == "-"  # type: ignore[attr-defined]
