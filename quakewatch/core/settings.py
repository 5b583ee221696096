"""QuakeWatch application settings loaded from environment and ``.env`` files.

Uses :mod:`pydantic_settings` to parse environment variables (and optionally
an ``.env`` file) into a validated settings object.

The field name is the **lowercase** version of the env-var name
(e.g. ``INTERVAL_S`` → ``interval_s``).  CLI flags override these values
when the :class:`~quakewatch.core.models.ScheduleConfig` is built.

Typical usage::

    from quakewatch.core.settings import Settings

    settings = Settings()                                  # env + .env
    config = settings.to_schedule_config(max_executions=3)  # CLI overrides
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from quakewatch.core.exceptions import ConfigError
from quakewatch.core.models import BackoffKind, ScheduleConfig

__all__ = ["Settings", "DEFAULT_FEED_URL"]

logger = logging.getLogger(__name__)

#: USGS real-time GeoJSON summary feed: all earthquakes in the past hour.
DEFAULT_FEED_URL: str = (
    "https://earthquake.usgs.gov/earthquakes/feed/v1.0/summary/all_hour.geojson"
)

# Settings fields copied 1-to-1 into ScheduleConfig.
_SCHEDULE_FIELDS: tuple[str, ...] = (
    "interval_s",
    "max_runtime_s",
    "max_executions",
    "backoff_strategy",
    "backoff_base_s",
    "max_backoff_s",
    "max_attempts",
    "continue_on_error",
    "skip_empty",
    "health_check_interval_s",
    "run_immediately",
    "daemon",
    "pid_file",
    "log_file",
    "shutdown_grace_s",
)

_UNBOUNDED_WHEN_ZERO: tuple[str, ...] = (
    "max_runtime_s",
    "max_executions",
    "health_check_interval_s",
)


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Central application configuration.

    Values are loaded in priority order:

    1. Actual environment variables (highest priority).
    2. ``.env`` file in the working directory.
    3. Field defaults (lowest priority).

    Defaults: hourly ticks, 24 h runtime cap, 1000 executions, exponential
    backoff capped at 30 minutes and a health check every 5 minutes.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Interval loop
    # ------------------------------------------------------------------
    interval_s: float = Field(default=3600.0, gt=0, description="Seconds between ticks.")
    max_runtime_s: float | None = Field(
        default=86400.0,
        gt=0,
        description="Maximum total runtime in seconds (unset = unbounded).",
    )
    max_executions: int | None = Field(
        default=1000,
        ge=1,
        description="Maximum number of executions (unset = unbounded).",
    )
    continue_on_error: bool = Field(
        default=True,
        description="Keep scheduling after a failed tick.",
    )
    skip_empty: bool = Field(
        default=False,
        description="Skip the next tick after a tick that produced no data.",
    )
    run_immediately: bool = Field(
        default=True,
        description="Execute the first tick as soon as the scheduler starts.",
    )
    health_check_interval_s: float | None = Field(
        default=300.0,
        gt=0,
        description="Seconds between health checks (unset = disabled).",
    )

    # ------------------------------------------------------------------
    # Retry / backoff
    # ------------------------------------------------------------------
    backoff_strategy: BackoffKind = Field(
        default=BackoffKind.EXPONENTIAL,
        description="Retry delay policy: none, linear or exponential.",
    )
    backoff_base_s: float = Field(default=5.0, ge=0, description="Base retry delay.")
    max_backoff_s: float = Field(default=1800.0, ge=0, description="Retry delay cap.")
    max_attempts: int = Field(
        default=4,
        ge=1,
        description="Attempts per tick including the initial try.",
    )

    # ------------------------------------------------------------------
    # Resilience (guarded upstream client)
    # ------------------------------------------------------------------
    circuit_breaker_threshold: int = Field(default=5, ge=1)
    circuit_breaker_timeout_s: float = Field(default=30.0, gt=0)
    circuit_breaker_success_threshold: int = Field(default=3, ge=1)
    rate_limit_per_minute: int = Field(default=60, ge=1)
    http_timeout_s: float = Field(default=30.0, gt=0)
    feed_url: str = Field(default=DEFAULT_FEED_URL, description="GeoJSON feed polled by `feed`.")

    # ------------------------------------------------------------------
    # Daemon
    # ------------------------------------------------------------------
    daemon: bool = Field(default=False, description="Detach into the background.")
    pid_file: str = Field(default="./quakewatch-scraper.pid")
    log_file: str = Field(default="./logs/interval.log")
    shutdown_grace_s: float = Field(default=30.0, ge=0)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------
    stats_path: str = Field(
        default="./quakewatch-stats.json",
        description="JSON status/metrics snapshot rewritten after every tick.",
    )
    heartbeat_path: str = Field(
        default="./quakewatch-heartbeat",
        description="Epoch timestamp rewritten after every tick.",
    )
    log_level: str = Field(default="INFO", description="Logging level.")
    log_format: str = Field(default="text", description="Log format: 'text' or 'json'.")

    # ------------------------------------------------------------------
    # Field validators
    # ------------------------------------------------------------------

    @field_validator(*_UNBOUNDED_WHEN_ZERO, mode="before")
    @classmethod
    def _blank_or_zero_is_unset(cls, v: Any) -> Any:
        """Treat ``""`` and ``0`` as *no bound*, the convention used by the CLI."""
        if v in ("", "0", 0, 0.0):
            return None
        return v

    @field_validator("backoff_strategy", mode="before")
    @classmethod
    def _lower_backoff(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of {allowed}, got {v!r}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def _validate_log_format(cls, v: str) -> str:
        allowed = {"text", "json"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"log_format must be one of {allowed}, got {v!r}")
        return v_lower

    # ------------------------------------------------------------------
    # Derived helpers
    # ------------------------------------------------------------------

    def to_schedule_config(self, **overrides: Any) -> ScheduleConfig:
        """Build a frozen :class:`ScheduleConfig` from these settings.

        Args:
            **overrides: Field values that take precedence over settings
                (typically parsed CLI flags).  ``None`` values are ignored
                so an absent flag never masks a configured value.

        Returns:
            A validated :class:`ScheduleConfig`.

        Raises:
            ConfigError: If the merged values violate a constraint
                (e.g. a non-positive interval).
        """
        values: dict[str, Any] = {name: getattr(self, name) for name in _SCHEDULE_FIELDS}
        unknown = set(overrides) - set(_SCHEDULE_FIELDS)
        if unknown:
            raise ConfigError(f"Unknown schedule option(s): {', '.join(sorted(unknown))}")
        values.update({k: v for k, v in overrides.items() if v is not None})
        # ``0`` from the CLI means "no bound", same as in the environment.
        for name in _UNBOUNDED_WHEN_ZERO:
            if values[name] == 0:
                values[name] = None
        try:
            return ScheduleConfig(**values)
        except ValidationError as exc:
            raise ConfigError(f"Invalid schedule configuration: {exc}") from exc
