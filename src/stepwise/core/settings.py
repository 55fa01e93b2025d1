"""Settings for the Stepwise orchestration core.

Every tunable the breaker, retry executor, connection monitor and
orchestrator use lives here, read from ``STEPWISE_*`` environment variables
or a ``.env`` file. Components take explicit constructor arguments and fall
back to :func:`get_settings` when none are given.

Features:
    - **StepwiseSettings:** breaker, retry, monitor, fan-out and logging knobs
    - **env_prefix:** ``STEPWISE_BREAKER_FAILURE_THRESHOLD=3`` etc.
    - **.env file support:** Automatic loading via pydantic-settings
    - **Extra ignore:** Unknown env vars don't cause startup failures

Examples:
    >>> from stepwise.core.settings import get_settings
    >>> settings = get_settings()
    >>> settings.breaker_failure_threshold
    5

Tags:
    settings, configuration, pydantic, environment, stepwise
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StepwiseSettings(BaseSettings):
    """Validated configuration for the orchestration core."""

    model_config = SettingsConfigDict(
        env_prefix="STEPWISE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Circuit breaker ──────────────────────────────────────────
    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_open_duration_seconds: float = Field(default=30.0, ge=0)

    # ── Retry ────────────────────────────────────────────────────
    retry_jitter_max_ms: float = Field(
        default=100.0,
        ge=0,
        description="Upper bound (exclusive) of the uniform jitter added to each backoff",
    )

    # ── Connection monitor ───────────────────────────────────────
    monitor_interval_seconds: float = Field(default=5.0, gt=0)
    monitor_stale_threshold_seconds: float = Field(default=30.0, gt=0)
    monitor_reconnect_attempts: int = Field(default=3, ge=1)
    monitor_reconnect_base_delay_seconds: float = Field(default=1.0, ge=0)

    # ── Concurrency ──────────────────────────────────────────────
    fanout_max_workers: int = Field(default=8, ge=1)
    workflow_max_workers: int = Field(default=4, ge=1)
    max_retained_executions: int = Field(
        default=1000,
        ge=1,
        description="Finished executions kept for status queries; oldest are evicted first",
    )

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console", "auto"] = Field(default="auto")


@lru_cache(maxsize=1)
def get_settings() -> StepwiseSettings:
    """Load and cache the process-wide settings.

    Call ``get_settings.cache_clear()`` after changing the environment.
    """
    return StepwiseSettings()


__all__ = ["StepwiseSettings", "get_settings"]
