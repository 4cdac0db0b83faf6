from __future__ import annotations

from pydantic import ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tracker_core.logging import get_log_level_value

DEFAULT_ENV_PREFIX = "TRACKER_"


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class ResilienceSettings(BaseSettings):
    """Logging and circuit breaker defaults for tracker services.

    Read from ``TRACKER_*`` environment variables, for example
    ``TRACKER_CIRCUIT_BREAKER_FAILURE_THRESHOLD=3``.
    """

    model_config = prefixed_settings_config(DEFAULT_ENV_PREFIX)

    log_level: str = "INFO"
    circuit_breaker_failure_threshold: int = 5
    circuit_breaker_reset_timeout_seconds: float = 60.0
    high_load_circuit_name: str = "system_high_load"

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if not isinstance(value, str):
            return value
        get_log_level_value(value)
        return value.strip().upper()

    @field_validator("high_load_circuit_name", mode="before")
    @classmethod
    def _validate_required_string(cls, value: object, info: ValidationInfo) -> object:
        if not isinstance(value, str):
            return value
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be non-empty")
        return normalized

    @field_validator("circuit_breaker_failure_threshold")
    @classmethod
    def _validate_failure_threshold(cls, value: int) -> int:
        if value < 1:
            raise ValueError("circuit_breaker_failure_threshold must be >= 1")
        return value

    @field_validator("circuit_breaker_reset_timeout_seconds")
    @classmethod
    def _validate_reset_timeout(cls, value: float) -> float:
        if value < 0:
            raise ValueError("circuit_breaker_reset_timeout_seconds must be >= 0")
        return value
