from __future__ import annotations

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from resilience_core.circuit_breaker import CircuitBreakerConfig
from resilience_core.logging import get_log_level_value


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class ResilienceSettings(BaseSettings):
    """Process-wide defaults for breakers, fallback caching and logging."""

    model_config = prefixed_settings_config("RESILIENCE_")

    breaker_failure_threshold: int = 5
    breaker_success_threshold: int = 2
    breaker_recovery_timeout_seconds: float = 60.0
    breaker_monitoring_window_seconds: float = 120.0
    fallback_cache_ttl_seconds: float = 300.0
    fallback_cache_max_entries: int | None = None
    log_level: str = "INFO"

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            normalized = value.strip().upper()
            get_log_level_value(normalized)
            return normalized
        return value

    @model_validator(mode="after")
    def _validate_resilience_settings(self) -> ResilienceSettings:
        if self.breaker_failure_threshold < 1:
            raise ValueError("breaker_failure_threshold must be >= 1")
        if self.breaker_success_threshold < 1:
            raise ValueError("breaker_success_threshold must be >= 1")
        if self.breaker_recovery_timeout_seconds < 0:
            raise ValueError("breaker_recovery_timeout_seconds must be >= 0")
        if self.breaker_monitoring_window_seconds <= 0:
            raise ValueError("breaker_monitoring_window_seconds must be > 0")
        if self.fallback_cache_ttl_seconds < 0:
            raise ValueError("fallback_cache_ttl_seconds must be >= 0")
        if (
            self.fallback_cache_max_entries is not None
            and self.fallback_cache_max_entries < 1
        ):
            raise ValueError("fallback_cache_max_entries must be >= 1 when set")
        return self

    def breaker_defaults(self) -> CircuitBreakerConfig:
        """Build the registry-wide default breaker config."""
        return CircuitBreakerConfig(
            failure_threshold=self.breaker_failure_threshold,
            success_threshold=self.breaker_success_threshold,
            recovery_timeout=self.breaker_recovery_timeout_seconds,
            monitoring_window=self.breaker_monitoring_window_seconds,
        )
