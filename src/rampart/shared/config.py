"""
Shared Configuration - Defense and Resilience Settings
Centralized configuration management for Rampart.

This module provides:
- Environment-based configuration (``RAMPART_*`` variables or ``.env``)
- Type-safe settings with validation
- Rate limit, brute-force and anomaly thresholds
- Security monitor retention and alert thresholds
- Retry and health-monitoring tuning
"""
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .logging_config import LogLevel


def _settings_config(prefix: str) -> SettingsConfigDict:
    return SettingsConfigDict(
        env_prefix=prefix,
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


def _require_positive(v, field_name: str):
    if v is not None and v <= 0:
        raise ValueError(f"{field_name} must be positive")
    return v


class RateLimitSettings(BaseSettings):
    """Per-route-class request limits."""

    model_config = _settings_config("RAMPART_RATE_LIMIT_")

    enabled: bool = True
    cleanup_interval_seconds: float = 3600.0

    default_window_seconds: float = 15 * 60
    default_max_requests: int = 100

    auth_window_seconds: float = 15 * 60
    auth_max_requests: int = 10
    auth_block_seconds: float = 30 * 60

    webhook_window_seconds: float = 60
    webhook_max_requests: int = 100

    api_window_seconds: float = 5 * 60
    api_max_requests: int = 50

    monitoring_window_seconds: float = 60
    monitoring_max_requests: int = 20

    health_window_seconds: float = 60
    health_max_requests: int = 30

    @field_validator(
        "default_max_requests", "auth_max_requests", "webhook_max_requests",
        "api_max_requests", "monitoring_max_requests", "health_max_requests",
        "default_window_seconds", "auth_window_seconds", "webhook_window_seconds",
        "api_window_seconds", "monitoring_window_seconds", "health_window_seconds",
        "cleanup_interval_seconds",
    )
    @classmethod
    def validate_positive(cls, v, info):
        return _require_positive(v, info.field_name)


class BruteForceSettings(BaseSettings):
    """Login attempt tracking and lockout settings."""

    model_config = _settings_config("RAMPART_BRUTE_FORCE_")

    max_attempts: int = 5
    window_minutes: float = 15
    lockout_minutes: float = 30
    progressive_lockout: bool = True
    track_by_ip: bool = True
    track_by_email: bool = True
    retention_hours: float = 24

    @field_validator("max_attempts", "window_minutes", "lockout_minutes", "retention_hours")
    @classmethod
    def validate_positive(cls, v, info):
        return _require_positive(v, info.field_name)


class AnomalySettings(BaseSettings):
    """Unusual login pattern heuristics."""

    model_config = _settings_config("RAMPART_ANOMALY_")

    normal_hours_start: int = 6
    normal_hours_end: int = 22
    rapid_attempt_threshold: int = 3
    rapid_attempt_window_minutes: float = 5
    max_travel_distance_km: Optional[float] = 1000.0

    @field_validator("normal_hours_start", "normal_hours_end")
    @classmethod
    def validate_hour(cls, v):
        if not 0 <= v <= 23:
            raise ValueError("Hour must be between 0 and 23")
        return v

    @model_validator(mode="after")
    def validate_hour_range(self):
        if self.normal_hours_start > self.normal_hours_end:
            raise ValueError("normal_hours_start must not be after normal_hours_end")
        return self


class SecurityMonitorSettings(BaseSettings):
    """Security event retention, request analysis and alerting."""

    model_config = _settings_config("RAMPART_SECURITY_")

    max_events: int = 50000
    retention_hours: float = 168
    alert_risk_threshold: int = 70
    correlation_bucket_minutes: float = 5
    request_window_seconds: float = 60
    request_window_max: int = 100
    auto_block_seconds: float = 60 * 60
    failed_login_horizon_minutes: float = 60
    max_known_locations: int = 20
    cleanup_interval_seconds: float = 3600.0

    @field_validator(
        "max_events", "retention_hours", "request_window_seconds", "request_window_max",
        "max_known_locations", "cleanup_interval_seconds",
    )
    @classmethod
    def validate_positive(cls, v, info):
        return _require_positive(v, info.field_name)

    @field_validator("alert_risk_threshold")
    @classmethod
    def validate_threshold(cls, v):
        if not 0 <= v <= 100:
            raise ValueError("Risk threshold must be between 0 and 100")
        return v


class RetrySettings(BaseSettings):
    """Backoff parameters for the preconfigured retry executors."""

    model_config = _settings_config("RAMPART_RETRY_")

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0

    database_max_attempts: int = 3
    database_base_delay: float = 0.5
    database_max_delay: float = 5.0
    database_backoff_multiplier: float = 2.0

    external_api_max_attempts: int = 5
    external_api_base_delay: float = 1.0
    external_api_max_delay: float = 30.0
    external_api_backoff_multiplier: float = 1.5

    recovery_timeout_seconds: float = 10.0

    @field_validator("max_attempts", "database_max_attempts", "external_api_max_attempts")
    @classmethod
    def validate_attempts(cls, v):
        if v < 1:
            raise ValueError("At least one attempt is required")
        return v

    @field_validator("backoff_multiplier", "database_backoff_multiplier", "external_api_backoff_multiplier")
    @classmethod
    def validate_multiplier(cls, v):
        if v < 1:
            raise ValueError("Backoff multiplier must be at least 1")
        return v


class ResilienceSettings(BaseSettings):
    """Health and alert thresholds over operation outcomes."""

    model_config = _settings_config("RAMPART_RESILIENCE_")

    error_rate_threshold: float = 10.0
    time_window_minutes: float = 60
    consecutive_failures_threshold: int = 5
    processing_time_threshold_ms: float = 30000
    system_down_minutes: float = 30
    no_success_warning_minutes: float = 15
    max_alerts: int = 1000
    max_metrics: int = 1000

    @field_validator("error_rate_threshold")
    @classmethod
    def validate_rate(cls, v):
        if not 0 < v <= 100:
            raise ValueError("Error rate threshold must be a percentage")
        return v

    @field_validator("consecutive_failures_threshold", "max_alerts", "max_metrics", "time_window_minutes")
    @classmethod
    def validate_positive(cls, v, info):
        return _require_positive(v, info.field_name)


class LoggingSettings(BaseSettings):
    """Log output configuration."""

    model_config = _settings_config("RAMPART_LOG_")

    level: LogLevel = LogLevel.INFO
    format_type: str = "json"
    log_file: Optional[str] = None

    @field_validator("format_type")
    @classmethod
    def validate_format(cls, v):
        if v not in ("json", "colored", "standard"):
            raise ValueError("Format must be one of: json, colored, standard")
        return v


class Settings(BaseSettings):
    """Main application settings combining all configuration sections."""

    model_config = _settings_config("RAMPART_")

    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    brute_force: BruteForceSettings = Field(default_factory=BruteForceSettings)
    anomaly: AnomalySettings = Field(default_factory=AnomalySettings)
    security: SecurityMonitorSettings = Field(default_factory=SecurityMonitorSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    resilience: ResilienceSettings = Field(default_factory=ResilienceSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None


def get_rate_limit_settings() -> RateLimitSettings:
    return get_settings().rate_limit


def get_brute_force_settings() -> BruteForceSettings:
    return get_settings().brute_force


def get_security_settings() -> SecurityMonitorSettings:
    return get_settings().security


def get_retry_settings() -> RetrySettings:
    return get_settings().retry


def get_resilience_settings() -> ResilienceSettings:
    return get_settings().resilience
