"""Configuration module using Pydantic Settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_url: str = "sqlite:///data/capguard.db"
    scheduler_database_url: str | None = "sqlite:///data/scheduler.db"  # None keeps jobs in memory

    # Scheduler
    scheduler_timezone: str = "UTC"
    scheduler_max_workers: int = 4
    sweep_interval_minutes: int = 60
    data_pruning_interval: int = 1440  # 24 hours (minutes)

    # Sweep
    sweep_max_workers: int = 1  # 1 = sequential
    sweep_cap_selection: str = "first_match"  # "first_match" or "most_exceeded"

    # Environments exempt from automatic suspension
    auto_suspend_disabled_environments: list[str] = ["dev", "development", "staging"]
    default_environment: str = "prod"

    # Spike detection
    spike_threshold_multiplier: float = 3.0
    spike_detection_window_ms: int = 60 * 60 * 1000  # 1 hour
    spike_baseline_period_ms: int = 24 * 60 * 60 * 1000  # 24 hours
    min_usage_for_spike_detection: float = 10
    spike_critical_multiplier: float = 5.0
    spike_severe_multiplier: float = 10.0

    # Error rate detection
    error_rate_threshold_percentage: float = 50.0
    error_rate_detection_window_ms: int = 60 * 60 * 1000  # 1 hour
    min_requests_for_error_rate_detection: int = 100
    error_rate_critical_percentage: float = 75.0
    error_rate_severe_percentage: float = 90.0

    # Pattern detection defaults (per-project overrides live in the database)
    sql_injection_enabled: bool = True
    sql_injection_min_occurrences: int = 3
    sql_injection_window_ms: int = 60 * 60 * 1000
    sql_injection_suspend_on_detection: bool = False
    auth_brute_force_enabled: bool = True
    auth_brute_force_min_attempts: int = 10
    auth_brute_force_window_ms: int = 60 * 60 * 1000
    auth_brute_force_suspend_on_detection: bool = False
    rapid_key_creation_enabled: bool = True
    rapid_key_creation_min_keys: int = 5
    rapid_key_creation_window_ms: int = 60 * 60 * 1000
    rapid_key_creation_suspend_on_detection: bool = False

    # Notifications and side effects
    admin_notification_emails: list[str] = []
    side_effect_workers: int = 2
    side_effect_max_attempts: int = 3
    side_effect_retry_base_delay: float = 1.0  # seconds
    side_effect_retry_max_delay: float = 60.0

    # Project snapshot cache
    cache_backend: str = "memory"  # "memory" or "redis"
    redis_url: str | None = None
    redis_prefix: str = "capguard:"
    snapshot_ttl_seconds: int = 300

    # Retention
    detection_retention_days: int = 90

    # Logging
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience function for quick access
settings = get_settings()
