"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    auto_migrate: bool = True  # Apply pending Alembic migrations at startup

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "TrialSync API"
    api_version: str = "0.1.0"
    api_description: str = "Anonymous trial quotas and multi-device session sync"

    # Security - comma-separated keys accepted in X-API-Key
    service_api_keys: str = ""

    @property
    def valid_service_api_keys(self) -> list[str]:
        """Get list of accepted caller API keys."""
        keys = []
        for key in self.service_api_keys.split(","):
            key = key.strip()
            if key and key not in keys:
                keys.append(key)
        return keys

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "trialsync-api"

    # Observability - Sampling
    trace_sample_rate: float = 1.0  # 1.0 = 100% sampling

    # Anonymous trial quota
    trial_default_count: int = 5
    trial_max_count: int = 10  # Upper bound for any record's max_trials
    trial_reset_hours: int = 24
    trial_blocked_duration_hours: int = 24
    trial_max_actions_per_hour: int = 20
    trial_max_logged_actions: int = 100
    trial_retention_days: int = 90  # Unconverted records idle this long are purged

    # Trial store failover
    trial_store_probe_interval_seconds: int = 60
    trial_memory_cache_max_entries: int = 10000

    # Device sync defaults (per-user config rows override these)
    device_default_max_concurrent_sessions: int = 5
    device_default_inactive_session_timeout_seconds: int = 2592000  # 30 days
    device_default_auto_logout_inactive_sessions: bool = True
    device_default_require_device_approval: bool = False
    device_default_enable_security_alerts: bool = True
    device_default_sync_preferences: bool = True
    device_default_sync_activity: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        This prevents silent failures that only manifest at runtime.
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.trial_default_count <= 0:
            errors.append("TRIAL_DEFAULT_COUNT must be positive")
        elif self.trial_default_count > self.trial_max_count:
            errors.append(
                f"TRIAL_DEFAULT_COUNT ({self.trial_default_count}) exceeds "
                f"TRIAL_MAX_COUNT ({self.trial_max_count})"
            )

        if self.trial_reset_hours <= 0:
            errors.append("TRIAL_RESET_HOURS must be positive")

        if self.device_default_max_concurrent_sessions <= 0:
            errors.append("DEVICE_DEFAULT_MAX_CONCURRENT_SESSIONS must be positive")

        # If we have errors, fail immediately with clear messaging
        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
