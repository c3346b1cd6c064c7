"""Library configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


def _build_lock_settings() -> "LockSettings":
    """Build lock settings from environment."""

    return LockSettings()


def _build_rate_limit_settings() -> "RateLimitSettings":
    """Build rate limit settings from environment."""

    return RateLimitSettings()


def _build_store_settings() -> "StoreSettings":
    """Build store settings from environment."""

    return StoreSettings()


def _build_log_settings() -> "LogSettings":
    """Build logging settings from environment."""

    return LogSettings()


class LockSettings(BaseSettings):
    """Distributed lock defaults.

    Individual guards may override every value except the key prefix.
    """

    key_prefix: str = Field(
        "lock:",
        description="Namespace prefix prepended to every lock key",
    )
    lease_seconds: float = Field(
        30.0,
        description="Lease duration; the store expires the lock if not renewed",
        gt=0,
    )
    auto_renew: bool = Field(
        True,
        description="Renew the lease in the background while the operation runs",
    )
    renew_interval_seconds: float = Field(
        10.0,
        description="Interval between renewals (must be shorter than the lease)",
        gt=0,
    )
    operation_timeout_seconds: float = Field(
        600.0,
        description="Stop renewing after this long so a stuck operation cannot hold the lock forever",
        gt=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="LOCK_",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def _check_renew_interval(self) -> "LockSettings":
        if self.renew_interval_seconds >= self.lease_seconds:
            raise ValueError("renew_interval_seconds must be shorter than lease_seconds")
        return self


class RateLimitSettings(BaseSettings):
    """Fixed-window rate limit defaults."""

    enabled: bool = Field(
        True,
        description="Enable rate limiting; when false every call is admitted",
    )
    key_prefix: str = Field(
        "rate:",
        description="Namespace prefix prepended to every counter key",
    )
    default_limit: int = Field(
        10,
        description="Maximum number of calls allowed per window (per caller and operation)",
        ge=1,
    )
    default_window_seconds: int = Field(
        60,
        description="Rate limit window size in seconds",
        ge=1,
    )
    admin_role: str = Field(
        "admin",
        description="Callers holding this role bypass rate limiting entirely",
    )
    anonymous_identity: str = Field(
        "anonymous",
        description="Identity used when no caller context is available",
    )

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        case_sensitive=False,
    )


class StoreSettings(BaseSettings):
    """Shared key-value store connection."""

    backend: str = Field(
        "memory",
        description="Store backend: 'memory' (single process) or 'redis'",
    )
    redis_url: str = Field(
        "redis://localhost:6379/0",
        description="Redis connection URL used by the redis backend",
    )
    socket_timeout_seconds: float = Field(
        2.0,
        description="Socket timeout for store round-trips",
        gt=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="STORE_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging configuration (records always go to stdout)."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="Log format: 'json' or 'plain'")
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header carrying the correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on first import if settings are inconsistent.
    """

    app_env: str = APP_ENV
    lock: LockSettings = Field(default_factory=_build_lock_settings)
    rate_limit: RateLimitSettings = Field(default_factory=_build_rate_limit_settings)
    store: StoreSettings = Field(default_factory=_build_store_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
settings = Settings()
