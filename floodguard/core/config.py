"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
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

# Select the .env file for the current environment
_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


def parse_methods(methods: str | None) -> tuple[str, ...]:
    """Parse a comma-separated list of HTTP methods.

    Args:
        methods: Comma-separated methods, e.g. "GET, post,DELETE".

    Returns:
        Upper-cased, de-duplicated methods in their original order.

    Examples:
        >>> parse_methods("get, POST")
        ('GET', 'POST')
        >>> parse_methods("")
        ()
    """
    if not methods:
        return ()

    seen: dict[str, None] = {}
    for part in methods.split(","):
        method = part.strip().upper()
        if method:
            seen.setdefault(method, None)
    return tuple(seen)


class GuardSettings(BaseSettings):
    """Flood guard policy and HTTP integration options.

    Numeric values are validated by the decision engine itself so that a bad
    value surfaces as a ConfigError when the guard is built.
    """

    enabled: bool = Field(
        True,
        description="Enable the flood guard on protected routes",
    )
    page_count: int = Field(
        5,
        description="Matching requests allowed per window before blocking",
    )
    page_interval_seconds: float = Field(
        10,
        description="Window length for counting identical requests",
    )
    blocking_period_seconds: float = Field(
        60,
        description="How long a blocked client stays blocked",
    )
    tracked_methods: str = Field(
        "GET,POST,DELETE",
        description="Comma-separated HTTP methods subject to tracking",
    )
    fail_open: bool = Field(
        False,
        description="Allow requests when storage fails instead of answering 503",
    )
    session_cookie: str | None = Field(
        None,
        description="Cookie whose value identifies the client (falls back to IP)",
    )
    trust_forwarded_headers: bool = Field(
        True,
        description="Honor Client-IP / X-Forwarded-For when resolving the client address",
    )

    model_config = SettingsConfigDict(
        env_prefix="GUARD_",
        case_sensitive=False,
    )

    @property
    def methods(self) -> tuple[str, ...]:
        return parse_methods(self.tracked_methods)


class StorageSettings(BaseSettings):
    """Storage backend selection and relational table layout."""

    backend: str = Field(
        "memory",
        description="Storage backend name: memory or sql",
    )
    database_url: str | None = Field(
        None,
        description="SQLAlchemy database URL (required for the sql backend)",
    )
    table_name: str = Field(
        "flood_guard",
        description="Table holding one row per client key",
    )
    id_column: str = Field("id", description="Client key column")
    data_column: str = Field("data", description="Encoded record column")
    time_column: str = Field("timestamp", description="Last-write UNIX time column")
    retention_seconds: int = Field(
        24 * 3600,
        description="Records older than this are reaped",
    )
    lock_timeout_seconds: float = Field(
        5.0,
        description="Max wait for the per-key critical section",
    )
    reap_on_startup: bool = Field(
        True,
        description="Reap stale records when the backend is created",
    )

    model_config = SettingsConfigDict(
        env_prefix="STORAGE_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging options. Records always go to stdout."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="json or plain")
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header carrying the correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.

    Environments:
    - development: Local development
    - testing: Automated tests (uses .env.testing)
    - staging: Pre-production (uses .env.staging)
    - production: Production deployment (uses .env.production)
    """

    app_env: str = APP_ENV
    guard: GuardSettings = Field(default_factory=GuardSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
