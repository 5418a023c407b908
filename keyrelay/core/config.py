"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load (default: .env.local)
- Proxy variables keep their bare names (API_TOKEN, BIND_PATH, ...)
- Logging variables use the LOG_ prefix
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from keyrelay.core.errors import ConfigError


APP_ENV = os.getenv("APP_ENV", "local")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

ENV_FILE_MAP = {
    "local": ".env.local",
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

AUTH_MODES = ("static", "pool")

_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.local")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Nested BaseSettings don't inherit env_file, so populate os.environ first.
# Variables already set in the real environment win over the file.
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=False)


class ProxySettings(BaseSettings):
    """Proxy, authentication and key scheduling configuration."""

    api_token: str | None = Field(
        None,
        description="Shared bearer secret accepted in static-token mode",
    )
    bind_path: str | None = Field(
        None,
        description="Unix socket path the server listens on",
    )
    auth_mode: str = Field(
        "static",
        description="Authentication mode: 'static' (API_TOKEN) or 'pool' (token names a key pool)",
    )
    database_path: str = Field(
        "data/data.db",
        description="SQLite file holding the upstream keys",
    )
    rate_limit_ms: int = Field(
        6000,
        description="Minimum interval between two uses of the same key, in milliseconds",
        ge=0,
    )
    upstream_timeout_seconds: float | None = Field(
        None,
        description="Timeout applied to upstream calls; unset means no client-side timeout",
    )

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="'json' or 'plain'")
    output: str = Field("stdout", description="'stdout' or 'file'")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(
        10_485_760,
        description="Rotate the log file after this many bytes (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(5, description="Rotated files to keep", ge=0)
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to read and echo the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


def _build_proxy_settings() -> ProxySettings:
    return ProxySettings()


def _build_log_settings() -> LogSettings:
    return LogSettings()


class Settings(BaseSettings):
    """Main application settings container.

    Nested settings are created via default_factory so env loading works.
    """

    app_env: str = APP_ENV
    proxy: ProxySettings = Field(default_factory=_build_proxy_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


def validate_settings(cfg: Settings, *, require_bind_path: bool = True) -> None:
    """Check the settings a deployment cannot start without.

    Args:
        cfg: Settings to validate.
        require_bind_path: Whether BIND_PATH must be set (the server entry
            point needs it; an app mounted by another ASGI server does not).

    Raises:
        ConfigError: If a required value is missing or invalid.
    """

    proxy = cfg.proxy
    mode = proxy.auth_mode.lower()

    if mode not in AUTH_MODES:
        raise ConfigError(
            code="invalid_auth_mode",
            message=f"Unknown AUTH_MODE '{proxy.auth_mode}'. Supported modes: {', '.join(AUTH_MODES)}",
        )
    if mode == "static" and not proxy.api_token:
        raise ConfigError(
            code="missing_api_token",
            message="API_TOKEN environment variable is required",
        )
    if require_bind_path and not proxy.bind_path:
        raise ConfigError(
            code="missing_bind_path",
            message="BIND_PATH environment variable is required",
        )


settings = Settings()
