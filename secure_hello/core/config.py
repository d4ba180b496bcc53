"""Application configuration using Pydantic Settings.

Configuration is environment-driven and never fatal:
- Every value has a documented default
- Missing, empty or malformed values silently fall back to that default
- APP_ENV (or NODE_ENV) selects an optional .env.{environment} file

Settings are built once at startup via get_settings() and handed to the
components that need them.
"""

from __future__ import annotations

import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

ENV_FILE_MAP = {
    "development": ".env.development",
    "test": ".env.test",
    "production": ".env.production",
}

DEFAULT_PORT = 3000
DEFAULT_HTTPS_PORT = 443
DEFAULT_KEY_PATH = "./certs/server.key"
DEFAULT_CERT_PATH = "./certs/server.cert"
DEFAULT_ALLOWED_ORIGINS = ("http://localhost:3000", "http://localhost:8080")
DEFAULT_WINDOW_MS = 15 * 60 * 1000
DEFAULT_MAX_REQUESTS = 100
DEFAULT_SHUTDOWN_TIMEOUT_SECONDS = 10

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def parse_int_with_default(value: Any, default: int) -> int:
    """Parse a positive integer, falling back to ``default``.

    Mirrors ``parseInt(value, 10)``: leading whitespace and a numeric prefix
    are accepted ("50abc" -> 50, "1.9" -> 1). Anything missing, empty,
    non-numeric or non-positive yields ``default`` unchanged.

    Args:
        value: Raw value, usually a string from the environment.
        default: Fallback used for every invalid input.

    Returns:
        The parsed positive integer or ``default``.
    """

    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value if value > 0 else default
    if isinstance(value, float):
        return int(value) if value >= 1 else default

    match = _LEADING_INT.match(str(value))
    if match is None:
        return default

    parsed = int(match.group(1))
    return parsed if parsed > 0 else default


def parse_port(value: Any, default: int) -> int:
    """Parse a TCP port, falling back to ``default`` outside 1-65535."""

    port = parse_int_with_default(value, default)
    return port if port <= 65535 else default


def parse_flag(value: Any) -> bool:
    """Only the exact string "true" enables a flag; "TRUE" or " true " do not."""

    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value) == "true"


def parse_origins(value: str | None) -> list[str]:
    """Split a comma-separated origin list, trimming blanks.

    An unset or empty value yields the development defaults. A value made
    only of separators yields an empty whitelist.
    """

    if not value:
        return list(DEFAULT_ALLOWED_ORIGINS)
    return [origin.strip() for origin in value.split(",") if origin.strip()]


def load_environment(app_env: str | None = None) -> str | None:
    """Load .env and .env.{APP_ENV} from the project root into os.environ.

    Variables already present in the process environment win.

    Returns:
        The environment file that was selected, if one exists.
    """

    from dotenv import load_dotenv

    base_env = PROJECT_ROOT / ".env"
    if base_env.is_file():
        load_dotenv(base_env, override=False)

    env_name = app_env or os.getenv("APP_ENV") or os.getenv("NODE_ENV") or "development"
    env_path = PROJECT_ROOT / ENV_FILE_MAP.get(env_name, ".env.development")
    if env_path.is_file():
        load_dotenv(env_path, override=False)
        return str(env_path)
    return None


class ServerSettings(BaseSettings):
    """Listener and process lifecycle configuration."""

    host: str = Field("127.0.0.1", description="Interface the listeners bind to")
    port: int = Field(DEFAULT_PORT, description="Plain HTTP port")
    https_port: int = Field(DEFAULT_HTTPS_PORT, description="TLS port")
    enable_https: bool = Field(False, description="Start the TLS listener")
    ssl_key_path: str = Field(DEFAULT_KEY_PATH, description="PEM private key path")
    ssl_cert_path: str = Field(DEFAULT_CERT_PATH, description="PEM certificate path")
    trust_proxy: bool = Field(
        False,
        description="Derive the client address from X-Forwarded-For (one hop)",
    )
    shutdown_timeout_seconds: int = Field(
        DEFAULT_SHUTDOWN_TIMEOUT_SECONDS,
        description="Force exit when listeners do not close within this time",
    )

    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")

    @field_validator("host", mode="before")
    @classmethod
    def _host(cls, value: Any) -> str:
        return str(value).strip() if value and str(value).strip() else "127.0.0.1"

    @field_validator("port", mode="before")
    @classmethod
    def _port(cls, value: Any) -> int:
        return parse_port(value, DEFAULT_PORT)

    @field_validator("https_port", mode="before")
    @classmethod
    def _https_port(cls, value: Any) -> int:
        return parse_port(value, DEFAULT_HTTPS_PORT)

    @field_validator("enable_https", "trust_proxy", mode="before")
    @classmethod
    def _flags(cls, value: Any) -> bool:
        return parse_flag(value)

    @field_validator("ssl_key_path", mode="before")
    @classmethod
    def _key_path(cls, value: Any) -> str:
        return str(value) if value else DEFAULT_KEY_PATH

    @field_validator("ssl_cert_path", mode="before")
    @classmethod
    def _cert_path(cls, value: Any) -> str:
        return str(value) if value else DEFAULT_CERT_PATH

    @field_validator("shutdown_timeout_seconds", mode="before")
    @classmethod
    def _shutdown_timeout(cls, value: Any) -> int:
        return parse_int_with_default(value, DEFAULT_SHUTDOWN_TIMEOUT_SECONDS)


class SecuritySettings(BaseSettings):
    """CORS whitelist and global rate limit thresholds."""

    allowed_origins: str = Field(
        ",".join(DEFAULT_ALLOWED_ORIGINS),
        description="Comma-separated CORS origin whitelist",
    )
    rate_limit_window_ms: int = Field(
        DEFAULT_WINDOW_MS,
        description="Global rate limit window in milliseconds",
    )
    rate_limit_max: int = Field(
        DEFAULT_MAX_REQUESTS,
        description="Maximum requests per window per client",
    )

    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _origins(cls, value: Any) -> str:
        if isinstance(value, (list, tuple)):
            return ",".join(str(v) for v in value)
        return "" if value is None else str(value)

    @field_validator("rate_limit_window_ms", mode="before")
    @classmethod
    def _window(cls, value: Any) -> int:
        return parse_int_with_default(value, DEFAULT_WINDOW_MS)

    @field_validator("rate_limit_max", mode="before")
    @classmethod
    def _max(cls, value: Any) -> int:
        return parse_int_with_default(value, DEFAULT_MAX_REQUESTS)

    @property
    def allowed_origin_list(self) -> list[str]:
        return parse_origins(self.allowed_origins)


class LogSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="json or plain")
    output: str = Field("stdout", description="stdout or file")
    file_path: str | None = Field("logs/app.log", description="Log file when output=file")
    max_bytes: int = Field(0, description="Rotate the log file at this size (0 disables)")
    backup_count: int = Field(5, description="Rotated files to keep")
    request_id_header: str = Field("X-Request-ID", description="Correlation header")

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("max_bytes", mode="before")
    @classmethod
    def _max_bytes(cls, value: Any) -> int:
        return parse_int_with_default(value, 0)

    @field_validator("backup_count", mode="before")
    @classmethod
    def _backup_count(cls, value: Any) -> int:
        return parse_int_with_default(value, 5)


def _build_server_settings() -> ServerSettings:
    return ServerSettings()


def _build_security_settings() -> SecuritySettings:
    return SecuritySettings()


def _build_log_settings() -> LogSettings:
    return LogSettings()


class Settings(BaseSettings):
    """Main settings container.

    Nested settings are created via default_factory so each group reads the
    environment on its own. Tests construct groups explicitly instead.
    """

    app_env: str = Field(
        "development",
        validation_alias=AliasChoices("APP_ENV", "NODE_ENV", "app_env"),
    )
    server: ServerSettings = Field(default_factory=_build_server_settings)
    security: SecuritySettings = Field(default_factory=_build_security_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("app_env", mode="before")
    @classmethod
    def _app_env(cls, value: Any) -> str:
        text = str(value).strip().lower() if value else ""
        return text or "development"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Build the process-wide settings once, after loading .env files."""

    load_environment()
    return Settings()
