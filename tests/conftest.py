"""Pytest configuration and fixtures shared across all test modules.

Every test builds its Settings explicitly; the process environment is
scrubbed so values from the developer's shell or a .env file never leak in.
"""

from __future__ import annotations

from typing import Any, Callable

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from secure_hello.core.app_factory import create_app
from secure_hello.core.config import LogSettings, SecuritySettings, ServerSettings, Settings

ENV_KEYS = (
    "APP_ENV",
    "NODE_ENV",
    "HOST",
    "PORT",
    "HTTPS_PORT",
    "ENABLE_HTTPS",
    "SSL_KEY_PATH",
    "SSL_CERT_PATH",
    "ALLOWED_ORIGINS",
    "RATE_LIMIT_WINDOW_MS",
    "RATE_LIMIT_MAX",
    "TRUST_PROXY",
    "SHUTDOWN_TIMEOUT_SECONDS",
    "LOG_LEVEL",
    "LOG_FORMAT",
    "LOG_OUTPUT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    """Build Settings from keyword overrides grouped by section."""

    def factory(
        *,
        app_env: str = "test",
        server: dict[str, Any] | None = None,
        security: dict[str, Any] | None = None,
    ) -> Settings:
        return Settings(
            app_env=app_env,
            server=ServerSettings(**(server or {})),
            security=SecuritySettings(**(security or {})),
            log=LogSettings(),
        )

    return factory


@pytest.fixture
def settings(make_settings: Callable[..., Settings]) -> Settings:
    return make_settings()


@pytest.fixture
def app(settings: Settings) -> FastAPI:
    return create_app(settings, configure_logs=False)


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    return TestClient(app, raise_server_exceptions=False)
