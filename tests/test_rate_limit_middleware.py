"""Tests for the rate limiting pipeline stage and its policies."""

from __future__ import annotations

import asyncio
import logging
import time
from unittest.mock import Mock

import httpx
import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from secure_hello.adapters.rate_limit.in_memory import InMemoryFixedWindowRateLimiter
from secure_hello.core.app_factory import create_app
from secure_hello.core.rate_limit import (
    STRICT_POLICY,
    RateLimiter,
    RateLimitPolicy,
    client_identifier,
    create_rate_limiter,
)


def _limited_app(make_settings, clock: Mock, *, limit: int = 2, window_ms: int = 1000, **server) -> FastAPI:
    settings = make_settings(
        security={"rate_limit_max": limit, "rate_limit_window_ms": window_ms},
        server=server or None,
    )
    policy = RateLimitPolicy(window_ms=window_ms, limit=limit, message="slow down")
    backend = InMemoryFixedWindowRateLimiter(limit=limit, window_seconds=window_ms / 1000, clock=clock)
    limiter = RateLimiter(policy, trust_proxy=settings.server.trust_proxy, backend=backend)
    assert limiter.backend is backend
    return create_app(settings, rate_limiter=limiter, configure_logs=False)


def test_requests_within_limit_are_accepted(client: TestClient) -> None:
    statuses = [client.get("/").status_code for _ in range(20)]

    assert statuses == [200] * 20


def test_burst_then_window_reset(make_settings) -> None:
    clock = Mock(return_value=1000.0)
    client = TestClient(_limited_app(make_settings, clock), raise_server_exceptions=False)

    statuses = [client.get("/").status_code for _ in range(3)]
    assert statuses == [200, 200, 429]

    clock.return_value = 1001.1
    assert client.get("/").status_code == 200


def test_scenario_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    from secure_hello.core.config import Settings

    monkeypatch.setenv("RATE_LIMIT_MAX", "2")
    monkeypatch.setenv("RATE_LIMIT_WINDOW_MS", "1000")
    app = create_app(Settings(), configure_logs=False)
    client = TestClient(app, raise_server_exceptions=False)

    headers = {"Origin": "http://localhost:3000"}
    assert [client.get("/", headers=headers).status_code for _ in range(3)] == [200, 200, 429]

    time.sleep(1.1)
    assert [client.get("/", headers=headers).status_code] == [200]


def test_rejection_body_and_headers(make_settings) -> None:
    clock = Mock(return_value=1000.0)
    client = TestClient(_limited_app(make_settings, clock, limit=1, window_ms=60_000))

    client.get("/health")
    response = client.get("/health")

    assert response.status_code == 429
    assert response.json() == {"status": 429, "error": "Too Many Requests", "message": "slow down"}
    assert response.headers["Retry-After"] == "60"
    assert response.headers["RateLimit-Policy"] == '"1-in-60sec"; q=1; w=60'
    assert response.headers["RateLimit"] == '"1-in-60sec"; r=0; t=60'


def test_accepted_responses_expose_quota(make_settings) -> None:
    clock = Mock(return_value=1000.0)
    client = TestClient(_limited_app(make_settings, clock, limit=5, window_ms=900_000))

    response = client.get("/")

    assert response.headers["RateLimit-Policy"] == '"5-in-900sec"; q=5; w=900'
    assert response.headers["RateLimit"] == '"5-in-900sec"; r=4; t=900'
    assert "X-RateLimit-Limit" not in response.headers


def test_rejection_is_logged_as_warning(make_settings, caplog: pytest.LogCaptureFixture) -> None:
    clock = Mock(return_value=1000.0)
    client = TestClient(_limited_app(make_settings, clock, limit=1, window_ms=5000))

    client.get("/")
    with caplog.at_level(logging.WARNING, logger="secure_hello.core.rate_limit"):
        client.get("/anything?x=1")

    records = [r for r in caplog.records if r.getMessage() == "rate_limit.exceeded"]
    assert len(records) == 1
    record = records[0]
    assert record.levelno == logging.WARNING
    assert record.client_ip == "testclient"
    assert record.path == "/anything?x=1"
    assert record.limit == 1
    assert record.window_ms == 5000


def test_trusted_proxy_keys_on_forwarded_address(make_settings) -> None:
    clock = Mock(return_value=1000.0)
    client = TestClient(_limited_app(make_settings, clock, limit=1, trust_proxy=True))

    assert client.get("/", headers={"X-Forwarded-For": "203.0.113.7"}).status_code == 200
    assert client.get("/", headers={"X-Forwarded-For": "203.0.113.7"}).status_code == 429
    assert client.get("/", headers={"X-Forwarded-For": "198.51.100.2"}).status_code == 200


def test_forwarded_header_ignored_without_proxy_trust(make_settings) -> None:
    clock = Mock(return_value=1000.0)
    client = TestClient(_limited_app(make_settings, clock, limit=1))

    assert client.get("/", headers={"X-Forwarded-For": "203.0.113.7"}).status_code == 200
    assert client.get("/", headers={"X-Forwarded-For": "198.51.100.2"}).status_code == 429


def test_client_identifier_falls_back_to_unknown() -> None:
    from starlette.requests import Request

    request = Request({"type": "http", "headers": [], "client": None})

    assert client_identifier(request) == "unknown"
    assert client_identifier(request, trust_proxy=True) == "unknown"


def test_client_identifier_uses_last_forwarded_hop() -> None:
    from starlette.requests import Request

    request = Request(
        {
            "type": "http",
            "headers": [(b"x-forwarded-for", b"10.0.0.1, 203.0.113.7")],
            "client": ("127.0.0.1", 5000),
        }
    )

    assert client_identifier(request, trust_proxy=True) == "203.0.113.7"
    assert client_identifier(request) == "127.0.0.1"


def test_strict_policy_is_exposed_but_not_applied(client: TestClient, app: FastAPI) -> None:
    strict = app.state.strict_rate_limiter

    assert strict.policy == STRICT_POLICY
    assert strict.policy.limit == 5
    assert strict.policy.window_ms == 900_000
    assert [client.get("/").status_code for _ in range(6)] == [200] * 6


def test_strict_limiter_as_route_dependency(app: FastAPI) -> None:
    strict = app.state.strict_rate_limiter

    @app.post("/login", dependencies=[Depends(strict)])
    def login() -> dict:
        return {"ok": True}

    client = TestClient(app)
    statuses = [client.post("/login").status_code for _ in range(6)]

    assert statuses == [200] * 5 + [429]
    blocked = client.post("/login")
    assert blocked.json()["message"] == "Too many authentication attempts, please try again later."
    assert "Retry-After" in blocked.headers


def test_custom_limiter_skip_successful_requests() -> None:
    limiter = create_rate_limiter(window_ms=60_000, limit=2, skip_successful_requests=True)
    app = FastAPI()
    app.middleware("http")(limiter.dispatch)

    @app.get("/ok")
    def ok() -> dict:
        return {"ok": True}

    client = TestClient(app)

    assert [client.get("/ok").status_code for _ in range(5)] == [200] * 5
    assert [client.get("/missing").status_code for _ in range(3)] == [404, 404, 429]


def test_custom_limiter_skip_failed_requests() -> None:
    limiter = create_rate_limiter(window_ms=60_000, limit=2, skip_failed_requests=True, message="custom")
    app = FastAPI()
    app.middleware("http")(limiter.dispatch)

    @app.get("/ok")
    def ok() -> dict:
        return {"ok": True}

    client = TestClient(app)

    assert [client.get("/missing").status_code for _ in range(4)] == [404] * 4
    assert [client.get("/ok").status_code for _ in range(3)] == [200, 200, 429]
    assert client.get("/ok").json()["message"] == "custom"


def test_create_rate_limiter_defaults() -> None:
    limiter = create_rate_limiter()

    assert limiter.policy.window_ms == 900_000
    assert limiter.policy.limit == 100
    assert limiter.policy.message == "Too many requests, please try again later."
    assert limiter.policy.skip_successful_requests is False
    assert limiter.policy.skip_failed_requests is False


@pytest.mark.asyncio
async def test_concurrent_requests_are_all_counted(app: FastAPI) -> None:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        responses = await asyncio.gather(*(client.get("/") for _ in range(50)))

    assert all(response.status_code == 200 for response in responses)
    assert app.state.rate_limiter.backend.count("127.0.0.1") == 50


def test_factories_keep_an_empty_injected_store(settings) -> None:
    from secure_hello.core.rate_limit import build_default_rate_limiter, build_strict_rate_limiter

    store = InMemoryFixedWindowRateLimiter(limit=3, window_seconds=1)
    assert len(store) == 0

    assert RateLimiter(STRICT_POLICY, backend=store).backend is store
    assert create_rate_limiter(backend=store).backend is store
    assert build_default_rate_limiter(settings.security, backend=store).backend is store
    assert build_strict_rate_limiter(backend=store).backend is store
