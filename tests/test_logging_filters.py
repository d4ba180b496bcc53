"""Tests for sensitive data filtering in logs."""

from __future__ import annotations

import json
import logging
from io import StringIO

import pytest

from secure_hello.core.config import LogSettings
from secure_hello.core.logging import (
    JsonFormatter,
    KeyValueFormatter,
    RequestIdFilter,
    SensitiveDataFilter,
    clear_request_id,
    configure_logging,
    set_request_id,
)


@pytest.fixture
def capture():
    """Return (logger, stream) wired through the redaction filter and JSON formatter."""

    def factory(name: str) -> tuple[logging.Logger, StringIO]:
        logger = logging.getLogger(name)
        logger.setLevel(logging.INFO)
        logger.handlers.clear()
        logger.propagate = False

        stream = StringIO()
        handler = logging.StreamHandler(stream)
        handler.addFilter(RequestIdFilter())
        handler.addFilter(SensitiveDataFilter())
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
        return logger, stream

    return factory


def test_sensitive_filter_redacts_credentials(capture):
    """Ensure SensitiveDataFilter redacts credential fields."""
    logger, stream = capture("test_redaction")

    logger.info(
        "test_event",
        extra={
            "authorization": "Bearer secret-123",
            "password": "hunter2",
            "safe_field": "visible",
        },
    )

    output = stream.getvalue()

    assert "secret-123" not in output
    assert "hunter2" not in output
    assert "[REDACTED]" in output
    assert "visible" in output


def test_sensitive_filter_allows_safe_fields(capture):
    """Verify the rate limit violation fields pass through unmodified."""
    logger, stream = capture("test_safe_fields")

    logger.warning(
        "rate_limit.exceeded",
        extra={
            "client_ip": "203.0.113.7",
            "path": "/health?x=1",
            "limit": 100,
            "window_ms": 900000,
        },
    )

    data = json.loads(stream.getvalue())

    assert data["level"] == "warning"
    assert data["message"] == "rate_limit.exceeded"
    assert data["client_ip"] == "203.0.113.7"
    assert data["path"] == "/health?x=1"
    assert data["window_ms"] == 900000
    assert "[REDACTED]" not in stream.getvalue()


def test_sensitive_filter_redacts_nested_dicts(capture):
    """Ensure nested sensitive fields are redacted."""
    logger, stream = capture("test_nested")

    logger.info(
        "nested_event",
        extra={
            "headers": {
                "cookie": "session=abc",
                "user-agent": "pytest",
            },
        },
    )

    output = stream.getvalue()

    assert "session=abc" not in output
    assert "[REDACTED]" in output
    assert "pytest" in output


def test_request_id_attached_from_context(capture):
    logger, stream = capture("test_request_id")

    set_request_id("req-42")
    try:
        logger.info("with_context")
    finally:
        clear_request_id()
    logger.info("without_context")

    first, second = (json.loads(line) for line in stream.getvalue().splitlines())
    assert first["request_id"] == "req-42"
    assert "request_id" not in second


def test_exception_info_is_formatted(capture):
    logger, stream = capture("test_exc_info")

    try:
        raise RuntimeError("kaboom")
    except RuntimeError:
        logger.exception("failed")

    data = json.loads(stream.getvalue())
    assert "RuntimeError: kaboom" in data["exc_info"]


def test_key_value_formatter_appends_extras():
    formatter = KeyValueFormatter()
    record = logging.makeLogRecord(
        {
            "name": "secure_hello.core.rate_limit",
            "levelno": logging.WARNING,
            "levelname": "WARNING",
            "msg": "rate_limit.exceeded",
            "client_ip": "203.0.113.7",
            "limit": 5,
        }
    )

    line = formatter.format(record)

    assert "WARNING secure_hello.core.rate_limit rate_limit.exceeded" in line
    assert line.endswith("client_ip=203.0.113.7 limit=5")


def test_configure_logging_installs_single_root_handler():
    root = logging.getLogger()
    uvicorn_logger = logging.getLogger("uvicorn.access")
    saved = (root.handlers[:], root.level, uvicorn_logger.handlers[:], uvicorn_logger.propagate)
    uvicorn_logger.handlers = [logging.NullHandler()]
    uvicorn_logger.propagate = False
    try:
        configure_logging(LogSettings(level="debug", format="plain"))
        configure_logging(LogSettings(level="debug", format="plain"))

        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, KeyValueFormatter)
        assert root.level == logging.DEBUG
        assert uvicorn_logger.handlers == []
        assert uvicorn_logger.propagate is True
    finally:
        root.handlers[:], level, uvicorn_logger.handlers[:], uvicorn_logger.propagate = saved
        root.setLevel(level)
