"""Structured logging for the service.

Every component logs an event name as the message and puts the details in
``extra`` (``logger.warning("rate_limit.exceeded", extra={...})``). This
module turns those records into output:

- JSON lines by default, ``message key=value ...`` lines with LOG_FORMAT=plain
- credentials (authorization headers, cookies, key material) masked before
  any formatter sees them
- the current request id, tracked in a context variable by the request-id
  stage, stamped on records emitted while that request is handled
- uvicorn's own loggers sent through the same handler
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterable, Mapping

from secure_hello.core.config import LogSettings

REDACTED = "[REDACTED]"

SENSITIVE_KEYS_DEFAULT: frozenset[str] = frozenset(
    {
        "authorization",
        "proxy-authorization",
        "cookie",
        "set-cookie",
        "token",
        "secret",
        "password",
        "api_key",
        "x-api-key",
        "ssl_key",
        "private_key",
    }
)

# Attributes every LogRecord carries; anything else on a record came from ``extra``
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName", "color_message"}

# uvicorn attaches its own handlers to these
_SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")

_current_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)


def set_request_id(request_id: str | None) -> None:
    _current_request_id.set(request_id)


def get_request_id() -> str | None:
    return _current_request_id.get()


def clear_request_id() -> None:
    _current_request_id.set(None)


def mask(value: Any, sensitive_keys: frozenset[str] | set[str]) -> Any:
    """Return ``value`` with sensitive mapping entries replaced by REDACTED.

    Mappings are walked recursively, lists and tuples element-wise; other
    values are returned as they are.
    """

    if isinstance(value, Mapping):
        return {
            key: REDACTED if str(key).lower() in sensitive_keys else mask(item, sensitive_keys)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(mask(item, sensitive_keys) for item in value)
    return value


def record_fields(
    record: logging.LogRecord,
    sensitive_keys: frozenset[str] | set[str] = SENSITIVE_KEYS_DEFAULT,
) -> dict[str, Any]:
    """Collect the ``extra`` fields of a record, masked."""

    fields: dict[str, Any] = {}
    for key, value in vars(record).items():
        if key in _RECORD_ATTRS or key.startswith("_"):
            continue
        fields[key] = REDACTED if key.lower() in sensitive_keys else mask(value, sensitive_keys)
    return fields


class RequestIdFilter(logging.Filter):
    """Stamp the in-flight request id on records that lack one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            request_id = get_request_id()
            if request_id:
                record.request_id = request_id
        return True


class SensitiveDataFilter(logging.Filter):
    """Mask credential fields on the record itself, before any formatter runs."""

    def __init__(self, sensitive_keys: Iterable[str] | None = None) -> None:
        super().__init__()
        self.sensitive_keys = frozenset(key.lower() for key in (sensitive_keys or SENSITIVE_KEYS_DEFAULT))

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in record_fields(record, self.sensitive_keys).items():
            setattr(record, key, value)
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record: timestamp, level, logger, event, extras."""

    def __init__(self, *, sensitive_keys: Iterable[str] | None = None, ensure_ascii: bool = True) -> None:
        super().__init__()
        self.sensitive_keys = frozenset(key.lower() for key in (sensitive_keys or SENSITIVE_KEYS_DEFAULT))
        self.ensure_ascii = ensure_ascii

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None) or get_request_id()
        if request_id:
            payload["request_id"] = request_id
        payload.update(record_fields(record, self.sensitive_keys))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=self.ensure_ascii)


class KeyValueFormatter(logging.Formatter):
    """Human-readable line with the extras appended as ``key=value`` pairs."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = record_fields(record)
        if not fields:
            return line
        pairs = " ".join(f"{key}={value}" for key, value in fields.items())
        head, sep, tail = line.partition("\n")
        return f"{head} {pairs}{sep}{tail}"


def _build_handler(log_settings: LogSettings) -> logging.Handler:
    if log_settings.output.lower() != "file":
        return logging.StreamHandler(sys.stdout)

    path = Path(log_settings.file_path or "logs/app.log")
    path.parent.mkdir(parents=True, exist_ok=True)
    if log_settings.max_bytes:
        return RotatingFileHandler(
            path,
            maxBytes=log_settings.max_bytes,
            backupCount=log_settings.backup_count,
            encoding="utf-8",
        )
    return logging.FileHandler(path, encoding="utf-8")


def configure_logging(log_settings: LogSettings) -> None:
    """Install the single root handler described by ``log_settings``.

    Replaces any handlers already on the root logger, so calling it twice is
    harmless.
    """

    handler = _build_handler(log_settings)
    handler.addFilter(RequestIdFilter())
    handler.addFilter(SensitiveDataFilter())
    if log_settings.format.lower() == "plain":
        handler.setFormatter(KeyValueFormatter())
    else:
        handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_settings.level.upper(), logging.INFO))

    for name in _SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers.clear()
        server_logger.propagate = True
