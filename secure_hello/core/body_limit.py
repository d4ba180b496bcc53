"""Size-limited body parsing.

JSON and form-encoded request bodies are read in full before routing, capped
at MAX_BODY_BYTES each, and parsed once. Oversized or malformed payloads are
answered here, so no route handler ever sees them. Other content types pass
through untouched.

The buffered body is replayed to downstream stages, and the parsed value is
available as ``request.state.parsed_body``.
"""

from __future__ import annotations

import json
from typing import Any, Callable
from urllib.parse import parse_qsl

from starlette.datastructures import Headers
from starlette.requests import Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from secure_hello.core.errors import AppError, PayloadTooLargeError, ValidationAppError

MAX_BODY_BYTES = 10 * 1024

JSON_TYPE = "application/json"
FORM_TYPE = "application/x-www-form-urlencoded"


def _media_type(headers: Headers) -> str:
    return headers.get("content-type", "").split(";", 1)[0].strip().lower()


def _is_json(media_type: str) -> bool:
    return media_type == JSON_TYPE or media_type.endswith("+json")


def _parse_json(body: bytes) -> Any:
    if not body.strip():
        return {}
    try:
        return json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationAppError(message=f"Invalid JSON body: {exc}") from exc


def _parse_form(body: bytes) -> dict[str, Any]:
    try:
        pairs = parse_qsl(body.decode("utf-8"), keep_blank_values=True)
    except UnicodeDecodeError as exc:
        raise ValidationAppError(message="Form body is not valid UTF-8") from exc

    parsed: dict[str, Any] = {}
    for key, value in pairs:
        if key in parsed:
            existing = parsed[key]
            parsed[key] = existing + [value] if isinstance(existing, list) else [existing, value]
        else:
            parsed[key] = value
    return parsed


class BodyLimitMiddleware:
    """Pure ASGI stage enforcing per-type body limits before routing."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        render_error: Callable[[Request, Exception], Any],
        max_json_bytes: int = MAX_BODY_BYTES,
        max_form_bytes: int = MAX_BODY_BYTES,
    ) -> None:
        self.app = app
        self.render_error = render_error
        self.limits = {"json": max_json_bytes, "form": max_form_bytes}

    def _kind(self, headers: Headers) -> str | None:
        media_type = _media_type(headers)
        if _is_json(media_type):
            return "json"
        if media_type == FORM_TYPE:
            return "form"
        return None

    async def _read_body(self, receive: Receive, limit: int, declared: int | None) -> bytes:
        if declared is not None and declared > limit:
            raise PayloadTooLargeError(
                message="request entity too large",
                details={"limit": limit, "actual_value": declared},
            )

        chunks: list[bytes] = []
        received = 0
        more_body = True
        while more_body:
            message = await receive()
            if message["type"] == "http.disconnect":
                break
            chunk = message.get("body", b"")
            received += len(chunk)
            if received > limit:
                raise PayloadTooLargeError(
                    message="request entity too large",
                    details={"limit": limit, "actual_value": received},
                )
            chunks.append(chunk)
            more_body = message.get("more_body", False)
        return b"".join(chunks)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        kind = self._kind(headers)
        if kind is None:
            await self.app(scope, receive, send)
            return

        declared: int | None = None
        if headers.get("content-length", "").isdigit():
            declared = int(headers["content-length"])

        try:
            body = await self._read_body(receive, self.limits[kind], declared)
            parsed = _parse_json(body) if kind == "json" else _parse_form(body)
        except AppError as exc:
            response = await self.render_error(Request(scope), exc)
            await response(scope, receive, send)
            return

        scope.setdefault("state", {})["parsed_body"] = parsed
        replayed = False

        async def replay() -> Message:
            nonlocal replayed
            if not replayed:
                replayed = True
                return {"type": "http.request", "body": body, "more_body": False}
            return await receive()

        await self.app(scope, replay, send)
