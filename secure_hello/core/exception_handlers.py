"""Global exception handlers for consistent error responses.

Design:
- Unknown routes (and known routes with the wrong method) -> 404 JSON
- Validation failures -> 400 with per-field details
- Anything else -> the error's declared status, or 500
- In production a 500 never reveals the exception message, and stack traces
  are only ever attached outside production
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Awaitable, Callable

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from secure_hello.core.config import Settings
from secure_hello.core.errors import AppError, RequestValidationAppError, ValidationIssue
from secure_hello.core.logging import get_request_id
from secure_hello.core.rate_limit import RateLimitExceeded, rate_limit_exceeded_handler

logger = logging.getLogger(__name__)

GENERIC_MESSAGE = "An unexpected error occurred"
NOT_FOUND_MESSAGE = "The requested resource could not be found"

ErrorHandler = Callable[[Request, Exception], Awaitable[JSONResponse]]


class _HTTPError(Exception):
    """HTTPException re-raised as a plain error carrying its status."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code


def _declared_status(exc: Exception) -> int:
    """Status carried by the error itself (status_code or status), else 500."""

    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and 400 <= value <= 599:
            return value
    return 500


def _request_path(request: Request) -> str:
    path = request.url.path
    if request.url.query:
        path = f"{path}?{request.url.query}"
    return path


def build_error_payload(exc: Exception, *, production: bool) -> tuple[int, dict[str, Any]]:
    """Build the JSON error body for ``exc``.

    Args:
        exc: The error that reached the handler.
        production: Whether internal details must be withheld.

    Returns:
        Tuple of (status_code, body).
    """

    status_code = _declared_status(exc)
    message = str(exc) or GENERIC_MESSAGE
    if production and status_code == 500:
        message = GENERIC_MESSAGE

    body: dict[str, Any] = {
        "status": status_code,
        "error": "Internal Server Error" if status_code == 500 else "Error",
        "message": message,
    }
    if not production:
        body["stack"] = "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        )
    return status_code, body


def make_error_handler(settings: Settings) -> ErrorHandler:
    """Create the terminal error handler bound to the runtime environment."""

    production = settings.is_production

    async def error_handler(request: Request, exc: Exception) -> JSONResponse:
        status_code, body = build_error_payload(exc, production=production)
        log_extra = {
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "status_code": status_code,
            "request_path": request.url.path,
            "request_method": request.method,
            "request_id": get_request_id(),
        }
        if status_code >= 500:
            logger.error("unhandled_exception", extra=log_extra, exc_info=exc)
        else:
            logger.warning("request_error", extra=log_extra)
        return JSONResponse(status_code=status_code, content=body)

    return error_handler


async def not_found_handler(request: Request, exc: Exception) -> JSONResponse:
    """Terminal handler for requests no route accepted."""

    return JSONResponse(
        status_code=404,
        content={
            "status": 404,
            "error": "Not Found",
            "message": NOT_FOUND_MESSAGE,
            "path": _request_path(request),
        },
    )


def _validation_response(issues: list[ValidationIssue]) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "status": 400,
            "error": "Validation Error",
            "details": [issue.as_dict() for issue in issues],
        },
    )


async def validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render RequestValidationAppError and FastAPI's RequestValidationError."""

    if isinstance(exc, RequestValidationAppError):
        issues = exc.issues
    elif isinstance(exc, RequestValidationError):
        issues = [
            ValidationIssue(
                field=".".join(str(part) for part in error.get("loc", ())[1:]) or "request",
                message=error.get("msg", "Invalid value"),
                value=error.get("input"),
            )
            for error in exc.errors()
        ]
    else:
        issues = [ValidationIssue(field="request", message=str(exc))]

    logger.warning(
        "validation_failed",
        extra={"request_path": request.url.path, "issue_count": len(issues)},
    )
    return _validation_response(issues)


def setup_exception_handlers(app: FastAPI, error_handler: ErrorHandler) -> None:
    """Register all exception handlers with the FastAPI app.

    Args:
        app: FastAPI application instance.
        error_handler: Terminal handler from make_error_handler(); pipeline
            stages that answer requests themselves render through it too.
    """

    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code in (404, 405):
            return await not_found_handler(request, exc)

        response = await error_handler(request, _HTTPError(exc.status_code, str(exc.detail)))
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    app.exception_handler(StarletteHTTPException)(http_exception_handler)
    app.exception_handler(RequestValidationError)(validation_error_handler)
    app.exception_handler(RequestValidationAppError)(validation_error_handler)
    app.exception_handler(RateLimitExceeded)(rate_limit_exceeded_handler)
    app.exception_handler(AppError)(error_handler)
    app.exception_handler(Exception)(error_handler)
