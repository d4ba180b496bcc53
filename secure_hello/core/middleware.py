"""Pipeline stages that wrap every request.

request_id_middleware is the outermost stage: every response, including 429s from the rate
limiter and rejected preflights, carries the correlation header and the
time spent inside the pipeline.
error_boundary_middleware is the innermost one.

Usage:
    Middleware(BaseHTTPMiddleware, dispatch=partial(request_id_middleware, header_name="X-Request-ID"))
"""

from __future__ import annotations

import time
import uuid

from fastapi import Request, Response
from starlette.middleware.base import RequestResponseEndpoint

from secure_hello.core.exception_handlers import ErrorHandler
from secure_hello.core.logging import clear_request_id, set_request_id

DURATION_HEADER = "X-Request-Duration-ms"


async def request_id_middleware(
    request: Request,
    call_next: RequestResponseEndpoint,
    *,
    header_name: str = "X-Request-ID",
) -> Response:
    """Reuse the caller's correlation id or mint a UUID4, and echo it back.

    The id lives in a context variable while downstream stages run, so log
    records emitted for this request are stamped with it.
    """

    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    started = time.perf_counter()
    try:
        response = await call_next(request)
    finally:
        clear_request_id()

    response.headers[header_name] = request_id
    response.headers.setdefault(DURATION_HEADER, f"{(time.perf_counter() - started) * 1000:.2f}")
    return response


async def error_boundary_middleware(
    request: Request,
    call_next: RequestResponseEndpoint,
    *,
    render_error: ErrorHandler,
) -> Response:
    """Innermost stage: render errors no exception handler claimed.

    The rendered response travels back out through the header and CORS
    stages, and is logged while the request id is still in context.
    """

    try:
        return await call_next(request)
    except Exception as exc:
        return await render_error(request, exc)
