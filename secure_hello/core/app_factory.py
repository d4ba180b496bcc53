"""Application factory for the FastAPI app.

Builds the request pipeline from an explicit, statically ordered list of
stages (outermost first). Each stage may answer the request itself:

    request id -> rate limiter -> security headers -> CORS
    -> size-limited body parsing -> error boundary -> routes -> not found

The error boundary renders unhandled exceptions inside the header and CORS
stages, so 500 responses carry the same headers as any other response.
"""

from __future__ import annotations

import logging
from functools import partial

from fastapi import FastAPI
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware

from secure_hello.api.routes import health_router, hello_router
from secure_hello.core.body_limit import BodyLimitMiddleware
from secure_hello.core.config import Settings
from secure_hello.core.exception_handlers import (
    ErrorHandler,
    make_error_handler,
    setup_exception_handlers,
)
from secure_hello.core.logging import configure_logging
from secure_hello.core.middleware import error_boundary_middleware, request_id_middleware
from secure_hello.core.rate_limit import (
    RateLimiter,
    build_default_rate_limiter,
    build_strict_rate_limiter,
)
from secure_hello.core.security import (
    SecurityHeadersMiddleware,
    SecurityHeadersPolicy,
    WhitelistCORSMiddleware,
    build_cors_policy,
)

logger = logging.getLogger(__name__)


def build_pipeline(
    settings: Settings,
    *,
    rate_limiter: RateLimiter,
    render_error: ErrorHandler,
) -> list[Middleware]:
    """Return the ordered pipeline stages, outermost first."""

    return [
        Middleware(
            BaseHTTPMiddleware,
            dispatch=partial(request_id_middleware, header_name=settings.log.request_id_header),
        ),
        Middleware(BaseHTTPMiddleware, dispatch=rate_limiter.dispatch),
        Middleware(SecurityHeadersMiddleware, policy=SecurityHeadersPolicy()),
        Middleware(WhitelistCORSMiddleware, policy=build_cors_policy(settings.security)),
        Middleware(BodyLimitMiddleware, render_error=render_error),
        Middleware(BaseHTTPMiddleware, dispatch=partial(error_boundary_middleware, render_error=render_error)),
    ]


def create_app(
    settings: Settings,
    *,
    rate_limiter: RateLimiter | None = None,
    configure_logs: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        settings: Resolved settings, built once at startup.
        rate_limiter: Global limiter; built from settings when omitted.
        configure_logs: Install the logging configuration (off in tests
            that capture logs themselves).

    Returns:
        Configured app. The global and strict limiters are reachable as
        ``app.state.rate_limiter`` and ``app.state.strict_rate_limiter``.
    """
    # Logging first so subsequent init logs are formatted as desired
    if configure_logs:
        configure_logging(settings.log)

    trust_proxy = settings.server.trust_proxy
    limiter = rate_limiter or build_default_rate_limiter(
        settings.security,
        trust_proxy=trust_proxy,
    )

    render_error = make_error_handler(settings)

    app = FastAPI(
        title="Secure Hello",
        description="Hello, World! behind rate limiting, security headers and CORS.",
        version="1.0.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        middleware=build_pipeline(settings, rate_limiter=limiter, render_error=render_error),
    )

    # Exception handlers double as the terminal not-found/error stages
    setup_exception_handlers(app, render_error)

    app.include_router(hello_router)
    app.include_router(health_router)

    app.state.settings = settings
    app.state.rate_limiter = limiter
    app.state.strict_rate_limiter = build_strict_rate_limiter(trust_proxy=trust_proxy)

    logger.debug(
        "app.created",
        extra={
            "app_env": settings.app_env,
            "rate_limit_max": limiter.policy.limit,
            "rate_limit_window_ms": limiter.policy.window_ms,
            "allowed_origins": settings.security.allowed_origin_list,
        },
    )
    return app
