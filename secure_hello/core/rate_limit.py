"""Per-client rate limiting for the HTTP layer.

This module wires the counter store into the request pipeline.

Three policies are exposed:
- the default policy, applied globally as the first pipeline stage and
  tunable through RATE_LIMIT_WINDOW_MS / RATE_LIMIT_MAX;
- the strict policy (5 requests per 15 minutes) for sensitive routes;
- create_rate_limiter() for anything else.

A limiter works both as pipeline middleware (``limiter.dispatch``) and as a
route dependency (``Depends(limiter)``).

Responses carry the draft-8 standard headers (RateLimit-Policy, RateLimit);
legacy X-RateLimit-* headers are never sent.
"""

import logging
from dataclasses import dataclass

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import RequestResponseEndpoint

from secure_hello.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult
from secure_hello.adapters.rate_limit.in_memory import InMemoryFixedWindowRateLimiter
from secure_hello.core.config import (
    DEFAULT_MAX_REQUESTS,
    DEFAULT_WINDOW_MS,
    SecuritySettings,
)

logger = logging.getLogger(__name__)

DEFAULT_STRICT_MAX_REQUESTS = 5
UNKNOWN_CLIENT = "unknown"

DEFAULT_MESSAGE = "You have exceeded the rate limit. Please try again later."
STRICT_MESSAGE = "Too many authentication attempts, please try again later."
CUSTOM_MESSAGE = "Too many requests, please try again later."


@dataclass(frozen=True)
class RateLimitPolicy:
    """Thresholds and behaviour of one rate limiter.

    Attributes:
        window_ms: Window length in milliseconds.
        limit: Maximum requests per window per client.
        message: Text placed in the 429 body.
        skip_successful_requests: Un-count requests that end with status < 400.
        skip_failed_requests: Un-count requests that end with status >= 400.
        label: Prefix used in violation logs.
    """

    window_ms: int = DEFAULT_WINDOW_MS
    limit: int = DEFAULT_MAX_REQUESTS
    message: str = CUSTOM_MESSAGE
    skip_successful_requests: bool = False
    skip_failed_requests: bool = False
    label: str = "Rate Limit"

    @property
    def window_seconds(self) -> float:
        return self.window_ms / 1000

    @property
    def name(self) -> str:
        """Policy identifier used in the draft-8 headers."""
        return f"{self.limit}-in-{max(1, round(self.window_seconds))}sec"

    def rejection_body(self) -> dict:
        return {
            "status": status.HTTP_429_TOO_MANY_REQUESTS,
            "error": "Too Many Requests",
            "message": self.message,
        }


def default_policy(security: SecuritySettings) -> RateLimitPolicy:
    """Global policy, thresholds taken from configuration."""
    return RateLimitPolicy(
        window_ms=security.rate_limit_window_ms,
        limit=security.rate_limit_max,
        message=DEFAULT_MESSAGE,
    )


STRICT_POLICY = RateLimitPolicy(
    window_ms=DEFAULT_WINDOW_MS,
    limit=DEFAULT_STRICT_MAX_REQUESTS,
    message=STRICT_MESSAGE,
    label="Strict Rate Limit",
)


def client_identifier(request: Request, *, trust_proxy: bool = False) -> str:
    """Derive the rate limit key for a request.

    With proxy trust enabled the right-most X-Forwarded-For entry wins: that
    is the address the single trusted proxy saw. Otherwise the socket peer
    address is used, and "unknown" when neither is available.
    """

    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for", "")
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        if hops:
            return hops[-1]

    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN_CLIENT


def rate_limit_headers(policy: RateLimitPolicy, result: RateLimitResult) -> dict[str, str]:
    """Build draft-8 RateLimit-Policy / RateLimit headers for a decision."""

    window = max(1, round(result.window_seconds))
    headers = {
        "RateLimit-Policy": f'"{policy.name}"; q={result.limit}; w={window}',
        "RateLimit": f'"{policy.name}"; r={result.remaining}; t={result.reset_in_seconds}',
    }
    if not result.allowed:
        headers["Retry-After"] = str(result.reset_in_seconds)
    return headers


class RateLimitExceeded(Exception):
    """Raised by the route dependency when a client is over its budget."""

    def __init__(self, policy: RateLimitPolicy, result: RateLimitResult) -> None:
        super().__init__(policy.message)
        self.policy = policy
        self.result = result


class RateLimiter:
    """Rate limiter bound to one policy and one counter store."""

    def __init__(
        self,
        policy: RateLimitPolicy,
        *,
        trust_proxy: bool = False,
        backend: AbstractRateLimiter | None = None,
    ) -> None:
        self.policy = policy
        self.trust_proxy = trust_proxy
        if backend is None:
            backend = InMemoryFixedWindowRateLimiter(
                limit=policy.limit,
                window_seconds=policy.window_seconds,
            )
        self.backend = backend

    def key_for(self, request: Request) -> str:
        return client_identifier(request, trust_proxy=self.trust_proxy)

    def hit(self, request: Request) -> tuple[str, RateLimitResult]:
        """Count the request and expose the decision on ``request.state``."""

        key = self.key_for(request)
        result = self.backend.consume(key)
        request.state.rate_limit = result
        if not result.allowed:
            self._log_violation(request, key)
        return key, result

    def _log_violation(self, request: Request, key: str) -> None:
        path = request.url.path
        if request.url.query:
            path = f"{path}?{request.url.query}"
        logger.warning(
            "rate_limit.exceeded",
            extra={
                "policy": self.policy.label,
                "client_ip": key,
                "path": path,
                "limit": self.policy.limit,
                "window_ms": self.policy.window_ms,
            },
        )

    def rejection_response(self, result: RateLimitResult) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content=self.policy.rejection_body(),
            headers=rate_limit_headers(self.policy, result),
        )

    def _should_refund(self, status_code: int) -> bool:
        if status_code < 400:
            return self.policy.skip_successful_requests
        return self.policy.skip_failed_requests

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        """Pipeline stage: reject over-budget clients before anything else runs."""

        key, result = self.hit(request)
        if not result.allowed:
            return self.rejection_response(result)

        try:
            response = await call_next(request)
        except Exception:
            if self.policy.skip_failed_requests:
                self.backend.refund(key, reset_at=result.reset_at)
            raise

        if self._should_refund(response.status_code):
            self.backend.refund(key, reset_at=result.reset_at)
        for name, value in rate_limit_headers(self.policy, result).items():
            response.headers.setdefault(name, value)
        return response

    async def __call__(self, request: Request, response: Response) -> None:
        """Route dependency form.

        Counts every request that reaches the route; the skip options apply
        to the middleware form only, where the final status is known.
        """

        _, result = self.hit(request)
        if not result.allowed:
            raise RateLimitExceeded(self.policy, result)
        for name, value in rate_limit_headers(self.policy, result).items():
            response.headers[name] = value


def create_rate_limiter(
    *,
    window_ms: int = DEFAULT_WINDOW_MS,
    limit: int = DEFAULT_MAX_REQUESTS,
    message: str = CUSTOM_MESSAGE,
    skip_successful_requests: bool = False,
    skip_failed_requests: bool = False,
    trust_proxy: bool = False,
    backend: AbstractRateLimiter | None = None,
) -> RateLimiter:
    """Build a rate limiter with custom thresholds.

    Example:
        >>> heavy = create_rate_limiter(window_ms=60_000, limit=30,
        ...                             message="API rate limit exceeded")
        >>> @router.get("/heavy", dependencies=[Depends(heavy)])
        ... def heavy_endpoint(): ...
    """

    policy = RateLimitPolicy(
        window_ms=window_ms,
        limit=limit,
        message=message,
        skip_successful_requests=skip_successful_requests,
        skip_failed_requests=skip_failed_requests,
        label="Custom Rate Limit",
    )
    return RateLimiter(policy, trust_proxy=trust_proxy, backend=backend)


def build_default_rate_limiter(
    security: SecuritySettings,
    *,
    trust_proxy: bool = False,
    backend: AbstractRateLimiter | None = None,
) -> RateLimiter:
    return RateLimiter(default_policy(security), trust_proxy=trust_proxy, backend=backend)


def build_strict_rate_limiter(
    *,
    trust_proxy: bool = False,
    backend: AbstractRateLimiter | None = None,
) -> RateLimiter:
    return RateLimiter(STRICT_POLICY, trust_proxy=trust_proxy, backend=backend)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Render RateLimitExceeded raised by the dependency form."""

    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=exc.policy.rejection_body(),
        headers=rate_limit_headers(exc.policy, exc.result),
    )
