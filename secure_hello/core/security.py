"""Centralized security configuration.

Holds the HTTP security-header policy and the CORS policy, plus the two
pipeline stages that apply them:

- SecurityHeadersMiddleware: CSP, HSTS, framing, MIME sniffing, referrer
  and cross-origin isolation headers on every response it sees.
- WhitelistCORSMiddleware: Starlette's CORS negotiation restricted to the
  configured origin whitelist, answering successful preflights with 204.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp, Receive, Scope, Send

from secure_hello.core.config import SecuritySettings

logger = logging.getLogger(__name__)

ONE_YEAR_SECONDS = 31_536_000
ONE_DAY_SECONDS = 86_400


@dataclass(frozen=True)
class SecurityHeadersPolicy:
    """Response headers instructing browsers to restrict the page.

    Attributes:
        csp_directives: Content-Security-Policy directives, in emit order.
            An empty source tuple renders a bare directive.
        hsts_max_age: Strict-Transport-Security max-age in seconds.
        hsts_include_subdomains: Extend HSTS to every subdomain.
        hsts_preload: Mark the host eligible for browser preload lists.
        frame_options: X-Frame-Options action.
        referrer_policy: Referrer-Policy value.
        opener_policy: Cross-Origin-Opener-Policy value.
        resource_policy: Cross-Origin-Resource-Policy value.
        embedder_policy: Cross-Origin-Embedder-Policy value.
    """

    csp_directives: tuple[tuple[str, tuple[str, ...]], ...] = (
        ("default-src", ("'self'",)),
        ("base-uri", ("'self'",)),
        ("font-src", ("'self'",)),
        ("form-action", ("'self'",)),
        ("frame-ancestors", ("'self'",)),
        ("img-src", ("'self'", "data:")),
        ("object-src", ("'none'",)),
        ("script-src", ("'self'",)),
        ("script-src-attr", ("'none'",)),
        ("style-src", ("'self'", "'unsafe-inline'")),
        ("upgrade-insecure-requests", ()),
    )
    hsts_max_age: int = ONE_YEAR_SECONDS
    hsts_include_subdomains: bool = True
    hsts_preload: bool = True
    frame_options: str = "SAMEORIGIN"
    referrer_policy: str = "strict-origin-when-cross-origin"
    opener_policy: str = "same-origin"
    resource_policy: str = "same-origin"
    embedder_policy: str = "require-corp"

    def content_security_policy(self) -> str:
        parts = []
        for directive, sources in self.csp_directives:
            parts.append(" ".join((directive, *sources)))
        return ";".join(parts)

    def strict_transport_security(self) -> str:
        value = f"max-age={self.hsts_max_age}"
        if self.hsts_include_subdomains:
            value += "; includeSubDomains"
        if self.hsts_preload:
            value += "; preload"
        return value

    def headers(self) -> dict[str, str]:
        return {
            "Content-Security-Policy": self.content_security_policy(),
            "Cross-Origin-Embedder-Policy": self.embedder_policy,
            "Cross-Origin-Opener-Policy": self.opener_policy,
            "Cross-Origin-Resource-Policy": self.resource_policy,
            "Origin-Agent-Cluster": "?1",
            "Referrer-Policy": self.referrer_policy,
            "Strict-Transport-Security": self.strict_transport_security(),
            "X-Content-Type-Options": "nosniff",
            "X-DNS-Prefetch-Control": "off",
            "X-Download-Options": "noopen",
            "X-Frame-Options": self.frame_options,
            "X-Permitted-Cross-Domain-Policies": "none",
            # Legacy XSS auditors did more harm than good; explicitly off
            "X-XSS-Protection": "0",
        }


@dataclass(frozen=True)
class CorsPolicy:
    """Cross-origin access rules."""

    allow_origins: tuple[str, ...]
    allow_methods: tuple[str, ...] = ("GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS")
    allow_headers: tuple[str, ...] = ("Content-Type", "Authorization", "X-Requested-With")
    allow_credentials: bool = True
    max_age: int = ONE_DAY_SECONDS
    options_success_status: int = 204
    expose_headers: tuple[str, ...] = field(default=())


def build_cors_policy(security: SecuritySettings) -> CorsPolicy:
    return CorsPolicy(allow_origins=tuple(security.allowed_origin_list))


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Attach the security-header policy to every downstream response."""

    def __init__(self, app: ASGIApp, policy: SecurityHeadersPolicy | None = None) -> None:
        super().__init__(app)
        self._headers = (policy or SecurityHeadersPolicy()).headers()

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        for name, value in self._headers.items():
            response.headers[name] = value
        return response


class WhitelistCORSMiddleware(CORSMiddleware):
    """Starlette CORS negotiation driven by a CorsPolicy.

    Origins outside the whitelist never receive Access-Control-Allow-Origin
    and are logged; the request itself is not blocked (browsers enforce the
    missing header).
    """

    def __init__(self, app: ASGIApp, policy: CorsPolicy) -> None:
        super().__init__(
            app,
            allow_origins=list(policy.allow_origins),
            allow_methods=list(policy.allow_methods),
            allow_headers=list(policy.allow_headers),
            allow_credentials=policy.allow_credentials,
            expose_headers=list(policy.expose_headers),
            max_age=policy.max_age,
        )
        self.policy = policy

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            origin = Headers(scope=scope).get("origin")
            if origin is not None and not self.is_allowed_origin(origin=origin):
                logger.warning(
                    "cors.origin_rejected",
                    extra={"origin": origin, "path": scope.get("path", "")},
                )
        await super().__call__(scope, receive, send)

    def preflight_response(self, request_headers: Headers) -> Response:
        response = super().preflight_response(request_headers=request_headers)
        if response.status_code != 200:
            return response

        headers = {
            name: value
            for name, value in response.headers.items()
            if name not in ("content-length", "content-type")
        }
        return Response(status_code=self.policy.options_success_status, headers=headers)
