"""Rate limiting adapters.

The HTTP layer depends on the counter-store abstraction only, so the
in-memory store can later be replaced by a shared one (e.g. Redis) without
touching the middleware.
"""

from secure_hello.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult
from secure_hello.adapters.rate_limit.in_memory import InMemoryFixedWindowRateLimiter

__all__ = ["AbstractRateLimiter", "InMemoryFixedWindowRateLimiter", "RateLimitResult"]
