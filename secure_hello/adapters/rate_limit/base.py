"""Rate limiter interfaces.

The HTTP layer should depend on this abstraction (not the concrete store)
so the counter table can move to a shared backend with minimal changes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a consume operation.

    Attributes:
        allowed: Whether the request is allowed to proceed.
        limit: Max requests per window.
        used: Requests counted in the current window, this one included.
        remaining: Requests left in the current window (0 when blocked).
        window_seconds: Configured window length in seconds.
        reset_at: UNIX epoch seconds when the current window resets.
        reset_in_seconds: Whole seconds until the window resets.
    """

    allowed: bool
    limit: int
    used: int
    remaining: int
    window_seconds: float
    reset_at: float
    reset_in_seconds: int

    @property
    def retry_after_seconds(self) -> int | None:
        """Suggested wait time in seconds when blocked."""
        return None if self.allowed else self.reset_in_seconds


class AbstractRateLimiter(ABC):
    """Interface for per-key request counters."""

    @abstractmethod
    def consume(self, key: str) -> RateLimitResult:
        """Count one request for ``key`` and decide whether it is allowed.

        Args:
            key: Client identifier.

        Returns:
            RateLimitResult describing the decision.
        """
        raise NotImplementedError

    @abstractmethod
    def refund(self, key: str, reset_at: float | None = None) -> None:
        """Un-count one request for ``key``.

        Args:
            key: Client identifier.
            reset_at: ``reset_at`` of the result being refunded. When given,
                the refund is dropped unless that window is still current.
        """
        raise NotImplementedError

    @abstractmethod
    def count(self, key: str) -> int:
        """Return the number of requests counted for ``key`` right now."""
        raise NotImplementedError

    @abstractmethod
    def reset(self, key: str | None = None) -> None:
        """Forget ``key``, or every key when omitted."""
        raise NotImplementedError
