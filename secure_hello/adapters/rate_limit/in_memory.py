"""In-memory fixed-window rate limiter.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: uses a lock around shared state, so concurrent requests from
  one client never lose an increment.
- Bounded: expired records are swept at most once per window and the table
  never tracks more than ``max_keys`` identities.
"""

from __future__ import annotations

import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from secure_hello.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult

DEFAULT_MAX_KEYS = 100_000


@dataclass
class _WindowState:
    window_start: float
    count: int


class InMemoryFixedWindowRateLimiter(AbstractRateLimiter):
    """Rate limiter using a fixed time window per key.

    Each key's window opens on its first request and lasts ``window_seconds``.
    Every request is counted, rejected ones included; a request is allowed
    while the count stays at or below ``limit``.

    Records are kept in window-start order, so both the expiry sweep and the
    capacity eviction only ever look at the oldest entries.
    """

    def __init__(
        self,
        *,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.time,
        max_keys: int = DEFAULT_MAX_KEYS,
    ) -> None:
        """Initialize the in-memory rate limiter.

        Args:
            limit: Maximum number of allowed requests per window.
            window_seconds: Length of a window in seconds.
            clock: Time source function returning UNIX time in seconds.
            max_keys: Upper bound on tracked client identities.

        Raises:
            ValueError: If any bound is invalid.
        """
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        if max_keys < 1:
            raise ValueError("max_keys must be >= 1")

        self._limit = limit
        self._window_seconds = window_seconds
        self._clock = clock
        self._max_keys = max_keys
        self._lock = threading.RLock()
        self._state_by_key: OrderedDict[str, _WindowState] = OrderedDict()
        self._last_sweep = clock()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def window_seconds(self) -> float:
        return self._window_seconds

    def __len__(self) -> int:
        with self._lock:
            return len(self._state_by_key)

    def _is_expired(self, state: _WindowState, now: float) -> bool:
        return now - state.window_start >= self._window_seconds

    def _get_or_reset_state(self, key: str, now: float) -> _WindowState:
        """Get the current state for key, opening a fresh window when needed."""
        state = self._state_by_key.get(key)
        if state is None:
            state = _WindowState(window_start=now, count=0)
            self._state_by_key[key] = state
        elif self._is_expired(state, now):
            state.window_start = now
            state.count = 0
            self._state_by_key.move_to_end(key)
        return state

    def _sweep(self, now: float) -> None:
        """Drop expired records, oldest first, at most once per window."""
        if now - self._last_sweep < self._window_seconds:
            return
        self._last_sweep = now
        while self._state_by_key:
            oldest_key = next(iter(self._state_by_key))
            if not self._is_expired(self._state_by_key[oldest_key], now):
                break
            del self._state_by_key[oldest_key]

    def _enforce_capacity(self) -> None:
        while len(self._state_by_key) > self._max_keys:
            self._state_by_key.popitem(last=False)

    def _build_result(self, state: _WindowState, now: float) -> RateLimitResult:
        reset_at = state.window_start + self._window_seconds
        return RateLimitResult(
            allowed=state.count <= self._limit,
            limit=self._limit,
            used=state.count,
            remaining=max(0, self._limit - state.count),
            window_seconds=self._window_seconds,
            reset_at=reset_at,
            reset_in_seconds=max(0, int(math.ceil(reset_at - now))),
        )

    def consume(self, key: str) -> RateLimitResult:
        """Count one request for the provided key.

        Args:
            key: Unique identifier for rate limiting (e.g., client address).

        Returns:
            RateLimitResult with allowance decision and metadata.

        Raises:
            ValueError: If key is empty.
        """
        if not key:
            raise ValueError("key must be a non-empty string")

        with self._lock:
            now = self._clock()
            self._sweep(now)
            state = self._get_or_reset_state(key, now)
            state.count += 1
            result = self._build_result(state, now)
            self._enforce_capacity()
            return result

    def refund(self, key: str, reset_at: float | None = None) -> None:
        with self._lock:
            state = self._state_by_key.get(key)
            if state is None or state.count == 0:
                return
            if reset_at is not None and state.window_start + self._window_seconds != reset_at:
                # The window rolled over since the request was counted
                return
            state.count -= 1

    def count(self, key: str) -> int:
        with self._lock:
            state = self._state_by_key.get(key)
            if state is None or self._is_expired(state, self._clock()):
                return 0
            return state.count

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._state_by_key.clear()
            else:
                self._state_by_key.pop(key, None)
