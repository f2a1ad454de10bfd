"""
Fixed-window rate limiting per user and action.

Keys are "{action}:{user_id}". Each key gets a window of WINDOW_SECONDS
starting at its first request; the window resets once it has elapsed.

Limits:
- sync: 10 requests per minute
- summary: 20 requests per minute
- general: 100 requests per minute

In-process only (see store.py).
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

from .store import ExpiringStore, InMemoryStore

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60

SYNC_LIMIT = 10
SUMMARY_LIMIT = 20
GENERAL_LIMIT = 100


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: Optional[int] = None


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """
    Fixed-window counter.

    Usage:
        limiter = RateLimiter(max_requests=10)
        result = limiter.check(f"sync:{user_id}")
        if not result.allowed:
            ...  # respond 429 with Retry-After: result.retry_after
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: int = WINDOW_SECONDS,
        store: Optional[ExpiringStore] = None,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._store = store or InMemoryStore()

    @property
    def store(self) -> ExpiringStore:
        return self._store

    def check(self, key: str) -> RateLimitResult:
        """Count one request against `key` and report whether it is allowed."""
        now = self._store.now()
        window: Optional[_Window] = self._store.get(key)

        if window is None:
            window = _Window(count=0, reset_at=now + self.window_seconds)

        if window.count >= self.max_requests:
            retry_after = max(1, math.ceil(window.reset_at - now))
            logger.info(f"[RATE_LIMIT] Blocked {key.split(':', 1)[0]} request, retry in {retry_after}s")
            return RateLimitResult(
                allowed=False,
                limit=self.max_requests,
                remaining=0,
                reset_at=window.reset_at,
                retry_after=retry_after,
            )

        window.count += 1
        self._store.set(key, window, window.reset_at)
        return RateLimitResult(
            allowed=True,
            limit=self.max_requests,
            remaining=self.max_requests - window.count,
            reset_at=window.reset_at,
        )

    def get_status(self, key: str) -> RateLimitResult:
        """Report the current window without counting a request."""
        now = self._store.now()
        window: Optional[_Window] = self._store.get(key)
        if window is None:
            return RateLimitResult(
                allowed=True,
                limit=self.max_requests,
                remaining=self.max_requests,
                reset_at=now + self.window_seconds,
            )
        remaining = max(0, self.max_requests - window.count)
        return RateLimitResult(
            allowed=remaining > 0,
            limit=self.max_requests,
            remaining=remaining,
            reset_at=window.reset_at,
            retry_after=None if remaining else max(1, math.ceil(window.reset_at - now)),
        )

    def reset(self, key: str) -> None:
        self._store.delete(key)


def rate_limit_key(action: str, user_id: str) -> str:
    return f"{action}:{user_id}"


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """Response headers describing the caller's window."""
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(result.reset_at)),
    }
    if result.retry_after is not None:
        headers["Retry-After"] = str(result.retry_after)
    return headers


# =============================================================================
# Preconfigured limiters
# =============================================================================

_limiters: dict[str, RateLimiter] = {}

_LIMITS = {
    "sync": SYNC_LIMIT,
    "summary": SUMMARY_LIMIT,
    "general": GENERAL_LIMIT,
}


def get_rate_limiter(action: str) -> RateLimiter:
    """Get the shared limiter for "sync", "summary" or "general"."""
    if action not in _LIMITS:
        raise ValueError(f"Unknown rate limit action: {action}")
    if action not in _limiters:
        _limiters[action] = RateLimiter(max_requests=_LIMITS[action])
    return _limiters[action]


def all_rate_limit_stores() -> list[ExpiringStore]:
    return [get_rate_limiter(action).store for action in _LIMITS]
