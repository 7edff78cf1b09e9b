"""In-memory token-bucket rate limiter for the OAuth endpoints.

Tiers, built from settings on first use:
  - authorize: ``authorize_rate_per_minute`` (``/authorize``, ``/login``, ``/register``)
  - token:     ``token_rate_per_minute``     (``/token``, ``/revoke``)

Buckets are per process; each worker enforces its own budget.
"""

from __future__ import annotations

import math
import threading
import time

__all__ = [
    "RateLimiter",
    "RateLimitInfo",
    "get_limiter",
    "reset_limiters",
    "cleanup_all",
]


class _Bucket:
    """A single token bucket for one client."""

    __slots__ = ("tokens", "last_refill")

    def __init__(self, capacity: float, now: float):
        self.tokens: float = capacity
        self.last_refill: float = now


class RateLimitInfo:
    """Rate limit state returned by ``check()``."""

    __slots__ = ("allowed", "limit", "remaining", "reset_after")

    def __init__(self, allowed: bool, limit: int, remaining: int, reset_after: float):
        self.allowed = allowed
        self.limit = limit
        self.remaining = remaining
        self.reset_after = reset_after

    def headers(self) -> dict[str, str]:
        h: dict[str, str] = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_after)),
        }
        if not self.allowed:
            h["Retry-After"] = str(max(1, math.ceil(self.reset_after)))
        return h


class RateLimiter:
    """Token-bucket rate limiter keyed by client IP.

    Parameters
    ----------
    rate : float
        Tokens added per second.
    capacity : int
        Maximum burst size (bucket capacity).
    """

    def __init__(self, rate: float, capacity: int):
        self.rate = rate
        self.capacity = capacity
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        return self.check(key).allowed

    def check(self, key: str) -> RateLimitInfo:
        """Consume one token for *key* and report the resulting state."""
        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = self._buckets[key] = _Bucket(self.capacity, now)

            elapsed = now - bucket.last_refill
            bucket.tokens = min(self.capacity, bucket.tokens + elapsed * self.rate)
            bucket.last_refill = now

            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                remaining = int(bucket.tokens)
                reset_after = (self.capacity - bucket.tokens) / self.rate if self.rate > 0 else 0
                return RateLimitInfo(True, self.capacity, remaining, reset_after)

            reset_after = (1.0 - bucket.tokens) / self.rate if self.rate > 0 else 1.0
            return RateLimitInfo(False, self.capacity, 0, reset_after)

    def cleanup(self, max_age: float = 3600.0) -> int:
        """Remove buckets idle for more than *max_age* seconds."""
        now = time.monotonic()
        with self._lock:
            stale = [k for k, b in self._buckets.items() if now - b.last_refill > max_age]
            for k in stale:
                del self._buckets[k]
        return len(stale)


_limiters: dict[str, RateLimiter] = {}


def get_limiter(tier: str) -> RateLimiter:
    """Return the limiter for *tier* ("authorize" or "token")."""
    limiter = _limiters.get(tier)
    if limiter is None:
        from mcpgate.config import get_settings

        settings = get_settings()
        per_minute = {
            "authorize": settings.authorize_rate_per_minute,
            "token": settings.token_rate_per_minute,
        }.get(tier)
        if per_minute is None:
            raise ValueError(f"Unknown rate limit tier: {tier}")
        limiter = _limiters[tier] = RateLimiter(rate=per_minute / 60.0, capacity=per_minute)
    return limiter


def reset_limiters() -> None:
    """Drop all buckets (for testing)."""
    _limiters.clear()


def cleanup_all() -> int:
    return sum(limiter.cleanup() for limiter in _limiters.values())
