"""
In-process fixed-window rate limiter.

State lives in this process only; with several workers each one enforces
its own window, so fleet-wide limits are approximate.
"""

import logging
import math
import threading
import time
from datetime import datetime, timezone
from typing import Callable

from app.schemas.pipeline import RateLimitResult

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Allows `limit` calls per `window_seconds` for each identifier.

    Every `cleanup_interval` checks, elapsed windows are evicted so idle
    identifiers do not accumulate.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.time,
        name: str = "minute",
        cleanup_interval: int = 1000,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self.name = name
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._windows: dict[str, dict[str, float]] = {}
        self._checks = 0
        self._lock = threading.Lock()

    def _evict_expired(self, now: float) -> int:
        # Caller holds self._lock.
        expired = [key for key, w in self._windows.items() if now >= w["reset_at"]]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug("Rate limiter %s evicted %s windows", self.name, len(expired))
        return len(expired)

    def check_rate_limit(self, identifier: str) -> RateLimitResult:
        now = self._clock()
        with self._lock:
            self._checks += 1
            if self._checks % self.cleanup_interval == 0:
                self._evict_expired(now)

            window = self._windows.get(identifier)
            if window is None or now >= window["reset_at"]:
                window = {"count": 0, "reset_at": now + self.window_seconds}
                self._windows[identifier] = window

            reset_time = datetime.fromtimestamp(window["reset_at"], tz=timezone.utc)
            if window["count"] >= self.limit:
                retry_after = max(1, math.ceil(window["reset_at"] - now))
                logger.warning(
                    "Rate limit exceeded (%s): identifier=%s limit=%s retry_after=%s",
                    self.name,
                    identifier,
                    self.limit,
                    retry_after,
                )
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_time=reset_time,
                    retry_after=retry_after,
                )

            window["count"] += 1
            return RateLimitResult(
                allowed=True,
                remaining=int(self.limit - window["count"]),
                reset_time=reset_time,
            )

    def cleanup(self) -> int:
        """Drop windows that have already elapsed. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            return self._evict_expired(now)

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "window": self.name,
                "windowSeconds": self.window_seconds,
                "limit": self.limit,
                "trackedIdentifiers": len(self._windows),
            }


class CompositeRateLimiter:
    """Per-minute limiter checked first, then per-hour; the first denial wins."""

    def __init__(self, limiters: list[RateLimiter]):
        self.limiters = limiters

    def check_rate_limit(self, identifier: str) -> RateLimitResult:
        result = None
        for limiter in self.limiters:
            result = limiter.check_rate_limit(identifier)
            if not result.allowed:
                return result
        return result

    def cleanup(self) -> int:
        return sum(limiter.cleanup() for limiter in self.limiters)

    def get_stats(self) -> dict:
        return {limiter.name: limiter.get_stats() for limiter in self.limiters}
