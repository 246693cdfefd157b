"""
Adaptive rate limiter for the catalog API. The image servers are not limited
here; the page pool's concurrency budget bounds them instead.
"""

import asyncio
import logging
import time

log = logging.getLogger(__name__)


class AdaptiveRateLimiter:
    """
    Spaces out API calls and backs off when the catalog answers with 429.
    """

    RECOVERY_WINDOW = 120.0

    def __init__(self, calls_per_second: float = 4.0, min_calls_per_second: float = 0.5):
        self._max_rate = calls_per_second
        self._min_rate = min_calls_per_second
        self._rate = calls_per_second
        self._last_call = 0.0
        self._last_429 = 0.0
        self._lock = asyncio.Lock()

    @property
    def rate(self) -> float:
        return self._rate

    async def on_429(self, retry_after: float | None = None) -> None:
        """Halves the request rate and honours a Retry-After hint if one was sent."""
        async with self._lock:
            self._rate = max(self._min_rate, self._rate * 0.5)
            self._last_429 = time.monotonic()
            log.warning(
                f"[yellow]Catalog rate limit hit. New rate: {self._rate:.1f} calls/s"
                "[/yellow]"
            )
            if retry_after:
                await asyncio.sleep(retry_after)

    async def acquire(self) -> None:
        """Waits until the next call is allowed."""
        async with self._lock:
            now = time.monotonic()
            if self._rate < self._max_rate and now - self._last_429 > self.RECOVERY_WINDOW:
                self._rate = min(self._max_rate, self._rate * 1.25)

            wait = self._last_call + 1.0 / self._rate - now
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_call = time.monotonic()
