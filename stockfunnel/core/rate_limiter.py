"""Token bucket rate limiter for external market data calls.

Limiters are plain instances passed to whoever needs them (screener,
providers); there is no module-level registry.
"""

from __future__ import annotations

import asyncio
import threading
import time

from stockfunnel.core.logging import get_logger


logger = get_logger("core.rate_limiter")


class RateLimiter:
    """
    Token bucket rate limiter for API calls.

    Thread-safe and async-compatible.
    """

    def __init__(
        self,
        name: str,
        calls_per_second: float = 2.0,
        burst_size: int = 5,
    ):
        """
        Initialize rate limiter.

        Args:
            name: Identifier for logging
            calls_per_second: Sustained rate limit
            burst_size: Maximum burst of calls allowed
        """
        if calls_per_second <= 0:
            raise ValueError("calls_per_second must be positive")
        if burst_size < 1:
            raise ValueError("burst_size must be at least 1")
        self.name = name
        self.calls_per_second = calls_per_second
        self.burst_size = burst_size
        self.tokens = float(burst_size)
        self.last_update = time.monotonic()
        self._lock = threading.Lock()
        self._async_lock: asyncio.Lock | None = None

    @classmethod
    def from_settings(cls, name: str = "yfinance") -> "RateLimiter":
        from stockfunnel.core.config import settings

        return cls(
            name,
            calls_per_second=settings.yfinance_calls_per_second,
            burst_size=settings.yfinance_burst_size,
        )

    def _refill(self) -> None:
        """Refill tokens based on time elapsed."""
        now = time.monotonic()
        elapsed = now - self.last_update
        self.tokens = min(
            self.burst_size,
            self.tokens + elapsed * self.calls_per_second
        )
        self.last_update = now

    def _try_take(self) -> float:
        """Take a token if available. Returns 0 on success, else seconds to wait."""
        with self._lock:
            self._refill()
            if self.tokens >= 1.0:
                self.tokens -= 1.0
                return 0.0
            return (1.0 - self.tokens) / self.calls_per_second

    def acquire_sync(self, timeout: float = 30.0) -> bool:
        """
        Acquire a token synchronously, blocking if necessary.

        Returns:
            True if token acquired, False if timeout
        """
        start = time.monotonic()

        while True:
            wait_time = self._try_take()
            if wait_time == 0.0:
                return True

            if time.monotonic() - start + wait_time > timeout:
                logger.warning(f"Rate limiter {self.name} timeout after {timeout}s")
                return False

            logger.debug(f"Rate limiter {self.name} waiting {wait_time:.2f}s")
            time.sleep(min(wait_time, 0.5))

    async def acquire(self, timeout: float = 30.0) -> bool:
        """
        Acquire a token asynchronously, waiting if necessary.

        Returns:
            True if token acquired, False if timeout
        """
        if self._async_lock is None:
            self._async_lock = asyncio.Lock()

        start = time.monotonic()

        while True:
            async with self._async_lock:
                wait_time = self._try_take()
            if wait_time == 0.0:
                return True

            if time.monotonic() - start + wait_time > timeout:
                logger.warning(f"Rate limiter {self.name} timeout after {timeout}s")
                return False

            logger.debug(f"Rate limiter {self.name} waiting {wait_time:.2f}s")
            await asyncio.sleep(min(wait_time, 0.5))

    def status(self) -> dict:
        """Get current rate limiter status."""
        with self._lock:
            self._refill()
            return {
                "name": self.name,
                "tokens_available": self.tokens,
                "burst_size": self.burst_size,
                "calls_per_second": self.calls_per_second,
            }
