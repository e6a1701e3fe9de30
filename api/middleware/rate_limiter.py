"""
In-memory rate limiting for conversation turns.

Two independent gates:
- Per-user fixed window (default 60 requests per 60 seconds)
- Global concurrency gate on in-flight pipeline runs (default 10)

State lives in process memory and is only touched from the event loop.
"""

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, Optional

import structlog
from fastapi import Request

from libs.common.errors import ConcurrencyExceeded

logger = structlog.get_logger(__name__)

ANONYMOUS_USER = "anonymous"


@dataclass
class RateRecord:
    count: int
    window_start: float


class RateLimiter:
    """Fixed-window request counter per user plus a global concurrency gate."""

    def __init__(
        self,
        max_requests_per_minute: int = 60,
        max_concurrent_requests: int = 10,
        window_seconds: float = 60,
        cleanup_interval: float = 5 * 60,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize rate limiter.

        Args:
            max_requests_per_minute: Requests allowed per user per window
            max_concurrent_requests: Pipeline runs allowed in flight at once
            window_seconds: Window length in seconds
            cleanup_interval: Minimum seconds between stale-record sweeps
            clock: Time source, injectable for tests
        """
        self.max_requests = max_requests_per_minute
        self.max_concurrent = max_concurrent_requests
        self.window_seconds = window_seconds
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._records: Dict[str, RateRecord] = {}
        self._active_requests = 0
        self._last_cleanup = clock()

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], float] = time.time) -> "RateLimiter":
        return cls(
            max_requests_per_minute=settings.max_requests_per_minute,
            max_concurrent_requests=settings.max_concurrent_requests,
            window_seconds=settings.rate_limit_window_seconds,
            cleanup_interval=settings.rate_limit_cleanup_seconds,
            clock=clock,
        )

    @property
    def active_requests(self) -> int:
        return self._active_requests

    def admit(self, user_id: Optional[str]) -> bool:
        """
        Count one request for ``user_id``.

        Returns:
            False when the user's window is full or the concurrency gate is
            saturated; the rejected request is not counted.
        """
        now = self._clock()
        if now - self._last_cleanup >= self.cleanup_interval:
            self.cleanup()

        if self._active_requests >= self.max_concurrent:
            logger.warning(
                "Concurrency limit reached",
                active_requests=self._active_requests,
                max_concurrent=self.max_concurrent,
            )
            return False

        key = user_id or ANONYMOUS_USER
        record = self._records.get(key)
        if record is None or now - record.window_start > self.window_seconds:
            self._records[key] = RateRecord(count=1, window_start=now)
            return True

        if record.count >= self.max_requests:
            logger.warning(
                "Rate limit exceeded",
                user_id=key,
                current_count=record.count,
                max_requests=self.max_requests,
                window_seconds=self.window_seconds,
            )
            return False

        record.count += 1
        return True

    def retry_after(self, user_id: Optional[str]) -> int:
        """Seconds until the user's current window resets (at least 1)."""
        record = self._records.get(user_id or ANONYMOUS_USER)
        if record is None:
            return 1
        remaining = self.window_seconds - (self._clock() - record.window_start)
        return max(1, int(remaining) + 1)

    def cleanup(self) -> int:
        """Drop records whose window ended more than one window ago."""
        now = self._clock()
        cutoff = 2 * self.window_seconds
        stale = [key for key, record in self._records.items() if now - record.window_start > cutoff]
        for key in stale:
            del self._records[key]
        self._last_cleanup = now
        if stale:
            logger.debug("Rate limit records cleaned", removed=len(stale), remaining=len(self._records))
        return len(stale)

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold one concurrency slot for the duration of the block."""
        if self._active_requests >= self.max_concurrent:
            raise ConcurrencyExceeded(
                f"{self._active_requests} requests in flight (max {self.max_concurrent})"
            )
        self._active_requests += 1
        try:
            yield
        finally:
            self._active_requests -= 1

    def reset(self) -> None:
        self._records.clear()
        self._active_requests = 0


def client_id(request: Request, user_id: Optional[str] = None) -> str:
    """Identify the caller: explicit user id first, then client IP."""
    if user_id:
        return f"user:{user_id}"

    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        client_ip = forwarded_for.split(",")[0].strip()
    else:
        client_ip = request.client.host if request.client else "unknown"
    return f"ip:{client_ip}"
