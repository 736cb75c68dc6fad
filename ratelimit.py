"""
Request rate limiting.

Counters live behind a ``RateLimitStore`` so the in-process map used for a
single instance can be replaced by a shared store when running several
instances.
"""
import threading
import time
from typing import Dict, Optional, Tuple

import structlog
from fastapi import Request, Response

import settings
from errors import TooManyRequests

logger = structlog.get_logger(__name__)


class RateLimitStore:
    def hit(self, key: str, window_seconds: int) -> Tuple[int, float]:
        """Count one request for ``key``; return (count in window, window reset time)."""
        raise NotImplementedError

    def reset(self, key: Optional[str] = None):
        raise NotImplementedError


class MemoryRateLimitStore(RateLimitStore):
    """Fixed-window counters held in process memory."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[str, Tuple[int, float]] = {}

    def hit(self, key, window_seconds):
        now = self._clock()
        with self._lock:
            count, reset_at = self._windows.get(key, (0, now + window_seconds))
            if now >= reset_at:
                count, reset_at = 0, now + window_seconds
            count += 1
            self._windows[key] = (count, reset_at)
        return count, reset_at

    def reset(self, key=None):
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)


default_store = MemoryRateLimitStore()


class RateLimiter:
    """FastAPI dependency limiting requests per client IP."""

    def __init__(
        self,
        name: str,
        max_requests: int,
        window_seconds: int = settings.RATE_LIMIT_WINDOW_SECONDS,
        store: RateLimitStore = default_store,
        message: str = "Too many requests from this IP, please try again later.",
        clock=time.monotonic,
    ):
        self.name = name
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.store = store
        self.message = message
        self.clock = clock

    def __call__(self, request: Request, response: Response):
        client_ip = request.client.host if request.client else "unknown"
        count, reset_at = self.store.hit(f"{self.name}:{client_ip}", self.window_seconds)
        remaining = max(0, self.max_requests - count)
        reset_in = max(0, int(round(reset_at - self.clock())))
        headers = {
            "RateLimit-Limit": str(self.max_requests),
            "RateLimit-Remaining": str(remaining),
            "RateLimit-Reset": str(reset_in),
        }
        if count > self.max_requests:
            logger.warning("rate_limited", limiter=self.name, client=client_ip, count=count)
            headers["Retry-After"] = str(reset_in)
            raise TooManyRequests(self.message, headers=headers)
        response.headers.update(headers)


api_limiter = RateLimiter("api", settings.RATE_LIMIT_MAX)
auth_limiter = RateLimiter(
    "auth",
    settings.AUTH_RATE_LIMIT_MAX,
    message="Too many authentication attempts, please try again later.",
)
