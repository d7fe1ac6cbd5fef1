from __future__ import annotations

import threading
import time
from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g, jsonify, request


class RateLimiter:
    """Fixed-window counter keyed by client id."""

    def __init__(self, limit: int, window_seconds: int) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._windows: dict[str, tuple[float, int]] = {}
        self._lock = threading.Lock()

    def check(self, key: str) -> tuple[bool, int, float]:
        """Count one hit. Returns (allowed, remaining, reset_at epoch seconds)."""
        now = time.time()
        with self._lock:
            reset_at, count = self._windows.get(key, (0.0, 0))
            if reset_at <= now:
                reset_at, count = now + self.window_seconds, 0
            if count >= self.limit:
                self._windows[key] = (reset_at, count)
                return False, 0, reset_at
            count += 1
            self._windows[key] = (reset_at, count)
            return True, self.limit - count, reset_at

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


users_limiter = RateLimiter(limit=20, window_seconds=60)
analytics_limiter = RateLimiter(limit=5, window_seconds=60)


def client_identifier() -> str:
    # Forwarded headers are only honoured through ProxyFix (TRUSTED_PROXY_HOPS).
    return request.remote_addr or "default"


def rate_limited(limiter: RateLimiter) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Rejects with 429 once the window is exhausted. The remaining count is left
    on `g.rate_limit_remaining` so handlers can echo it.
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            allowed, remaining, reset_at = limiter.check(client_identifier())
            g.rate_limit_remaining = remaining
            if not allowed:
                retry_after = max(int(reset_at - time.time()), 1)
                resp = jsonify({"error": "Too many requests. Please try again later.", "retryAfter": retry_after})
                resp.status_code = 429
                resp.headers["Retry-After"] = str(retry_after)
                resp.headers["X-RateLimit-Limit"] = str(limiter.limit)
                resp.headers["X-RateLimit-Remaining"] = "0"
                resp.headers["X-RateLimit-Reset"] = str(int(reset_at))
                return resp
            return fn(*args, **kwargs)

        return wrapped

    return decorator
