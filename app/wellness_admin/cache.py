"""
In-process TTL cache for expensive read endpoints (user lists, analytics,
provider search). Entries are per worker; writes invalidate by key prefix.
"""
from __future__ import annotations

import threading
import time
from typing import Any

DEFAULT_TTL = 5 * 60  # seconds


class TTLCache:
    def __init__(self, default_ttl: float = DEFAULT_TTL) -> None:
        self.default_ttl = default_ttl
        self._data: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= time.monotonic():
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        expires_at = time.monotonic() + (self.default_ttl if ttl is None else ttl)
        with self._lock:
            self._data[key] = (expires_at, value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def delete_by_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in self._data if k.startswith(prefix)]
            for k in keys:
                del self._data[k]
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._data)


def create_cache_key(prefix: str, params: dict[str, Any] | None = None) -> str:
    """`prefix?a=1&b=2` with keys sorted; `None` values are skipped."""
    if not params:
        return prefix
    parts = [f"{k}={params[k]}" for k in sorted(params) if params[k] is not None]
    return f"{prefix}?{'&'.join(parts)}" if parts else prefix


cache = TTLCache()
