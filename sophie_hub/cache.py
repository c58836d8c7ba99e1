# sophie_hub/cache.py
"""
Per-app TTL cache.

One ``CacheService`` is built in ``init_sync`` and kept on
``app.extensions["sync"]["cache"]``. The clock is injectable so tests can
advance time without sleeping.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from flask import Flask, current_app

DEFAULT_TTL_SECONDS = 300.0

Clock = Callable[[], float]


@dataclass(slots=True)
class _Entry:
    value: Any
    stored_at: float
    ttl: float


class CacheService:
    def __init__(self, clock: Clock | None = None, ttl: float = DEFAULT_TTL_SECONDS) -> None:
        self._clock = clock or time.monotonic
        self.ttl = float(ttl)
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            if self._clock() - entry.stored_at > entry.ttl:
                del self._entries[key]
                return default
            return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        ttl = self.ttl if ttl is None else float(ttl)
        # A non-positive TTL disables caching.
        if ttl <= 0:
            return
        with self._lock:
            self._entries[key] = _Entry(value, self._clock(), ttl)

    def has(self, key: str) -> bool:
        marker = object()
        return self.get(key, marker) is not marker

    def get_or_set(self, key: str, factory: Callable[[], Any], ttl: float | None = None) -> Any:
        marker = object()
        value = self.get(key, marker)
        if value is marker:
            value = factory()
            self.set(key, value, ttl)
        return value

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def get_cache(app: Flask | None = None) -> CacheService:
    app = app or current_app
    state = app.extensions.setdefault("sync", {})
    cache = state.get("cache")
    if cache is None:
        cache = CacheService(ttl=app.config.get("SETTINGS_CACHE_TTL_SECONDS", DEFAULT_TTL_SECONDS))
        state["cache"] = cache
    return cache
