"""Best-effort key/TTL cache for hot token lookups and ephemeral artifacts.

Values must be JSON-serializable. Entries carry their own absolute expiry so a
stale hit is impossible; eviction may happen at any time. When ``REDIS_URL`` is
configured the cache is backed by Redis and falls back to the in-process store
if Redis becomes unreachable.
"""

from __future__ import annotations

import json
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from threading import Lock
from typing import Any

import redis

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 10_000


class TTLCache:
    """Key/TTL store with an optional Redis backend."""

    def __init__(
        self,
        default_ttl: int,
        *,
        redis_url: str | None = None,
        namespace: str = "exprsn",
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl = default_ttl
        self.namespace = namespace
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._lock = Lock()
        self._redis: redis.Redis | None = None
        if redis_url:
            try:
                self._redis = redis.from_url(redis_url)  # type: ignore[no-untyped-call]
            except (ValueError, redis.RedisError) as exc:
                logger.warning("Redis cache unavailable (%s); using in-process cache", exc)
                self._redis = None

    @property
    def backend(self) -> str:
        return "redis" if self._redis is not None else "memory"

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def get(self, key: str) -> Any | None:
        """Return the cached value, or None when absent or expired."""
        if self._redis is not None:
            try:
                raw = self._redis.get(self._key(key))
                return None if raw is None else json.loads(raw)
            except redis.RedisError as exc:
                self._drop_redis(exc)

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store ``value`` for ``ttl`` seconds (the default TTL when omitted)."""
        seconds = self.default_ttl if ttl is None else min(ttl, self.default_ttl)
        if seconds <= 0:
            self.delete(key)
            return

        if self._redis is not None:
            try:
                self._redis.set(self._key(key), json.dumps(value), px=max(1, int(seconds * 1000)))
                return
            except redis.RedisError as exc:
                self._drop_redis(exc)

        with self._lock:
            self._entries[key] = (self._clock() + seconds, value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def delete(self, key: str) -> None:
        if self._redis is not None:
            try:
                self._redis.delete(self._key(key))
                return
            except redis.RedisError as exc:
                self._drop_redis(exc)

        with self._lock:
            self._entries.pop(key, None)

    def pop(self, key: str) -> Any | None:
        """Return and remove a value in one step."""
        value = self.get(key)
        if value is not None:
            self.delete(key)
        return value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _drop_redis(self, exc: Exception) -> None:
        logger.warning("Redis cache error (%s); switching to in-process cache", exc)
        self._redis = None
