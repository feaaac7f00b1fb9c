"""
Cache handles used by the org-unit hierarchy and the grant store.

Each owner builds its own `TieredCache`, so tests (and operators) can clear one
without touching the other:

- `LocalCache`: process-local dict with a TTL per entry.
- `RedisCache`: distributed tier on top of a `redis.Redis` client.
- `TieredCache`: local first, then redis; every redis failure degrades to a miss.

Values must be JSON-serializable (the redis tier stores JSON text).
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any

import redis

from orgscope.errors import CacheUnavailable

logger = logging.getLogger(__name__)


class LocalCache:
    """In-memory cache with per-entry expiry and a bound on the number of entries."""

    def __init__(self, ttl_seconds: int = 300, max_entries: int = 10_000) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._entries: dict[str, tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if time.monotonic() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ttl = self._ttl if ttl_seconds is None else ttl_seconds
        now = time.monotonic()
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_entries:
                self._evict(now)
            self._entries[key] = (value, now + ttl)

    def _evict(self, now: float) -> None:
        # Caller holds the lock.
        expired = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
        for k in expired:
            del self._entries[k]
        if len(self._entries) >= self._max_entries:
            soonest = min(self._entries, key=lambda k: self._entries[k][1])
            del self._entries[soonest]

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RedisCache:
    """
    Distributed tier.

    Every backend error is re-raised as `CacheUnavailable`; `TieredCache`
    decides what to do with it.
    """

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisCache:
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> Any | None:
        try:
            raw = self._client.get(key)
        except redis.RedisError as exc:
            raise CacheUnavailable(f"redis get failed for {key}") from exc
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise CacheUnavailable(f"undecodable cache entry for {key}") from exc

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            self._client.setex(key, ttl_seconds, json.dumps(value))
        except redis.RedisError as exc:
            raise CacheUnavailable(f"redis set failed for {key}") from exc

    def delete(self, key: str) -> None:
        try:
            self._client.delete(key)
        except redis.RedisError as exc:
            raise CacheUnavailable(f"redis delete failed for {key}") from exc


class TieredCache:
    """
    Process-local tier in front of an optional distributed tier.

    `namespace` is prepended to every key so that several owners can share one
    redis database.
    """

    def __init__(
        self,
        namespace: str,
        *,
        local: LocalCache | None = None,
        remote: RedisCache | None = None,
        ttl_seconds: int = 300,
    ) -> None:
        self.namespace = namespace
        self.local = local if local is not None else LocalCache(ttl_seconds)
        self.remote = remote
        self.ttl_seconds = ttl_seconds

    def _key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    def get(self, key: str) -> Any | None:
        full_key = self._key(key)

        value = self.local.get(full_key)
        if value is not None:
            logger.debug("Local cache hit key=%s", full_key)
            return value

        if self.remote is None:
            return None

        try:
            value = self.remote.get(full_key)
        except CacheUnavailable as exc:
            logger.debug("Distributed cache read degraded key=%s: %s", full_key, exc.__cause__)
            return None

        if value is not None:
            logger.debug("Distributed cache hit key=%s", full_key)
            self.local.set(full_key, value)
        return value

    def set(self, key: str, value: Any) -> None:
        full_key = self._key(key)
        self.local.set(full_key, value)

        if self.remote is None:
            return
        try:
            self.remote.set(full_key, value, self.ttl_seconds)
        except CacheUnavailable as exc:
            logger.debug("Distributed cache write degraded key=%s: %s", full_key, exc.__cause__)

    def delete(self, key: str) -> None:
        full_key = self._key(key)
        self.local.delete(full_key)

        if self.remote is None:
            return
        try:
            self.remote.delete(full_key)
        except CacheUnavailable as exc:
            # The remote entry now lives until its TTL runs out.
            logger.warning("Distributed cache invalidation failed key=%s: %s", full_key, exc.__cause__)

    def clear(self) -> None:
        """Drop the process-local tier. Distributed entries expire on their own."""
        self.local.clear()
