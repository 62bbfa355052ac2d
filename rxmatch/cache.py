"""
Storage & caching layer.

Two tiers: a small in-process LRU (L1) in front of Redis (L2). Reads go L1 → L2 and
promote L2 hits into L1; writes go to both. L2 owns the real TTL; L1 uses a short fixed
TTL because it only absorbs repeat load.

A broken or slow Redis never raises out of this module: every L2 failure is logged and
treated as a miss, so callers fall through to the origin.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Optional, Protocol

import redis

from rxmatch.config import Settings

logger = logging.getLogger(__name__)

L1, L2, MISS = "L1", "L2", "MISS"


class DurableCache(Protocol):
    def get(self, key: str) -> Any: ...
    def set(self, key: str, value: Any, ttl: int | None = None) -> None: ...
    def delete(self, key: str) -> None: ...
    def exists(self, key: str) -> bool: ...


class LRUCache:
    """Bounded in-process cache with LRU eviction and per-entry TTL. Thread-safe."""

    def __init__(
        self,
        max_size: int = 1000,
        ttl: float = 300.0,
        cleanup_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_size = max_size
        self.ttl = ttl
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._entries: OrderedDict[str, tuple[Any, float]] = OrderedDict()
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, stored_at = entry
            if self._clock() - stored_at > self.ttl:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            now = self._clock()
            if key in self._entries:
                self._entries[key] = (value, now)
                self._entries.move_to_end(key)
            else:
                if len(self._entries) >= self.max_size:
                    self._entries.popitem(last=False)
                self._entries[key] = (value, now)
            if now - self._last_cleanup >= self.cleanup_interval:
                self._remove_expired(now)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def cleanup(self) -> int:
        """Drop expired entries now. Returns how many were removed."""
        with self._lock:
            return self._remove_expired(self._clock())

    def _remove_expired(self, now: float) -> int:
        expired = [k for k, (_, stored_at) in self._entries.items() if now - stored_at > self.ttl]
        for k in expired:
            del self._entries[k]
        self._last_cleanup = now
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict:
        with self._lock:
            oldest_age = None
            if self._entries:
                _, stored_at = next(iter(self._entries.values()))
                oldest_age = self._clock() - stored_at
            size = len(self._entries)
        return {
            "size": size,
            "max_size": self.max_size,
            "utilization_percent": size / self.max_size * 100 if self.max_size else 0.0,
            "oldest_entry_age": oldest_age,
        }


class RedisCache:
    """JSON values in Redis with SETEX. Errors degrade to misses."""

    def __init__(self, client: redis.Redis, default_ttl: int = 604800):
        self.client = client
        self.default_ttl = default_ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisCache":
        client = redis.Redis.from_url(
            settings.redis_url,
            socket_timeout=settings.redis_socket_timeout,
            socket_connect_timeout=settings.redis_socket_timeout,
        )
        return cls(client, default_ttl=settings.ttl_interpretation)

    def get(self, key: str) -> Any:
        try:
            raw = self.client.get(key)
        except redis.RedisError as e:
            logger.warning("Redis get failed for %s: %s", key, e)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning("Discarding undecodable cache entry %s: %s", key, e)
            return None

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        try:
            self.client.setex(key, int(ttl or self.default_ttl), json.dumps(value))
        except (redis.RedisError, TypeError, ValueError) as e:
            logger.warning("Redis set failed for %s: %s", key, e)

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except redis.RedisError as e:
            logger.warning("Redis delete failed for %s: %s", key, e)

    def exists(self, key: str) -> bool:
        try:
            return bool(self.client.exists(key))
        except redis.RedisError as e:
            logger.warning("Redis exists failed for %s: %s", key, e)
            return False

    def ttl(self, key: str) -> int:
        """Remaining TTL in seconds; -1 when unknown or unreachable."""
        try:
            return int(self.client.ttl(key))
        except redis.RedisError as e:
            logger.warning("Redis ttl failed for %s: %s", key, e)
            return -1

    def health_check(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.warning("Redis health check failed: %s", e)
            return False


class MemoryCache:
    """Dict-backed stand-in for Redis (demo runs, single-process use)."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            raw, expires_at = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._data[key]
                return None
            return json.loads(raw)

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        with self._lock:
            self._data[key] = (json.dumps(value), expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def exists(self, key: str) -> bool:
        return self.get(key) is not None


class TieredCache:
    """L1 (LRUCache) in front of a durable L2. Values must be JSON-serializable."""

    def __init__(self, durable: DurableCache, l1: Optional[LRUCache] = None, enabled: bool = True):
        self.durable = durable
        self.l1 = l1 if l1 is not None else LRUCache()
        self.enabled = enabled

    def get_with_tier(self, key: str) -> tuple[Any, str]:
        if not self.enabled:
            return None, MISS
        value = self.l1.get(key)
        if value is not None:
            logger.debug("cache L1 hit %s", key)
            return value, L1
        value = self._durable_call("get", key)
        if value is not None:
            logger.debug("cache L2 hit %s", key)
            self.l1.set(key, value)
            return value, L2
        return None, MISS

    def get(self, key: str) -> Any:
        return self.get_with_tier(key)[0]

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        if not self.enabled:
            return
        self.l1.set(key, value)
        self._durable_call("set", key, value, ttl)

    def delete(self, key: str) -> None:
        self.l1.delete(key)
        self._durable_call("delete", key)

    def exists(self, key: str) -> bool:
        if not self.enabled:
            return False
        return self.l1.has(key) or bool(self._durable_call("exists", key))

    def clear_l1(self) -> None:
        self.l1.clear()

    def _durable_call(self, method: str, *args: Any) -> Any:
        # stores other than RedisCache may raise
        try:
            return getattr(self.durable, method)(*args)
        except Exception as e:
            logger.warning("Durable cache %s failed: %s", method, e)
            return None


_default_cache: TieredCache | None = None
_default_lock = threading.Lock()


def get_default_cache(settings: Settings) -> TieredCache:
    """Process-wide tiered cache used by the production wiring."""
    global _default_cache
    with _default_lock:
        if _default_cache is None:
            _default_cache = TieredCache(
                RedisCache.from_settings(settings),
                l1=LRUCache(max_size=settings.l1_max_size, ttl=settings.l1_ttl),
                enabled=settings.cache_enabled,
            )
        return _default_cache
