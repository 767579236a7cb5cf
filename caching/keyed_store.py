"""
Keyed Store with TTL
Markers for "run at most once" checks and notification claims.

The in-memory store is process-local and only correct for a single instance.
Multi-instance deployments use the Redis store so every instance sees the same markers.
"""

import time
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import redis

from config import Config

logger = logging.getLogger(__name__)


class KeyedStore(ABC):
    """get/set/delete with expiry, plus an atomic set-if-absent"""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ...

    @abstractmethod
    def set_if_absent(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Store value only if key is missing or expired; True if this call stored it"""
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        ...

    def exists(self, key: str) -> bool:
        return self.get(key, None) is not None


class InMemoryKeyedStore(KeyedStore):
    """Thread-safe in-memory store with TTL support"""

    def __init__(self, default_ttl: int = 300, clock: Callable[[], float] = time.time):
        self._cache: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self.default_ttl = default_ttl
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "evictions": 0}

    def get(self, key: str, default: Any = None) -> Any:
        """Get value from store"""
        with self._lock:
            self._cleanup_expired()

            entry = self._cache.get(key)
            if entry is not None:
                self.stats["hits"] += 1
                return entry["value"]

            self.stats["misses"] += 1
            return default

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Set value with TTL"""
        with self._lock:
            self._store(key, value, ttl)

    def set_if_absent(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        with self._lock:
            self._cleanup_expired()
            if key in self._cache:
                return False
            self._store(key, value, ttl)
            return True

    def delete(self, key: str) -> bool:
        """Delete key from store"""
        with self._lock:
            if key in self._cache:
                del self._cache[key]
                self.stats["deletes"] += 1
                return True
            return False

    def clear(self) -> None:
        """Clear all entries"""
        with self._lock:
            cleared_count = len(self._cache)
            self._cache.clear()
            self.stats["deletes"] += cleared_count

    def _store(self, key: str, value: Any, ttl: Optional[int]) -> None:
        if ttl is None:
            ttl = self.default_ttl
        now = self._clock()
        self._cache[key] = {
            "value": value,
            "created_at": now,
            "expires_at": now + ttl,
        }
        self.stats["sets"] += 1

    def _cleanup_expired(self) -> None:
        """Remove expired entries"""
        current_time = self._clock()
        expired_keys = [
            key
            for key, entry in self._cache.items()
            if entry["expires_at"] <= current_time
        ]

        for key in expired_keys:
            del self._cache[key]
            self.stats["evictions"] += 1

    def get_stats(self) -> Dict[str, Any]:
        """Get store statistics"""
        total_requests = self.stats["hits"] + self.stats["misses"]
        hit_rate = (
            (self.stats["hits"] / total_requests * 100) if total_requests > 0 else 0
        )

        return {
            **self.stats,
            "total_requests": total_requests,
            "hit_rate_percent": round(hit_rate, 2),
            "cache_size": len(self._cache),
        }


class RedisKeyedStore(KeyedStore):
    """Shared store backed by Redis; SET NX EX gives the atomic claim"""

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        url: Optional[str] = None,
        default_ttl: int = 300,
        prefix: Optional[str] = None,
    ):
        self.client = client or redis.Redis.from_url(url or Config.REDIS_URL, decode_responses=True)
        self.default_ttl = default_ttl
        self.prefix = Config.KEYED_STORE_PREFIX if prefix is None else prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str, default: Any = None) -> Any:
        value = self.client.get(self._key(key))
        return default if value is None else value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        self.client.set(self._key(key), value, ex=ttl or self.default_ttl)

    def set_if_absent(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        return bool(self.client.set(self._key(key), value, nx=True, ex=ttl or self.default_ttl))

    def delete(self, key: str) -> bool:
        return bool(self.client.delete(self._key(key)))

    def exists(self, key: str) -> bool:
        return bool(self.client.exists(self._key(key)))


def create_keyed_store(backend: Optional[str] = None) -> KeyedStore:
    """Build the keyed store selected by KEYED_STORE_BACKEND"""
    backend = (backend or Config.KEYED_STORE_BACKEND).lower()
    if backend == "redis":
        logger.info("🔄 KEYED_STORE: Using Redis backend")
        return RedisKeyedStore()
    if backend != "memory":
        raise ValueError(f"Unsupported keyed store backend '{backend}'")
    logger.info("🔄 KEYED_STORE: Using process-local memory backend")
    return InMemoryKeyedStore()
