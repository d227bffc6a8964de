import fnmatch
import json
import logging
import time
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

import redis

from slotwise.config import Settings

logger = logging.getLogger(__name__)


class Cache:
    """Key/value cache used to memoize read-heavy directory lookups.

    Values must be JSON-serializable. A cache is never the source of truth:
    callers treat every failure as a miss.
    """

    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def keys(self, pattern: str = "*") -> List[str]:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError

    def delete_pattern(self, pattern: str) -> int:
        removed = 0
        for key in self.keys(pattern):
            self.delete(key)
            removed += 1
        return removed


class MemoryCache(Cache):
    def __init__(self, clock=time.monotonic):
        self._lock = Lock()
        self._clock = clock
        self._items: Dict[str, Tuple[Any, Optional[float]]] = {}

    def _expired(self, expires_at: Optional[float]) -> bool:
        return expires_at is not None and self._clock() >= expires_at

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            value, expires_at = item
            if self._expired(expires_at):
                del self._items[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._items[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def keys(self, pattern: str = "*") -> List[str]:
        with self._lock:
            for key in [k for k, (_, exp) in self._items.items() if self._expired(exp)]:
                del self._items[key]
            return [key for key in self._items if fnmatch.fnmatchcase(key, pattern)]

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


class RedisCache(Cache):
    def __init__(self, client: "redis.Redis", prefix: str = "slotwise:"):
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        client = redis.Redis.from_url(url, decode_responses=True, socket_timeout=2)
        return cls(client)

    def ping(self) -> bool:
        return bool(self._client.ping())

    def get(self, key: str) -> Optional[Any]:
        raw = self._client.get(self._prefix + key)
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        payload = json.dumps(value)
        if ttl_seconds:
            self._client.set(self._prefix + key, payload, ex=ttl_seconds)
        else:
            self._client.set(self._prefix + key, payload)

    def delete(self, key: str) -> None:
        self._client.delete(self._prefix + key)

    def keys(self, pattern: str = "*") -> List[str]:
        offset = len(self._prefix)
        return [key[offset:] for key in self._client.scan_iter(match=self._prefix + pattern)]

    def clear(self) -> None:
        for key in self._client.scan_iter(match=self._prefix + "*"):
            self._client.delete(key)


def build_cache(config: Settings) -> Cache:
    if config.cache_backend != "redis":
        return MemoryCache()
    cache = RedisCache.from_url(config.redis_url)
    try:
        cache.ping()
    except redis.RedisError:
        logger.warning("Redis cache requested but unreachable at %s; using memory cache", config.redis_url)
        return MemoryCache()
    logger.info("Redis cache connected")
    return cache
