from __future__ import annotations

import json
import logging
import time
from threading import Lock
from typing import Any, Callable

import redis.asyncio as aioredis

from quickbot.core.metrics import metrics

logger = logging.getLogger(__name__)


class MemoryCache:
    """Process-local TTL cache, used when no redis is configured and as a
    fallback when redis calls fail."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._store: dict[str, tuple[float | None, Any]] = {}
        self._lock = Lock()
        self._clock = clock

    def get(self, key: str) -> Any | None:
        now = self._clock()
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at is not None and expires_at <= now:
                self._store.pop(key, None)
                return None
            return value

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        expires_at = None
        if ttl is not None:
            expires_at = self._clock() + ttl
        with self._lock:
            self._store[key] = (expires_at, value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)


class CacheClient:
    def __init__(self, redis_client: aioredis.Redis | None = None, local: MemoryCache | None = None) -> None:
        self._redis = redis_client
        self._local = local or MemoryCache()

    @classmethod
    def from_url(cls, redis_url: str | None) -> "CacheClient":
        if not redis_url:
            return cls(None)
        return cls(aioredis.Redis.from_url(redis_url, decode_responses=True))

    async def get_json(self, key: str) -> Any | None:
        if self._redis is not None:
            try:
                value = await self._redis.get(key)
                if value is None:
                    return None
                return json.loads(value)
            except Exception as exc:
                logger.warning("cache redis get failed: %s", exc)
                metrics.inc("cache_errors_total", {"op": "get"})
        return self._local.get(key)

    async def set_json(self, key: str, value: Any, ttl: int | None = None) -> None:
        if self._redis is not None:
            try:
                payload = json.dumps(value, ensure_ascii=False)
                if ttl:
                    await self._redis.setex(key, ttl, payload)
                else:
                    await self._redis.set(key, payload)
                return
            except Exception as exc:
                logger.warning("cache redis set failed: %s", exc)
                metrics.inc("cache_errors_total", {"op": "set"})
        self._local.set(key, value, ttl)

    async def delete(self, key: str) -> None:
        if self._redis is not None:
            try:
                await self._redis.delete(key)
            except Exception as exc:
                logger.warning("cache redis delete failed: %s", exc)
                metrics.inc("cache_errors_total", {"op": "delete"})
        self._local.delete(key)
