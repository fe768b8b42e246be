from __future__ import annotations

import logging
import math
import time
import uuid
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Deque, Dict

import redis.asyncio as aioredis

from quickbot.core.metrics import metrics
from quickbot.core.settings import Settings

logger = logging.getLogger(__name__)

_SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]
redis.call("ZREMRANGEBYSCORE", key, "-inf", now - window)
local count = redis.call("ZCARD", key)
local allowed = 0
if count < limit then
  redis.call("ZADD", key, now, member)
  count = count + 1
  allowed = 1
end
redis.call("PEXPIRE", key, window)
local oldest = redis.call("ZRANGE", key, 0, 0, "WITHSCORES")
local oldest_score = now
if oldest[2] then
  oldest_score = tonumber(oldest[2])
end
return {allowed, count, oldest_score}
"""


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: int
    retry_after: int = 0


def rate_limit_key(bot_id: str, session_id: str) -> str:
    return f"bot:{bot_id}:session:{session_id}"


class SlidingWindowLimiter:
    """Admission control over a moving window of ``window_sec`` seconds.

    Subclasses implement ``_hit`` which must record the attempt and count the
    window atomically. Any backend failure is converted into a rejection.
    """

    def __init__(self, limit: int, window_sec: int, clock: Callable[[], float] = time.time) -> None:
        self.limit_count = max(1, limit)
        self.window_sec = max(1, window_sec)
        self._clock = clock

    async def limit(self, key: str) -> RateLimitDecision:
        now_ms = int(self._clock() * 1000)
        try:
            allowed, count, oldest_ms = await self._hit(key, now_ms)
        except Exception as exc:
            logger.warning("rate limit backend unavailable, rejecting %s: %s", key, exc)
            metrics.inc("chat_rate_limit_backend_error_total")
            return self._decision(False, 0, now_ms, now_ms)
        return self._decision(allowed, max(0, self.limit_count - count), oldest_ms, now_ms)

    def _decision(self, allowed: bool, remaining: int, oldest_ms: int, now_ms: int) -> RateLimitDecision:
        reset_at = math.ceil((oldest_ms + self.window_sec * 1000) / 1000)
        return RateLimitDecision(
            allowed=allowed,
            remaining=remaining,
            reset_at=reset_at,
            retry_after=0 if allowed else max(0, reset_at - now_ms // 1000),
        )

    async def _hit(self, key: str, now_ms: int) -> tuple[bool, int, int]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemorySlidingWindowLimiter(SlidingWindowLimiter):
    """Single-process backend. Keys whose window has fully expired are dropped,
    with a sweep of every tracked key at most once per window."""

    def __init__(self, limit: int, window_sec: int, clock: Callable[[], float] = time.time) -> None:
        super().__init__(limit, window_sec, clock)
        self._events: Dict[str, Deque[int]] = {}
        self._lock = Lock()
        self._last_sweep_ms = 0

    @property
    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._events)

    async def _hit(self, key: str, now_ms: int) -> tuple[bool, int, int]:
        window_ms = self.window_sec * 1000
        with self._lock:
            if now_ms - self._last_sweep_ms >= window_ms:
                self._sweep(now_ms, window_ms)
            events = self._events.get(key) or deque()
            while events and now_ms - events[0] >= window_ms:
                events.popleft()
            allowed = len(events) < self.limit_count
            if allowed:
                events.append(now_ms)
            if events:
                self._events[key] = events
            else:
                self._events.pop(key, None)
            oldest = events[0] if events else now_ms
            return allowed, len(events), oldest

    def _sweep(self, now_ms: int, window_ms: int) -> None:
        stale = [key for key, events in self._events.items() if not events or now_ms - events[-1] >= window_ms]
        for key in stale:
            del self._events[key]
        self._last_sweep_ms = now_ms


class RedisSlidingWindowLimiter(SlidingWindowLimiter):
    def __init__(
        self,
        redis_client: aioredis.Redis,
        limit: int,
        window_sec: int,
        prefix: str = "ratelimit:chat",
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(limit, window_sec, clock)
        self._redis = redis_client
        self._prefix = prefix
        self._script = redis_client.register_script(_SLIDING_WINDOW_SCRIPT)

    async def _hit(self, key: str, now_ms: int) -> tuple[bool, int, int]:
        member = f"{now_ms}:{uuid.uuid4().hex}"
        result = await self._script(
            keys=[f"{self._prefix}:{key}"],
            args=[now_ms, self.window_sec * 1000, self.limit_count, member],
        )
        allowed, count, oldest = result
        return bool(int(allowed)), int(count), int(float(oldest))

    async def close(self) -> None:
        await self._redis.aclose()


def build_limiter(settings: Settings) -> SlidingWindowLimiter:
    if settings.redis_url:
        client = aioredis.Redis.from_url(settings.redis_url, decode_responses=True)
        return RedisSlidingWindowLimiter(
            client,
            settings.rate_limit_requests,
            settings.rate_limit_window_sec,
            prefix=settings.rate_limit_prefix,
        )
    return MemorySlidingWindowLimiter(settings.rate_limit_requests, settings.rate_limit_window_sec)
