from __future__ import annotations

import math
import time
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable

from redis import Redis

from bgrelay.config import Settings


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after_seconds: int = 0


@dataclass
class SlidingWindow:
    timestamps: deque[float] = field(default_factory=deque)


class WindowStore(ABC):
    @abstractmethod
    def hit(self, key: str, now: float, window_seconds: float, limit: int) -> RateLimitDecision:
        """Record one request for key unless the window is already full."""


class InMemoryWindowStore(WindowStore):
    def __init__(self) -> None:
        self._lock = Lock()
        self._buckets: dict[str, SlidingWindow] = defaultdict(SlidingWindow)

    def hit(self, key: str, now: float, window_seconds: float, limit: int) -> RateLimitDecision:
        window_start = now - window_seconds
        with self._lock:
            bucket = self._buckets[key]
            while bucket.timestamps and bucket.timestamps[0] <= window_start:
                bucket.timestamps.popleft()

            if len(bucket.timestamps) >= limit:
                retry_after = bucket.timestamps[0] + window_seconds - now
                return RateLimitDecision(False, 0, max(1, math.ceil(retry_after)))

            bucket.timestamps.append(now)
            return RateLimitDecision(True, limit - len(bucket.timestamps))

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()


class RedisWindowStore(WindowStore):
    """Sorted set per client key, shared by every relay process."""

    def __init__(self, connection: Redis, prefix: str = "bgrelay:ratelimit") -> None:
        self._redis = connection
        self._prefix = prefix

    def hit(self, key: str, now: float, window_seconds: float, limit: int) -> RateLimitDecision:
        redis_key = f"{self._prefix}:{key}"
        member = f"{now:.6f}:{uuid.uuid4().hex}"

        pipe = self._redis.pipeline(transaction=True)
        pipe.zremrangebyscore(redis_key, "-inf", now - window_seconds)
        pipe.zadd(redis_key, {member: now})
        pipe.zcard(redis_key)
        pipe.zrange(redis_key, 0, 0, withscores=True)
        pipe.expire(redis_key, max(1, math.ceil(window_seconds)))
        _, _, count, oldest, _ = pipe.execute()

        if count > limit:
            self._redis.zrem(redis_key, member)
            oldest_ts = float(oldest[0][1]) if oldest else now
            retry_after = oldest_ts + window_seconds - now
            return RateLimitDecision(False, 0, max(1, math.ceil(retry_after)))

        return RateLimitDecision(True, limit - int(count))


class SlidingWindowRateLimiter:
    def __init__(
        self,
        store: WindowStore,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._clock = clock

    @property
    def max_requests(self) -> int:
        return self._max_requests

    def check(self, client_key: str) -> RateLimitDecision:
        return self._store.hit(client_key, self._clock(), self._window_seconds, self._max_requests)


def build_rate_limiter(settings: Settings) -> SlidingWindowRateLimiter:
    if settings.rate_limit_backend == "redis":
        store: WindowStore = RedisWindowStore(Redis.from_url(settings.redis_url))
    else:
        store = InMemoryWindowStore()
    return SlidingWindowRateLimiter(
        store,
        max_requests=settings.rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
