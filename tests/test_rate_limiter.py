from __future__ import annotations

from bgrelay.config import Settings
from bgrelay.infrastructure.rate_limiter import (
    InMemoryWindowStore,
    RedisWindowStore,
    SlidingWindowRateLimiter,
    build_rate_limiter,
)


class Clock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakePipeline:
    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._ops = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self._ops.append((name, args, kwargs))
            return self

        return queue

    def execute(self):
        return [getattr(self._redis, name)(*args, **kwargs) for name, args, kwargs in self._ops]


class FakeRedis:
    def __init__(self) -> None:
        self.zsets: dict[str, dict[str, float]] = {}
        self.expiries: dict[str, int] = {}

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    def zremrangebyscore(self, key, min_score, max_score) -> int:
        members = self.zsets.get(key, {})
        low, high = float(min_score), float(max_score)
        doomed = [m for m, score in members.items() if low <= score <= high]
        for member in doomed:
            del members[member]
        return len(doomed)

    def zadd(self, key, mapping) -> int:
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    def zcard(self, key) -> int:
        return len(self.zsets.get(key, {}))

    def zrange(self, key, start, end, withscores=False):
        ordered = sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1])
        picked = ordered[start : end + 1]
        return [(m.encode(), s) for m, s in picked] if withscores else [m.encode() for m, _ in picked]

    def expire(self, key, seconds) -> bool:
        self.expiries[key] = seconds
        return True

    def zrem(self, key, member) -> int:
        return 1 if self.zsets.get(key, {}).pop(member, None) is not None else 0


def test_in_memory_limit_and_window_expiry() -> None:
    clock = Clock(100.0)
    limiter = SlidingWindowRateLimiter(InMemoryWindowStore(), max_requests=3, window_seconds=60, clock=clock)

    decisions = [limiter.check('1.2.3.4') for _ in range(3)]
    assert all(d.allowed for d in decisions)
    assert [d.remaining for d in decisions] == [2, 1, 0]

    clock.now = 130.0
    denied = limiter.check('1.2.3.4')
    assert not denied.allowed
    assert denied.retry_after_seconds == 30

    clock.now = 160.0
    assert limiter.check('1.2.3.4').allowed


def test_in_memory_keys_are_independent() -> None:
    limiter = SlidingWindowRateLimiter(InMemoryWindowStore(), max_requests=1, window_seconds=60, clock=Clock())

    assert limiter.check('a').allowed
    assert not limiter.check('a').allowed
    assert limiter.check('b').allowed


def test_denied_requests_do_not_extend_the_window() -> None:
    clock = Clock(0.0)
    limiter = SlidingWindowRateLimiter(InMemoryWindowStore(), max_requests=1, window_seconds=10, clock=clock)

    assert limiter.check('a').allowed
    for second in range(1, 10):
        clock.now = float(second)
        assert not limiter.check('a').allowed

    clock.now = 10.0
    assert limiter.check('a').allowed


def test_redis_store_limit_and_expiry() -> None:
    redis = FakeRedis()
    clock = Clock(100.0)
    limiter = SlidingWindowRateLimiter(RedisWindowStore(redis), max_requests=2, window_seconds=60, clock=clock)

    assert limiter.check('1.2.3.4').allowed
    clock.now = 110.0
    assert limiter.check('1.2.3.4').allowed

    clock.now = 120.0
    denied = limiter.check('1.2.3.4')
    assert not denied.allowed
    assert denied.retry_after_seconds == 40
    assert redis.zcard('bgrelay:ratelimit:1.2.3.4') == 2
    assert redis.expiries['bgrelay:ratelimit:1.2.3.4'] == 60

    clock.now = 161.0
    assert limiter.check('1.2.3.4').allowed


def test_build_rate_limiter_uses_settings() -> None:
    settings = Settings()
    settings.rate_limit_backend = 'memory'
    settings.rate_limit_max_requests = 7

    limiter = build_rate_limiter(settings)

    assert limiter.max_requests == 7
