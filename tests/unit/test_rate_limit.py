"""
Unit tests for send-rate limiting
"""

import pytest
from unittest.mock import AsyncMock, MagicMock
from redis.exceptions import TimeoutError as RedisTimeoutError
from core.exceptions import DatastoreUnavailableError
from snowball.rate_limit import InMemoryCounterBackend, RateLimiter, RedisCounterBackend


class FakeClock:
    def __init__(self, now=1_000_020.0):
        self.now = now

    def __call__(self):
        return self.now


def _limiter(clock, **limits):
    values = dict(per_minute=0, per_hour=0, per_day=0, per_user_hour=0)
    values.update(limits)
    return RateLimiter(InMemoryCounterBackend(clock=clock), clock=clock, **values)


class TestRateLimiter:
    """Test fixed-window send limits"""

    @pytest.mark.asyncio
    async def test_allows_up_to_limit(self):
        clock = FakeClock()
        limiter = _limiter(clock, per_minute=2)

        assert (await limiter.acquire("repo")).allowed
        assert (await limiter.acquire("repo")).allowed

        denied = await limiter.acquire("repo")
        assert not denied.allowed
        assert denied.limit_name == "repository_minute"
        # 1_000_020 % 60 == 0 -> a full window to wait
        assert denied.retry_after_seconds == 60

    @pytest.mark.asyncio
    async def test_new_window_resets(self):
        clock = FakeClock()
        limiter = _limiter(clock, per_minute=1)

        assert (await limiter.acquire("repo")).allowed
        assert not (await limiter.acquire("repo")).allowed

        clock.now += 60
        assert (await limiter.acquire("repo")).allowed

    @pytest.mark.asyncio
    async def test_denied_attempt_is_not_counted(self):
        """A denial on the hour window must release the minute increment"""
        clock = FakeClock()
        limiter = _limiter(clock, per_minute=5, per_hour=1)

        assert (await limiter.acquire("repo")).allowed
        for _ in range(4):
            decision = await limiter.acquire("repo")
            assert not decision.allowed
            assert decision.limit_name == "repository_hour"

        # Raising the hour cap shows the minute window only holds one send
        limiter.per_hour = 100
        for _ in range(4):
            assert (await limiter.acquire("repo")).allowed
        assert not (await limiter.acquire("repo")).allowed

    @pytest.mark.asyncio
    async def test_per_user_limit(self):
        clock = FakeClock()
        limiter = _limiter(clock, per_user_hour=1)

        assert (await limiter.acquire("repo-a", "user_1")).allowed
        decision = await limiter.acquire("repo-b", "user_1")
        assert not decision.allowed
        assert decision.limit_name == "user_hour"

        assert (await limiter.acquire("repo-b", "user_2")).allowed
        assert (await limiter.acquire("repo-b")).allowed

    @pytest.mark.asyncio
    async def test_repositories_are_independent(self):
        clock = FakeClock()
        limiter = _limiter(clock, per_day=1)

        assert (await limiter.acquire("repo-a")).allowed
        assert (await limiter.acquire("repo-b")).allowed
        assert not (await limiter.acquire("repo-a")).allowed

    @pytest.mark.asyncio
    async def test_zero_limits_disable(self):
        limiter = _limiter(FakeClock())

        for _ in range(100):
            assert (await limiter.acquire("repo", "user")).allowed


class TestInMemoryCounterBackend:
    """Test counter bookkeeping"""

    @pytest.mark.asyncio
    async def test_expired_windows_are_dropped(self):
        clock = FakeClock()
        backend = InMemoryCounterBackend(clock=clock)
        limiter = RateLimiter(
            backend, per_minute=5, per_hour=100, per_day=10000, per_user_hour=100, clock=clock
        )

        for _ in range(1000):
            assert (await limiter.acquire("repo", "user_1")).allowed
            clock.now += 61

        # at most the current and previous bucket of each long window survive
        assert len(backend) <= 8

    @pytest.mark.asyncio
    async def test_live_counters_survive_sweep(self):
        clock = FakeClock()
        backend = InMemoryCounterBackend(clock=clock, sweep_interval=0)

        assert await backend.increment("hour", 3600) == 1
        clock.now += 120
        assert await backend.increment("minute", 60) == 1
        assert await backend.increment("hour", 3600) == 2
        assert len(backend) == 2


class TestRedisCounterBackend:
    """Test the Redis counter backend with a mocked client"""

    @staticmethod
    def _redis(pipe):
        redis = MagicMock()
        redis.pipeline.return_value.__aenter__ = AsyncMock(return_value=pipe)
        redis.pipeline.return_value.__aexit__ = AsyncMock(return_value=False)
        return redis

    @pytest.mark.asyncio
    async def test_increment_sets_expiry_once(self):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[3, True])
        backend = RedisCounterBackend(self._redis(pipe))

        assert await backend.increment("k", 60) == 3
        pipe.incr.assert_called_once_with("k")
        pipe.expire.assert_called_once_with("k", 60, nx=True)

    @pytest.mark.asyncio
    async def test_unreachable_redis(self):
        pipe = MagicMock()
        pipe.execute = AsyncMock(side_effect=RedisTimeoutError("timed out"))
        backend = RedisCounterBackend(self._redis(pipe))

        with pytest.raises(DatastoreUnavailableError):
            await backend.increment("k", 60)
