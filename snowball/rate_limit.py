"""
Send-rate limiting for outbound distribution.

Fixed-window counters per repository (minute / hour / day) and per
initiating user (hour). Counters live in an injected backend:
- RedisCounterBackend: INCR + EXPIRE NX in one transaction
- InMemoryCounterBackend: asyncio.Lock-guarded dict

A denied acquisition releases the increments it made, so only sends that
actually happen are counted.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple
import asyncio
import time
import logging

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from core.config import settings
from core.exceptions import DatastoreUnavailableError

logger = logging.getLogger(__name__)

MINUTE = 60
HOUR = 3600
DAY = 86400


class CounterBackend(ABC):
    """Atomic increment-with-expiry counters"""

    @abstractmethod
    async def increment(self, key: str, ttl_seconds: int) -> int:
        """Increment and return the new value; the key expires ttl_seconds after creation"""
        pass

    @abstractmethod
    async def decrement(self, key: str) -> None:
        pass


class InMemoryCounterBackend(CounterBackend):
    """Expired windows are swept at most once per sweep_interval seconds of clock time"""

    def __init__(self, clock: Callable[[], float] = time.time, sweep_interval: float = 60.0):
        self._counters: Dict[str, Tuple[int, float]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._next_sweep = 0.0

    async def increment(self, key: str, ttl_seconds: int) -> int:
        async with self._lock:
            now = self._clock()
            if now >= self._next_sweep:
                self._sweep(now)
            count, expires_at = self._counters.get(key, (0, now + ttl_seconds))
            if expires_at <= now:
                count, expires_at = 0, now + ttl_seconds
            count += 1
            self._counters[key] = (count, expires_at)
            return count

    async def decrement(self, key: str) -> None:
        async with self._lock:
            if key in self._counters:
                count, expires_at = self._counters[key]
                self._counters[key] = (max(0, count - 1), expires_at)

    def _sweep(self, now: float) -> None:
        expired = [k for k, (_, expires_at) in self._counters.items() if expires_at <= now]
        for key in expired:
            del self._counters[key]
        self._next_sweep = now + self._sweep_interval

    def __len__(self) -> int:
        return len(self._counters)


class RedisCounterBackend(CounterBackend):
    def __init__(self, redis: Redis):
        self.redis = redis

    async def increment(self, key: str, ttl_seconds: int) -> int:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.expire(key, ttl_seconds, nx=True)
                count, _ = await pipe.execute()
            return int(count)
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise DatastoreUnavailableError(
                "Redis unreachable while counting sends",
                context={"key": key},
                original_exception=e
            )

    async def decrement(self, key: str) -> None:
        try:
            await self.redis.decr(key)
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise DatastoreUnavailableError(
                "Redis unreachable while releasing send count",
                context={"key": key},
                original_exception=e
            )


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: float = 0.0
    limit_name: Optional[str] = None


class RateLimiter:
    """
    Usage:
        limiter = RateLimiter(InMemoryCounterBackend())
        decision = await limiter.acquire(repository_id, user_id)
        if not decision.allowed:
            # requeue after decision.retry_after_seconds
    """

    def __init__(
        self,
        backend: CounterBackend,
        per_minute: Optional[int] = None,
        per_hour: Optional[int] = None,
        per_day: Optional[int] = None,
        per_user_hour: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        key_prefix: str = "snowball:rate",
    ):
        self.backend = backend
        self.per_minute = settings.EMAIL_RATE_LIMIT_PER_MINUTE if per_minute is None else per_minute
        self.per_hour = settings.EMAIL_RATE_LIMIT_PER_HOUR if per_hour is None else per_hour
        self.per_day = settings.EMAIL_RATE_LIMIT_PER_DAY if per_day is None else per_day
        self.per_user_hour = settings.EMAIL_RATE_LIMIT_PER_USER_HOUR if per_user_hour is None else per_user_hour
        self.clock = clock
        self.key_prefix = key_prefix

    def _windows(self, repository_id: str, user_id: Optional[str]) -> List[Tuple[str, str, int, int]]:
        """(name, key scope, window seconds, limit); a limit of 0 disables the window"""
        windows = [
            ("repository_minute", f"repo:{repository_id}", MINUTE, self.per_minute),
            ("repository_hour", f"repo:{repository_id}", HOUR, self.per_hour),
            ("repository_day", f"repo:{repository_id}", DAY, self.per_day),
        ]
        if user_id:
            windows.append(("user_hour", f"user:{user_id}", HOUR, self.per_user_hour))
        return [w for w in windows if w[3] and w[3] > 0]

    async def acquire(self, repository_id: str, user_id: Optional[str] = None) -> RateLimitDecision:
        now = self.clock()
        acquired: List[str] = []

        for name, scope, window, limit in self._windows(repository_id, user_id):
            bucket = int(now // window)
            key = f"{self.key_prefix}:{scope}:{window}:{bucket}"
            count = await self.backend.increment(key, window)
            acquired.append(key)

            if count > limit:
                for held in acquired:
                    await self.backend.decrement(held)
                retry_after = window - (now % window)
                logger.info(
                    f"Rate limit {name} reached for repository {repository_id} "
                    f"({limit}/{window}s), retry in {retry_after:.0f}s"
                )
                return RateLimitDecision(allowed=False, retry_after_seconds=retry_after, limit_name=name)

        return RateLimitDecision(allowed=True)
