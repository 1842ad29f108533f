"""
Engine wiring.

Builds the session-independent collaborators once (transport, karma
provider, publisher, scorer, shared dedup / counter backends) and hands
out session-bound components per unit of work.
"""

from typing import Awaitable, Callable, Optional
import asyncio
import logging

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.database import async_session_maker
from core.redis import create_redis_client
from snowball.analytics import GrowthAnalytics
from snowball.collaborators import (
    EmailTransport,
    HttpEmailTransport,
    HttpKarmaProvider,
    KarmaProvider,
    StaticKarmaProvider,
)
from snowball.dedup import DedupBackend, DedupLedger, InMemoryDedupBackend, RedisDedupBackend, SqlDedupBackend
from snowball.distribution import DistributionScheduler, RetryPolicy
from snowball.events import EventPublisher, QueueEventPublisher
from snowball.intake.pipeline import CandidateIntake
from snowball.membership import MembershipStore
from snowball.propagation import HopPropagationController
from snowball.rate_limit import CounterBackend, InMemoryCounterBackend, RateLimiter, RedisCounterBackend
from snowball.repositories import RepositoryRegistry
from snowball.scoring import QualityScorer

logger = logging.getLogger(__name__)


class SnowballEngine:
    """
    Usage:
        engine = SnowballEngine.from_settings()
        async with engine.session_factory() as session:
            result = await engine.intake(session).submit_bulk(repository_id, emails, user_id)

    With no dedup_backend the ledger is the DedupRecord table, bound to
    the caller's session.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = async_session_maker,
        transport: Optional[EmailTransport] = None,
        karma_provider: Optional[KarmaProvider] = None,
        publisher: Optional[EventPublisher] = None,
        scorer: Optional[QualityScorer] = None,
        dedup_backend: Optional[DedupBackend] = None,
        counter_backend: Optional[CounterBackend] = None,
        rate_limiter: Optional[RateLimiter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        redis: Optional[Redis] = None,
    ):
        self.session_factory = session_factory
        self.redis = redis
        self.transport = transport or HttpEmailTransport()
        self.karma_provider = karma_provider or StaticKarmaProvider()
        self.publisher = publisher or QueueEventPublisher()
        self.scorer = scorer or QualityScorer()
        self.dedup_backend = dedup_backend
        self.rate_limiter = rate_limiter or RateLimiter(counter_backend if counter_backend is not None else InMemoryCounterBackend())
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.sleep = sleep

    @classmethod
    def from_settings(cls, **overrides) -> "SnowballEngine":
        """Build collaborators and backends from core.config settings"""
        redis_client = None
        if "redis" in (settings.DEDUP_BACKEND, settings.RATE_LIMIT_BACKEND):
            redis_client = create_redis_client()

        dedup_backend: Optional[DedupBackend] = None
        if settings.DEDUP_BACKEND == "redis":
            dedup_backend = RedisDedupBackend(redis_client)
        elif settings.DEDUP_BACKEND == "memory":
            dedup_backend = InMemoryDedupBackend()
        elif settings.DEDUP_BACKEND != "database":
            raise ValueError(f"Unknown DEDUP_BACKEND: {settings.DEDUP_BACKEND}")

        if settings.RATE_LIMIT_BACKEND == "redis":
            counter_backend: CounterBackend = RedisCounterBackend(redis_client)
        elif settings.RATE_LIMIT_BACKEND == "memory":
            counter_backend = InMemoryCounterBackend()
        else:
            raise ValueError(f"Unknown RATE_LIMIT_BACKEND: {settings.RATE_LIMIT_BACKEND}")

        if settings.KARMA_SERVICE_URL:
            karma_provider: KarmaProvider = HttpKarmaProvider()
        else:
            logger.warning("KARMA_SERVICE_URL not set, every submitter has karma 0")
            karma_provider = StaticKarmaProvider()

        logger.info(
            f"Snowball engine configured (dedup={settings.DEDUP_BACKEND}, "
            f"rate_limit={settings.RATE_LIMIT_BACKEND})"
        )
        options = dict(
            karma_provider=karma_provider,
            dedup_backend=dedup_backend,
            counter_backend=counter_backend,
            redis=redis_client,
        )
        options.update(overrides)
        return cls(**options)

    # ------------------------------------------------------------------
    # Session-bound components
    # ------------------------------------------------------------------

    def ledger(self, session: AsyncSession) -> DedupLedger:
        backend = self.dedup_backend if self.dedup_backend is not None else SqlDedupBackend(session)
        return DedupLedger(backend)

    def intake(self, session: AsyncSession) -> CandidateIntake:
        return CandidateIntake(session, self.ledger(session), self.scorer, self.karma_provider, self.publisher)

    def propagation(self, session: AsyncSession) -> HopPropagationController:
        return HopPropagationController(session, self.ledger(session), self.publisher)

    def membership(self, session: AsyncSession) -> MembershipStore:
        return MembershipStore(session)

    def repositories(self, session: AsyncSession) -> RepositoryRegistry:
        return RepositoryRegistry(session)

    def analytics(self, session: AsyncSession) -> GrowthAnalytics:
        return GrowthAnalytics(session)

    def distribution(self, session: AsyncSession) -> DistributionScheduler:
        return DistributionScheduler(
            session,
            self.transport,
            self.ledger(session),
            self.rate_limiter,
            publisher=self.publisher,
            retry_policy=self.retry_policy,
            sleep=self.sleep,
        )
