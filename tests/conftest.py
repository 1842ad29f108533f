"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool
from models.base import Base, MemberSource, MemberStatus
from models.repository import Repository
from snowball.collaborators import EmailTransport, StaticKarmaProvider
from snowball.dedup import DedupLedger, SqlDedupBackend
from snowball.distribution import DistributionScheduler, RetryPolicy
from snowball.engine import SnowballEngine
from snowball.events import QueueEventPublisher
from snowball.intake.pipeline import CandidateIntake
from snowball.membership import MembershipStore, NewMember
from snowball.propagation import HopPropagationController
from snowball.rate_limit import InMemoryCounterBackend, RateLimiter
from typing import AsyncGenerator, Dict, List, Optional

# In-memory SQLite shared by every session of a test
TEST_DATABASE_URL = "sqlite+aiosqlite://"


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables after test
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ============================================================================
# Fakes
# ============================================================================

class FakeTransport(EmailTransport):
    """
    Records deliveries. `failures` maps an address to a list of exceptions
    raised on successive attempts; once the list is exhausted sends succeed.
    """

    def __init__(self, failures: Optional[Dict[str, List[Exception]]] = None, on_send=None):
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.attempts: List[str] = []
        self.sent: List[str] = []
        self.on_send = on_send

    async def send(self, to: str, subject: str, body: str) -> Optional[str]:
        self.attempts.append(to)
        if self.on_send is not None:
            await self.on_send(to)
        pending = self.failures.get(to)
        if pending:
            raise pending.pop(0)
        self.sent.append(to)
        return f"msg-{len(self.sent)}"


class FixedScorer:
    """Quality scorer returning preset scores per address"""

    def __init__(self, scores: Optional[Dict[str, float]] = None, default: float = 0.5):
        self.scores = scores or {}
        self.default = default

    def score(self, submission) -> float:
        return self.scores.get(submission.email, self.default)


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def fake_sleep():
    return RecordingSleep()


@pytest.fixture
def publisher():
    return QueueEventPublisher()


@pytest.fixture
def rate_limiter():
    return RateLimiter(InMemoryCounterBackend(), per_minute=1000, per_hour=10000, per_day=100000, per_user_hour=1000)


@pytest.fixture
def snowball_engine(session_factory, transport, fake_sleep, publisher, rate_limiter):
    """Engine wired to the test database and in-process fakes"""
    return SnowballEngine(
        session_factory=session_factory,
        transport=transport,
        karma_provider=StaticKarmaProvider(default=500),
        publisher=publisher,
        rate_limiter=rate_limiter,
        retry_policy=RetryPolicy(max_attempts=3, initial_delay=60, multiplier=2, max_delay=3600),
        sleep=fake_sleep,
    )


@pytest.fixture
def make_repository(db_session):
    """Factory for repositories with permissive snowball settings"""

    async def _make(**overrides) -> Repository:
        values = dict(
            topic="rust-async",
            owner_id="owner_1",
            snowball_enabled=True,
            auto_approve_threshold=0.5,
            min_quality_score=0.3,
            max_emails_per_upload=100,
            max_hops=3,
            dedup_window_hours=24,
            min_karma_required=0,
            verification_required=True,
            max_members=10000,
        )
        values.update(overrides)
        # Set the ceiling first so the pairwise threshold validators pass
        ordered = {"auto_approve_threshold": values.pop("auto_approve_threshold")}
        ordered.update(values)
        repository = Repository(**ordered)
        db_session.add(repository)
        await db_session.commit()
        return repository

    return _make


@pytest.fixture
def make_member(db_session):
    """Factory for members written through the membership store"""

    async def _make(repository, email, hop_depth=0, status=MemberStatus.ACTIVE, verified=True,
                    delivered=False, source_member_id=None):
        store = MembershipStore(db_session)
        member, _ = await store.add_member(
            repository.id,
            NewMember(
                email=email,
                hop_depth=hop_depth,
                status=status,
                verified=verified,
                source=MemberSource.REFERRAL if source_member_id else MemberSource.CSV,
                source_member_id=source_member_id,
            ),
        )
        if delivered:
            member = await store.mark_contacted(member.id)
        return member

    return _make


@pytest.fixture
def sample_csv():
    """Mock CSV upload"""
    return (
        "Name,Email,Company\n"
        "Ada Lovelace,ada@example.com,Analytical\n"
        "Grace Hopper, GRACE@Example.org ,Navy\n"
        "Broken Row,not-an-email,Nowhere\n"
    )


@pytest.fixture
def ledger(db_session):
    return DedupLedger(SqlDedupBackend(db_session))


@pytest.fixture
def make_intake(db_session, ledger, publisher):
    """Intake pipeline with preset scores and a fixed submitter karma"""

    def _make(scores: Optional[Dict[str, float]] = None, default: float = 0.5, karma: int = 500) -> CandidateIntake:
        return CandidateIntake(
            db_session,
            ledger,
            FixedScorer(scores, default),
            StaticKarmaProvider(default=karma),
            publisher,
        )

    return _make


@pytest.fixture
def propagation(db_session, ledger, publisher):
    return HopPropagationController(db_session, ledger, publisher)


@pytest.fixture
def make_scheduler(db_session, ledger, transport, rate_limiter, publisher, fake_sleep):
    """Distribution scheduler on the test session"""

    def _make(transport_override=None, limiter=None, max_attempts=3, send_timeout=30) -> DistributionScheduler:
        return DistributionScheduler(
            db_session,
            transport_override or transport,
            ledger,
            limiter or rate_limiter,
            publisher=publisher,
            retry_policy=RetryPolicy(max_attempts=max_attempts, initial_delay=60, multiplier=2, max_delay=3600),
            send_timeout=send_timeout,
            sleep=fake_sleep,
        )

    return _make
