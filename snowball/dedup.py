"""
Dedup ledger: last contact time per (repository, email).

Prevents the same address from being invited twice within a repository's
dedup window. The ledger stores SHA-256 hashes of normalized addresses,
never the plain email.

Backends (injected, never module globals):
- SqlDedupBackend     DedupRecord table, durable; joins the caller's transaction
- RedisDedupBackend   one key per pair with a TTL of the retention window
- InMemoryDedupBackend  tests and single-process deployments
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple
import logging

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import dialect_insert
from core.exceptions import DatastoreUnavailableError
from models.dedup_record import DedupRecord
from snowball.intake.normalizer import email_hash

logger = logging.getLogger(__name__)


class DedupBackend(ABC):
    """Storage for last-contact timestamps keyed by (repository_id, email_hash)"""

    @abstractmethod
    async def get(self, repository_id: str, hashed: str) -> Optional[datetime]:
        pass

    @abstractmethod
    async def set(self, repository_id: str, hashed: str, at: datetime,
                  retention_hours: Optional[int] = None) -> None:
        pass


class InMemoryDedupBackend(DedupBackend):
    def __init__(self):
        self._records: Dict[Tuple[str, str], datetime] = {}

    async def get(self, repository_id: str, hashed: str) -> Optional[datetime]:
        return self._records.get((repository_id, hashed))

    async def set(self, repository_id: str, hashed: str, at: datetime,
                  retention_hours: Optional[int] = None) -> None:
        self._records[(repository_id, hashed)] = at

    def __len__(self) -> int:
        return len(self._records)


class SqlDedupBackend(DedupBackend):
    """
    DedupRecord-backed ledger.

    Writes are executed on the given session without committing, so a
    ledger touch commits together with the member or candidate write that
    caused it.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def get(self, repository_id: str, hashed: str) -> Optional[datetime]:
        result = await self.db.execute(
            select(DedupRecord.last_contacted_at).where(
                DedupRecord.repository_id == repository_id,
                DedupRecord.email_hash == hashed,
            )
        )
        return result.scalar_one_or_none()

    async def set(self, repository_id: str, hashed: str, at: datetime,
                  retention_hours: Optional[int] = None) -> None:
        stmt = dialect_insert(self.db, DedupRecord).values(
            repository_id=repository_id,
            email_hash=hashed,
            last_contacted_at=at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["repository_id", "email_hash"],
            set_={"last_contacted_at": stmt.excluded.last_contacted_at},
        )
        await self.db.execute(stmt)


class RedisDedupBackend(DedupBackend):
    """Redis-backed ledger. Keys expire once the retention window has passed."""

    def __init__(self, redis: Redis, key_prefix: str = "snowball:dedup"):
        self.redis = redis
        self.key_prefix = key_prefix

    def _key(self, repository_id: str, hashed: str) -> str:
        return f"{self.key_prefix}:{repository_id}:{hashed}"

    async def get(self, repository_id: str, hashed: str) -> Optional[datetime]:
        try:
            value = await self.redis.get(self._key(repository_id, hashed))
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise DatastoreUnavailableError(
                "Redis unreachable while reading dedup ledger",
                context={"repository_id": repository_id},
                original_exception=e
            )
        if value is None:
            return None
        return datetime.fromisoformat(value)

    async def set(self, repository_id: str, hashed: str, at: datetime,
                  retention_hours: Optional[int] = None) -> None:
        ttl = int(retention_hours * 3600) if retention_hours else None
        try:
            await self.redis.set(self._key(repository_id, hashed), at.isoformat(), ex=ttl)
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise DatastoreUnavailableError(
                "Redis unreachable while writing dedup ledger",
                context={"repository_id": repository_id},
                original_exception=e
            )


class DedupLedger:
    """
    Answers "was this address contacted for this repository recently?"

    A record at time t makes the pair a duplicate for any check strictly
    before t + window; at or after that the address is evaluated fresh.
    A window of 0 hours disables deduplication.
    """

    def __init__(self, backend: DedupBackend):
        self.backend = backend

    async def last_contacted(self, repository_id: str, email: str) -> Optional[datetime]:
        return await self.backend.get(repository_id, email_hash(email))

    async def is_recent(
        self,
        repository_id: str,
        email: str,
        window_hours: int,
        now: Optional[datetime] = None
    ) -> bool:
        if window_hours <= 0:
            return False
        last = await self.last_contacted(repository_id, email)
        if last is None:
            return False
        now = now or datetime.utcnow()
        return now - last < timedelta(hours=window_hours)

    async def touch(
        self,
        repository_id: str,
        email: str,
        at: Optional[datetime] = None,
        retention_hours: Optional[int] = None
    ) -> None:
        at = at or datetime.utcnow()
        await self.backend.set(repository_id, email_hash(email), at, retention_hours)
        logger.debug(f"Dedup ledger touched for repository {repository_id}")
