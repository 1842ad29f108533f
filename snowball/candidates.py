"""
Candidate queue: persistence and listing of snowball candidates
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple
import logging

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from core.config import settings
from core.exceptions import CandidateNotFoundError, InvalidTransitionError
from models.base import CandidateStatus, RejectionReason
from models.candidate import Candidate

logger = logging.getLogger(__name__)


class CandidateQueue:
    """
    Candidates for one database session.

    A candidate leaves pending exactly once; decided candidates are
    immutable. Writes do not commit; the caller owns the transaction,
    and a conditional transition holds the row until it commits.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def record(
        self,
        repository_id: str,
        email: str,
        submitted_by_user_id: Optional[str],
        submitter_karma: int = 0,
        quality_score: Optional[float] = None,
        hop_depth: int = 0,
        source_member_id: Optional[str] = None,
        verified: bool = False,
        content: Optional[str] = None,
        status: CandidateStatus = CandidateStatus.PENDING,
        rejection_reason: Optional[RejectionReason] = None,
        now: Optional[datetime] = None,
    ) -> Candidate:
        now = now or datetime.utcnow()
        candidate = Candidate(
            repository_id=repository_id,
            email=email,
            submitted_by_user_id=submitted_by_user_id,
            submitter_karma=submitter_karma or 0,
            quality_score=quality_score,
            hop_depth=hop_depth,
            source_member_id=source_member_id,
            verified=verified,
            content=content,
            status=status,
            rejection_reason=rejection_reason,
            created_at=now,
            decided_at=None if status == CandidateStatus.PENDING else now,
        )
        self.db.add(candidate)
        await self.db.flush()
        return candidate

    async def get(self, candidate_id: str) -> Candidate:
        candidate = await self.db.get(Candidate, candidate_id)
        if candidate is None:
            raise CandidateNotFoundError("Candidate not found", context={"candidate_id": candidate_id})
        return candidate

    async def get_many(self, repository_id: str, candidate_ids: Sequence[str]) -> Dict[str, Candidate]:
        if not candidate_ids:
            return {}
        result = await self.db.execute(
            select(Candidate).where(
                Candidate.repository_id == repository_id,
                Candidate.id.in_(list(candidate_ids)),
            )
            .execution_options(populate_existing=True)
        )
        return {c.id: c for c in result.scalars().all()}

    async def list_pending(self, repository_id: str, page: int = 1, page_size: int = 50) -> Tuple[List[Candidate], int]:
        """Pending candidates oldest first, with the total pending count"""
        filters = (
            Candidate.repository_id == repository_id,
            Candidate.status == CandidateStatus.PENDING,
        )
        total = (await self.db.execute(select(func.count(Candidate.id)).where(*filters))).scalar() or 0

        result = await self.db.execute(
            select(Candidate)
            .where(*filters)
            .order_by(Candidate.created_at, Candidate.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), int(total)

    async def transition(
        self,
        candidate: Candidate,
        status: CandidateStatus,
        rejection_reason: Optional[RejectionReason] = None,
        decided_by_user_id: Optional[str] = None,
        member_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Candidate:
        """
        Move a pending candidate to a decided state. Does not commit.

        The write is conditional on the stored row still being pending, so a
        candidate read before another writer decided it is never overwritten.
        """
        if candidate.status != CandidateStatus.PENDING:
            raise self._already_decided(candidate, status)
        if status == CandidateStatus.PENDING:
            raise InvalidTransitionError(
                "Candidate cannot transition to pending",
                context={"entity": "candidate", "candidate_id": candidate.id}
            )

        values = {
            "status": status,
            "rejection_reason": rejection_reason,
            "decided_by_user_id": decided_by_user_id,
            "member_id": member_id,
            "decided_at": now or datetime.utcnow(),
        }
        result = await self.db.execute(
            update(Candidate)
            .where(Candidate.id == candidate.id, Candidate.status == CandidateStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            await self.db.refresh(candidate)
            logger.info(f"Candidate {candidate.id} was decided elsewhere ({candidate.status.value})")
            raise self._already_decided(candidate, status)

        for key, value in values.items():
            set_committed_value(candidate, key, value)
        return candidate

    def _already_decided(self, candidate: Candidate, status: CandidateStatus) -> InvalidTransitionError:
        return InvalidTransitionError(
            "Candidate already decided",
            context={"entity": "candidate", "candidate_id": candidate.id,
                     "from_state": candidate.status.value, "to_state": status.value}
        )

    async def expire_stale(self, now: Optional[datetime] = None, max_age_hours: Optional[int] = None) -> int:
        """Move pending candidates older than the expiry window to expired. Commits."""
        now = now or datetime.utcnow()
        hours = settings.SNOWBALL_CANDIDATE_EXPIRY_HOURS if max_age_hours is None else max_age_hours
        cutoff = now - timedelta(hours=hours)

        result = await self.db.execute(
            update(Candidate)
            .where(Candidate.status == CandidateStatus.PENDING, Candidate.created_at < cutoff)
            .values(status=CandidateStatus.EXPIRED, decided_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        expired = result.rowcount or 0
        if expired:
            logger.info(f"Expired {expired} pending candidates older than {hours}h")
        return expired
