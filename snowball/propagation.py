"""
Hop propagation controller.

Owns the candidate state machine pending -> {approved, rejected, expired}
and the only path from a candidate to a Member. Every approval, automatic
or manual, re-checks before writing:

1. hop depth      candidate.hop_depth > repository.max_hops -> hop-limit-exceeded
2. karma gate     submitter_karma < repository.min_karma_required -> insufficient-karma
3. member cap     count(repository) >= repository.max_members -> member-cap-reached

Creating a member never cascades: hop k+1 candidates only come from a
referral by a hop-k member that has received a distribution.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import InvalidTransitionError
from models.base import CandidateStatus, MemberSource, MemberStatus, RejectionReason
from models.candidate import Candidate
from models.repository import Repository
from snowball.candidates import CandidateQueue
from snowball.dedup import DedupLedger
from snowball.events import CandidateDecided, EventPublisher, MemberAdded
from snowball.membership import MembershipStore, NewMember

logger = logging.getLogger(__name__)

# Rejections that describe an earlier contact rather than a decision on this address
DUPLICATE_REASONS = (RejectionReason.ALREADY_MEMBER, RejectionReason.DUPLICATE_RECENT_CONTACT)

NOT_FOUND = "not-found"
NOT_PENDING = "not-pending"


@dataclass
class ReviewOutcome:
    """Per-id result of a manual approve / reject batch"""
    candidate_id: str
    status: str
    reason: Optional[str] = None
    member_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate_id": self.candidate_id,
            "status": self.status,
            "reason": self.reason,
            "member_id": self.member_id,
        }


def gate_rejection(candidate: Candidate, repository: Repository) -> Optional[RejectionReason]:
    """Hop and karma gates, in that order"""
    if candidate.hop_depth > repository.max_hops:
        return RejectionReason.HOP_LIMIT_EXCEEDED
    if (candidate.submitter_karma or 0) < repository.min_karma_required:
        return RejectionReason.INSUFFICIENT_KARMA
    return None


class HopPropagationController:
    def __init__(
        self,
        db_session: AsyncSession,
        ledger: DedupLedger,
        publisher: Optional[EventPublisher] = None,
    ):
        self.db = db_session
        self.ledger = ledger
        self.publisher = publisher
        self.members = MembershipStore(db_session)
        self.candidates = CandidateQueue(db_session)

    # ------------------------------------------------------------------
    # Single-candidate decisions
    # ------------------------------------------------------------------

    async def approve_candidate(
        self,
        candidate: Candidate,
        repository: Repository,
        decided_by_user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Candidate:
        """
        Approve a pending candidate, or reject it if a gate fails. Commits.

        Returns the candidate in its decided state. Raises
        InvalidTransitionError when another writer decided it first.
        """
        now = now or datetime.utcnow()

        reason = gate_rejection(candidate, repository)
        if reason is None and await self.members.count(repository.id) >= repository.max_members:
            reason = RejectionReason.MEMBER_CAP_REACHED
        if reason is not None:
            return await self.reject_candidate(candidate, repository, reason, decided_by_user_id, now)

        status = (
            MemberStatus.ACTIVE
            if candidate.verified or not repository.verification_required
            else MemberStatus.INACTIVE
        )
        # Claim the candidate first; a concurrent decision makes this raise
        await self.candidates.transition(
            candidate,
            CandidateStatus.APPROVED,
            decided_by_user_id=decided_by_user_id,
            now=now,
        )
        member, created = await self.members.add_member(
            repository.id,
            NewMember(
                email=candidate.email,
                hop_depth=candidate.hop_depth,
                status=status,
                verified=bool(candidate.verified),
                source=MemberSource.REFERRAL if candidate.source_member_id else MemberSource.CSV,
                source_member_id=candidate.source_member_id,
                added_by_user_id=candidate.submitted_by_user_id,
            ),
            commit=False,
        )
        if not created:
            # Lost a race with another writer for the same address; the row is ours until commit
            candidate.status = CandidateStatus.REJECTED
            candidate.rejection_reason = RejectionReason.ALREADY_MEMBER
            await self.db.commit()
            logger.info(f"Candidate {candidate.id} rejected: {RejectionReason.ALREADY_MEMBER.value}")
            await self._publish_decision(candidate)
            return candidate

        candidate.member_id = member.id
        await self.ledger.touch(repository.id, candidate.email, now, repository.dedup_window_hours)
        await self.db.commit()

        logger.info(
            f"Candidate {candidate.id} approved into repository {repository.id} "
            f"at hop {candidate.hop_depth}"
        )
        await self._publish_decision(candidate)
        if self.publisher is not None:
            await self.publisher.publish(MemberAdded(
                repository_id=repository.id,
                member_id=member.id,
                email=member.email,
                hop_depth=member.hop_depth,
                source_member_id=member.source_member_id,
                status=member.status.value,
            ))
        return candidate

    async def reject_candidate(
        self,
        candidate: Candidate,
        repository: Repository,
        reason: RejectionReason,
        decided_by_user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Candidate:
        """Reject a pending candidate. Commits."""
        now = now or datetime.utcnow()
        await self.candidates.transition(
            candidate,
            CandidateStatus.REJECTED,
            rejection_reason=reason,
            decided_by_user_id=decided_by_user_id,
            now=now,
        )
        if reason not in DUPLICATE_REASONS:
            await self.ledger.touch(repository.id, candidate.email, now, repository.dedup_window_hours)
        await self.db.commit()

        logger.info(f"Candidate {candidate.id} rejected: {reason.value}")
        await self._publish_decision(candidate)
        return candidate

    # ------------------------------------------------------------------
    # Manual review batches
    # ------------------------------------------------------------------

    async def approve(
        self,
        repository: Repository,
        candidate_ids: Sequence[str],
        decided_by_user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[ReviewOutcome]:
        """
        Approve pending candidates by id.

        Ids that are unknown or already decided (including decided
        concurrently) are reported per id and do not fail the batch.
        """
        found = await self.candidates.get_many(repository.id, candidate_ids)
        outcomes = []
        for candidate_id in candidate_ids:
            candidate = found.get(candidate_id)
            if candidate is None:
                outcomes.append(ReviewOutcome(candidate_id, "skipped", NOT_FOUND))
                continue
            if not candidate.is_pending:
                outcomes.append(ReviewOutcome(candidate_id, "skipped", NOT_PENDING))
                continue

            try:
                candidate = await self.approve_candidate(candidate, repository, decided_by_user_id, now)
            except InvalidTransitionError:
                outcomes.append(ReviewOutcome(candidate_id, "skipped", NOT_PENDING))
                continue
            outcomes.append(ReviewOutcome(
                candidate_id,
                candidate.status.value,
                candidate.rejection_reason.value if candidate.rejection_reason else None,
                candidate.member_id,
            ))
        return outcomes

    async def reject(
        self,
        repository: Repository,
        candidate_ids: Sequence[str],
        reason: RejectionReason = RejectionReason.MANUAL,
        decided_by_user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[ReviewOutcome]:
        found = await self.candidates.get_many(repository.id, candidate_ids)
        outcomes = []
        for candidate_id in candidate_ids:
            candidate = found.get(candidate_id)
            if candidate is None:
                outcomes.append(ReviewOutcome(candidate_id, "skipped", NOT_FOUND))
                continue
            if not candidate.is_pending:
                outcomes.append(ReviewOutcome(candidate_id, "skipped", NOT_PENDING))
                continue

            try:
                await self.reject_candidate(candidate, repository, reason, decided_by_user_id, now)
            except InvalidTransitionError:
                outcomes.append(ReviewOutcome(candidate_id, "skipped", NOT_PENDING))
                continue
            outcomes.append(ReviewOutcome(candidate_id, CandidateStatus.REJECTED.value, reason.value))
        return outcomes

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        return await self.candidates.expire_stale(now)

    async def _publish_decision(self, candidate: Candidate) -> None:
        if self.publisher is None:
            return
        await self.publisher.publish(CandidateDecided(
            repository_id=candidate.repository_id,
            candidate_id=candidate.id,
            email=candidate.email,
            status=candidate.status.value,
            rejection_reason=candidate.rejection_reason.value if candidate.rejection_reason else None,
            quality_score=candidate.quality_score,
            hop_depth=candidate.hop_depth,
        ))
