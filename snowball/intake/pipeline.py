"""
Candidate intake pipeline.

Bulk uploads and single referrals converge on one evaluation path. For
every candidate, in order:

    hop limit -> already a member -> dedup window -> karma gate
        -> quality score -> auto-approve | pending | low-quality

Invalid rows are counted and reported but never persisted. Every other
outcome is recorded as a Candidate with its status and reason.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import (
    InvalidEmailError,
    MemberNotFoundError,
    ReferralNotAllowedError,
    RepositoryNotFoundError,
    SnowballDisabledError,
)
from models.base import CandidateStatus, RejectionReason
from models.repository import Repository
from snowball.candidates import CandidateQueue
from snowball.collaborators import KarmaProvider
from snowball.dedup import DedupLedger
from snowball.events import EventPublisher
from snowball.intake.csv_extractor import CSVUploadExtractor, UploadRow
from snowball.intake.normalizer import EmailNormalizer
from snowball.membership import MembershipStore
from snowball.propagation import HopPropagationController
from snowball.scoring import QualityScorer, Submission

logger = logging.getLogger(__name__)

# Decision outcomes
APPROVED = "approved"
PENDING = "pending"
DUPLICATE = "duplicate"
INVALID = "invalid"
REJECTED = "rejected"

DUPLICATE_IN_UPLOAD = "duplicate-in-upload"
INVALID_EMAIL = "invalid-email"


@dataclass
class CandidateDecision:
    outcome: str
    email: Optional[str]
    row: Optional[int] = None
    reason: Optional[str] = None
    quality_score: Optional[float] = None
    hop_depth: int = 0
    candidate_id: Optional[str] = None
    member_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "row": self.row,
            "email": self.email,
            "outcome": self.outcome,
            "reason": self.reason,
            "quality_score": self.quality_score,
            "hop_depth": self.hop_depth,
            "candidate_id": self.candidate_id,
            "member_id": self.member_id,
        }


@dataclass
class BulkUploadResult:
    """
    Counts always add up:
        added + duplicates + invalid + rejected_low_quality
            + rejected_other + over_limit == total
    """
    total: int = 0
    approved: int = 0
    pending: int = 0
    duplicates: int = 0
    invalid: int = 0
    rejected_low_quality: int = 0
    rejected_other: int = 0
    over_limit: int = 0
    decisions: List[CandidateDecision] = field(default_factory=list)

    @property
    def added(self) -> int:
        return self.approved + self.pending

    def record(self, decision: CandidateDecision) -> None:
        self.decisions.append(decision)
        if decision.outcome == APPROVED:
            self.approved += 1
        elif decision.outcome == PENDING:
            self.pending += 1
        elif decision.outcome == DUPLICATE:
            self.duplicates += 1
        elif decision.outcome == INVALID:
            self.invalid += 1
        elif decision.reason == RejectionReason.LOW_QUALITY.value:
            self.rejected_low_quality += 1
        else:
            self.rejected_other += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "added": self.added,
            "approved": self.approved,
            "pending": self.pending,
            "duplicates": self.duplicates,
            "invalid": self.invalid,
            "rejected_low_quality": self.rejected_low_quality,
            "rejected_other": self.rejected_other,
            "over_limit": self.over_limit,
            "decisions": [d.to_dict() for d in self.decisions],
        }


class CandidateIntake:
    """
    Usage:
        intake = CandidateIntake(session, ledger, scorer, karma_provider)
        result = await intake.submit_bulk(repository_id, ["a@example.com"], "user_1")
    """

    def __init__(
        self,
        db_session: AsyncSession,
        ledger: DedupLedger,
        scorer: QualityScorer,
        karma_provider: KarmaProvider,
        publisher: Optional[EventPublisher] = None,
        extractor: Optional[CSVUploadExtractor] = None,
    ):
        self.db = db_session
        self.ledger = ledger
        self.scorer = scorer
        self.karma_provider = karma_provider
        self.publisher = publisher
        self.extractor = extractor or CSVUploadExtractor()
        self.normalizer = EmailNormalizer()
        self.members = MembershipStore(db_session)
        self.candidates = CandidateQueue(db_session)
        self.propagation = HopPropagationController(db_session, ledger, publisher)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def submit_bulk(
        self,
        repository_id: str,
        raw_emails: Sequence[Any],
        submitted_by_user_id: str,
        now: Optional[datetime] = None,
    ) -> BulkUploadResult:
        rows = [UploadRow(row=i + 1, raw="" if v is None else str(v)) for i, v in enumerate(raw_emails)]
        return await self._submit_rows(repository_id, rows, submitted_by_user_id, now)

    async def submit_csv(
        self,
        repository_id: str,
        content: Union[str, bytes],
        submitted_by_user_id: str,
        now: Optional[datetime] = None,
    ) -> BulkUploadResult:
        rows = self.extractor.extract(content)
        return await self._submit_rows(repository_id, rows, submitted_by_user_id, now)

    async def submit_referral(
        self,
        repository_id: str,
        source_member_id: str,
        email: str,
        submitted_by_user_id: str,
        content: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CandidateDecision:
        """
        Single referral from an existing member.

        Raises:
            MemberNotFoundError: source member is not in this repository
            ReferralNotAllowedError: source member cannot refer yet
            InvalidEmailError: malformed address
        """
        repository = await self._load_repository(repository_id)

        source = await self.members.get(source_member_id)
        if source.repository_id != repository.id:
            raise MemberNotFoundError(
                "Source member not in repository",
                context={"repository_id": repository_id, "member_id": source_member_id}
            )
        if not source.can_refer:
            raise ReferralNotAllowedError(
                "Source member cannot refer: must be active, opted in and have received a distribution",
                context={
                    "member_id": source.id,
                    "status": source.status.value,
                    "opted_out": source.opted_out,
                    "delivery_count": source.delivery_count,
                }
            )

        normalized = self.normalizer.normalize(email)
        karma = await self.karma_provider.get_user_karma(submitted_by_user_id)

        decision = await self._evaluate(
            repository,
            normalized.address,
            submitted_by_user_id=submitted_by_user_id,
            submitter_karma=karma,
            hop_depth=source.hop_depth + 1,
            source_member_id=source.id,
            verified=True,
            content=content,
            now=now,
        )
        logger.info(
            f"Referral into repository {repository_id} from member {source.id}: "
            f"{decision.outcome} ({decision.reason or 'ok'})"
        )
        return decision

    # ------------------------------------------------------------------
    # Shared pipeline
    # ------------------------------------------------------------------

    async def _submit_rows(
        self,
        repository_id: str,
        rows: List[UploadRow],
        submitted_by_user_id: str,
        now: Optional[datetime],
    ) -> BulkUploadResult:
        repository = await self._load_repository(repository_id)
        result = BulkUploadResult(total=len(rows))

        accepted = rows[:repository.max_emails_per_upload]
        result.over_limit = len(rows) - len(accepted)
        if result.over_limit:
            logger.warning(
                f"Upload to repository {repository_id} exceeds cap of "
                f"{repository.max_emails_per_upload}: {result.over_limit} rows not processed"
            )

        karma = await self.karma_provider.get_user_karma(submitted_by_user_id)
        seen = set()

        for upload_row in accepted:
            try:
                normalized = self.normalizer.normalize(upload_row.raw, row=upload_row.row)
            except InvalidEmailError as e:
                logger.debug(f"Row {upload_row.row} rejected: {e.message}")
                result.record(CandidateDecision(
                    outcome=INVALID, email=upload_row.raw, row=upload_row.row, reason=INVALID_EMAIL
                ))
                continue

            if normalized.address in seen:
                result.record(CandidateDecision(
                    outcome=DUPLICATE, email=normalized.address, row=upload_row.row, reason=DUPLICATE_IN_UPLOAD
                ))
                continue
            seen.add(normalized.address)

            decision = await self._evaluate(
                repository,
                normalized.address,
                submitted_by_user_id=submitted_by_user_id,
                submitter_karma=karma,
                hop_depth=0,
                now=now,
            )
            decision.row = upload_row.row
            result.record(decision)

        logger.info(
            f"Bulk intake for repository {repository_id}: total={result.total} added={result.added} "
            f"duplicates={result.duplicates} invalid={result.invalid} "
            f"low_quality={result.rejected_low_quality} other={result.rejected_other} "
            f"over_limit={result.over_limit}"
        )
        return result

    async def _evaluate(
        self,
        repository: Repository,
        email: str,
        submitted_by_user_id: Optional[str],
        submitter_karma: int,
        hop_depth: int,
        source_member_id: Optional[str] = None,
        verified: bool = False,
        content: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CandidateDecision:
        now = now or datetime.utcnow()
        fields = dict(
            repository_id=repository.id,
            email=email,
            submitted_by_user_id=submitted_by_user_id,
            submitter_karma=submitter_karma,
            hop_depth=hop_depth,
            source_member_id=source_member_id,
            verified=verified,
            content=content,
            now=now,
        )

        # 1. Hop limit, independent of score
        if hop_depth > repository.max_hops:
            return await self._reject(repository, fields, RejectionReason.HOP_LIMIT_EXCEEDED, now)

        # 2. Already a member
        if await self.members.get_by_email(repository.id, email) is not None:
            return await self._reject(repository, fields, RejectionReason.ALREADY_MEMBER, now)

        # 3. Contacted within the dedup window
        if await self.ledger.is_recent(repository.id, email, repository.dedup_window_hours, now=now):
            return await self._reject(repository, fields, RejectionReason.DUPLICATE_RECENT_CONTACT, now)

        # 4. Karma gate
        if (submitter_karma or 0) < repository.min_karma_required:
            return await self._reject(repository, fields, RejectionReason.INSUFFICIENT_KARMA, now)

        # 5. Quality score
        score = self.scorer.score(
            Submission.for_repository(repository, email, submitter_karma=submitter_karma, content=content)
        )
        if score < repository.min_quality_score:
            return await self._reject(repository, fields, RejectionReason.LOW_QUALITY, now, score)

        candidate = await self.candidates.record(quality_score=score, **fields)

        if score >= repository.auto_approve_threshold:
            candidate = await self.propagation.approve_candidate(candidate, repository, now=now)
            return self._decision(candidate)

        await self.ledger.touch(repository.id, email, now, repository.dedup_window_hours)
        await self.db.commit()
        return self._decision(candidate)

    async def _reject(
        self,
        repository: Repository,
        fields: Dict[str, Any],
        reason: RejectionReason,
        now: datetime,
        score: Optional[float] = None,
    ) -> CandidateDecision:
        candidate = await self.candidates.record(quality_score=score, **fields)
        candidate = await self.propagation.reject_candidate(candidate, repository, reason, now=now)
        return self._decision(candidate)

    @staticmethod
    def _decision(candidate) -> CandidateDecision:
        reason = candidate.rejection_reason.value if candidate.rejection_reason else None
        if candidate.status == CandidateStatus.APPROVED:
            outcome = APPROVED
        elif candidate.status == CandidateStatus.PENDING:
            outcome = PENDING
        elif candidate.rejection_reason in (RejectionReason.ALREADY_MEMBER, RejectionReason.DUPLICATE_RECENT_CONTACT):
            outcome = DUPLICATE
        else:
            outcome = REJECTED

        return CandidateDecision(
            outcome=outcome,
            email=candidate.email,
            reason=reason,
            quality_score=candidate.quality_score,
            hop_depth=candidate.hop_depth,
            candidate_id=candidate.id,
            member_id=candidate.member_id,
        )

    async def _load_repository(self, repository_id: str) -> Repository:
        repository = await self.db.get(Repository, repository_id)
        if repository is None:
            raise RepositoryNotFoundError("Repository not found", context={"repository_id": repository_id})
        if not repository.is_accepting:
            raise SnowballDisabledError(
                "Snowball distribution is disabled for this repository",
                context={"repository_id": repository_id, "archived": repository.archived_at is not None}
            )
        return repository
