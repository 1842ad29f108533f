"""
Growth analytics for a repository's snowball
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from core.config import settings
from models.base import CandidateStatus, JobStatus, MemberStatus
from models.candidate import Candidate
from models.distribution_job import DistributionJob
from models.member import Member
from snowball.repositories import RepositoryRegistry

logger = logging.getLogger(__name__)


class GrowthAnalytics:
    def __init__(self, db_session: AsyncSession, multiplier: Optional[float] = None):
        self.db = db_session
        self.multiplier = settings.SNOWBALL_MULTIPLIER if multiplier is None else multiplier

    async def stats(
        self,
        repository_id: str,
        days: int = 30,
        top: int = 10,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Repository growth summary.

        Returns:
            counts per member status and hop depth, verification rate,
            candidate and job counts per status, a daily growth timeline
            over the last `days` days, top referrers and potential reach
        """
        repository = await RepositoryRegistry(self.db).get(repository_id)
        now = now or datetime.utcnow()

        # ========== Members ==========
        by_status = await self._count_by(Member, Member.status, repository_id)
        members_by_status = {s.value: by_status.get(s, 0) for s in MemberStatus}

        hop_rows = await self.db.execute(
            select(Member.hop_depth, func.count(Member.id))
            .where(Member.repository_id == repository_id)
            .group_by(Member.hop_depth)
            .order_by(Member.hop_depth)
        )
        members_by_hop = {str(hop): count for hop, count in hop_rows.all()}

        member_count = repository.member_count or 0
        verified = repository.verified_member_count or 0
        verification_rate = round(verified / member_count, 4) if member_count else 0.0

        # ========== Candidates and jobs ==========
        by_candidate = await self._count_by(Candidate, Candidate.status, repository_id)
        candidates_by_status = {s.value: by_candidate.get(s, 0) for s in CandidateStatus}

        by_job = await self._count_by(DistributionJob, DistributionJob.status, repository_id)
        jobs_by_status = {s.value: by_job.get(s, 0) for s in JobStatus}

        return {
            "repository_id": repository_id,
            "member_count": member_count,
            "verified_member_count": verified,
            "verification_rate": verification_rate,
            "members_by_status": members_by_status,
            "members_by_hop_depth": members_by_hop,
            "candidates_by_status": candidates_by_status,
            "jobs_by_status": jobs_by_status,
            "growth_timeline": await self.growth_timeline(repository_id, days, now),
            "top_referrers": await self.top_referrers(repository_id, top),
            "max_hops": repository.max_hops,
            "potential_reach": self.potential_reach(members_by_status[MemberStatus.ACTIVE.value]),
            "generated_at": now,
        }

    async def growth_timeline(self, repository_id: str, days: int = 30, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Members added per day, oldest first; days without additions are omitted"""
        now = now or datetime.utcnow()
        since = now - timedelta(days=days)
        day = func.date(Member.added_at)

        result = await self.db.execute(
            select(day, func.count(Member.id))
            .where(Member.repository_id == repository_id, Member.added_at >= since)
            .group_by(day)
            .order_by(day)
        )
        return [{"date": str(d), "added": count} for d, count in result.all()]

    async def top_referrers(self, repository_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Members whose referrals produced the most members"""
        referrer = aliased(Member)
        result = await self.db.execute(
            select(referrer.id, referrer.email, referrer.hop_depth, func.count(Member.id).label("referrals"))
            .join(referrer, referrer.id == Member.source_member_id)
            .where(Member.repository_id == repository_id)
            .group_by(referrer.id, referrer.email, referrer.hop_depth)
            .order_by(func.count(Member.id).desc(), referrer.id)
            .limit(limit)
        )
        return [
            {"member_id": member_id, "email": email, "hop_depth": hop, "referrals": referrals}
            for member_id, email, hop, referrals in result.all()
        ]

    def potential_reach(self, active_members: int) -> int:
        """Projected next-hop audience. Display only; max_hops bounds real propagation."""
        return int(round(active_members * self.multiplier))

    async def _count_by(self, model, column, repository_id: str) -> Dict[Any, int]:
        result = await self.db.execute(
            select(column, func.count(model.id))
            .where(model.repository_id == repository_id)
            .group_by(column)
        )
        return {key: count for key, count in result.all()}
