"""
Repository membership store.

All member writes go through here so that:
- (repository_id, email) uniqueness is enforced atomically with
  INSERT ... ON CONFLICT DO NOTHING; concurrent adds of the same address
  produce exactly one row and the loser gets created=False
- Repository.member_count / verified_member_count are recomputed in the
  same transaction as every membership write
- bounced is terminal
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple
import secrets
import logging

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import dialect_insert
from core.exceptions import (
    InvalidTokenError,
    InvalidTransitionError,
    MemberNotFoundError,
    RepositoryNotFoundError,
)
from models.base import COUNTED_MEMBER_STATUSES, MemberSource, MemberStatus, new_id
from models.member import Member
from models.repository import Repository

logger = logging.getLogger(__name__)


@dataclass
class NewMember:
    """Fields of a member about to be written"""
    email: str
    hop_depth: int = 0
    status: MemberStatus = MemberStatus.INACTIVE
    verified: bool = False
    source: MemberSource = MemberSource.CSV
    source_member_id: Optional[str] = None
    added_by_user_id: Optional[str] = None


def generate_verification_token() -> str:
    return secrets.token_hex(32)


class MembershipStore:
    """
    Member persistence for one database session.

    Methods commit by default; pass commit=False to join a larger unit of
    work (the caller commits).
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, member_id: str) -> Member:
        member = await self.db.get(Member, member_id)
        if member is None:
            raise MemberNotFoundError("Member not found", context={"member_id": member_id})
        return member

    async def get_by_email(self, repository_id: str, email: str) -> Optional[Member]:
        result = await self.db.execute(
            select(Member).where(Member.repository_id == repository_id, Member.email == email)
        )
        return result.scalar_one_or_none()

    async def count(self, repository_id: str) -> int:
        """Members with status active or inactive, read at call time"""
        result = await self.db.execute(
            select(func.count(Member.id)).where(
                Member.repository_id == repository_id,
                Member.status.in_(COUNTED_MEMBER_STATUSES),
            )
        )
        return int(result.scalar() or 0)

    async def count_verified(self, repository_id: str) -> int:
        result = await self.db.execute(
            select(func.count(Member.id)).where(
                Member.repository_id == repository_id,
                Member.status.in_(COUNTED_MEMBER_STATUSES),
                Member.verified.is_(True),
            )
        )
        return int(result.scalar() or 0)

    async def list_deliverable(self, repository_id: str, member_ids: Optional[List[str]] = None) -> List[Member]:
        """
        Members that may receive a distribution (not bounced, not opted out).

        With member_ids, the given order is preserved and unknown or
        undeliverable ids are dropped; otherwise members are returned in
        the order they were added.
        """
        query = select(Member).where(
            Member.repository_id == repository_id,
            Member.status != MemberStatus.BOUNCED,
            Member.opted_out.is_(False),
        )
        if member_ids is not None:
            if not member_ids:
                return []
            result = await self.db.execute(query.where(Member.id.in_(member_ids)))
            by_id = {m.id: m for m in result.scalars().all()}
            ordered = []
            seen = set()
            for member_id in member_ids:
                if member_id in by_id and member_id not in seen:
                    ordered.append(by_id[member_id])
                    seen.add(member_id)
            return ordered

        result = await self.db.execute(query.order_by(Member.added_at, Member.id))
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add_member(self, repository_id: str, member: NewMember, commit: bool = True) -> Tuple[Member, bool]:
        """
        Insert a member unless the address is already in the repository.

        Returns:
            (member, created): the stored row and whether this call created it
        """
        now = datetime.utcnow()
        stmt = dialect_insert(self.db, Member).values(
            id=new_id(),
            repository_id=repository_id,
            email=member.email,
            status=member.status,
            verified=member.verified,
            opted_out=False,
            hop_depth=member.hop_depth,
            source_member_id=member.source_member_id,
            source=member.source,
            added_by_user_id=member.added_by_user_id,
            verification_token=generate_verification_token(),
            verified_at=now if member.verified else None,
            delivery_count=0,
            added_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["repository_id", "email"]).returning(Member.id)

        result = await self.db.execute(stmt)
        inserted_id = result.scalar_one_or_none()
        created = inserted_id is not None

        stored = await self.get_by_email(repository_id, member.email)
        if created:
            await self._refresh_counts(repository_id)
            logger.info(
                f"Member added to repository {repository_id} at hop {member.hop_depth} "
                f"(source={member.source.value})"
            )
        else:
            logger.debug(f"Member already present in repository {repository_id}, insert skipped")

        if commit:
            await self.db.commit()
        return stored, created

    async def update_status(self, member_id: str, status: MemberStatus, commit: bool = True) -> Member:
        member = await self.get(member_id)
        if member.status == MemberStatus.BOUNCED and status != MemberStatus.BOUNCED:
            raise InvalidTransitionError(
                "Bounced members cannot change status",
                context={"entity": "member", "member_id": member_id,
                         "from_state": member.status.value, "to_state": status.value}
            )
        if member.status != status:
            member.status = status
            member.updated_at = datetime.utcnow()
            await self.db.flush()
            await self._refresh_counts(member.repository_id)

        if commit:
            await self.db.commit()
        return member

    async def mark_contacted(self, member_id: str, at: Optional[datetime] = None, commit: bool = True) -> Member:
        """Record a successful delivery"""
        member = await self.get(member_id)
        member.last_contacted_at = at or datetime.utcnow()
        member.delivery_count = (member.delivery_count or 0) + 1
        member.updated_at = datetime.utcnow()
        if commit:
            await self.db.commit()
        return member

    async def verify(self, repository_id: str, email: str, token: str, commit: bool = True) -> Member:
        """Opt-in: mark the member verified and active"""
        member = await self._get_with_token(repository_id, email, token)
        if member.status == MemberStatus.BOUNCED:
            raise InvalidTransitionError(
                "Bounced members cannot opt in",
                context={"entity": "member", "member_id": member.id,
                         "from_state": member.status.value, "to_state": MemberStatus.ACTIVE.value}
            )

        now = datetime.utcnow()
        member.verified = True
        member.verified_at = member.verified_at or now
        member.opted_out = False
        member.status = MemberStatus.ACTIVE
        member.updated_at = now
        await self.db.flush()
        await self._refresh_counts(repository_id)

        if commit:
            await self.db.commit()
        logger.info(f"Member {member.id} opted in to repository {repository_id}")
        return member

    async def opt_out(self, repository_id: str, email: str, token: str, commit: bool = True) -> Member:
        """Opt-out: the member stays on record but never receives distributions again"""
        member = await self._get_with_token(repository_id, email, token)

        member.opted_out = True
        if member.status == MemberStatus.ACTIVE:
            member.status = MemberStatus.INACTIVE
        member.updated_at = datetime.utcnow()
        await self.db.flush()
        await self._refresh_counts(repository_id)

        if commit:
            await self.db.commit()
        logger.info(f"Member {member.id} opted out of repository {repository_id}")
        return member

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _get_with_token(self, repository_id: str, email: str, token: str) -> Member:
        member = await self.get_by_email(repository_id, email)
        if member is None:
            raise MemberNotFoundError(
                "Member not found",
                context={"repository_id": repository_id}
            )
        if not member.verification_token or not token or not secrets.compare_digest(member.verification_token, token):
            raise InvalidTokenError(
                "Verification token does not match",
                context={"repository_id": repository_id, "member_id": member.id}
            )
        return member

    async def _refresh_counts(self, repository_id: str) -> None:
        repository = await self.db.get(Repository, repository_id)
        if repository is None:
            raise RepositoryNotFoundError("Repository not found", context={"repository_id": repository_id})
        repository.member_count = await self.count(repository_id)
        repository.verified_member_count = await self.count_verified(repository_id)
        await self.db.flush()
