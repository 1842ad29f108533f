"""
Repository registry: lookup, creation with platform defaults, settings
updates and archival
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.exceptions import RepositoryNotFoundError, ValidationError
from models.base import Visibility
from models.repository import Repository
from snowball.distribution import cancel_jobs_for_repository

logger = logging.getLogger(__name__)

# Fields an owner may change after creation
MUTABLE_SETTINGS = (
    "topic",
    "visibility",
    "snowball_enabled",
    "min_quality_score",
    "auto_approve_threshold",
    "max_emails_per_upload",
    "max_hops",
    "dedup_window_hours",
    "min_karma_required",
    "verification_required",
    "max_members",
    "blocked_domains",
    "trusted_domains",
)


def default_repository_settings() -> Dict[str, Any]:
    """Platform snowball defaults for new repositories"""
    return {
        "snowball_enabled": settings.SNOWBALL_ENABLED,
        "min_karma_required": settings.SNOWBALL_MIN_KARMA_REQUIRED,
        "max_hops": settings.SNOWBALL_MAX_HOPS,
        "verification_required": settings.SNOWBALL_VERIFICATION_REQUIRED,
        "dedup_window_hours": settings.SNOWBALL_DEDUPLICATION_WINDOW_HOURS,
        "min_quality_score": settings.SNOWBALL_MIN_QUALITY_SCORE,
        "auto_approve_threshold": settings.SNOWBALL_AUTO_APPROVAL_THRESHOLD,
        "max_emails_per_upload": settings.SNOWBALL_MAX_EMAILS_PER_UPLOAD,
        "max_members": settings.SNOWBALL_MAX_MEMBERS,
    }


class RepositoryRegistry:
    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def get(self, repository_id: str) -> Repository:
        repository = await self.db.get(Repository, repository_id)
        if repository is None:
            raise RepositoryNotFoundError("Repository not found", context={"repository_id": repository_id})
        return repository

    async def list_for_owner(self, owner_id: str) -> List[Repository]:
        result = await self.db.execute(
            select(Repository).where(Repository.owner_id == owner_id).order_by(Repository.created_at)
        )
        return list(result.scalars().all())

    async def create(
        self,
        topic: str,
        owner_id: str,
        visibility: Visibility = Visibility.PUBLIC,
        **overrides: Any,
    ) -> Repository:
        """Create a repository; unspecified snowball settings take the platform defaults"""
        unknown = set(overrides) - set(MUTABLE_SETTINGS)
        if unknown:
            raise ValidationError("Unknown repository settings", context={"fields": sorted(unknown)})

        values = default_repository_settings()
        values.update({k: v for k, v in overrides.items() if v is not None})

        try:
            repository = Repository(topic=topic, owner_id=owner_id, visibility=visibility, **self._ordered(values))
        except ValueError as e:
            raise ValidationError(str(e), context={"topic": topic}, original_exception=e)

        self.db.add(repository)
        await self.db.commit()
        logger.info(f"Repository {repository.id} created for owner {owner_id} (topic={topic})")
        return repository

    async def update_settings(self, repository_id: str, **changes: Any) -> Repository:
        repository = await self.get(repository_id)
        unknown = set(changes) - set(MUTABLE_SETTINGS)
        if unknown:
            raise ValidationError("Unknown repository settings", context={"fields": sorted(unknown)})

        try:
            for key, value in self._ordered(changes, repository).items():
                setattr(repository, key, value)
        except ValueError as e:
            await self.db.rollback()
            raise ValidationError(str(e), context={"repository_id": repository_id}, original_exception=e)

        await self.db.commit()
        logger.info(f"Repository {repository_id} settings updated: {sorted(changes)}")
        return repository

    async def archive(self, repository_id: str, now: Optional[datetime] = None) -> Repository:
        """Stop intake and cancel outstanding distribution jobs"""
        repository = await self.get(repository_id)
        if repository.archived_at is None:
            repository.archived_at = now or datetime.utcnow()
            cancelled = await cancel_jobs_for_repository(self.db, repository_id, now)
            await self.db.commit()
            logger.info(f"Repository {repository_id} archived, {cancelled} jobs cancelled")
        return repository

    @staticmethod
    def _ordered(values: Dict[str, Any], repository: Optional[Repository] = None) -> Dict[str, Any]:
        """
        Order threshold assignments so the pairwise validators see a
        consistent pair: raise the ceiling before the floor, lower the
        floor before the ceiling.
        """
        ordered = dict(values)
        low = ordered.pop("min_quality_score", None)
        high = ordered.pop("auto_approve_threshold", None)

        current_high = repository.auto_approve_threshold if repository is not None else None
        if high is not None and (current_high is None or high >= current_high):
            pairs = [("auto_approve_threshold", high), ("min_quality_score", low)]
        else:
            pairs = [("min_quality_score", low), ("auto_approve_threshold", high)]

        result = {}
        for key, value in pairs:
            if value is not None:
                result[key] = value
        result.update(ordered)
        return result
