"""
Health check endpoint with database, Redis and job queue status
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, text
from api.dependencies import get_db
from core.config import settings
from schemas.api import HealthCheckResponse
from models.base import JobStatus
from models.distribution_job import DistributionJob
from datetime import datetime, timedelta
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Redis connectivity (when a Redis backend is configured)
    - Distribution queue depth and stale sending jobs
    """

    # Check database connectivity
    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    # Check Redis connectivity
    redis_connected = None
    redis_client = getattr(request.app.state, "redis", None)
    if redis_client is not None:
        try:
            redis_connected = bool(await redis_client.ping())
        except Exception as e:
            logger.error(f"Redis connection failed: {str(e)}")
            redis_connected = False

    # Job queue status
    queued_jobs = 0
    sending_jobs = 0
    stale_jobs = 0

    if db_connected:
        try:
            result = await db.execute(
                select(DistributionJob.status, func.count(DistributionJob.id)).group_by(DistributionJob.status)
            )
            counts = {status: count for status, count in result.all()}
            queued_jobs = counts.get(JobStatus.QUEUED, 0)
            sending_jobs = counts.get(JobStatus.SENDING, 0)

            cutoff = datetime.utcnow() - timedelta(minutes=settings.DISTRIBUTION_STALE_JOB_MINUTES)
            stale_result = await db.execute(
                select(func.count(DistributionJob.id)).where(
                    DistributionJob.status == JobStatus.SENDING,
                    DistributionJob.updated_at < cutoff
                )
            )
            stale_jobs = stale_result.scalar() or 0
        except Exception as e:
            logger.error(f"Failed to fetch job queue status: {str(e)}")

    worker_pool = getattr(request.app.state, "worker_pool", None)

    # Status calculation is handled by the validator in HealthCheckResponse
    return HealthCheckResponse(
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        redis_connected=redis_connected,
        queued_jobs=queued_jobs,
        sending_jobs=sending_jobs,
        stale_jobs=stale_jobs,
        workers_running=bool(worker_pool and worker_pool.running),
    )
