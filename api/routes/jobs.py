"""
Distribution job status and cancellation
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from api.dependencies import get_db, get_engine, get_current_user_id
from core.database import datastore_guard
from schemas.snowball import JobResponse
from snowball.engine import SnowballEngine
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/snowball/jobs", tags=["Distribution"])


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    engine: SnowballEngine = Depends(get_engine),
):
    logger.info(f"[{getattr(request.state, 'request_id', '-')}] GET /snowball/jobs/{job_id}")
    async with datastore_guard("get_job"):
        job = await engine.distribution(db).get_job(job_id)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
    job_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    engine: SnowballEngine = Depends(get_engine),
):
    """
    Cancel a distribution job.

    Queued jobs fail immediately; a sending job stops before its next
    delivery attempt.
    """
    logger.info(f"[{getattr(request.state, 'request_id', '-')}] POST /snowball/jobs/{job_id}/cancel by {user_id}")
    async with datastore_guard("cancel_job"):
        job = await engine.distribution(db).cancel_job(job_id)
    return JobResponse.model_validate(job)
