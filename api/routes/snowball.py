"""
Snowball endpoints: candidate intake, review, opt-in/out, distribution, stats
"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from api.dependencies import get_db, get_engine, get_current_user_id
from core.database import datastore_guard
from core.exceptions import ValidationError
from schemas.api import PaginationMetadata
from schemas.snowball import (
    BulkUploadResponse,
    CandidateDecisionResponse,
    CandidateResponse,
    CandidateSubmissionRequest,
    DistributeRequest,
    DistributeResponse,
    JobResponse,
    MemberResponse,
    MemberTokenRequest,
    PendingCandidatesResponse,
    RejectRequest,
    ReviewOutcomeResponse,
    ReviewRequest,
    ReviewResponse,
    SnowballStatsResponse,
    SubmissionResponse,
)
from snowball.engine import SnowballEngine
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/repositories/{repository_id}/snowball", tags=["Snowball"])


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")


def _review_response(request_id: str, outcomes) -> ReviewResponse:
    results = [ReviewOutcomeResponse(**o.to_dict()) for o in outcomes]
    return ReviewResponse(
        request_id=request_id,
        results=results,
        approved=sum(1 for r in results if r.status == "approved"),
        rejected=sum(1 for r in results if r.status == "rejected"),
        skipped=sum(1 for r in results if r.status == "skipped"),
    )


# ============================================================================
# Intake
# ============================================================================

@router.post("/candidates", response_model=SubmissionResponse)
async def submit_candidates(
    repository_id: str,
    payload: CandidateSubmissionRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    engine: SnowballEngine = Depends(get_engine),
):
    """
    Submit snowball candidates.

    - emails / csv_content: bulk upload at hop depth 0
    - referral: single referral at the source member's hop depth + 1
    """
    request_id = _request_id(request)
    intake = engine.intake(db)

    async with datastore_guard("submit_candidates"):
        if payload.referral is not None:
            logger.info(f"[{request_id}] POST /snowball/candidates referral repository={repository_id}")
            decision = await intake.submit_referral(
                repository_id,
                source_member_id=payload.referral.source_member_id,
                email=payload.referral.email,
                submitted_by_user_id=user_id,
                content=payload.referral.content,
            )
            return SubmissionResponse(
                request_id=request_id,
                mode="referral",
                decision=CandidateDecisionResponse(**decision.to_dict()),
            )

        if payload.emails is not None:
            logger.info(f"[{request_id}] POST /snowball/candidates bulk emails={len(payload.emails)} repository={repository_id}")
            result = await intake.submit_bulk(repository_id, payload.emails, submitted_by_user_id=user_id)
        else:
            logger.info(f"[{request_id}] POST /snowball/candidates bulk csv repository={repository_id}")
            result = await intake.submit_csv(repository_id, payload.csv_content, submitted_by_user_id=user_id)

    return SubmissionResponse(
        request_id=request_id,
        mode="bulk",
        bulk=BulkUploadResponse(**result.to_dict()),
    )


@router.post("/upload", response_model=SubmissionResponse)
async def upload_candidates(
    repository_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    engine: SnowballEngine = Depends(get_engine),
):
    """Bulk upload from a raw text/csv request body"""
    request_id = _request_id(request)
    content = await request.body()
    if not content.strip():
        raise ValidationError("Upload body is empty", context={"repository_id": repository_id})

    logger.info(f"[{request_id}] POST /snowball/upload repository={repository_id} bytes={len(content)}")
    async with datastore_guard("upload_candidates"):
        result = await engine.intake(db).submit_csv(repository_id, content, submitted_by_user_id=user_id)

    return SubmissionResponse(
        request_id=request_id,
        mode="bulk",
        bulk=BulkUploadResponse(**result.to_dict()),
    )


# ============================================================================
# Review
# ============================================================================

@router.get("/pending", response_model=PendingCandidatesResponse)
async def list_pending(
    repository_id: str,
    request: Request,
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=500, description="Items per page"),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    engine: SnowballEngine = Depends(get_engine),
):
    """Pending candidates awaiting manual review, oldest first"""
    request_id = _request_id(request)
    logger.info(f"[{request_id}] GET /snowball/pending repository={repository_id} page={page}")

    async with datastore_guard("list_pending"):
        await engine.repositories(db).get(repository_id)
        items, total = await engine.propagation(db).candidates.list_pending(repository_id, page, page_size)

    return PendingCandidatesResponse(
        items=[CandidateResponse.model_validate(c) for c in items],
        pagination=PaginationMetadata.build(total, page, page_size),
    )


@router.post("/approve", response_model=ReviewResponse)
async def approve_candidates(
    repository_id: str,
    payload: ReviewRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    engine: SnowballEngine = Depends(get_engine),
):
    """Approve pending candidates; gates are re-checked for each one"""
    request_id = _request_id(request)
    logger.info(f"[{request_id}] POST /snowball/approve repository={repository_id} ids={len(payload.candidate_ids)}")

    async with datastore_guard("approve_candidates"):
        repository = await engine.repositories(db).get(repository_id)
        outcomes = await engine.propagation(db).approve(repository, payload.candidate_ids, decided_by_user_id=user_id)
    return _review_response(request_id, outcomes)


@router.post("/reject", response_model=ReviewResponse)
async def reject_candidates(
    repository_id: str,
    payload: RejectRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    engine: SnowballEngine = Depends(get_engine),
):
    request_id = _request_id(request)
    logger.info(f"[{request_id}] POST /snowball/reject repository={repository_id} ids={len(payload.candidate_ids)}")

    async with datastore_guard("reject_candidates"):
        repository = await engine.repositories(db).get(repository_id)
        outcomes = await engine.propagation(db).reject(
            repository, payload.candidate_ids, reason=payload.reason, decided_by_user_id=user_id
        )
    return _review_response(request_id, outcomes)


# ============================================================================
# Opt-in / Opt-out
# ============================================================================

@router.post("/opt-in", response_model=MemberResponse)
async def opt_in(
    repository_id: str,
    payload: MemberTokenRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    engine: SnowballEngine = Depends(get_engine),
):
    """Confirm membership with the token from the invitation email"""
    logger.info(f"[{_request_id(request)}] POST /snowball/opt-in repository={repository_id}")
    async with datastore_guard("opt_in"):
        member = await engine.membership(db).verify(repository_id, payload.email, payload.token)
    return MemberResponse.model_validate(member)


@router.post("/opt-out", response_model=MemberResponse)
async def opt_out(
    repository_id: str,
    payload: MemberTokenRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    engine: SnowballEngine = Depends(get_engine),
):
    """Unsubscribe; the member is never contacted again"""
    logger.info(f"[{_request_id(request)}] POST /snowball/opt-out repository={repository_id}")
    async with datastore_guard("opt_out"):
        member = await engine.membership(db).opt_out(repository_id, payload.email, payload.token)
    return MemberResponse.model_validate(member)


# ============================================================================
# Distribution and stats
# ============================================================================

@router.post("/distribute", response_model=DistributeResponse, status_code=202)
async def distribute(
    repository_id: str,
    payload: DistributeRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    engine: SnowballEngine = Depends(get_engine),
):
    """Queue delivery jobs for deliverable members; workers pick them up"""
    request_id = _request_id(request)
    logger.info(f"[{request_id}] POST /snowball/distribute repository={repository_id}")

    async with datastore_guard("distribute"):
        jobs = await engine.distribution(db).schedule(
            repository_id,
            subject=payload.subject,
            body=payload.body,
            member_ids=payload.member_ids,
            initiated_by_user_id=user_id,
            scheduled_at=payload.scheduled_at,
        )

    return DistributeResponse(
        request_id=request_id,
        jobs=[JobResponse.model_validate(j) for j in jobs],
        total_targets=sum(len(j.target_member_ids) for j in jobs),
    )


@router.get("/stats", response_model=SnowballStatsResponse)
async def get_stats(
    repository_id: str,
    request: Request,
    days: int = Query(30, ge=1, le=365, description="Days of growth timeline"),
    top: int = Query(10, ge=1, le=100, description="Number of top referrers"),
    db: AsyncSession = Depends(get_db),
    engine: SnowballEngine = Depends(get_engine),
):
    """Growth statistics for a repository"""
    logger.info(f"[{_request_id(request)}] GET /snowball/stats repository={repository_id}")
    async with datastore_guard("stats"):
        stats = await engine.analytics(db).stats(repository_id, days=days, top=top)
    return SnowballStatsResponse(**stats)
