"""
Pydantic schemas for snowball endpoints
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import CandidateStatus, JobStatus, MemberSource, MemberStatus, RejectionReason
from schemas.api import PaginationMetadata


# ============================================================================
# Candidate Submission
# ============================================================================

class ReferralRequest(BaseModel):
    """Single referral from an existing member"""
    source_member_id: str = Field(..., min_length=1, max_length=36)
    email: str = Field(..., min_length=3, max_length=320)
    content: Optional[str] = Field(None, max_length=5000, description="Optional note shown to reviewers")


class CandidateSubmissionRequest(BaseModel):
    """
    Exactly one of:
    - emails: bulk list of addresses
    - csv_content: bulk CSV text (email column) or one address per line
    - referral: single referral
    """
    emails: Optional[List[str]] = None
    csv_content: Optional[str] = None
    referral: Optional[ReferralRequest] = None

    @validator("referral", always=True)
    def exactly_one_mode(cls, v, values):
        provided = [
            name for name, value in (
                ("emails", values.get("emails")),
                ("csv_content", values.get("csv_content")),
                ("referral", v),
            )
            if value is not None
        ]
        if len(provided) != 1:
            raise ValueError("provide exactly one of emails, csv_content or referral")
        return v

    class Config:
        json_schema_extra = {
            "example": {
                "emails": ["ada@example.com", "grace@example.org"]
            }
        }


class CandidateDecisionResponse(BaseModel):
    row: Optional[int] = None
    email: Optional[str] = None
    outcome: str = Field(..., description="approved, pending, duplicate, invalid or rejected")
    reason: Optional[str] = None
    quality_score: Optional[float] = None
    hop_depth: int = 0
    candidate_id: Optional[str] = None
    member_id: Optional[str] = None


class BulkUploadResponse(BaseModel):
    """Bulk intake result; the counts add up to total"""
    total: int
    added: int
    approved: int
    pending: int
    duplicates: int
    invalid: int
    rejected_low_quality: int
    rejected_other: int
    over_limit: int
    decisions: List[CandidateDecisionResponse] = Field(default_factory=list)

    class Config:
        json_schema_extra = {
            "example": {
                "total": 3,
                "added": 1,
                "approved": 1,
                "pending": 0,
                "duplicates": 1,
                "invalid": 1,
                "rejected_low_quality": 0,
                "rejected_other": 0,
                "over_limit": 0,
                "decisions": [
                    {"row": 1, "email": "foo@x.com", "outcome": "approved", "quality_score": 0.92, "hop_depth": 0},
                    {"row": 2, "email": "foo@x.com", "outcome": "duplicate", "reason": "duplicate-in-upload"},
                    {"row": 3, "email": "not-an-email", "outcome": "invalid", "reason": "invalid-email"}
                ]
            }
        }


class SubmissionResponse(BaseModel):
    request_id: str
    mode: str = Field(..., description="bulk or referral")
    bulk: Optional[BulkUploadResponse] = None
    decision: Optional[CandidateDecisionResponse] = None


# ============================================================================
# Review
# ============================================================================

class ReviewRequest(BaseModel):
    candidate_ids: List[str] = Field(..., min_items=1, max_items=500)


class RejectRequest(ReviewRequest):
    reason: RejectionReason = RejectionReason.MANUAL


class ReviewOutcomeResponse(BaseModel):
    candidate_id: str
    status: str
    reason: Optional[str] = None
    member_id: Optional[str] = None


class ReviewResponse(BaseModel):
    request_id: str
    results: List[ReviewOutcomeResponse]
    approved: int = 0
    rejected: int = 0
    skipped: int = 0


class CandidateResponse(BaseModel):
    id: str
    repository_id: str
    email: str
    submitted_by_user_id: Optional[str]
    submitter_karma: int
    quality_score: Optional[float]
    hop_depth: int
    source_member_id: Optional[str]
    verified: bool
    content: Optional[str]
    status: CandidateStatus
    rejection_reason: Optional[RejectionReason]
    created_at: datetime
    decided_at: Optional[datetime]

    class Config:
        from_attributes = True
        use_enum_values = True


class PendingCandidatesResponse(BaseModel):
    items: List[CandidateResponse]
    pagination: PaginationMetadata


# ============================================================================
# Opt-in / Opt-out
# ============================================================================

class MemberTokenRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    token: str = Field(..., min_length=1, max_length=128)

    @validator("email")
    def normalize_email(cls, v):
        return v.strip().lower()


class MemberResponse(BaseModel):
    id: str
    repository_id: str
    email: str
    status: MemberStatus
    verified: bool
    opted_out: bool
    hop_depth: int
    source: MemberSource
    source_member_id: Optional[str]
    delivery_count: int
    added_at: datetime
    verified_at: Optional[datetime]
    last_contacted_at: Optional[datetime]

    class Config:
        from_attributes = True
        use_enum_values = True


# ============================================================================
# Distribution
# ============================================================================

class DistributeRequest(BaseModel):
    subject: str = Field(..., min_length=1, max_length=500)
    body: str = Field(..., min_length=1)
    member_ids: Optional[List[str]] = Field(None, description="Restrict to these members, in this order")
    scheduled_at: Optional[datetime] = None


class JobResponse(BaseModel):
    id: str
    repository_id: str
    initiated_by_user_id: Optional[str]
    status: JobStatus
    target_member_ids: List[str]
    results: Optional[Dict[str, str]]
    failures: Optional[Dict[str, int]] = None
    subject: str
    scheduled_at: datetime
    attempt_count: int
    last_error: Optional[str]
    cancel_requested: bool
    created_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True
        use_enum_values = True


class DistributeResponse(BaseModel):
    request_id: str
    jobs: List[JobResponse]
    total_targets: int


# ============================================================================
# Statistics
# ============================================================================

class TimelinePoint(BaseModel):
    date: str
    added: int


class ReferrerStats(BaseModel):
    member_id: str
    email: str
    hop_depth: int
    referrals: int


class SnowballStatsResponse(BaseModel):
    """Repository growth statistics"""
    repository_id: str
    member_count: int
    verified_member_count: int
    verification_rate: float = Field(..., ge=0, le=1)
    members_by_status: Dict[str, int]
    members_by_hop_depth: Dict[str, int]
    candidates_by_status: Dict[str, int]
    jobs_by_status: Dict[str, int]
    growth_timeline: List[TimelinePoint] = Field(default_factory=list)
    top_referrers: List[ReferrerStats] = Field(default_factory=list)
    max_hops: int
    potential_reach: int = Field(..., description="Projected next-hop audience")
    generated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "repository_id": "3b0e6c1e-8f0a-4c59-a0e4-6a3ad2f8f1d2",
                "member_count": 120,
                "verified_member_count": 96,
                "verification_rate": 0.8,
                "members_by_status": {"active": 96, "inactive": 24, "bounced": 3},
                "members_by_hop_depth": {"0": 80, "1": 30, "2": 13},
                "candidates_by_status": {"pending": 4, "approved": 43, "rejected": 11, "expired": 0},
                "jobs_by_status": {"queued": 0, "sending": 1, "sent": 5, "failed": 0},
                "max_hops": 3,
                "potential_reach": 144
            }
        }
