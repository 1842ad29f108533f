"""
Pydantic schemas for request validation and response serialization.

Schemas:
    api: Shared schemas (health, pagination, errors)
    snowball: Candidate submission, review, opt-in/out, distribution and stats

Usage:
    from schemas.api import HealthCheckResponse, PaginationMetadata
    from schemas.snowball import CandidateSubmissionRequest, BulkUploadResponse

Example:
    # Validate a bulk submission
    request = CandidateSubmissionRequest(emails=["ada@example.com"])
    assert request.referral is None
"""

__all__ = [
    "HealthCheckResponse",
    "PaginationMetadata",
    "ErrorResponse",
    "CandidateSubmissionRequest",
    "BulkUploadResponse",
    "SubmissionResponse",
    "PendingCandidatesResponse",
    "DistributeResponse",
    "SnowballStatsResponse",
]
