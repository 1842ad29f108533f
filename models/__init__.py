"""
SQLAlchemy ORM models for database tables.

This package defines the database schema using SQLAlchemy ORM models:

Models:
    base: Base declarative class and shared enums (MemberStatus, CandidateStatus, JobStatus, ...)
    repository: Email repositories and their snowball configuration
    member: Repository members with hop-depth provenance
    candidate: Snowball candidates awaiting or past a decision
    dedup_record: Last-contact ledger per (repository, email hash)
    distribution_job: Outbound delivery batches

Database Schema:
    All models inherit from the Base declarative class. JSON columns map to
    JSONB on PostgreSQL and to JSON on other dialects.

Usage:
    from models import Repository, Member, Candidate, DedupRecord, DistributionJob
    from models.base import MemberStatus, CandidateStatus

Example:
    # Create a repository
    repository = Repository(
        topic="rust-async",
        owner_id="user_1",
        max_hops=2,
        min_quality_score=0.5,
        auto_approve_threshold=0.9,
    )
    session.add(repository)
    await session.commit()

Relationships:
    - Repository → Member (one-to-many, cascade delete)
    - Repository → Candidate (one-to-many, cascade delete)
    - Candidate → Member (one-to-one on approval, via member_id)
    - Member → Member (provenance via source_member_id)
"""

from models.base import Base
from models.repository import Repository
from models.member import Member
from models.candidate import Candidate
from models.dedup_record import DedupRecord
from models.distribution_job import DistributionJob

__all__ = [
    "Base",
    "Repository",
    "Member",
    "Candidate",
    "DedupRecord",
    "DistributionJob",
]
