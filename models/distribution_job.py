from sqlalchemy import Column, String, Integer, Boolean, DateTime, Enum, Text, Index
from sqlalchemy.orm import validates
from datetime import datetime
from models.base import Base, JSONType, JobStatus, new_id


class DistributionJob(Base):
    """
    One outbound delivery batch for a repository.

    Purpose:
    - Durable work queue for the delivery worker pool
    - Crash recovery: per-target outcomes are recorded in `results`, so a
      re-run skips targets that were already handled
    - Audit trail of attempts and failures

    Design:
    - target_member_ids keeps insertion order; delivery follows it
    - results maps member_id -> "sent" | "bounced" | "skipped"
    - failures maps member_id -> failed attempts so far; it survives
      deferrals and re-runs, so the retry bound holds per target
    - attempt_count counts every delivery attempt across all targets
    - cancel_requested is polled by the worker before each attempt
    - terminal states are sent and failed
    """
    __tablename__ = "distribution_jobs"

    id = Column(String(36), primary_key=True, default=new_id)
    repository_id = Column(String(36), nullable=False, index=True)
    initiated_by_user_id = Column(String(64), nullable=True)

    # Payload
    target_member_ids = Column(JSONType, nullable=False)
    results = Column(JSONType, nullable=True)
    failures = Column(JSONType, nullable=True)
    subject = Column(String(500), nullable=False)
    body = Column(Text, nullable=False)

    # Scheduling
    status = Column(Enum(JobStatus), default=JobStatus.QUEUED, nullable=False, index=True)
    scheduled_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    attempt_count = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    cancel_requested = Column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_job_status_scheduled", "status", "scheduled_at"),
        Index("idx_job_repository_status", "repository_id", "status"),
    )

    @validates("target_member_ids")
    def validate_targets(self, key, value):
        if not value:
            raise ValueError("a distribution job needs at least one target")
        return list(value)
