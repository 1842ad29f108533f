from sqlalchemy import Column, String, Integer, Float, Boolean, DateTime, Enum, ForeignKey, Index, Text
from sqlalchemy.orm import relationship, validates
from datetime import datetime
from models.base import Base, CandidateStatus, RejectionReason, new_id


class Candidate(Base):
    """
    A proposed repository member awaiting (or past) a snowball decision.

    Lifecycle:
    - created on submission, either pending or directly in a decided state
    - pending transitions exactly once to approved, rejected or expired
    - an approved candidate maps one-to-one to a Member (member_id) and is
      immutable afterwards

    submitter_karma is a snapshot taken at submission time so that replays
    and manual approvals evaluate the same input.
    """
    __tablename__ = "candidates"

    id = Column(String(36), primary_key=True, default=new_id)
    repository_id = Column(String(36), ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False, index=True)

    email = Column(String(254), nullable=False, index=True)
    submitted_by_user_id = Column(String(64), nullable=True, index=True)
    submitter_karma = Column(Integer, default=0, nullable=False)
    quality_score = Column(Float, nullable=True)
    content = Column(Text, nullable=True)

    # Propagation
    hop_depth = Column(Integer, default=0, nullable=False)
    source_member_id = Column(String(36), nullable=True)
    verified = Column(Boolean, default=False, nullable=False)

    # Decision
    status = Column(Enum(CandidateStatus), default=CandidateStatus.PENDING, nullable=False, index=True)
    rejection_reason = Column(Enum(RejectionReason), nullable=True)
    member_id = Column(String(36), nullable=True)
    decided_by_user_id = Column(String(64), nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    decided_at = Column(DateTime, nullable=True)

    # Relationships
    repository = relationship("Repository", back_populates="candidates")

    __table_args__ = (
        Index("idx_candidate_repository_status", "repository_id", "status", "created_at"),
        Index("idx_candidate_repository_email", "repository_id", "email"),
    )

    @validates("quality_score")
    def validate_quality_score(self, key, value):
        if value is None:
            return None
        if not 0.0 <= float(value) <= 1.0:
            raise ValueError(f"quality_score must be within [0, 1], got {value}")
        return float(value)

    @validates("hop_depth")
    def validate_hop_depth(self, key, value):
        if value is None or int(value) < 0:
            raise ValueError(f"hop_depth must be >= 0, got {value}")
        return int(value)

    @property
    def is_pending(self) -> bool:
        return self.status == CandidateStatus.PENDING
