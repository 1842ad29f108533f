from sqlalchemy import Column, String, Integer, Float, Boolean, DateTime, Enum, Index
from sqlalchemy.orm import relationship, validates
from datetime import datetime
from models.base import Base, JSONType, Visibility, new_id


class Repository(Base):
    """
    Topic-scoped email repository with its snowball configuration.

    Configuration fields mirror the platform's snowball settings and are
    consumed verbatim by the engine:
    - min_karma_required      (minKarmaRequired)
    - max_hops                (maxHops)
    - verification_required   (verificationRequired)
    - dedup_window_hours      (deduplicationWindow)
    - min_quality_score       (qualityThreshold / minQualityScore)
    - auto_approve_threshold  (autoApprovalThreshold)
    - max_emails_per_upload   (maxEmailsPerUpload)

    Counters:
    - member_count == members with status active or inactive
    - verified_member_count <= member_count
    Both are recomputed by the membership store in the same transaction
    as every membership write.
    """
    __tablename__ = "repositories"

    id = Column(String(36), primary_key=True, default=new_id)
    topic = Column(String(200), nullable=False, index=True)
    owner_id = Column(String(64), nullable=False, index=True)
    visibility = Column(Enum(Visibility), default=Visibility.PUBLIC, nullable=False)

    # Snowball configuration
    snowball_enabled = Column(Boolean, default=True, nullable=False)
    min_quality_score = Column(Float, default=0.7, nullable=False)
    auto_approve_threshold = Column(Float, default=0.9, nullable=False)
    max_emails_per_upload = Column(Integer, default=100, nullable=False)
    max_hops = Column(Integer, default=3, nullable=False)
    dedup_window_hours = Column(Integer, default=24, nullable=False)
    min_karma_required = Column(Integer, default=0, nullable=False)
    verification_required = Column(Boolean, default=True, nullable=False)
    max_members = Column(Integer, default=10000, nullable=False)
    blocked_domains = Column(JSONType, nullable=True)
    trusted_domains = Column(JSONType, nullable=True)

    # Counters
    member_count = Column(Integer, default=0, nullable=False)
    verified_member_count = Column(Integer, default=0, nullable=False)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    archived_at = Column(DateTime, nullable=True)

    # Relationships
    members = relationship("Member", back_populates="repository", cascade="all, delete-orphan", passive_deletes=True)
    candidates = relationship("Candidate", back_populates="repository", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        Index("idx_repository_owner_topic", "owner_id", "topic"),
    )

    @validates("min_quality_score", "auto_approve_threshold")
    def validate_threshold(self, key, value):
        if value is None or not 0.0 <= float(value) <= 1.0:
            raise ValueError(f"{key} must be within [0, 1], got {value}")
        if key == "auto_approve_threshold" and self.min_quality_score is not None:
            if float(value) < self.min_quality_score:
                raise ValueError("auto_approve_threshold must be >= min_quality_score")
        if key == "min_quality_score" and self.auto_approve_threshold is not None:
            if float(value) > self.auto_approve_threshold:
                raise ValueError("min_quality_score must be <= auto_approve_threshold")
        return float(value)

    @validates("max_hops", "dedup_window_hours", "min_karma_required")
    def validate_non_negative(self, key, value):
        if value is None or int(value) < 0:
            raise ValueError(f"{key} must be >= 0, got {value}")
        return int(value)

    @validates("max_emails_per_upload", "max_members")
    def validate_positive(self, key, value):
        if value is None or int(value) < 1:
            raise ValueError(f"{key} must be >= 1, got {value}")
        return int(value)

    @validates("blocked_domains", "trusted_domains")
    def validate_domains(self, key, value):
        if value is None:
            return []
        return sorted({str(d).strip().lower() for d in value if str(d).strip()})

    @property
    def is_accepting(self) -> bool:
        """True when intake and propagation may write to this repository"""
        return bool(self.snowball_enabled) and self.archived_at is None
