from sqlalchemy import Column, String, Integer, Boolean, DateTime, Enum, ForeignKey, Index
from sqlalchemy.orm import relationship, validates
from datetime import datetime
from models.base import Base, MemberStatus, MemberSource, new_id


class Member(Base):
    """
    One email address in a repository's member list.

    Design:
    - email is normalized (trimmed, lower-case) and unique per repository;
      the unique index backs the atomic INSERT ... ON CONFLICT DO NOTHING
      used by the membership store
    - hop_depth counts propagation edges from a bulk-uploaded seed (0)
    - source_member_id is provenance only: the member whose referral
      produced this one. It is not an ownership pointer and is not
      cascaded.
    - bounced is terminal
    """
    __tablename__ = "members"

    id = Column(String(36), primary_key=True, default=new_id)
    repository_id = Column(String(36), ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False, index=True)

    email = Column(String(254), nullable=False)
    status = Column(Enum(MemberStatus), default=MemberStatus.INACTIVE, nullable=False, index=True)
    verified = Column(Boolean, default=False, nullable=False)
    opted_out = Column(Boolean, default=False, nullable=False)

    # Propagation provenance
    hop_depth = Column(Integer, default=0, nullable=False)
    source_member_id = Column(String(36), nullable=True, index=True)
    source = Column(Enum(MemberSource), default=MemberSource.CSV, nullable=False)
    added_by_user_id = Column(String(64), nullable=True)

    # Opt-in / opt-out
    verification_token = Column(String(64), nullable=True, index=True)
    verified_at = Column(DateTime, nullable=True)

    # Delivery tracking
    last_contacted_at = Column(DateTime, nullable=True)
    delivery_count = Column(Integer, default=0, nullable=False)

    # Timestamps
    added_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    repository = relationship("Repository", back_populates="members")

    __table_args__ = (
        Index("uq_member_repository_email", "repository_id", "email", unique=True),
        Index("idx_member_repository_status", "repository_id", "status"),
        Index("idx_member_repository_hop", "repository_id", "hop_depth"),
    )

    @validates("email")
    def validate_email(self, key, value):
        if not value or "@" not in value:
            raise ValueError(f"member email must be a normalized address, got {value!r}")
        normalized = value.strip().lower()
        if normalized != value:
            raise ValueError("member email must be normalized before construction")
        return value

    @validates("hop_depth")
    def validate_hop_depth(self, key, value):
        if value is None or int(value) < 0:
            raise ValueError(f"hop_depth must be >= 0, got {value}")
        return int(value)

    @property
    def can_receive(self) -> bool:
        """Whether distributions may be delivered to this member"""
        return self.status != MemberStatus.BOUNCED and not self.opted_out

    @property
    def can_refer(self) -> bool:
        """Whether this member may originate hop_depth + 1 referrals"""
        return (
            self.status == MemberStatus.ACTIVE
            and not self.opted_out
            and (self.delivery_count or 0) > 0
        )
