from sqlalchemy import Column, String, DateTime, Index, BigInteger, Integer
from datetime import datetime
from models.base import Base


class DedupRecord(Base):
    """
    Last contact time per (repository, email) pair.

    Purpose:
    - Prevent re-inviting the same address within the repository's
      dedup window
    - Durable backing for the dedup ledger (survives restarts)

    Design:
    - email_hash is the SHA-256 of the normalized address; the ledger
      never stores the plain email
    - One row per pair, upserted on member creation, candidate decision
      and successful delivery
    - Rows older than the window are logically ignored, not deleted
    """
    __tablename__ = "dedup_records"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    repository_id = Column(String(36), nullable=False)
    email_hash = Column(String(64), nullable=False)
    last_contacted_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    __table_args__ = (
        Index("uq_dedup_repository_email_hash", "repository_id", "email_hash", unique=True),
    )
