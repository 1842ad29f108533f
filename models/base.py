from sqlalchemy import JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum
import uuid

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def new_id() -> str:
    return str(uuid.uuid4())


# ============================================================================
# ENUMS
# ============================================================================

class Visibility(str, enum.Enum):
    """Repository visibility"""
    PUBLIC = "public"
    PRIVATE = "private"


class MemberStatus(str, enum.Enum):
    """Repository member status"""
    ACTIVE = "active"
    INACTIVE = "inactive"
    BOUNCED = "bounced"


class MemberSource(str, enum.Enum):
    """How a member entered the repository"""
    CSV = "csv"
    REFERRAL = "referral"
    MANUAL = "manual"


class CandidateStatus(str, enum.Enum):
    """Snowball candidate lifecycle"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class RejectionReason(str, enum.Enum):
    """Why a candidate was rejected"""
    DUPLICATE_RECENT_CONTACT = "duplicate-recent-contact"
    ALREADY_MEMBER = "already-member"
    LOW_QUALITY = "low-quality"
    HOP_LIMIT_EXCEEDED = "hop-limit-exceeded"
    INSUFFICIENT_KARMA = "insufficient-karma"
    MEMBER_CAP_REACHED = "member-cap-reached"
    MANUAL = "manual-rejection"


class JobStatus(str, enum.Enum):
    """Distribution job status"""
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class DeliveryOutcome(str, enum.Enum):
    """Per-target outcome recorded on a distribution job"""
    SENT = "sent"
    BOUNCED = "bounced"
    SKIPPED = "skipped"


# Statuses that count towards Repository.member_count
COUNTED_MEMBER_STATUSES = (MemberStatus.ACTIVE, MemberStatus.INACTIVE)
TERMINAL_JOB_STATUSES = (JobStatus.SENT, JobStatus.FAILED)
