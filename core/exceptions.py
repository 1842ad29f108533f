"""
Custom exceptions for the snowball engine with structured error context.

This module provides the exception hierarchy used throughout candidate
intake, propagation and distribution. Each exception carries context
information for debugging and monitoring.

Exception Hierarchy:
    SnowballException (base)
    ├── ValidationError
    │   └── InvalidEmailError
    ├── NotFoundError
    │   ├── RepositoryNotFoundError
    │   ├── CandidateNotFoundError
    │   ├── MemberNotFoundError
    │   └── JobNotFoundError
    ├── ConflictError
    │   ├── InvalidTransitionError
    │   ├── SnowballDisabledError
    │   └── ReferralNotAllowedError
    ├── InvalidTokenError
    ├── DeliveryError
    │   ├── TransientDeliveryError
    │   │   └── DeliveryTimeoutError
    │   ├── PermanentDeliveryError
    │   └── JobCancelledError
    ├── DatastoreUnavailableError
    └── RetryableError / NonRetryableError (mixins)

Business outcomes (low quality, hop limit, insufficient karma, member cap)
are candidate statuses, not exceptions. Duplicates and rows past the upload
cap are counted in the bulk result, and a lost uniqueness race is an
ON CONFLICT no-op, so none of them has an exception class.
"""

from typing import Optional, Dict, Any
from datetime import datetime


class SnowballException(Exception):
    """
    Base exception for all snowball engine errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (repository, email, job, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(SnowballException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Temporary datastore connection issues
    - Provider unavailable (HTTP 5xx)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(SnowballException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Hard bounces
    - Malformed input
    - Cancelled jobs
    """
    pass


# ============================================================================
# Validation Errors
# ============================================================================

class ValidationError(SnowballException):
    """
    Exception raised when submitted input fails validation.

    Reported per row during bulk intake, never fatal to a batch.
    """
    pass


class InvalidEmailError(NonRetryableError, ValidationError):
    """
    Malformed email address.

    Context should include:
        - raw_value: The value as submitted
        - row: Row number in the upload (if applicable)
    """
    pass


# ============================================================================
# Lookup and State Errors
# ============================================================================

class NotFoundError(NonRetryableError):
    """Base exception for missing entities."""
    pass


class RepositoryNotFoundError(NotFoundError):
    pass


class CandidateNotFoundError(NotFoundError):
    pass


class MemberNotFoundError(NotFoundError):
    pass


class JobNotFoundError(NotFoundError):
    pass


class ConflictError(NonRetryableError):
    """Base exception for operations that violate state rules."""
    pass


class InvalidTransitionError(ConflictError):
    """
    Exception raised when an entity is moved to a state it cannot reach.

    Context should include:
        - entity: "candidate", "member" or "job"
        - from_state / to_state
    """
    pass


class SnowballDisabledError(ConflictError):
    """Repository has snowball distribution disabled or is archived."""
    pass


class ReferralNotAllowedError(ConflictError):
    """
    The referring member cannot originate propagation.

    Raised when the source member is not active, opted out, or has
    not yet received a distribution.
    """
    pass


class InvalidTokenError(NonRetryableError):
    """Opt-in / opt-out token does not match the member."""
    pass


# ============================================================================
# Delivery Errors
# ============================================================================

class DeliveryError(SnowballException):
    """Base exception for outbound email delivery failures."""
    pass


class TransientDeliveryError(RetryableError, DeliveryError):
    """Network, provider-side or throttling failure. Retried with backoff."""
    pass


class DeliveryTimeoutError(TransientDeliveryError):
    """A single delivery attempt exceeded the outbound email timeout."""
    pass


class PermanentDeliveryError(NonRetryableError, DeliveryError):
    """
    Hard bounce or exhausted retries.

    The target member is marked bounced and never contacted again.
    """
    pass


class JobCancelledError(NonRetryableError, DeliveryError):
    """Distribution job cancelled while in flight."""
    pass


# ============================================================================
# Infrastructure Errors
# ============================================================================

class DatastoreUnavailableError(RetryableError):
    """
    Database or Redis unreachable.

    Fatal to the current request; propagates as a hard error.
    """
    pass
