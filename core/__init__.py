"""
Core utilities and configuration for the snowball distribution engine.

This package provides foundational components used throughout the engine:

Modules:
    config: Application configuration and environment variable management
    database: Database connection and session management
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities
    redis: Redis client factory for the ledger and rate-limit backends

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.exceptions import RepositoryNotFoundError, TransientDeliveryError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Get database session
    async with async_session_maker() as session:
        # Perform database operations
        pass
"""

__all__ = [
    "settings",
    "async_session_maker",
    "setup_logging",
    # Exceptions
    "SnowballException",
    "ValidationError",
    "InvalidEmailError",
    "RepositoryNotFoundError",
    "CandidateNotFoundError",
    "MemberNotFoundError",
    "JobNotFoundError",
    "InvalidTransitionError",
    "SnowballDisabledError",
    "ReferralNotAllowedError",
    "InvalidTokenError",
    "DeliveryError",
    "TransientDeliveryError",
    "DeliveryTimeoutError",
    "PermanentDeliveryError",
    "JobCancelledError",
    "DatastoreUnavailableError",
    "RetryableError",
    "NonRetryableError",
]
