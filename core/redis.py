"""
Redis client factory.

Components never reach for a global client; the engine builds one here and
injects it into the dedup ledger and rate-limit backends that need it.
"""

from typing import Optional
from redis.asyncio import Redis
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def create_redis_client(url: Optional[str] = None) -> Redis:
    """Create an asyncio Redis client from REDIS_URL"""
    redis_url = url or settings.REDIS_URL
    if not redis_url:
        raise ValueError("REDIS_URL is not configured")

    logger.info(f"Connecting Redis client: {redis_url.split('@')[-1]}")
    return Redis.from_url(
        redis_url,
        decode_responses=True,
        socket_connect_timeout=3,
        socket_timeout=2,
        retry_on_timeout=True,
    )
