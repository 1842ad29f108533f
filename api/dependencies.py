"""
FastAPI dependencies: database session, engine, caller identity
"""

from typing import AsyncGenerator, Optional
from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from core.config import settings
from core.database import async_session_maker
from snowball.engine import SnowballEngine
import hmac
import logging

logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Database session per request"""
    async with async_session_maker() as session:
        yield session


def get_engine(request: Request) -> SnowballEngine:
    """Snowball engine built at application startup"""
    return request.app.state.engine


async def verify_api_key(x_api_key: Optional[str] = Header(default=None, alias="X-API-Key")) -> None:
    """Enforced only when API_KEY is configured"""
    if not settings.API_KEY:
        return
    if not x_api_key or not hmac.compare_digest(x_api_key, settings.API_KEY):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid API key")


async def get_current_user_id(
    _: None = Depends(verify_api_key),
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> str:
    """
    Caller identity as asserted by the platform gateway.

    Authentication happens upstream; this service only needs the id for
    karma gating, rate limits and audit fields.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-User-Id header required")
    return x_user_id.strip()
