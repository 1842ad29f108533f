"""
Pydantic schemas shared across API endpoints
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    redis_connected: Optional[bool] = Field(None, description="None when no Redis backend is configured")
    queued_jobs: int = 0
    sending_jobs: int = 0
    stale_jobs: int = 0
    workers_running: bool = False
    # Declared last: the validator reads the fields above
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            return "unhealthy"

        if values.get("redis_connected") is False:
            return "degraded"

        if values.get("stale_jobs", 0) > 0:
            return "degraded"

        return "healthy"

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "redis_connected": None,
                "queued_jobs": 2,
                "sending_jobs": 1,
                "stale_jobs": 0,
                "workers_running": True
            }
        }


# ============================================================================
# Pagination
# ============================================================================

class PaginationMetadata(BaseModel):
    """Pagination metadata"""
    total_items: int
    total_pages: int
    current_page: int
    page_size: int
    has_next: bool
    has_previous: bool

    @classmethod
    def build(cls, total_items: int, page: int, page_size: int) -> "PaginationMetadata":
        total_pages = (total_items + page_size - 1) // page_size if total_items else 0
        return cls(
            total_items=total_items,
            total_pages=total_pages,
            current_page=page,
            page_size=page_size,
            has_next=page < total_pages,
            has_previous=page > 1,
        )


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    request_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "error": "RepositoryNotFoundError",
                "detail": "Repository not found",
                "request_id": "4f1c2a9e-8d3b-4f7a-9a61-0c2d5e6f7a8b",
                "context": {"repository_id": "3b0e..."},
                "timestamp": "2024-01-15T10:30:00Z"
            }
        }
