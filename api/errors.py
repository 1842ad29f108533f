"""
Map snowball exceptions to HTTP responses
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse
from core.exceptions import (
    ConflictError,
    DatastoreUnavailableError,
    InvalidTokenError,
    NotFoundError,
    SnowballException,
    ValidationError,
)
from schemas.api import ErrorResponse
import logging

logger = logging.getLogger(__name__)

# First match wins
STATUS_BY_EXCEPTION = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (InvalidTokenError, status.HTTP_400_BAD_REQUEST),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (DatastoreUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_for(exc: SnowballException) -> int:
    for exc_type, status_code in STATUS_BY_EXCEPTION:
        if isinstance(exc, exc_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def snowball_exception_handler(request: Request, exc: SnowballException) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    status_code = status_for(exc)

    if status_code >= 500:
        logger.error(f"[{request_id}] {exc}", extra={"error_context": exc.to_dict()})
    else:
        logger.info(f"[{request_id}] {type(exc).__name__}: {exc.message}")

    context = {k: v for k, v in exc.context.items() if k != "error_timestamp"}
    body = ErrorResponse(
        error=type(exc).__name__,
        detail=exc.message,
        request_id=request_id,
        context=context,
        timestamp=exc.timestamp,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
