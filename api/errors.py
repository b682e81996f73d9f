"""Exception handlers mapping engine errors onto HTTP responses."""

import logging

from fastapi import Request, status
from fastapi.responses import JSONResponse

from core.errors import (
    ConflictError,
    FatalError,
    MedicationError,
    NotFoundError,
    PermissionDeniedError,
    TransientStoreError,
    ValidationError,
)

logger = logging.getLogger(__name__)

STATUS_CODES = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    PermissionDeniedError: status.HTTP_403_FORBIDDEN,
    TransientStoreError: status.HTTP_503_SERVICE_UNAVAILABLE,
    FatalError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def status_code_for(exc: MedicationError) -> int:
    for error_class, code in STATUS_CODES.items():
        if isinstance(exc, error_class):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def medication_error_handler(request: Request, exc: MedicationError):
    """
    Engine error handler.

    Args:
        request: FastAPI request object
        exc: Engine error

    Returns:
        JSON response with the mapped status code
    """
    code = status_code_for(exc)
    content = {"error": type(exc).__name__, "detail": str(exc)}

    if isinstance(exc, ValidationError):
        content["errors"] = exc.errors
    if isinstance(exc, FatalError):
        content["transaction_id"] = exc.transaction_id
        content["correlation_id"] = exc.correlation_id

    if code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {code}: {exc}")

    return JSONResponse(status_code=code, content=content)
