"""
Translation of service errors into HTTP responses.
"""
from fastapi import HTTPException, status

from filevault.services.errors import (
    AliasConflictError,
    ConfigurationError,
    ConflictError,
    FileNotEncryptedError,
    InvalidCiphertextError,
    KeyManagementError,
    KeyNotFoundError,
    NotFoundError,
    ProviderError,
    ProviderQuotaExceededError,
)
from filevault.utils.logger import get_logger

logger = get_logger("http_errors")


def status_for(error: KeyManagementError) -> int:
    """Pick the HTTP status for a service error."""
    if isinstance(error, AliasConflictError):
        return status.HTTP_409_CONFLICT
    if isinstance(error, FileNotEncryptedError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, ConfigurationError):
        return status.HTTP_412_PRECONDITION_FAILED
    if isinstance(error, ConflictError):
        return status.HTTP_409_CONFLICT
    if isinstance(error, ProviderQuotaExceededError):
        return status.HTTP_429_TOO_MANY_REQUESTS
    if isinstance(error, ProviderError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(error, KeyNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, InvalidCiphertextError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(error, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def to_http_exception(error: Exception) -> HTTPException:
    """
    Build the HTTPException a route raises for a failed operation.

    Service errors keep their message and code; ValueError becomes a 400;
    anything else is logged and hidden behind a generic 500.
    """
    if isinstance(error, KeyManagementError):
        return HTTPException(
            status_code=status_for(error),
            detail={"code": error.code, "message": str(error)}
        )
    if isinstance(error, ValueError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "invalid_request", "message": str(error)}
        )

    logger.error("Unexpected error", error=str(error), exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"code": "internal_error", "message": "Internal server error"}
    )
