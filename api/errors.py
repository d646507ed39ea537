"""Mapping from engine errors to HTTP responses."""
from fastapi import HTTPException, status

from core.exceptions import (
    TradeError,
    NotFoundError,
    InvalidStateError,
    ConflictError,
    NotAuthorizedError,
    InsufficientFundsError,
    ValidationError,
)
from database.exceptions import ConcurrentModificationError

STATUS_CODES = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (ConflictError, status.HTTP_409_CONFLICT),
    (NotAuthorizedError, status.HTTP_403_FORBIDDEN),
    (InsufficientFundsError, status.HTTP_402_PAYMENT_REQUIRED),
    (ValidationError, 422),
]


def http_error(error: Exception) -> HTTPException:
    """Build the HTTPException for an error raised by the engine."""
    if isinstance(error, ConcurrentModificationError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, TradeError):
        for error_type, status_code in STATUS_CODES:
            if isinstance(error, error_type):
                return HTTPException(status_code=status_code, detail=str(error))
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))
