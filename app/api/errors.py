from __future__ import annotations

from typing import NoReturn

from fastapi import HTTPException, status

from app.domain.errors import (
    DuplicateError,
    ForbiddenError,
    InvalidPayloadError,
    InvalidReferenceError,
    MaintenanceError,
    NotFoundError,
    PayloadTooLargeError,
    StateConflictError,
    StorageUnavailableError,
    UnauthenticatedError,
)

_STATUS_BY_ERROR: tuple[tuple[type[MaintenanceError], int], ...] = (
    (UnauthenticatedError, status.HTTP_401_UNAUTHORIZED),
    (ForbiddenError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidReferenceError, status.HTTP_400_BAD_REQUEST),
    (StateConflictError, status.HTTP_409_CONFLICT),
    (DuplicateError, status.HTTP_409_CONFLICT),
    (InvalidPayloadError, 422),
    (PayloadTooLargeError, 413),
    (StorageUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def handle_domain_error(exc: MaintenanceError) -> NoReturn:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            headers = {"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None
            raise HTTPException(status_code=status_code, detail=str(exc), headers=headers) from exc
    raise exc
