from __future__ import annotations


class MaintenanceError(Exception):
    pass


class UnauthenticatedError(MaintenanceError):
    pass


class ForbiddenError(MaintenanceError):
    pass


class NotFoundError(MaintenanceError):
    pass


class InvalidReferenceError(MaintenanceError):
    pass


class DuplicateError(MaintenanceError):
    pass


class StateConflictError(MaintenanceError):
    def __init__(self, message: str, current_status: str) -> None:
        super().__init__(message)
        self.current_status = current_status


class InvalidPayloadError(MaintenanceError):
    pass


class PayloadTooLargeError(MaintenanceError):
    pass


class StorageUnavailableError(MaintenanceError):
    pass
