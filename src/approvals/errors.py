"""Approval engine exception hierarchy.

Domain errors describe invalid caller input and are never retried.
Infrastructure errors describe a failing collaborator (storage, role
directory, lock contention) and may be retried by the host application.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(Enum):
    """Stable error codes the host application can switch on."""

    INVALID_TEMPLATE = "INVALID_TEMPLATE"
    INVALID_STATE = "INVALID_STATE"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"
    DUPLICATE_DECISION = "DUPLICATE_DECISION"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"

    STORAGE_ERROR = "STORAGE_ERROR"
    STALE_STATE = "STALE_STATE"
    LOCK_TIMEOUT = "LOCK_TIMEOUT"
    DIRECTORY_UNAVAILABLE = "DIRECTORY_UNAVAILABLE"


# HTTP status hints for hosts that expose the engine over HTTP
ERROR_STATUS_MAP: Dict[ErrorCode, int] = {
    ErrorCode.INVALID_TEMPLATE: 400,
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.NOT_AUTHORIZED: 403,
    ErrorCode.RESOURCE_NOT_FOUND: 404,
    ErrorCode.INVALID_STATE: 409,
    ErrorCode.DUPLICATE_DECISION: 409,
    ErrorCode.STALE_STATE: 409,
    ErrorCode.STORAGE_ERROR: 503,
    ErrorCode.LOCK_TIMEOUT: 503,
    ErrorCode.DIRECTORY_UNAVAILABLE: 503,
}


class _EngineErrorBase(Exception):
    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = ERROR_STATUS_MAP.get(error_code, 500)
        self.details = details or []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.error_code.value,
            "message": self.message,
            "details": self.details,
        }


class ApprovalError(_EngineErrorBase):
    """Base class for caller-input errors raised by the engine."""


class InvalidTemplateError(ApprovalError):
    """Raised when a workflow definition is malformed."""

    def __init__(
        self,
        message: str = "Invalid workflow template",
        details: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message, ErrorCode.INVALID_TEMPLATE, details)


class InvalidStateError(ApprovalError):
    """Raised when an operation is not valid for the request's status."""

    def __init__(self, message: str = "Operation not valid in current state"):
        super().__init__(message, ErrorCode.INVALID_STATE)


class AuthorizationError(ApprovalError):
    """Raised when a principal is not eligible to act on a request."""

    def __init__(self, message: str = "Principal is not eligible for this action"):
        super().__init__(message, ErrorCode.NOT_AUTHORIZED)


class ConflictError(ApprovalError):
    """Raised when a decision already exists for (request, step, approver)."""

    def __init__(self, message: str = "Decision already recorded"):
        super().__init__(message, ErrorCode.DUPLICATE_DECISION)


class NotFoundError(ApprovalError):
    """Raised when a template, request or comment id is unknown."""

    def __init__(
        self,
        message: str = "Resource not found",
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ):
        details = []
        if resource_type or resource_id:
            details = [{"resource_type": resource_type, "resource_id": resource_id}]
        super().__init__(message, ErrorCode.RESOURCE_NOT_FOUND, details)


class ValidationError(ApprovalError):
    """Raised when caller input fails validation."""

    def __init__(self, message: str = "Validation failed", field: Optional[str] = None):
        details = [{"field": field, "issue": message}] if field else None
        super().__init__(message, ErrorCode.VALIDATION_ERROR, details)


class EngineInfrastructureError(_EngineErrorBase):
    """Base class for collaborator failures; safe for the host to retry."""


class StorageError(EngineInfrastructureError):
    """Raised when the persistence layer fails."""

    def __init__(self, message: str = "Storage unavailable"):
        super().__init__(message, ErrorCode.STORAGE_ERROR)


class StaleStateError(EngineInfrastructureError):
    """Raised when a compare-and-set on a request lost to another writer."""

    def __init__(self, message: str = "Request was modified concurrently"):
        super().__init__(message, ErrorCode.STALE_STATE)


class LockTimeoutError(EngineInfrastructureError):
    """Raised when a per-request lock could not be acquired in time."""

    def __init__(self, message: str = "Timed out waiting for request lock"):
        super().__init__(message, ErrorCode.LOCK_TIMEOUT)


class DirectoryUnavailableError(EngineInfrastructureError):
    """Raised when the role directory cannot be queried."""

    def __init__(self, message: str = "Role directory unavailable"):
        super().__init__(message, ErrorCode.DIRECTORY_UNAVAILABLE)
