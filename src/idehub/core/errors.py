"""Error handling module for the IDEHub control plane.

This module defines error codes, exception classes, and response models.
Each error kind maps to the subsystem that failed: instance start/stop,
generic scheduler faults, validation, and admission refusal at the HTTP
boundary.

Error Response Format:
{
    "error": {
        "code": "INSTANCE_NOT_FOUND",
        "message": "Instance abc123 not found"
    }
}

Usage:
    from idehub.core.errors import InstanceNotFoundError

    raise InstanceNotFoundError("abc123")
"""

from enum import Enum

from pydantic import BaseModel


class ErrorCode(str, Enum):
    """Error codes."""

    INSTANCE_NOT_FOUND = "INSTANCE_NOT_FOUND"
    INVALID_PARAMETER = "INVALID_PARAMETER"
    INVALID_INSTANCE_ID = "INVALID_INSTANCE_ID"
    MISSING_CONFIGURATION = "MISSING_CONFIGURATION"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    INSTANCE_START_FAILED = "INSTANCE_START_FAILED"
    INSTANCE_STOP_FAILED = "INSTANCE_STOP_FAILED"
    SCHEDULER_ERROR = "SCHEDULER_ERROR"
    NO_RUNNING_TASK = "NO_RUNNING_TASK"
    STORAGE_ASSIGNMENT_FAILED = "STORAGE_ASSIGNMENT_FAILED"
    RESOURCE_LIMIT_EXCEEDED = "RESOURCE_LIMIT_EXCEEDED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorDetail(BaseModel):
    """Error detail containing code and message."""

    code: str
    message: str


class ErrorResponse(BaseModel):
    """Error response format."""

    error: ErrorDetail


class IdeHubError(Exception):
    """Base exception for the control plane.

    Attributes:
        code: The error code from ErrorCode enum
        message: Human-readable error message
        status_code: HTTP status code to return
    """

    def __init__(self, code: ErrorCode, message: str, status_code: int) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert exception to ErrorResponse model."""
        return ErrorResponse(
            error=ErrorDetail(code=self.code.value, message=self.message)
        )


class InstanceNotFoundError(IdeHubError):
    """404 Not Found - Instance unknown to both scheduler and state store."""

    def __init__(self, instance_id: str) -> None:
        self.instance_id = instance_id
        super().__init__(
            ErrorCode.INSTANCE_NOT_FOUND, f"Instance {instance_id} not found", 404
        )


class InvalidParameterError(IdeHubError):
    """400 Bad Request - Invalid request parameter."""

    def __init__(self, message: str = "Invalid request parameter") -> None:
        super().__init__(ErrorCode.INVALID_PARAMETER, message, 400)


class InvalidInstanceIdError(IdeHubError):
    """400 Bad Request - Instance id is not DNS-safe."""

    def __init__(self, instance_id: str) -> None:
        self.instance_id = instance_id
        super().__init__(
            ErrorCode.INVALID_INSTANCE_ID,
            f"Instance id {instance_id!r} is not a valid DNS label",
            400,
        )


class MissingConfigurationError(IdeHubError):
    """400 Bad Request - Required configuration missing."""

    def __init__(self, message: str = "Required configuration missing") -> None:
        super().__init__(ErrorCode.MISSING_CONFIGURATION, message, 400)


class AuthenticationFailedError(IdeHubError):
    """401 Unauthorized - Missing or invalid API key."""

    def __init__(self, message: str = "Authentication failed") -> None:
        super().__init__(ErrorCode.AUTHENTICATION_FAILED, message, 401)


class InstanceStartFailedError(IdeHubError):
    """500 Internal Server Error - Scheduler rejected or threw during creation."""

    def __init__(self, cause: str) -> None:
        self.cause = cause
        super().__init__(
            ErrorCode.INSTANCE_START_FAILED, f"Failed to start instance: {cause}", 500
        )


class InstanceStopFailedError(IdeHubError):
    """500 Internal Server Error - Scheduler rejected service removal."""

    def __init__(self, cause: str) -> None:
        self.cause = cause
        super().__init__(
            ErrorCode.INSTANCE_STOP_FAILED, f"Failed to stop instance: {cause}", 500
        )


class SchedulerError(IdeHubError):
    """502 Bad Gateway - Any other scheduler API fault."""

    def __init__(self, cause: str) -> None:
        self.cause = cause
        super().__init__(
            ErrorCode.SCHEDULER_ERROR, f"Scheduler operation failed: {cause}", 502
        )


class NoRunningTaskError(IdeHubError):
    """409 Conflict - No task currently scheduled for the instance."""

    def __init__(self, instance_id: str) -> None:
        self.instance_id = instance_id
        super().__init__(
            ErrorCode.NO_RUNNING_TASK,
            f"No running task for instance {instance_id}",
            409,
        )


class StorageAssignmentError(IdeHubError):
    """502 Bad Gateway - Instance reported a storage assignment error."""

    def __init__(self, message: str) -> None:
        super().__init__(
            ErrorCode.STORAGE_ASSIGNMENT_FAILED,
            f"Storage assignment failed: {message}",
            502,
        )


class ResourceLimitExceededError(IdeHubError):
    """503 Service Unavailable - Admission control refused the request."""

    def __init__(self, reason: str) -> None:
        super().__init__(ErrorCode.RESOURCE_LIMIT_EXCEEDED, reason, 503)


class InternalError(IdeHubError):
    """500 Internal Server Error - Internal error."""

    def __init__(self, message: str = "An internal error occurred") -> None:
        super().__init__(ErrorCode.INTERNAL_ERROR, message, 500)
