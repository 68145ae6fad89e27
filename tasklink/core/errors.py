"""Error taxonomy and classification utilities for the marketplace core."""

from enum import Enum

from pydantic import BaseModel

from tasklink.core.repository import DatabaseError, RecordNotFoundError


class ErrorSeverity(Enum):
    """Severity levels for errors."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCode:
    """Error codes for specific error conditions."""

    # Local, recoverable errors
    ERR_VALIDATION = "ERR_VALIDATION"
    ERR_INVALID_TRANSITION = "ERR_INVALID_TRANSITION"
    ERR_SLOT_CONFLICT = "ERR_SLOT_CONFLICT"
    ERR_PERMISSION_DENIED = "ERR_PERMISSION_DENIED"
    ERR_NOT_FOUND = "ERR_NOT_FOUND"

    # Remote errors
    ERR_PERSISTENCE = "ERR_PERSISTENCE"
    ERR_NOTIFICATION = "ERR_NOTIFICATION"

    # Generic errors
    ERR_UNKNOWN = "ERR_UNKNOWN"


class TaskLinkError(Exception):
    """Base class for all errors raised by the marketplace core."""

    code: str = ErrorCode.ERR_UNKNOWN


class ValidationError(TaskLinkError):
    """Malformed input (criteria, task fields) rejected before any persistence call."""

    code = ErrorCode.ERR_VALIDATION


class InvalidTransitionError(TaskLinkError):
    """Requested status change is not in the transition table."""

    code = ErrorCode.ERR_INVALID_TRANSITION

    def __init__(self, current: str, requested: str, task_id: str | None = None) -> None:
        self.current = current
        self.requested = requested
        self.task_id = task_id
        where = f"task {task_id}" if task_id else "task"
        super().__init__(f"Invalid transition for {where}: {current} -> {requested}")


class SlotConflictError(TaskLinkError):
    """Time slot is unavailable or already booked."""

    code = ErrorCode.ERR_SLOT_CONFLICT


class PermissionDeniedError(TaskLinkError):
    """Acting user is not allowed to perform the operation."""

    code = ErrorCode.ERR_PERMISSION_DENIED


class NotFoundError(TaskLinkError):
    """Referenced entity does not exist."""

    code = ErrorCode.ERR_NOT_FOUND


class PersistenceError(TaskLinkError):
    """Repository call failed (network or store failure)."""

    code = ErrorCode.ERR_PERSISTENCE


class NotificationError(TaskLinkError):
    """Notification delivery failed. Logged only, never surfaced to the actor."""

    code = ErrorCode.ERR_NOTIFICATION


class ErrorResponse(BaseModel):
    """Structured error response with user-friendly messaging."""

    code: str
    message: str
    suggestion: str
    severity: ErrorSeverity


def classify_error_with_response(exception: Exception) -> ErrorResponse:  # noqa: PLR0911
    """Classify an error and return a structured response with recovery suggestions.

    Args:
        exception: The exception raised during execution

    Returns:
        ErrorResponse with code, message, suggestion, and severity
    """
    if isinstance(exception, ValidationError):
        return ErrorResponse(
            code=ErrorCode.ERR_VALIDATION,
            message=str(exception) or "Some of the information provided is invalid.",
            suggestion="Check the highlighted fields and try again.",
            severity=ErrorSeverity.LOW,
        )

    if isinstance(exception, InvalidTransitionError):
        return ErrorResponse(
            code=ErrorCode.ERR_INVALID_TRANSITION,
            message="This action cannot be performed in the task's current state.",
            suggestion="Refresh the task to see its latest status.",
            severity=ErrorSeverity.LOW,
        )

    if isinstance(exception, SlotConflictError):
        return ErrorResponse(
            code=ErrorCode.ERR_SLOT_CONFLICT,
            message="This time slot is no longer available.",
            suggestion="Reload the available slots and pick another one.",
            severity=ErrorSeverity.LOW,
        )

    if isinstance(exception, PermissionDeniedError | PermissionError):
        return ErrorResponse(
            code=ErrorCode.ERR_PERMISSION_DENIED,
            message="You don't have permission for this action.",
            suggestion="Only the participants of a task can change it.",
            severity=ErrorSeverity.MEDIUM,
        )

    if isinstance(exception, NotFoundError | RecordNotFoundError):
        return ErrorResponse(
            code=ErrorCode.ERR_NOT_FOUND,
            message="The requested item could not be found.",
            suggestion="It may have been removed. Refresh and try again.",
            severity=ErrorSeverity.LOW,
        )

    if isinstance(exception, PersistenceError | DatabaseError):
        return ErrorResponse(
            code=ErrorCode.ERR_PERSISTENCE,
            message="We couldn't save your change.",
            suggestion="Please check your connection and try again.",
            severity=ErrorSeverity.HIGH,
        )

    if isinstance(exception, NotificationError):
        return ErrorResponse(
            code=ErrorCode.ERR_NOTIFICATION,
            message="The other party could not be notified.",
            suggestion="Your change was saved. They will see it next time they open the app.",
            severity=ErrorSeverity.LOW,
        )

    return ErrorResponse(
        code=ErrorCode.ERR_UNKNOWN,
        message="An unexpected error occurred.",
        suggestion="Please try again later. If the problem persists, contact support.",
        severity=ErrorSeverity.MEDIUM,
    )
