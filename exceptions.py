from enum import Enum

from fastapi import status


class ErrorCode(str, Enum):
    NOT_FOUND = "NotFound"
    FORBIDDEN = "Forbidden"
    SELF_ACTION_VIOLATION = "SelfActionViolation"
    LAST_ADMIN_VIOLATION = "LastAdminViolation"
    LOCKED_WRITE_BARRIER = "LockedWriteBarrier"
    VALIDATION_FAILED = "ValidationFailed"
    CONFLICT = "Conflict"
    UNAUTHORIZED = "Unauthorized"


class ForumError(Exception):
    """Expected, recoverable outcome of a forum operation.

    Carries a stable code and a human-readable message. The API layer turns
    every ForumError into an ErrorResponse; nothing here is a crash.
    """

    code = ErrorCode.FORBIDDEN
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Insufficient permissions"

    def __init__(self, message: str = ""):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFound(ForumError):
    code = ErrorCode.NOT_FOUND
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class Forbidden(ForumError):
    code = ErrorCode.FORBIDDEN
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Insufficient permissions"


class SelfActionViolation(ForumError):
    code = ErrorCode.SELF_ACTION_VIOLATION
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "You cannot perform this action on yourself"


class LastAdminViolation(ForumError):
    code = ErrorCode.LAST_ADMIN_VIOLATION
    status_code = status.HTTP_409_CONFLICT
    default_message = "The last administrator cannot be removed"


class LockedWriteBarrier(ForumError):
    code = ErrorCode.LOCKED_WRITE_BARRIER
    status_code = status.HTTP_423_LOCKED
    default_message = "Thread is locked"


class ValidationFailed(ForumError):
    code = ErrorCode.VALIDATION_FAILED
    status_code = 422
    default_message = "Invalid input"


class Conflict(ForumError):
    code = ErrorCode.CONFLICT
    status_code = status.HTTP_409_CONFLICT
    default_message = "Content was changed by someone else, reload and try again"


class Unauthorized(ForumError):
    code = ErrorCode.UNAUTHORIZED
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Invalid credentials"


ERRORS_BY_CODE = {cls.code: cls for cls in (
    NotFound, Forbidden, SelfActionViolation, LastAdminViolation,
    LockedWriteBarrier, ValidationFailed, Conflict, Unauthorized,
)}
