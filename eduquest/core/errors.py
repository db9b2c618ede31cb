"""
Domain error taxonomy.

Services raise these; the exception handler in ``eduquest.main`` maps each to
its HTTP status and a stable machine-readable code.
"""


class ErrorCodes:
    AUTH_UNAUTHORIZED = "AUTH_UNAUTHORIZED"
    AUTH_FORBIDDEN = "AUTH_FORBIDDEN"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    QUESTION_NOT_FOUND = "QUESTION_NOT_FOUND"
    STAGE_NOT_FOUND = "STAGE_NOT_FOUND"
    ITEM_NOT_FOUND = "ITEM_NOT_FOUND"
    CLASS_NOT_FOUND = "CLASS_NOT_FOUND"
    STAGE_LOCKED = "STAGE_LOCKED"
    QUESTION_NOT_IN_STAGE = "QUESTION_NOT_IN_STAGE"
    QUESTION_ALREADY_RESOLVED = "QUESTION_ALREADY_RESOLVED"
    INSUFFICIENT_QUANTITY = "INSUFFICIENT_QUANTITY"
    INSUFFICIENT_GOLD = "INSUFFICIENT_GOLD"
    MAX_STACK_EXCEEDED = "MAX_STACK_EXCEEDED"
    SESSION_NOT_IN_PROGRESS = "SESSION_NOT_IN_PROGRESS"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class DomainError(Exception):
    """Base class for errors raised by the engine."""

    status_code = 400
    error_type = "domain_error"
    default_code = ErrorCodes.VALIDATION_ERROR

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "type": self.error_type,
            "status_code": self.status_code,
        }


class ValidationError(DomainError):
    status_code = 400
    error_type = "validation_error"
    default_code = ErrorCodes.VALIDATION_ERROR


class UnauthorizedError(DomainError):
    status_code = 401
    error_type = "unauthorized"
    default_code = ErrorCodes.AUTH_UNAUTHORIZED


class ForbiddenError(DomainError):
    status_code = 403
    error_type = "forbidden"
    default_code = ErrorCodes.AUTH_FORBIDDEN


class NotFoundError(DomainError):
    status_code = 404
    error_type = "not_found"
    default_code = ErrorCodes.NOT_FOUND


class ConflictError(DomainError):
    """State-machine violation or lost race; safe for the client to retry."""

    status_code = 409
    error_type = "conflict"
    default_code = ErrorCodes.CONCURRENT_MODIFICATION


class InternalError(DomainError):
    status_code = 500
    error_type = "internal_error"
    default_code = ErrorCodes.INTERNAL_ERROR
