"""Error codes shared by the REST service and the client wrapper."""
from enum import Enum


class ErrorCode(str, Enum):
    """Machine-readable ``errorCode`` values carried in the error envelope."""

    VALIDATION_ERROR = 'VALIDATION_ERROR'
    INVALID_REQUEST = 'INVALID_REQUEST'
    UNAUTHORIZED = 'UNAUTHORIZED'
    FORBIDDEN = 'FORBIDDEN'
    NOT_FOUND = 'NOT_FOUND'
    CONFLICT = 'CONFLICT'
    INVALID_TRANSITION = 'INVALID_TRANSITION'
    RATE_LIMIT_EXCEEDED = 'RATE_LIMIT_EXCEEDED'
    INTERNAL_ERROR = 'INTERNAL_ERROR'
    SERVICE_UNAVAILABLE = 'SERVICE_UNAVAILABLE'
    DATABASE_ERROR = 'DATABASE_ERROR'
    STORAGE_ERROR = 'STORAGE_ERROR'
    AI_SERVICE_ERROR = 'AI_SERVICE_ERROR'
    NETWORK_ERROR = 'NETWORK_ERROR'
    UNKNOWN_ERROR = 'UNKNOWN_ERROR'


HTTP_STATUS = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.INVALID_TRANSITION: 409,
    ErrorCode.RATE_LIMIT_EXCEEDED: 429,
    ErrorCode.INTERNAL_ERROR: 500,
    ErrorCode.SERVICE_UNAVAILABLE: 503,
    ErrorCode.DATABASE_ERROR: 500,
    ErrorCode.STORAGE_ERROR: 500,
    ErrorCode.AI_SERVICE_ERROR: 500,
}


def http_status_for(code: ErrorCode) -> int:
    """Return the HTTP status used when answering with *code* (500 if unmapped)."""
    return HTTP_STATUS.get(code, 500)


class ServiceError(Exception):
    """Raised by the database-backed services when a request cannot be served.

    The Flask layer turns it into the ``{errorCode, message, timestamp,
    requestId}`` envelope with the status from :func:`http_status_for`.
    """

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def status(self) -> int:
        return http_status_for(self.code)
