"""
Error taxonomy for the Orders service.

Every error carries an HTTP status and a stable machine-readable code; the
FastAPI handler in main.py renders them as structured JSON responses.
"""
from fastapi import status


class AppError(Exception):
    """Base class for errors that map to a structured HTTP response."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "INTERNAL_SERVER_ERROR"

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource", code: str = None):
        super().__init__(f"{resource} not found", code)


class BadRequest(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "BAD_REQUEST"


class InsufficientStock(BadRequest):
    code = "INSUFFICIENT_STOCK"


class Unauthorized(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHORIZED"


class Forbidden(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"


class Conflict(AppError):
    status_code = status.HTTP_409_CONFLICT
    code = "CONFLICT"


class ExternalServiceError(AppError):
    """The payment gateway was unreachable, timed out or rejected the call."""
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "EXTERNAL_SERVICE_ERROR"
