"""
Application error taxonomy.

Services raise these; the handler registered in main.py turns them into the
normalized error envelope with the matching HTTP status.
"""
from typing import Any, Optional


class AppError(Exception):
    status_code = 500
    error_code = "internal_error"

    def __init__(self, message: str, data: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.data = data


class ValidationError(AppError):
    """Malformed or unacceptable input"""
    status_code = 400
    error_code = "validation_error"


class NotFoundError(AppError):
    status_code = 404
    error_code = "not_found"


class ConflictError(AppError):
    """The user already holds a current subscription"""
    status_code = 400
    error_code = "conflict"


class AuthError(AppError):
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(AppError):
    status_code = 403
    error_code = "forbidden"


class UpstreamError(AppError):
    """A payment, store or other provider call failed"""
    status_code = 502
    error_code = "upstream_error"
