# ridebooking/errors.py
"""
Application error taxonomy.

Service functions raise these; the handlers registered in main.py turn them
into the standard `{success, message, errors?}` envelope.
"""
from typing import List, Optional


class AppError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[dict]] = None):
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    default_message = "Validation failed"

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(message, errors=[{"field": field, "message": message}])


class Unauthorized(AppError):
    status_code = 401
    default_message = "Not authorized to access this route"


class Forbidden(AppError):
    status_code = 403
    default_message = "Access denied"


class NotFound(AppError):
    status_code = 404
    default_message = "Resource not found"


class Conflict(AppError):
    status_code = 409
    default_message = "Resource already exists"


class InvalidState(AppError):
    status_code = 400
    default_message = "Operation not allowed in the current state"


class ServerError(AppError):
    status_code = 500
