"""
Application error hierarchy.

Services raise these; ``main.py`` renders them into the response envelope
``{"success": false, "error": <message>}`` with the class's status code.

    AppError
    ├── ValidationError        400
    ├── ConflictError          400
    ├── AuthenticationError    401
    ├── PermissionDeniedError  403
    ├── NotFoundError          404
    └── UnexpectedError        500
"""

from typing import Any, Optional


class AppError(Exception):
    status_code: int = 500
    default_error_code: str = "APPLICATION_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        self.error_code = error_code or self.default_error_code
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, "error": self.message}


class ValidationError(AppError):
    """Malformed, missing or out-of-range input."""

    status_code = 400
    default_error_code = "VALIDATION_ERROR"


class ConflictError(AppError):
    """A unique field is already taken."""

    # Answered as a plain bad request; clients only distinguish it by message
    status_code = 400
    default_error_code = "CONFLICT"


class AuthenticationError(AppError):
    """Bad credentials, or a missing/invalid/expired bearer token."""

    status_code = 401
    default_error_code = "NOT_AUTHENTICATED"


class PermissionDeniedError(AppError):
    """Authenticated, but not entitled to the target resource."""

    status_code = 403
    default_error_code = "PERMISSION_DENIED"


class NotFoundError(AppError):
    status_code = 404
    default_error_code = "NOT_FOUND"


class UnexpectedError(AppError):
    """Anything not anticipated; the handler for uncaught exceptions answers with this."""

    status_code = 500
    default_error_code = "UNEXPECTED_ERROR"


def describe_validation_errors(errors: list) -> str:
    """Turn pydantic's error list into a single "<field>: <message>" string."""
    if not errors:
        return "Invalid request"
    first = errors[0]
    loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
    msg = first.get("msg", "Invalid value")
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, "):]
    if loc:
        return f"{'.'.join(loc)}: {msg}"
    return msg
