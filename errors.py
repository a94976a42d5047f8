"""
Application error taxonomy.

Services raise these; main.py turns them into JSON responses carrying
``{"detail": message}`` and the matching status code.
"""


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    status_code = 400


class InvalidStatusError(ValidationError):
    pass


class NotFoundError(AppError):
    status_code = 404


class ForbiddenError(AppError):
    status_code = 403


class ConflictError(AppError):
    status_code = 409


class InvalidStateError(AppError):
    status_code = 400


class WindowExpiredError(AppError):
    status_code = 400


class SignatureError(AppError):
    status_code = 400


class UpstreamError(AppError):
    status_code = 500


def first_error_message(errors) -> str:
    """Render the first entry of a pydantic error list as ``field.path: message``."""
    if not errors:
        return "Invalid request"
    error = errors[0]
    loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
    message = error.get("msg", "Invalid value")
    return f"{'.'.join(loc)}: {message}" if loc else message
