"""Error taxonomy shared by the services and the HTTP layer.

Every error carries the HTTP status it maps to, so the API can render any of
them as ``{"error": message}`` without a lookup table.
"""


class LibraryError(Exception):
    """Base class for all expected failures raised by the services."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(LibraryError, ValueError):
    """Malformed input or a violated business rule."""

    status_code = 400


class ConflictError(LibraryError, ValueError):
    """A unique value (email, ISBN, author name) is already taken."""

    status_code = 409


class NotFoundError(LibraryError, LookupError):
    status_code = 404


class UnauthorizedError(LibraryError, PermissionError):
    """Missing, malformed or expired credentials."""

    status_code = 401


class ForbiddenError(LibraryError, PermissionError):
    """Authenticated, but the role or ownership check failed."""

    status_code = 403
