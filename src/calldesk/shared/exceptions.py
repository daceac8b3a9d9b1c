"""
Shared exception definitions.

Mapped to HTTP responses in calldesk.main.
"""

from typing import Any, Dict, Optional


class AppError(Exception):
    """Base application exception."""

    code = "APP_ERROR"

    def __init__(
        self,
        message: str = "Application error",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        return self.message


class ValidationError(AppError):
    """Missing or malformed required input; raised before any mutation."""

    code = "VALIDATION_ERROR"


class NotFoundError(AppError):
    code = "NOT_FOUND"


class ForbiddenError(AppError):
    """Caller lacks ownership of the resource or the required role."""

    code = "FORBIDDEN"


class UnauthorizedError(AppError):
    code = "UNAUTHORIZED"


class InvalidTransitionError(AppError):
    """A status change tried to leave a terminal status.

    Never surfaced to HTTP callers: the lifecycle service logs and ignores it.
    """

    code = "INVALID_TRANSITION"


class InvalidTokenError(AppError):
    code = "INVALID_TOKEN"

    def __init__(self, message: str = "Invalid token", details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message=message, details=details)


class TokenExpiredError(AppError):
    code = "TOKEN_EXPIRED"

    def __init__(self, message: str = "Token expired", details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message=message, details=details)
