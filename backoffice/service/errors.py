from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the error envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown username or wrong password; the two are indistinguishable."""

    def __init__(self) -> None:
        super().__init__("Invalid credentials")


class AccountDisabledError(AuthenticationError):
    """Identity confirmed but the account is deactivated."""

    def __init__(self) -> None:
        super().__init__("Account is disabled")


class InvalidTokenError(AuthenticationError):
    """Presented token is unknown, malformed or fails verification."""

    def __init__(self, message: str = "Invalid refresh token") -> None:
        super().__init__(message)


class TokenReuseDetectedError(AuthenticationError):
    """A revoked or expired refresh token was presented again."""

    def __init__(self) -> None:
        super().__init__("Token reuse detected")


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation or stale version (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "AccountDisabledError",
    "InvalidTokenError",
    "TokenReuseDetectedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
