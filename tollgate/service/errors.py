from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries the HTTP ``status_code`` and the stable
    ``error_code`` rendered in the error envelope.
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
    error_code = "invalid_credentials"


class SessionExpiredError(AuthenticationError):
    """Session idled out or was revoked (401)."""
    error_code = "session_expired"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountInactiveError(ForbiddenError):
    error_code = "account_inactive"


class TwoFactorRequiredError(ForbiddenError):
    """A fresh second-factor proof is needed for this route (403)."""
    error_code = "two_factor_required"


class ConflictError(ServiceError):
    """Resource conflict, e.g. two-factor already enabled (409)."""
    status_code = 409
    error_code = "conflict"


class UnprocessableError(ServiceError):
    """Well-formed request carrying a wrong secret (422)."""
    status_code = 422
    error_code = "invalid_two_factor_code"


class AccountLockedError(ServiceError):
    """Too many failed logins; retry after the lockout (429)."""
    status_code = 429
    error_code = "account_locked"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "SessionExpiredError",
    "ForbiddenError",
    "AccountInactiveError",
    "TwoFactorRequiredError",
    "ConflictError",
    "UnprocessableError",
    "AccountLockedError",
]
