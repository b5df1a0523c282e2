"""Result values returned by the auth components.

Expected failures (wrong password, expired session, bad code ...) are returned
as ``AuthFailure`` instances rather than raised, so callers must branch on
them. Only :mod:`tollgate.service.gateway` turns them into ``ServiceError``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


class AuthFailure:
    """Marker base for every failure value."""

    code: str = "auth_failure"


@dataclass(frozen=True)
class InvalidCredentials(AuthFailure):
    # None when the e-mail is unknown; no lockout window exists to report
    attempts_remaining: Optional[int] = None
    code = "invalid_credentials"


@dataclass(frozen=True)
class AccountLocked(AuthFailure):
    minutes_remaining: int
    locked_until: datetime
    # "login" or "2fa", naming which tracker holds the lock
    scope: str = "login"
    code = "account_locked"


@dataclass(frozen=True)
class AccountInactive(AuthFailure):
    code = "account_inactive"


@dataclass(frozen=True)
class InvalidTwoFactorCode(AuthFailure):
    code = "invalid_two_factor_code"


@dataclass(frozen=True)
class SetupExpired(AuthFailure):
    code = "setup_expired"


@dataclass(frozen=True)
class AlreadyEnabled(AuthFailure):
    code = "already_enabled"


@dataclass(frozen=True)
class TwoFactorNotEnabled(AuthFailure):
    code = "two_factor_not_enabled"


@dataclass(frozen=True)
class InvalidPassword(AuthFailure):
    code = "invalid_password"


@dataclass(frozen=True)
class SessionExpired(AuthFailure):
    code = "session_expired"


@dataclass(frozen=True)
class TwoFactorRequired(AuthFailure):
    reason: str = "missing"
    code = "two_factor_required"


# -- success values ----------------------------------------------------------


@dataclass(frozen=True)
class LockState:
    locked: bool
    attempts_remaining: int
    minutes_remaining: int = 0
    locked_until: Optional[datetime] = None
    # Set only on the failure that caused the lock
    tripped: bool = False


@dataclass(frozen=True)
class Enrollment:
    secret: str
    otpauth_uri: str
    recovery_codes: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class TwoFactorStatus:
    enabled: bool
    pending: bool
    confirmed_at: Optional[datetime]
    recovery_codes_remaining: int


@dataclass(frozen=True)
class LoginSuccess:
    token: str
    credential_id: str
    requires_two_factor: bool


@dataclass(frozen=True)
class TwoFactorVerified:
    credential_id: str
    verified_at: datetime


@dataclass(frozen=True)
class Principal:
    credential_id: str
    email: str
    session_key: str
    two_factor_enabled: bool
    two_factor_verified_at: Optional[datetime] = None
