from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    # auth-specific codes
    "invalid_credentials",
    "account_locked",
    "account_inactive",
    "session_expired",
    "two_factor_required",
    "invalid_two_factor_code",
    "invalid_password",
    "setup_expired",
    "already_enabled",
    "two_factor_not_enabled",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=1024)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginResponse(BaseModel):
    token: str
    credential_id: str
    requires_two_factor: bool


class TwoFactorCodeRequest(BaseModel):
    # 6-digit TOTP or 21-char recovery code
    code: str = Field(..., min_length=1, max_length=32)


class TwoFactorSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str
    recovery_codes: List[str]


class RecoveryCodesResponse(BaseModel):
    codes: List[str]
    remaining: int


class TwoFactorVerifyResponse(BaseModel):
    verified_at: datetime


class TwoFactorDisableRequest(BaseModel):
    password: str = Field(..., max_length=1024)
    code: Optional[str] = Field(default=None, max_length=32)


class PasswordConfirmRequest(BaseModel):
    password: str = Field(..., max_length=1024)


class TwoFactorStatusResponse(BaseModel):
    enabled: bool
    pending: bool
    confirmed_at: Optional[datetime] = None
    recovery_codes_remaining: int


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=1024)
    new_password: str = Field(..., min_length=8, max_length=1024)


class SessionInfo(BaseModel):
    created_at: datetime
    last_activity_at: datetime
    two_factor_verified_at: Optional[datetime] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    current: bool = False


class PrincipalResponse(BaseModel):
    credential_id: str
    email: str
    two_factor_enabled: bool
    two_factor_verified_at: Optional[datetime] = None
