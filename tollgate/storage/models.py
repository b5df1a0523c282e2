from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def session_key(token: str) -> str:
    """Storage key for a bearer token; the raw token is never persisted."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass
class Credential:
    id: str
    email: str
    password_hash: str
    password_algo: str = "argon2id"
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        *,
        password_algo: str = "argon2id",
        is_active: bool = True,
    ) -> "Credential":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            password_algo=password_algo,
            is_active=is_active,
        )


@dataclass
class TwoFactorSecret:
    """Encrypted two-factor material for one credential.

    The confirmed slot holds the active secret and recovery codes; the pending
    slot holds a setup that has not been confirmed with a valid code yet. Both
    blobs are ciphertext produced by ``BlobCipher``.
    """

    credential_id: str
    secret_blob: Optional[str] = None
    recovery_blob: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    pending_secret_blob: Optional[str] = None
    pending_recovery_blob: Optional[str] = None
    pending_created_at: Optional[datetime] = None

    @property
    def is_confirmed(self) -> bool:
        return self.secret_blob is not None

    @property
    def is_pending(self) -> bool:
        return self.pending_secret_blob is not None

    @property
    def is_empty(self) -> bool:
        return not self.is_confirmed and not self.is_pending


@dataclass
class LockoutWindow:
    credential_id: str
    failures: List[datetime] = field(default_factory=list)
    locked_until: Optional[datetime] = None
    last_failed_ip: Optional[str] = None

    @property
    def count(self) -> int:
        return len(self.failures)

    @property
    def is_empty(self) -> bool:
        return not self.failures and self.locked_until is None


@dataclass(frozen=True)
class TwoFactorProof:
    credential_id: str
    verified_at: datetime


@dataclass
class Session:
    key: str
    credential_id: str
    created_at: datetime
    last_activity_at: datetime
    two_factor: Optional[TwoFactorProof] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        token: str,
        credential_id: str,
        now: datetime,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> "Session":
        return cls(
            key=session_key(token),
            credential_id=credential_id,
            created_at=now,
            last_activity_at=now,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
