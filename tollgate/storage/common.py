"""Common storage contracts and record codecs shared between backends.

Every backend applies read-modify-write updates through a *mutator*: a pure
function that receives the current record (or ``None``) and returns the
replacement record (``None`` deletes it) together with a result handed back to
the caller. The backend guarantees that no two mutators for the same key
interleave.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, TypeVar

from tollgate.storage.models import (
    Credential,
    LockoutWindow,
    Session,
    TwoFactorProof,
    TwoFactorSecret,
)

T = TypeVar("T")

LockoutMutator = Callable[[Optional[LockoutWindow]], Tuple[Optional[LockoutWindow], T]]
TwoFactorMutator = Callable[
    [Optional[TwoFactorSecret]], Tuple[Optional[TwoFactorSecret], T]
]
SessionMutator = Callable[[Optional[Session]], Tuple[Optional[Session], T]]


class CredentialStore(Protocol):
    def create_credential(
        self, email: str, password_hash: str, *, password_algo: str = "argon2id", is_active: bool = True
    ) -> Credential:
        ...

    def get_credential(self, credential_id: str) -> Optional[Credential]:
        ...

    def get_credential_by_email(self, email: str) -> Optional[Credential]:
        ...

    def update_credential_password(
        self, credential_id: str, password_hash: str, password_algo: str = "argon2id"
    ) -> None:
        ...

    def set_credential_active(self, credential_id: str, is_active: bool) -> None:
        ...

    def record_login(self, credential_id: str, at: datetime) -> None:
        ...


class LockoutStore(Protocol):
    def get_lockout(self, credential_id: str) -> Optional[LockoutWindow]:
        ...

    def update_lockout(self, credential_id: str, mutate: LockoutMutator) -> Any:
        ...


class TwoFactorStore(Protocol):
    def get_two_factor(self, credential_id: str) -> Optional[TwoFactorSecret]:
        ...

    def update_two_factor(self, credential_id: str, mutate: TwoFactorMutator) -> Any:
        ...


class SessionStore(Protocol):
    def get_session(self, key: str) -> Optional[Session]:
        ...

    def update_session(self, key: str, mutate: SessionMutator) -> Any:
        ...

    def create_session(self, session: Session) -> Session:
        ...

    def delete_session(self, key: str) -> bool:
        ...

    def list_sessions(self, credential_id: str) -> List[Session]:
        ...

    def delete_sessions_for_credential(
        self, credential_id: str, *, except_key: Optional[str] = None
    ) -> int:
        ...

    def delete_idle_sessions(self, idle_before: datetime) -> int:
        ...


class AuthStore(CredentialStore, LockoutStore, TwoFactorStore, SessionStore, Protocol):
    """A single backend holding every auth record."""


# ============================================================================
# RECORD CODECS - JSON-safe dicts for snapshots and key/value backends
# ============================================================================


def _dt_out(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dt_in(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def credential_to_dict(cred: Credential) -> Dict[str, Any]:
    return {
        "id": cred.id,
        "email": cred.email,
        "password_hash": cred.password_hash,
        "password_algo": cred.password_algo,
        "is_active": cred.is_active,
        "created_at": _dt_out(cred.created_at),
        "last_login_at": _dt_out(cred.last_login_at),
    }


def credential_from_dict(data: Dict[str, Any]) -> Credential:
    return Credential(
        id=data["id"],
        email=data["email"],
        password_hash=data["password_hash"],
        password_algo=data.get("password_algo", "argon2id"),
        is_active=bool(data.get("is_active", True)),
        created_at=_dt_in(data.get("created_at")),
        last_login_at=_dt_in(data.get("last_login_at")),
    )


def two_factor_to_dict(record: TwoFactorSecret) -> Dict[str, Any]:
    return {
        "credential_id": record.credential_id,
        "secret_blob": record.secret_blob,
        "recovery_blob": record.recovery_blob,
        "confirmed_at": _dt_out(record.confirmed_at),
        "pending_secret_blob": record.pending_secret_blob,
        "pending_recovery_blob": record.pending_recovery_blob,
        "pending_created_at": _dt_out(record.pending_created_at),
    }


def two_factor_from_dict(data: Dict[str, Any]) -> TwoFactorSecret:
    return TwoFactorSecret(
        credential_id=data["credential_id"],
        secret_blob=data.get("secret_blob"),
        recovery_blob=data.get("recovery_blob"),
        confirmed_at=_dt_in(data.get("confirmed_at")),
        pending_secret_blob=data.get("pending_secret_blob"),
        pending_recovery_blob=data.get("pending_recovery_blob"),
        pending_created_at=_dt_in(data.get("pending_created_at")),
    )


def lockout_to_dict(window: LockoutWindow) -> Dict[str, Any]:
    return {
        "credential_id": window.credential_id,
        "failures": [_dt_out(ts) for ts in window.failures],
        "locked_until": _dt_out(window.locked_until),
        "last_failed_ip": window.last_failed_ip,
    }


def lockout_from_dict(data: Dict[str, Any]) -> LockoutWindow:
    return LockoutWindow(
        credential_id=data["credential_id"],
        failures=[_dt_in(ts) for ts in data.get("failures") or []],
        locked_until=_dt_in(data.get("locked_until")),
        last_failed_ip=data.get("last_failed_ip"),
    )


def session_to_dict(session: Session) -> Dict[str, Any]:
    proof = session.two_factor
    return {
        "key": session.key,
        "credential_id": session.credential_id,
        "created_at": _dt_out(session.created_at),
        "last_activity_at": _dt_out(session.last_activity_at),
        "two_factor": (
            {"credential_id": proof.credential_id, "verified_at": _dt_out(proof.verified_at)}
            if proof
            else None
        ),
        "user_agent": session.user_agent,
        "ip_addr": session.ip_addr,
    }


def session_from_dict(data: Dict[str, Any]) -> Session:
    proof = data.get("two_factor")
    return Session(
        key=data["key"],
        credential_id=data["credential_id"],
        created_at=_dt_in(data["created_at"]),
        last_activity_at=_dt_in(data["last_activity_at"]),
        two_factor=(
            TwoFactorProof(
                credential_id=proof["credential_id"],
                verified_at=_dt_in(proof["verified_at"]),
            )
            if proof
            else None
        ),
        user_agent=data.get("user_agent"),
        ip_addr=data.get("ip_addr"),
    )
