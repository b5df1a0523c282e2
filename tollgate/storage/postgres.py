from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tollgate.logging import get_logger
from tollgate.storage.common import LockoutMutator, SessionMutator, TwoFactorMutator
from tollgate.storage.errors import ConstraintViolation
from tollgate.storage.models import (
    Credential,
    LockoutWindow,
    Session,
    TwoFactorProof,
    TwoFactorSecret,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS credential (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL DEFAULT 'argon2id',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS two_factor_secret (
        credential_id TEXT PRIMARY KEY REFERENCES credential(id) ON DELETE CASCADE,
        secret_blob TEXT,
        recovery_blob TEXT,
        confirmed_at TIMESTAMPTZ,
        pending_secret_blob TEXT,
        pending_recovery_blob TEXT,
        pending_created_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS lockout_window (
        subject TEXT PRIMARY KEY,
        failures TIMESTAMPTZ[] NOT NULL DEFAULT '{}',
        locked_until TIMESTAMPTZ,
        last_failed_ip TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        key TEXT PRIMARY KEY,
        credential_id TEXT NOT NULL REFERENCES credential(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        last_activity_at TIMESTAMPTZ NOT NULL,
        two_factor_credential_id TEXT,
        two_factor_verified_at TIMESTAMPTZ,
        user_agent TEXT,
        ip_addr TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_credential_idx ON auth_session (credential_id)",
    "CREATE INDEX IF NOT EXISTS auth_session_activity_idx ON auth_session (last_activity_at)",
)


class PostgresStore:
    """Postgres-backed store; read-modify-write updates hold a row lock."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    # -- row mapping -------------------------------------------------------

    @staticmethod
    def _credential_from_row(row: Dict[str, Any]) -> Credential:
        return Credential(
            id=row["id"],
            email=row["email"],
            password_hash=row["password_hash"],
            password_algo=row.get("password_algo") or "argon2id",
            is_active=bool(row.get("is_active", True)),
            created_at=row["created_at"],
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _two_factor_from_row(row: Dict[str, Any]) -> Optional[TwoFactorSecret]:
        record = TwoFactorSecret(
            credential_id=row["credential_id"],
            secret_blob=row.get("secret_blob"),
            recovery_blob=row.get("recovery_blob"),
            confirmed_at=row.get("confirmed_at"),
            pending_secret_blob=row.get("pending_secret_blob"),
            pending_recovery_blob=row.get("pending_recovery_blob"),
            pending_created_at=row.get("pending_created_at"),
        )
        return None if record.is_empty else record

    @staticmethod
    def _lockout_from_row(row: Dict[str, Any]) -> Optional[LockoutWindow]:
        window = LockoutWindow(
            credential_id=row["subject"],
            failures=sorted(row.get("failures") or []),
            locked_until=row.get("locked_until"),
            last_failed_ip=row.get("last_failed_ip"),
        )
        return None if window.is_empty else window

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        proof = None
        if row.get("two_factor_verified_at") is not None:
            proof = TwoFactorProof(
                credential_id=row["two_factor_credential_id"],
                verified_at=row["two_factor_verified_at"],
            )
        return Session(
            key=row["key"],
            credential_id=row["credential_id"],
            created_at=row["created_at"],
            last_activity_at=row["last_activity_at"],
            two_factor=proof,
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
        )

    # -- credentials -------------------------------------------------------

    def create_credential(
        self,
        email: str,
        password_hash: str,
        *,
        password_algo: str = "argon2id",
        is_active: bool = True,
    ) -> Credential:
        cred = Credential.new(
            email.strip().lower(),
            password_hash,
            password_algo=password_algo,
            is_active=is_active,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO credential (id, email, password_hash, password_algo, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        cred.id,
                        cred.email,
                        cred.password_hash,
                        cred.password_algo,
                        cred.is_active,
                        cred.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return cred

    def get_credential(self, credential_id: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM credential WHERE id = %s", (credential_id,)
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def get_credential_by_email(self, email: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM credential WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def update_credential_password(
        self, credential_id: str, password_hash: str, password_algo: str = "argon2id"
    ) -> None:
        self._update_credential(
            "UPDATE credential SET password_hash = %s, password_algo = %s WHERE id = %s",
            (password_hash, password_algo, credential_id),
            credential_id,
        )

    def set_credential_active(self, credential_id: str, is_active: bool) -> None:
        self._update_credential(
            "UPDATE credential SET is_active = %s WHERE id = %s",
            (is_active, credential_id),
            credential_id,
        )

    def record_login(self, credential_id: str, at: datetime) -> None:
        self._update_credential(
            "UPDATE credential SET last_login_at = %s WHERE id = %s",
            (at, credential_id),
            credential_id,
        )

    def _update_credential(self, sql: str, params: tuple, credential_id: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(sql, params)
            if cur.rowcount == 0:
                raise ConstraintViolation(
                    "credential not found", {"credential_id": credential_id}
                )

    # -- lockout windows ---------------------------------------------------
    # Keyed by subject rather than credential id so scoped trackers
    # (e.g. "2fa:<id>") share the table.

    def get_lockout(self, credential_id: str) -> Optional[LockoutWindow]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM lockout_window WHERE subject = %s", (credential_id,)
            ).fetchone()
        return self._lockout_from_row(row) if row else None

    def update_lockout(self, credential_id: str, mutate: LockoutMutator) -> Any:
        with self._connect() as conn:
            with conn.transaction():
                # Seed the row so FOR UPDATE always has something to lock
                conn.execute(
                    "INSERT INTO lockout_window (subject) VALUES (%s) ON CONFLICT DO NOTHING",
                    (credential_id,),
                )
                row = conn.execute(
                    "SELECT * FROM lockout_window WHERE subject = %s FOR UPDATE",
                    (credential_id,),
                ).fetchone()
                updated, result = mutate(self._lockout_from_row(row) if row else None)
                if updated is None or updated.is_empty:
                    conn.execute(
                        "DELETE FROM lockout_window WHERE subject = %s", (credential_id,)
                    )
                else:
                    conn.execute(
                        """
                        UPDATE lockout_window
                        SET failures = %s, locked_until = %s, last_failed_ip = %s
                        WHERE subject = %s
                        """,
                        (
                            list(updated.failures),
                            updated.locked_until,
                            updated.last_failed_ip,
                            credential_id,
                        ),
                    )
        return result

    # -- two-factor secrets ------------------------------------------------

    def get_two_factor(self, credential_id: str) -> Optional[TwoFactorSecret]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM two_factor_secret WHERE credential_id = %s",
                (credential_id,),
            ).fetchone()
        return self._two_factor_from_row(row) if row else None

    def update_two_factor(self, credential_id: str, mutate: TwoFactorMutator) -> Any:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        "INSERT INTO two_factor_secret (credential_id) VALUES (%s) ON CONFLICT DO NOTHING",
                        (credential_id,),
                    )
                    row = conn.execute(
                        "SELECT * FROM two_factor_secret WHERE credential_id = %s FOR UPDATE",
                        (credential_id,),
                    ).fetchone()
                    updated, result = mutate(
                        self._two_factor_from_row(row) if row else None
                    )
                    if updated is None or updated.is_empty:
                        conn.execute(
                            "DELETE FROM two_factor_secret WHERE credential_id = %s",
                            (credential_id,),
                        )
                    else:
                        conn.execute(
                            """
                            UPDATE two_factor_secret
                            SET secret_blob = %s, recovery_blob = %s, confirmed_at = %s,
                                pending_secret_blob = %s, pending_recovery_blob = %s,
                                pending_created_at = %s
                            WHERE credential_id = %s
                            """,
                            (
                                updated.secret_blob,
                                updated.recovery_blob,
                                updated.confirmed_at,
                                updated.pending_secret_blob,
                                updated.pending_recovery_blob,
                                updated.pending_created_at,
                                credential_id,
                            ),
                        )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "credential not found", {"credential_id": credential_id}
            )
        return result

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        proof = session.two_factor
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        key, credential_id, created_at, last_activity_at,
                        two_factor_credential_id, two_factor_verified_at, user_agent, ip_addr
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.key,
                        session.credential_id,
                        session.created_at,
                        session.last_activity_at,
                        proof.credential_id if proof else None,
                        proof.verified_at if proof else None,
                        session.user_agent,
                        session.ip_addr,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "credential not found", {"credential_id": session.credential_id}
            )
        return session

    def get_session(self, key: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE key = %s", (key,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def update_session(self, key: str, mutate: SessionMutator) -> Any:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT * FROM auth_session WHERE key = %s FOR UPDATE", (key,)
                ).fetchone()
                updated, result = mutate(self._session_from_row(row) if row else None)
                if updated is None:
                    if row:
                        conn.execute("DELETE FROM auth_session WHERE key = %s", (key,))
                elif row:
                    proof = updated.two_factor
                    conn.execute(
                        """
                        UPDATE auth_session
                        SET last_activity_at = %s, two_factor_credential_id = %s,
                            two_factor_verified_at = %s
                        WHERE key = %s
                        """,
                        (
                            updated.last_activity_at,
                            proof.credential_id if proof else None,
                            proof.verified_at if proof else None,
                            key,
                        ),
                    )
        return result

    def delete_session(self, key: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE key = %s", (key,))
            return cur.rowcount > 0

    def list_sessions(self, credential_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE credential_id = %s ORDER BY created_at",
                (credential_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_sessions_for_credential(
        self, credential_id: str, *, except_key: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_key:
                cur = conn.execute(
                    "DELETE FROM auth_session WHERE credential_id = %s AND key <> %s",
                    (credential_id, except_key),
                )
            else:
                cur = conn.execute(
                    "DELETE FROM auth_session WHERE credential_id = %s", (credential_id,)
                )
            return cur.rowcount

    def delete_idle_sessions(self, idle_before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_session WHERE last_activity_at <= %s", (idle_before,)
            )
            return cur.rowcount
