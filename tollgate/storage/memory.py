from __future__ import annotations

import copy
import json
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from tollgate.logging import get_logger
from tollgate.storage.common import (
    LockoutMutator,
    SessionMutator,
    TwoFactorMutator,
    credential_from_dict,
    credential_to_dict,
    lockout_from_dict,
    lockout_to_dict,
    session_from_dict,
    session_to_dict,
    two_factor_from_dict,
    two_factor_to_dict,
)
from tollgate.storage.errors import ConstraintViolation
from tollgate.storage.models import (
    Credential,
    LockoutWindow,
    Session,
    TwoFactorSecret,
)


class MemoryStore:
    """In-process backing store for development and tests.

    When ``state_root`` is given, every write is snapshotted to
    ``state_root/state/tollgate_store.json`` and reloaded on start.
    """

    def __init__(self, state_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.credentials: Dict[str, Credential] = {}
        self.two_factor: Dict[str, TwoFactorSecret] = {}
        self.lockouts: Dict[str, LockoutWindow] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so mutators may call back into read helpers
        self._data_lock = threading.RLock()
        self.state_root = Path(state_root) if state_root else None
        if self.state_root is not None:
            self.state_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- credentials -------------------------------------------------------

    def create_credential(
        self,
        email: str,
        password_hash: str,
        *,
        password_algo: str = "argon2id",
        is_active: bool = True,
    ) -> Credential:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(c.email == normalized for c in self.credentials.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            cred = Credential.new(
                normalized, password_hash, password_algo=password_algo, is_active=is_active
            )
            self.credentials[cred.id] = cred
            self._persist_state()
            return copy.deepcopy(cred)

    def get_credential(self, credential_id: str) -> Optional[Credential]:
        with self._data_lock:
            cred = self.credentials.get(credential_id)
            return copy.deepcopy(cred) if cred else None

    def get_credential_by_email(self, email: str) -> Optional[Credential]:
        normalized = email.strip().lower()
        with self._data_lock:
            for cred in self.credentials.values():
                if cred.email == normalized:
                    return copy.deepcopy(cred)
        return None

    def update_credential_password(
        self, credential_id: str, password_hash: str, password_algo: str = "argon2id"
    ) -> None:
        with self._data_lock:
            cred = self._require_credential(credential_id)
            cred.password_hash = password_hash
            cred.password_algo = password_algo
            self._persist_state()

    def set_credential_active(self, credential_id: str, is_active: bool) -> None:
        with self._data_lock:
            self._require_credential(credential_id).is_active = is_active
            self._persist_state()

    def record_login(self, credential_id: str, at: datetime) -> None:
        with self._data_lock:
            self._require_credential(credential_id).last_login_at = at
            self._persist_state()

    def _require_credential(self, credential_id: str) -> Credential:
        cred = self.credentials.get(credential_id)
        if cred is None:
            raise ConstraintViolation(
                "credential not found", {"credential_id": credential_id}
            )
        return cred

    # -- lockout windows ---------------------------------------------------

    def get_lockout(self, credential_id: str) -> Optional[LockoutWindow]:
        with self._data_lock:
            window = self.lockouts.get(credential_id)
            return copy.deepcopy(window) if window else None

    def update_lockout(self, credential_id: str, mutate: LockoutMutator) -> Any:
        return self._apply(self.lockouts, credential_id, mutate)

    # -- two-factor secrets ------------------------------------------------

    def get_two_factor(self, credential_id: str) -> Optional[TwoFactorSecret]:
        with self._data_lock:
            record = self.two_factor.get(credential_id)
            return copy.deepcopy(record) if record else None

    def update_two_factor(self, credential_id: str, mutate: TwoFactorMutator) -> Any:
        return self._apply(self.two_factor, credential_id, mutate)

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.credential_id not in self.credentials:
                raise ConstraintViolation(
                    "credential not found", {"credential_id": session.credential_id}
                )
            self.sessions[session.key] = copy.deepcopy(session)
            self._persist_state()
        return session

    def get_session(self, key: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(key)
            return copy.deepcopy(session) if session else None

    def update_session(self, key: str, mutate: SessionMutator) -> Any:
        return self._apply(self.sessions, key, mutate)

    def delete_session(self, key: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(key, None) is not None
            if removed:
                self._persist_state()
            return removed

    def list_sessions(self, credential_id: str) -> List[Session]:
        with self._data_lock:
            sessions = [
                copy.deepcopy(s)
                for s in self.sessions.values()
                if s.credential_id == credential_id
            ]
        return sorted(sessions, key=lambda s: s.created_at)

    def delete_sessions_for_credential(
        self, credential_id: str, *, except_key: Optional[str] = None
    ) -> int:
        with self._data_lock:
            doomed = [
                key
                for key, s in self.sessions.items()
                if s.credential_id == credential_id and key != except_key
            ]
            for key in doomed:
                del self.sessions[key]
            if doomed:
                self._persist_state()
            return len(doomed)

    def delete_idle_sessions(self, idle_before: datetime) -> int:
        with self._data_lock:
            doomed = [
                key
                for key, s in self.sessions.items()
                if s.last_activity_at <= idle_before
            ]
            for key in doomed:
                del self.sessions[key]
            if doomed:
                self._persist_state()
            return len(doomed)

    # -- internals ---------------------------------------------------------

    def _apply(self, table: Dict[str, Any], key: str, mutate) -> Any:
        with self._data_lock:
            current = table.get(key)
            updated, result = mutate(copy.deepcopy(current) if current else None)
            if updated is None:
                if table.pop(key, None) is not None:
                    self._persist_state()
            else:
                table[key] = updated
                self._persist_state()
            return result

    def _state_path(self) -> Path:
        state_dir = self.state_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "tollgate_store.json"

    def _persist_state(self) -> None:
        if self.state_root is None:
            return
        state = {
            "credentials": [credential_to_dict(c) for c in self.credentials.values()],
            "two_factor": [two_factor_to_dict(r) for r in self.two_factor.values()],
            "lockouts": [lockout_to_dict(w) for w in self.lockouts.values()],
            "sessions": [session_to_dict(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle)
            os.replace(tmp_path, path)
        except OSError as exc:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            self.logger.error("memory_store_persist_failed", error=str(exc), path=str(path))
            raise

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.credentials = {
            c["id"]: credential_from_dict(c) for c in data.get("credentials", [])
        }
        self.two_factor = {
            r["credential_id"]: two_factor_from_dict(r) for r in data.get("two_factor", [])
        }
        self.lockouts = {
            w["credential_id"]: lockout_from_dict(w) for w in data.get("lockouts", [])
        }
        self.sessions = {s["key"]: session_from_dict(s) for s in data.get("sessions", [])}
        self.logger.info(
            "memory_store_loaded",
            credentials=len(self.credentials),
            sessions=len(self.sessions),
        )
        return True
