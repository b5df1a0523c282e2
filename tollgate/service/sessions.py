from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional, Tuple, Union

from tollgate.config import AuthPolicy
from tollgate.logging import get_logger
from tollgate.service.outcomes import SessionExpired, TwoFactorRequired
from tollgate.storage.common import SessionStore
from tollgate.storage.models import Session, TwoFactorProof, session_key, utcnow

logger = get_logger(__name__)


class SessionRegistry:
    """Live authenticated sessions keyed by a digest of their bearer token.

    A session idles out once ``now - last_activity_at >= session_timeout``.
    Expiry is detected lazily by :meth:`touch`, which deletes the record so
    the token stays dead; :meth:`sweep_expired` only reclaims storage.
    """

    def __init__(
        self,
        store: SessionStore,
        policy: AuthPolicy,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.policy = policy
        self.clock = clock
        self.logger = logger

    def _now(self) -> datetime:
        return self.clock()

    def _is_idle(self, session: Session, now: datetime) -> bool:
        return now - session.last_activity_at >= self.policy.session_timeout

    def create(
        self,
        credential_id: str,
        token: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Session:
        session = Session.new(
            token, credential_id, self._now(), user_agent=user_agent, ip_addr=ip_addr
        )
        self.store.create_session(session)
        self.logger.info("session_created", credential_id=credential_id, ip_addr=ip_addr)
        return session

    def touch(self, token: str) -> Union[Session, SessionExpired]:
        """Validate the session and record activity, atomically."""
        now = self._now()

        def _mutate(
            current: Optional[Session],
        ) -> Tuple[Optional[Session], Union[Session, SessionExpired, None]]:
            if current is None:
                return None, None
            if self._is_idle(current, now):
                return None, SessionExpired()
            # Concurrent touches may arrive out of order
            current.last_activity_at = max(current.last_activity_at, now)
            return current, current

        result = self.store.update_session(session_key(token), _mutate)
        if result is None:
            return SessionExpired()
        if isinstance(result, SessionExpired):
            self.logger.info("session_expired", reason="idle_timeout")
        return result

    def get(self, token: str) -> Optional[Session]:
        return self.store.get_session(session_key(token))

    def mark_two_factor_verified(self, token: str) -> Optional[Session]:
        now = self._now()

        def _mutate(current: Optional[Session]) -> Tuple[Optional[Session], Optional[Session]]:
            if current is None:
                return None, None
            current.two_factor = TwoFactorProof(
                credential_id=current.credential_id, verified_at=now
            )
            return current, current

        session = self.store.update_session(session_key(token), _mutate)
        if session is not None:
            self.logger.info("session_two_factor_verified", credential_id=session.credential_id)
        return session

    def require_two_factor_fresh(self, token: str) -> Union[Session, TwoFactorRequired]:
        """Check the second-factor proof and slide it forward on success.

        The proof idles out like the session does: it goes stale only after
        ``two_factor_session_timeout`` without a passing check.
        """
        now = self._now()

        def _mutate(
            current: Optional[Session],
        ) -> Tuple[Optional[Session], Union[Session, TwoFactorRequired]]:
            if current is None or current.two_factor is None:
                return current, TwoFactorRequired(reason="missing")
            proof = current.two_factor
            if proof.credential_id != current.credential_id:
                return current, TwoFactorRequired(reason="mismatch")
            if now - proof.verified_at >= self.policy.two_factor_session_timeout:
                return current, TwoFactorRequired(reason="stale")
            current.two_factor = replace(proof, verified_at=max(proof.verified_at, now))
            return current, current

        result = self.store.update_session(session_key(token), _mutate)
        if result == TwoFactorRequired(reason="mismatch"):
            self.logger.warning("session_two_factor_mismatch")
        return result

    def revoke(self, token: str) -> bool:
        revoked = self.store.delete_session(session_key(token))
        if revoked:
            self.logger.info("session_revoked")
        return revoked

    def revoke_all_for_credential(
        self, credential_id: str, except_token: Optional[str] = None
    ) -> int:
        except_key = session_key(except_token) if except_token else None
        count = self.store.delete_sessions_for_credential(credential_id, except_key=except_key)
        self.logger.info(
            "sessions_revoked", credential_id=credential_id, count=count, kept_current=bool(except_key)
        )
        return count

    def list_for_credential(self, credential_id: str) -> List[Session]:
        now = self._now()
        return [
            s for s in self.store.list_sessions(credential_id) if not self._is_idle(s, now)
        ]

    def sweep_expired(self) -> int:
        removed = self.store.delete_idle_sessions(self._now() - self.policy.session_timeout)
        if removed:
            self.logger.info("session_sweep", removed=removed)
        return removed
