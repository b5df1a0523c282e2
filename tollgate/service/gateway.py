from __future__ import annotations

import secrets
from datetime import datetime
from typing import Callable, List, Optional, Union

from tollgate.logging import get_logger
from tollgate.service.credentials import CredentialDirectory
from tollgate.service.email import LockoutNotifier
from tollgate.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    ConflictError,
    InvalidCredentialsError,
    ServiceError,
    SessionExpiredError,
    TwoFactorRequiredError,
    UnprocessableError,
    ValidationError,
)
from tollgate.service.lockout import LockoutTracker
from tollgate.service.outcomes import (
    AccountInactive,
    AccountLocked,
    AlreadyEnabled,
    AuthFailure,
    Enrollment,
    InvalidCredentials,
    InvalidPassword,
    InvalidTwoFactorCode,
    LockState,
    LoginSuccess,
    Principal,
    SessionExpired,
    SetupExpired,
    TwoFactorNotEnabled,
    TwoFactorRequired,
    TwoFactorStatus,
    TwoFactorVerified,
)
from tollgate.service.recovery import RecoveryCodeVault
from tollgate.service.sessions import SessionRegistry
from tollgate.service.totp import TotpEnrollment
from tollgate.storage.models import Credential, Session, utcnow

logger = get_logger(__name__)

TOKEN_BYTES = 32

_LOCKED_MESSAGES = {
    "login": "Account temporarily locked due to too many failed login attempts",
    "2fa": "Two-factor verification temporarily locked due to too many invalid codes",
}


def _locked(state: LockState, scope: str = "login") -> AccountLocked:
    return AccountLocked(
        minutes_remaining=state.minutes_remaining,
        locked_until=state.locked_until,
        scope=scope,
    )


class AuthGateway:
    """Entry point for login, the second-factor challenge and per-request checks.

    Components below return failures as values; this class sequences them and
    is the only place that knows about every one of them.
    """

    def __init__(
        self,
        *,
        directory: CredentialDirectory,
        lockout: LockoutTracker,
        enrollment: TotpEnrollment,
        vault: RecoveryCodeVault,
        sessions: SessionRegistry,
        notifier: Optional[LockoutNotifier] = None,
        two_factor_lockout: Optional[LockoutTracker] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.directory = directory
        self.lockout = lockout
        self.enrollment = enrollment
        self.vault = vault
        self.sessions = sessions
        self.notifier = notifier
        # Opt-in throttle on failed second-factor codes
        self.two_factor_lockout = two_factor_lockout
        self.clock = clock
        self.logger = logger

    def _now(self) -> datetime:
        return self.clock()

    # -- login -------------------------------------------------------------

    def login(
        self,
        email: str,
        password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Union[LoginSuccess, InvalidCredentials, AccountLocked, AccountInactive]:
        cred = self.directory.find_by_email(email)
        if cred is None:
            self.directory.verify_password(None, password)
            self.logger.info("login_failed", reason="unknown_credential", ip_addr=ip_addr)
            return InvalidCredentials()

        state = self.lockout.check_locked(cred.id)
        if state.locked:
            self.logger.warning("login_blocked", credential_id=cred.id, ip_addr=ip_addr)
            return _locked(state)

        if not self.directory.verify_password(cred, password):
            state = self.lockout.record_failure(cred.id, ip_addr)
            self.logger.info(
                "login_failed",
                reason="bad_password",
                credential_id=cred.id,
                ip_addr=ip_addr,
                attempts_remaining=state.attempts_remaining,
            )
            if state.locked:
                if state.tripped:
                    self._notify_locked(cred, ip_addr)
                return _locked(state)
            return InvalidCredentials(attempts_remaining=state.attempts_remaining)

        self.lockout.record_success(cred.id)
        if not cred.is_active:
            self.logger.warning("login_inactive_account", credential_id=cred.id)
            return AccountInactive()

        token = secrets.token_urlsafe(TOKEN_BYTES)
        self.sessions.create(cred.id, token, user_agent=user_agent, ip_addr=ip_addr)
        self.directory.record_login(cred.id, self._now())
        requires_two_factor = self.enrollment.is_enabled(cred.id)
        self.logger.info(
            "login_succeeded",
            credential_id=cred.id,
            requires_two_factor=requires_two_factor,
        )
        return LoginSuccess(
            token=token, credential_id=cred.id, requires_two_factor=requires_two_factor
        )

    def _notify_locked(self, cred: Credential, ip_addr: Optional[str]) -> None:
        if self.notifier is None:
            return
        lockout_minutes = int(self.lockout.policy.lockout_duration.total_seconds() // 60)
        sent = self.notifier.send_account_locked(
            cred.email,
            locked_at=self._now(),
            lockout_minutes=lockout_minutes,
            ip_addr=ip_addr,
        )
        if not sent:
            self.logger.warning("lockout_notification_failed", credential_id=cred.id)

    # -- per-request checks ------------------------------------------------

    def guard(
        self, token: str, requires_two_factor: bool = False
    ) -> Union[Principal, SessionExpired, TwoFactorRequired]:
        """Authenticate a request; 2FA freshness only applies to credentials with 2FA."""
        session = self.sessions.touch(token)
        if isinstance(session, AuthFailure):
            return session
        cred = self.directory.get(session.credential_id)
        if cred is None or not cred.is_active:
            self.sessions.revoke(token)
            return SessionExpired()
        enabled = self.enrollment.is_enabled(cred.id)
        if requires_two_factor and enabled:
            fresh = self.sessions.require_two_factor_fresh(token)
            if isinstance(fresh, AuthFailure):
                self.logger.info(
                    "two_factor_required", credential_id=cred.id, reason=fresh.reason
                )
                return fresh
            session = fresh
        return Principal(
            credential_id=cred.id,
            email=cred.email,
            session_key=session.key,
            two_factor_enabled=enabled,
            two_factor_verified_at=(
                session.two_factor.verified_at if session.two_factor else None
            ),
        )

    def verify_two_factor(
        self, token: str, code: str
    ) -> Union[
        TwoFactorVerified,
        InvalidTwoFactorCode,
        TwoFactorNotEnabled,
        SessionExpired,
        AccountLocked,
    ]:
        session = self.sessions.touch(token)
        if isinstance(session, AuthFailure):
            return session
        credential_id = session.credential_id
        if not self.enrollment.is_enabled(credential_id):
            return TwoFactorNotEnabled()

        throttle = self.two_factor_lockout
        if throttle is not None:
            state = throttle.check_locked(credential_id)
            if state.locked:
                return _locked(state, scope="2fa")

        if not self.enrollment.verify(credential_id, code):
            self.logger.info("two_factor_verify_failed", credential_id=credential_id)
            if throttle is not None:
                state = throttle.record_failure(credential_id, session.ip_addr)
                if state.locked:
                    return _locked(state, scope="2fa")
            return InvalidTwoFactorCode()

        if throttle is not None:
            throttle.record_success(credential_id)
        verified = self.sessions.mark_two_factor_verified(token)
        if verified is None:
            return SessionExpired()
        return TwoFactorVerified(
            credential_id=credential_id, verified_at=verified.two_factor.verified_at
        )

    # -- two-factor management ----------------------------------------------

    def setup_two_factor(
        self, token: str
    ) -> Union[Enrollment, AlreadyEnabled, SessionExpired, TwoFactorRequired]:
        principal = self.guard(token)
        if isinstance(principal, AuthFailure):
            return principal
        return self.enrollment.generate(principal.credential_id, principal.email)

    def confirm_two_factor(
        self, token: str, code: str
    ) -> Union[List[str], SetupExpired, InvalidTwoFactorCode, SessionExpired, TwoFactorRequired]:
        principal = self.guard(token)
        if isinstance(principal, AuthFailure):
            return principal
        result = self.enrollment.confirm(principal.credential_id, code)
        if isinstance(result, list):
            # The confirming code already proved possession of the new factor
            self.sessions.mark_two_factor_verified(token)
        return result

    def disable_two_factor(
        self, token: str, password: str, code: Optional[str] = None
    ) -> Union[bool, InvalidPassword, InvalidTwoFactorCode, SessionExpired, TwoFactorRequired]:
        principal = self.guard(token)
        if isinstance(principal, AuthFailure):
            return principal
        if not self._password_ok(principal.credential_id, password):
            return InvalidPassword()
        if code and principal.two_factor_enabled:
            if not self.enrollment.verify(principal.credential_id, code):
                return InvalidTwoFactorCode()
        return self.enrollment.disable(principal.credential_id)

    def two_factor_status(
        self, token: str
    ) -> Union[TwoFactorStatus, SessionExpired, TwoFactorRequired]:
        principal = self.guard(token)
        if isinstance(principal, AuthFailure):
            return principal
        return self.enrollment.status(principal.credential_id)

    def recovery_codes(
        self, token: str
    ) -> Union[List[str], TwoFactorNotEnabled, SessionExpired, TwoFactorRequired]:
        principal = self.guard(token, requires_two_factor=True)
        if isinstance(principal, AuthFailure):
            return principal
        if not principal.two_factor_enabled:
            return TwoFactorNotEnabled()
        return self.vault.list_remaining(principal.credential_id)

    def regenerate_recovery_codes(
        self, token: str, password: str
    ) -> Union[List[str], InvalidPassword, TwoFactorNotEnabled, SessionExpired, TwoFactorRequired]:
        principal = self.guard(token, requires_two_factor=True)
        if isinstance(principal, AuthFailure):
            return principal
        if not self._password_ok(principal.credential_id, password):
            return InvalidPassword()
        return self.vault.regenerate(principal.credential_id)

    # -- account & sessions ---------------------------------------------------

    def change_password(
        self, token: str, current_password: str, new_password: str
    ) -> Union[int, InvalidPassword, SessionExpired, TwoFactorRequired]:
        """Change the password and revoke every other session; returns how many."""
        principal = self.guard(token, requires_two_factor=True)
        if isinstance(principal, AuthFailure):
            return principal
        if not self._password_ok(principal.credential_id, current_password):
            return InvalidPassword()
        self.directory.change_password(principal.credential_id, new_password)
        return self.sessions.revoke_all_for_credential(
            principal.credential_id, except_token=token
        )

    def logout(self, token: str) -> bool:
        return self.sessions.revoke(token)

    def logout_everywhere(self, token: str) -> Union[int, SessionExpired, TwoFactorRequired]:
        principal = self.guard(token)
        if isinstance(principal, AuthFailure):
            return principal
        return self.sessions.revoke_all_for_credential(principal.credential_id)

    def list_sessions(
        self, token: str
    ) -> Union[List[Session], SessionExpired, TwoFactorRequired]:
        principal = self.guard(token)
        if isinstance(principal, AuthFailure):
            return principal
        return self.sessions.list_for_credential(principal.credential_id)

    def _password_ok(self, credential_id: str, password: str) -> bool:
        cred = self.directory.get(credential_id)
        return self.directory.verify_password(cred, password or "")


def to_service_error(failure: AuthFailure) -> ServiceError:
    """Translate a failure value into the transport-facing error."""
    if isinstance(failure, InvalidCredentials):
        detail = {}
        if failure.attempts_remaining is not None:
            detail["attempts_remaining"] = failure.attempts_remaining
        return InvalidCredentialsError("Invalid credentials", detail=detail)
    if isinstance(failure, AccountLocked):
        return AccountLockedError(
            _LOCKED_MESSAGES.get(failure.scope, _LOCKED_MESSAGES["login"]),
            detail={
                "minutes_remaining": failure.minutes_remaining,
                "locked_until": failure.locked_until.isoformat(),
            },
        )
    if isinstance(failure, AccountInactive):
        return AccountInactiveError("Account is inactive")
    if isinstance(failure, SessionExpired):
        return SessionExpiredError(
            "Session expired due to inactivity", detail={"session_expired": True}
        )
    if isinstance(failure, TwoFactorRequired):
        return TwoFactorRequiredError(
            "Two-factor authentication required",
            detail={"requires_two_factor": True, "reason": failure.reason},
        )
    if isinstance(failure, InvalidTwoFactorCode):
        return UnprocessableError("Invalid two-factor code")
    if isinstance(failure, InvalidPassword):
        return UnprocessableError("Invalid password", error_code="invalid_password")
    if isinstance(failure, SetupExpired):
        return ValidationError(
            "Two-factor setup expired; start again", error_code="setup_expired"
        )
    if isinstance(failure, AlreadyEnabled):
        return ConflictError(
            "Two-factor authentication is already enabled", error_code="already_enabled"
        )
    if isinstance(failure, TwoFactorNotEnabled):
        return ValidationError(
            "Two-factor authentication is not enabled", error_code="two_factor_not_enabled"
        )
    return ServiceError(f"authentication failed: {failure.code}", error_code=failure.code)
