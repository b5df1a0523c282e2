from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional, Tuple, Union

from tollgate.config import AuthPolicy
from tollgate.logging import get_logger
from tollgate.service import codec
from tollgate.service.outcomes import (
    AlreadyEnabled,
    Enrollment,
    InvalidTwoFactorCode,
    SetupExpired,
    TwoFactorStatus,
)
from tollgate.service.recovery import RecoveryCodeVault
from tollgate.storage.cipher import BlobCipher
from tollgate.storage.common import TwoFactorStore
from tollgate.storage.models import TwoFactorSecret, utcnow

logger = get_logger(__name__)


class TotpEnrollment:
    """Per-credential TOTP lifecycle: none -> pending -> confirmed -> none.

    A setup lives in the pending slot until a valid code confirms it; only
    then do the secret and its recovery codes become active. Secrets are
    stored encrypted and decrypted only to derive codes.
    """

    def __init__(
        self,
        store: TwoFactorStore,
        cipher: BlobCipher,
        vault: RecoveryCodeVault,
        policy: AuthPolicy,
        *,
        issuer: str = "Tollgate",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cipher = cipher
        self.vault = vault
        self.policy = policy
        self.issuer = issuer
        self.clock = clock
        self.logger = logger

    def _now(self) -> datetime:
        return self.clock()

    def _check_code(self, secret_blob: str, code: str, now: datetime) -> bool:
        try:
            key = codec.decode_base32(self.cipher.decrypt_text(secret_blob))
        except codec.MalformedSecret:
            self.logger.warning("totp_secret_invalid")
            return False
        return codec.verify_code(key, code, now, window=1)

    def generate(
        self, credential_id: str, account_label: str
    ) -> Union[Enrollment, AlreadyEnabled]:
        """Start (or restart) a setup; any earlier pending setup is replaced."""
        secret = codec.generate_secret()
        codes = self.vault.generate_set()
        secret_blob = self.cipher.encrypt_text(secret)
        recovery_blob = self.vault.seal(codes)
        now = self._now()

        def _mutate(
            current: Optional[TwoFactorSecret],
        ) -> Tuple[Optional[TwoFactorSecret], bool]:
            record = current or TwoFactorSecret(credential_id=credential_id)
            if record.is_confirmed:
                return current, False
            record.pending_secret_blob = secret_blob
            record.pending_recovery_blob = recovery_blob
            record.pending_created_at = now
            return record, True

        if not self.store.update_two_factor(credential_id, _mutate):
            return AlreadyEnabled()
        self.logger.info("two_factor_setup_started", credential_id=credential_id)
        return Enrollment(
            secret=secret,
            otpauth_uri=codec.provisioning_uri(secret, account_label, self.issuer),
            recovery_codes=codes,
        )

    def confirm(
        self, credential_id: str, code: str
    ) -> Union[List[str], SetupExpired, InvalidTwoFactorCode]:
        """Promote the pending setup once ``code`` proves the authenticator works."""
        now = self._now()
        presented = (code or "").strip()

        def _mutate(current: Optional[TwoFactorSecret]):
            if current is None or not current.is_pending:
                return current, SetupExpired()
            if now - current.pending_created_at >= self.policy.two_factor_setup_ttl:
                return current, SetupExpired()
            if not self._check_code(current.pending_secret_blob, presented, now):
                return current, InvalidTwoFactorCode()
            codes = self.vault.codes_from_blob(current.pending_recovery_blob)
            current.secret_blob = current.pending_secret_blob
            current.recovery_blob = current.pending_recovery_blob
            current.confirmed_at = now
            current.pending_secret_blob = None
            current.pending_recovery_blob = None
            current.pending_created_at = None
            return current, codes

        result = self.store.update_two_factor(credential_id, _mutate)
        if isinstance(result, list):
            self.logger.info("two_factor_enabled", credential_id=credential_id)
        else:
            self.logger.info(
                "two_factor_confirm_failed", credential_id=credential_id, reason=result.code
            )
        return result

    def verify(self, credential_id: str, code: str) -> bool:
        """Accept a recovery code (consumed on use) or a TOTP code for now +/- 1 step."""
        presented = (code or "").strip()
        if not presented:
            return False
        record = self.store.get_two_factor(credential_id)
        if record is None or not record.is_confirmed:
            return False
        if self.vault.consume(credential_id, presented):
            return True
        return self._check_code(record.secret_blob, presented, self._now())

    def disable(self, credential_id: str) -> bool:
        removed = self.store.update_two_factor(
            credential_id, lambda current: (None, current is not None)
        )
        if removed:
            self.logger.info("two_factor_disabled", credential_id=credential_id)
        return removed

    def is_enabled(self, credential_id: str) -> bool:
        record = self.store.get_two_factor(credential_id)
        return record is not None and record.is_confirmed

    def status(self, credential_id: str) -> TwoFactorStatus:
        record = self.store.get_two_factor(credential_id)
        if record is None:
            return TwoFactorStatus(
                enabled=False, pending=False, confirmed_at=None, recovery_codes_remaining=0
            )
        remaining = (
            len(self.vault.codes_from_blob(record.recovery_blob)) if record.is_confirmed else 0
        )
        return TwoFactorStatus(
            enabled=record.is_confirmed,
            pending=record.is_pending and not record.is_confirmed,
            confirmed_at=record.confirmed_at,
            recovery_codes_remaining=remaining,
        )
