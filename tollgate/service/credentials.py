from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from tollgate.logging import get_logger
from tollgate.storage.common import CredentialStore
from tollgate.storage.models import Credential

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8


class CredentialDirectory:
    """Looks up credentials and checks passwords with argon2id."""

    def __init__(
        self, store: CredentialStore, *, hasher: Optional[PasswordHasher] = None
    ) -> None:
        self.store = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self.logger = logger
        # Verified against for unknown e-mails so both paths cost one hash
        self._dummy_hash = self._pwd_hasher.hash("tollgate-timing-equalizer")

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def find_by_email(self, email: str) -> Optional[Credential]:
        return self.store.get_credential_by_email(email)

    def get(self, credential_id: str) -> Optional[Credential]:
        return self.store.get_credential(credential_id)

    def verify_password(self, credential: Optional[Credential], password: str) -> bool:
        if credential is None:
            self._burn_hash(password)
            return False
        if credential.password_algo != "argon2id":
            self.logger.warning(
                "password_algo_mismatch",
                credential_id=credential.id,
                algo=credential.password_algo,
            )
            return False
        try:
            return self._pwd_hasher.verify(credential.password_hash, password)
        except (InvalidHash, VerificationError):
            self.logger.warning("password_verification_failed", credential_id=credential.id)
            return False

    def _burn_hash(self, password: str) -> None:
        with contextlib.suppress(VerificationError):
            self._pwd_hasher.verify(self._dummy_hash, password)

    def create(self, email: str, password: str, *, is_active: bool = True) -> Credential:
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
        digest, algo = self._hash_password(password)
        cred = self.store.create_credential(
            email, digest, password_algo=algo, is_active=is_active
        )
        self.logger.info("credential_created", credential_id=cred.id)
        return cred

    def change_password(self, credential_id: str, new_password: str) -> None:
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
        digest, algo = self._hash_password(new_password)
        self.store.update_credential_password(credential_id, digest, algo)
        self.logger.info("password_changed", credential_id=credential_id)

    def record_login(self, credential_id: str, at: datetime) -> None:
        self.store.record_login(credential_id, at)
