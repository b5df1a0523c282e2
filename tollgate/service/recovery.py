from __future__ import annotations

import json
import secrets
import string
from typing import Dict, List, Optional, Tuple, Union

from tollgate.logging import get_logger
from tollgate.service.codec import codes_match
from tollgate.service.outcomes import TwoFactorNotEnabled
from tollgate.storage.cipher import BlobCipher
from tollgate.storage.common import TwoFactorStore
from tollgate.storage.models import TwoFactorSecret

logger = get_logger(__name__)

RECOVERY_CODE_COUNT = 8
_GROUP_LENGTH = 10
_ALPHABET = string.ascii_letters + string.digits


class RecoveryCodeVault:
    """Single-use recovery codes stored encrypted alongside the 2FA secret.

    Codes look like ``AbCdE12345-fGhIj67890`` so they can never be mistaken
    for a six-digit TOTP code.
    """

    def __init__(self, store: TwoFactorStore, cipher: BlobCipher) -> None:
        self.store = store
        self.cipher = cipher
        self.logger = logger

    @staticmethod
    def generate_set(n: int = RECOVERY_CODE_COUNT) -> List[str]:
        def _group() -> str:
            return "".join(secrets.choice(_ALPHABET) for _ in range(_GROUP_LENGTH))

        return [f"{_group()}-{_group()}" for _ in range(n)]

    def seal(self, codes: List[str]) -> str:
        entries = [{"code": code, "consumed": False} for code in codes]
        return self.cipher.encrypt_text(json.dumps(entries))

    def unseal(self, blob: Optional[str]) -> List[Dict[str, object]]:
        if not blob:
            return []
        return json.loads(self.cipher.decrypt_text(blob))

    def codes_from_blob(self, blob: Optional[str]) -> List[str]:
        return [str(e["code"]) for e in self.unseal(blob) if not e.get("consumed")]

    def consume(self, credential_id: str, code: str) -> bool:
        """Mark ``code`` used if it is a live recovery code; True exactly once."""
        presented = (code or "").strip()
        if not presented:
            return False

        def _mutate(
            record: Optional[TwoFactorSecret],
        ) -> Tuple[Optional[TwoFactorSecret], bool]:
            if record is None or not record.is_confirmed:
                return record, False
            entries = self.unseal(record.recovery_blob)
            hit = None
            for entry in entries:
                # Compare against every live code without short-circuiting
                if not entry.get("consumed") and codes_match(str(entry["code"]), presented):
                    hit = entry
            if hit is None:
                return record, False
            hit["consumed"] = True
            record.recovery_blob = self.cipher.encrypt_text(json.dumps(entries))
            return record, True

        consumed = self.store.update_two_factor(credential_id, _mutate)
        if consumed:
            self.logger.info(
                "recovery_code_consumed",
                credential_id=credential_id,
                remaining=self.remaining_count(credential_id),
            )
        return consumed

    def list_remaining(self, credential_id: str) -> List[str]:
        record = self.store.get_two_factor(credential_id)
        if record is None or not record.is_confirmed:
            return []
        return self.codes_from_blob(record.recovery_blob)

    def remaining_count(self, credential_id: str) -> int:
        return len(self.list_remaining(credential_id))

    def regenerate(self, credential_id: str) -> Union[List[str], TwoFactorNotEnabled]:
        codes = self.generate_set()
        blob = self.seal(codes)

        def _mutate(
            record: Optional[TwoFactorSecret],
        ) -> Tuple[Optional[TwoFactorSecret], bool]:
            if record is None or not record.is_confirmed:
                return record, False
            record.recovery_blob = blob
            return record, True

        if not self.store.update_two_factor(credential_id, _mutate):
            return TwoFactorNotEnabled()
        self.logger.info("recovery_codes_regenerated", credential_id=credential_id)
        return codes
