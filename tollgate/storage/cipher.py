from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from tollgate.logging import get_logger

logger = get_logger(__name__)


class BlobDecryptionError(Exception):
    """Stored ciphertext could not be decrypted with the configured key."""


class BlobCipher:
    """Symmetric encryption for two-factor secrets and recovery-code payloads."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("key material is required")
        self._fernet = Fernet(self._derive_cipher_key(key_material))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, plaintext: bytes) -> str:
        return self._fernet.encrypt(plaintext).decode()

    def decrypt(self, blob: str) -> bytes:
        try:
            return self._fernet.decrypt(blob.encode())
        except InvalidToken as exc:
            logger.error("blob_decrypt_failed")
            raise BlobDecryptionError("unable to decrypt stored blob") from exc

    def encrypt_text(self, plaintext: str) -> str:
        return self.encrypt(plaintext.encode("utf-8"))

    def decrypt_text(self, blob: str) -> str:
        return self.decrypt(blob).decode("utf-8")
