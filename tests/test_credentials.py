"""Tests for credential lookup and argon2id password handling."""

import pytest
from argon2 import PasswordHasher

from tollgate.service.credentials import CredentialDirectory
from tollgate.storage.errors import ConstraintViolation


class TestPasswordHashing:
    def test_hash_is_argon2id(self, directory):
        digest, algo = directory._hash_password("CorrectHorse1!")
        assert algo == "argon2id"
        assert digest.startswith("$argon2id$")

    def test_same_password_produces_different_hashes(self, directory):
        first, _ = directory._hash_password("CorrectHorse1!")
        second, _ = directory._hash_password("CorrectHorse1!")
        assert first != second

    def test_stored_hash_is_not_plaintext(self, credential):
        assert "CorrectHorse1!" not in credential.password_hash


class TestVerifyPassword:
    def test_correct_and_wrong_password(self, directory, credential):
        assert directory.verify_password(credential, "CorrectHorse1!") is True
        assert directory.verify_password(credential, "wrong-password") is False

    def test_unknown_credential_still_costs_a_hash(self, memory_store):
        class SpyHasher(PasswordHasher):
            def __init__(self):
                super().__init__(time_cost=1, memory_cost=8, parallelism=1)
                self.verified = []

            def verify(self, digest, password):
                self.verified.append(digest)
                return super().verify(digest, password)

        hasher = SpyHasher()
        directory = CredentialDirectory(memory_store, hasher=hasher)

        assert directory.verify_password(None, "whatever") is False
        assert hasher.verified == [directory._dummy_hash]

    def test_foreign_algorithm_is_rejected(self, directory, credential):
        credential.password_algo = "bcrypt"
        assert directory.verify_password(credential, "CorrectHorse1!") is False

    def test_corrupt_hash_is_rejected(self, directory, credential):
        credential.password_hash = "not-a-hash"
        assert directory.verify_password(credential, "CorrectHorse1!") is False


class TestDirectory:
    def test_email_lookup_is_case_insensitive(self, directory, credential):
        found = directory.find_by_email("  ALICE@Example.com ")
        assert found is not None
        assert found.id == credential.id

    def test_duplicate_email_rejected(self, directory, credential):
        with pytest.raises(ConstraintViolation):
            directory.create("alice@example.com", "SomethingElse1!")

    def test_short_password_rejected(self, directory):
        with pytest.raises(ValueError):
            directory.create("bob@example.com", "short")

    def test_change_password(self, directory, credential):
        directory.change_password(credential.id, "BatteryStaple2!")
        updated = directory.get(credential.id)
        assert directory.verify_password(updated, "BatteryStaple2!") is True
        assert directory.verify_password(updated, "CorrectHorse1!") is False

    def test_record_login(self, directory, credential, clock):
        directory.record_login(credential.id, clock.now)
        assert directory.get(credential.id).last_login_at == clock.now

    def test_default_hasher_is_argon2id(self, memory_store):
        directory = CredentialDirectory(memory_store)
        assert directory._pwd_hasher.type.name == "ID"
