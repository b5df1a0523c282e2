"""Tests for the in-memory store and its JSON snapshot."""

from datetime import timedelta

import pytest

from tollgate.storage.errors import ConstraintViolation
from tollgate.storage.memory import MemoryStore
from tollgate.storage.models import LockoutWindow, Session, TwoFactorProof, TwoFactorSecret


def test_mutator_sees_a_private_copy(memory_store):
    memory_store.update_lockout(
        "cred-1", lambda current: (LockoutWindow(credential_id="cred-1"), None)
    )

    def _explode(current):
        current.last_failed_ip = "198.51.100.1"
        raise RuntimeError("mutator failed")

    with pytest.raises(RuntimeError):
        memory_store.update_lockout("cred-1", _explode)
    assert memory_store.get_lockout("cred-1").last_failed_ip is None


def test_returning_none_deletes_record(memory_store):
    memory_store.update_lockout(
        "cred-1", lambda current: (LockoutWindow(credential_id="cred-1"), None)
    )
    result = memory_store.update_lockout("cred-1", lambda current: (None, "gone"))
    assert result == "gone"
    assert memory_store.get_lockout("cred-1") is None


def test_reads_return_copies(memory_store, credential):
    fetched = memory_store.get_credential(credential.id)
    fetched.is_active = False
    assert memory_store.get_credential(credential.id).is_active is True


def test_session_requires_known_credential(memory_store, clock):
    with pytest.raises(ConstraintViolation):
        memory_store.create_session(Session.new("tok", "missing", clock.now))


def test_update_unknown_credential_raises(memory_store):
    with pytest.raises(ConstraintViolation):
        memory_store.set_credential_active("missing", False)


def test_state_survives_restart(tmp_path, clock):
    store = MemoryStore(str(tmp_path))
    cred = store.create_credential("carol@example.com", "$argon2id$fake")
    session = Session.new("tok-1", cred.id, clock.now, user_agent="pytest")
    session.two_factor = TwoFactorProof(credential_id=cred.id, verified_at=clock.now)
    store.create_session(session)
    store.update_two_factor(
        cred.id,
        lambda current: (
            TwoFactorSecret(
                credential_id=cred.id,
                secret_blob="cipher-secret",
                recovery_blob="cipher-codes",
                confirmed_at=clock.now,
            ),
            None,
        ),
    )
    store.update_lockout(
        cred.id,
        lambda current: (
            LockoutWindow(
                credential_id=cred.id,
                failures=[clock.now, clock.now + timedelta(minutes=1)],
                last_failed_ip="203.0.113.9",
            ),
            None,
        ),
    )

    reloaded = MemoryStore(str(tmp_path))

    assert reloaded.get_credential_by_email("carol@example.com").id == cred.id
    restored = reloaded.get_session(session.key)
    assert restored.two_factor == session.two_factor
    assert restored.user_agent == "pytest"
    assert reloaded.get_two_factor(cred.id).confirmed_at == clock.now
    window = reloaded.get_lockout(cred.id)
    assert window.count == 2
    assert window.last_failed_ip == "203.0.113.9"
    assert (tmp_path / "state" / "tollgate_store.json").exists()
