"""Tests for the operator credential script."""

from scripts import manage_credentials
from tollgate.service.runtime import get_runtime


def test_create_then_exists(capsys):
    assert manage_credentials.main(
        ["create", "--email", "Ops@Example.com", "--password", "S3cure-pass"]
    ) == 0
    assert get_runtime().directory.find_by_email("ops@example.com") is not None

    result = manage_credentials.create_credential("ops@example.com", "S3cure-pass")
    assert result["status"] == "exists"


def test_create_dry_run_changes_nothing():
    assert manage_credentials.main(
        ["--dry-run", "create", "--email", "ops@example.com", "--password", "S3cure-pass"]
    ) == 0
    assert get_runtime().directory.find_by_email("ops@example.com") is None


def test_create_rejects_short_password(capsys):
    assert manage_credentials.main(["create", "--email", "ops@example.com", "--password", "x"]) == 1
    assert "at least" in capsys.readouterr().out


def test_unlock_clears_lockout():
    runtime = get_runtime()
    cred = runtime.directory.create("ops@example.com", "S3cure-pass")
    for _ in range(5):
        runtime.lockout.record_failure(cred.id)

    assert manage_credentials.unlock_credential("ops@example.com", dry_run=True)["status"] == "dry_run"
    assert runtime.lockout.check_locked(cred.id).locked is True

    assert manage_credentials.main(["unlock", "--email", "ops@example.com"]) == 0
    assert runtime.lockout.check_locked(cred.id).locked is False


def test_revoke_sessions_and_deactivate():
    runtime = get_runtime()
    cred = runtime.directory.create("ops@example.com", "S3cure-pass")
    runtime.sessions.create(cred.id, "tok-1")
    runtime.sessions.create(cred.id, "tok-2")

    result = manage_credentials.revoke_sessions("ops@example.com")
    assert result["revoked"] == 2

    runtime.sessions.create(cred.id, "tok-3")
    result = manage_credentials.deactivate_credential("ops@example.com")
    assert result == {"credential_id": cred.id, "status": "deactivated", "revoked": 1}
    assert runtime.directory.get(cred.id).is_active is False


def test_unknown_email(capsys):
    assert manage_credentials.main(["unlock", "--email", "ghost@example.com"]) == 1
    assert "no credential" in capsys.readouterr().out
