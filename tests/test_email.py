"""Tests for the account-locked notification."""

import smtplib
from datetime import datetime, timezone

import pytest

from tollgate.service.email import LockoutNotifier

LOCKED_AT = datetime(2024, 1, 1, 12, 30, tzinfo=timezone.utc)


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None, context=None):
        self.host = host
        self.port = port
        self.started_tls = False
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def sendmail(self, from_addr, to_addr, message):
        self.sent.append((from_addr, to_addr, message))


@pytest.fixture(autouse=True)
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(smtplib, "SMTP_SSL", FakeSMTP)
    return FakeSMTP


def _notifier(**overrides):
    params = dict(
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="mailer",
        smtp_password="hunter2",
        from_email="security@example.com",
        base_url="https://auth.example.com",
    )
    params.update(overrides)
    return LockoutNotifier(**params)


def test_unconfigured_notifier_logs_instead_of_sending(fake_smtp):
    notifier = LockoutNotifier()
    assert notifier.is_configured is False
    assert notifier.send_account_locked("alice@example.com", locked_at=LOCKED_AT, lockout_minutes=30)
    assert fake_smtp.instances == []


def test_sends_over_starttls(fake_smtp):
    sent = _notifier().send_account_locked(
        "alice@example.com", locked_at=LOCKED_AT, lockout_minutes=30, ip_addr="203.0.113.8"
    )

    assert sent is True
    server = fake_smtp.instances[0]
    assert server.started_tls is True
    assert server.logged_in == ("mailer", "hunter2")
    from_addr, to_addr, message = server.sent[0]
    assert from_addr == "security@example.com"
    assert to_addr == "alice@example.com"
    assert "temporarily locked" in message
    assert "203.0.113.8" in message
    assert "2024-01-01 12:30:00 UTC" in message
    assert "https://auth.example.com/password/reset" in message


def test_implicit_tls_skips_starttls(fake_smtp):
    _notifier(smtp_use_tls=False, smtp_port=465).send_account_locked(
        "alice@example.com", locked_at=LOCKED_AT, lockout_minutes=30
    )
    assert fake_smtp.instances[0].started_tls is False
    assert fake_smtp.instances[0].port == 465


def test_smtp_failure_returns_false(monkeypatch):
    class BrokenSMTP(FakeSMTP):
        def sendmail(self, *args):
            raise smtplib.SMTPRecipientsRefused({})

    monkeypatch.setattr(smtplib, "SMTP", BrokenSMTP)
    assert (
        _notifier().send_account_locked("alice@example.com", locked_at=LOCKED_AT, lockout_minutes=30)
        is False
    )


def test_connection_failure_returns_false(monkeypatch):
    def refuse(*args, **kwargs):
        raise ConnectionRefusedError("connection refused")

    monkeypatch.setattr(smtplib, "SMTP", refuse)
    assert (
        _notifier().send_account_locked("alice@example.com", locked_at=LOCKED_AT, lockout_minutes=30)
        is False
    )


def test_recipient_is_redacted_for_logs():
    notifier = _notifier()
    assert notifier._redact_email("alice@example.com") == "al***@example.com"
    assert notifier._redact_email("garbage") == "redacted"
