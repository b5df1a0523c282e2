"""Integration tests for the HTTP surface.

Covers:
- Login, lockout and error envelopes
- Idle session expiry
- Two-factor setup, confirmation and verification
- Recovery codes, password change and logout
"""

import pytest
from argon2 import PasswordHasher
from fastapi.testclient import TestClient

from tollgate import app as app_module
from tollgate.service import codec
from tollgate.service.runtime import reset_runtime_for_tests

EMAIL = "dana@example.com"
PASSWORD = "CorrectHorse1!"


@pytest.fixture
def runtime(clock):
    rt = reset_runtime_for_tests(
        hasher=PasswordHasher(time_cost=1, memory_cost=8, parallelism=1), clock=clock
    )
    rt.directory.create(EMAIL, PASSWORD)
    return rt


@pytest.fixture
def client(runtime):
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _login(client, password=PASSWORD, email=EMAIL):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _code(secret, clock, offset=0):
    return codec.derive_code(codec.decode_base32(secret), codec.time_step(clock.now) + offset)


def _enable_two_factor(client, clock):
    token = _login(client).json()["data"]["token"]
    setup = client.post("/v1/auth/2fa/setup", headers=_auth(token)).json()["data"]
    confirm = client.post(
        "/v1/auth/2fa/confirm",
        json={"code": _code(setup["secret"], clock)},
        headers=_auth(token),
    )
    assert confirm.status_code == 200
    return setup["secret"], confirm.json()["data"]["codes"]


class TestLogin:
    def test_login_returns_token(self, client):
        response = _login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["requires_two_factor"] is False
        assert body["data"]["token"]

    def test_request_id_is_echoed(self, client):
        response = _login(client, password="wrong-password")
        assert response.headers["X-Request-ID"]
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_wrong_password(self, client):
        response = _login(client, password="wrong-password")

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "invalid_credentials"
        assert error["details"] == {"attempts_remaining": 4}

    def test_unknown_email_gives_no_attempt_count(self, client):
        response = _login(client, email="ghost@example.com")
        assert response.status_code == 401
        assert response.json()["error"]["details"] == {}

    def test_lockout_after_five_failures(self, client):
        statuses = [_login(client, password="wrong-password").status_code for _ in range(5)]
        assert statuses == [401, 401, 401, 401, 429]

        response = _login(client)

        assert response.status_code == 429
        error = response.json()["error"]
        assert error["code"] == "account_locked"
        assert error["details"]["minutes_remaining"] == 30

    def test_lockout_expires(self, client, clock):
        for _ in range(5):
            _login(client, password="wrong-password")
        clock.advance(minutes=30)
        assert _login(client).status_code == 200

    def test_malformed_email_is_a_validation_error(self, client):
        response = _login(client, email="not-an-email")

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert all("input" not in item for item in error["details"])

    def test_inactive_account(self, client, runtime):
        cred = runtime.directory.find_by_email(EMAIL)
        runtime.store.set_credential_active(cred.id, False)
        response = _login(client)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "account_inactive"


class TestSessions:
    def test_missing_token(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_non_bearer_scheme(self, client):
        response = client.get("/v1/auth/me", headers={"Authorization": "Basic abc"})
        assert response.status_code == 401

    def test_me(self, client):
        token = _login(client).json()["data"]["token"]
        response = client.get("/v1/auth/me", headers=_auth(token))
        assert response.status_code == 200
        assert response.json()["data"]["email"] == EMAIL

    def test_idle_session_expires(self, client, clock):
        token = _login(client).json()["data"]["token"]
        clock.advance(minutes=31)

        response = client.get("/v1/auth/me", headers=_auth(token))

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "session_expired"
        assert error["details"] == {"session_expired": True}

    def test_logout(self, client):
        token = _login(client).json()["data"]["token"]
        response = client.post("/v1/auth/logout", headers=_auth(token))
        assert response.json()["data"] == {"revoked": True}
        assert client.get("/v1/auth/me", headers=_auth(token)).status_code == 401

    def test_list_and_logout_everywhere(self, client):
        first = _login(client).json()["data"]["token"]
        second = _login(client).json()["data"]["token"]

        listed = client.get("/v1/auth/sessions", headers=_auth(first)).json()["data"]
        assert len(listed) == 2
        assert [s["current"] for s in listed] == [True, False]

        response = client.post("/v1/auth/logout-all", headers=_auth(second))
        assert response.json()["data"] == {"revoked": 2}
        assert client.get("/v1/auth/me", headers=_auth(first)).status_code == 401

    def test_change_password(self, client):
        token = _login(client).json()["data"]["token"]
        other = _login(client).json()["data"]["token"]

        wrong = client.post(
            "/v1/auth/password",
            json={"current_password": "nope-nope", "new_password": "BatteryStaple2!"},
            headers=_auth(token),
        )
        assert wrong.status_code == 422
        assert wrong.json()["error"]["code"] == "invalid_password"

        response = client.post(
            "/v1/auth/password",
            json={"current_password": PASSWORD, "new_password": "BatteryStaple2!"},
            headers=_auth(token),
        )
        assert response.json()["data"] == {"sessions_revoked": 1}
        assert client.get("/v1/auth/me", headers=_auth(other)).status_code == 401
        assert _login(client, password="BatteryStaple2!").status_code == 200

    def test_short_new_password_rejected(self, client):
        token = _login(client).json()["data"]["token"]
        response = client.post(
            "/v1/auth/password",
            json={"current_password": PASSWORD, "new_password": "short"},
            headers=_auth(token),
        )
        assert response.status_code == 400


class TestTwoFactor:
    def test_setup_returns_uri_and_codes(self, client):
        token = _login(client).json()["data"]["token"]
        response = client.post("/v1/auth/2fa/setup", headers=_auth(token))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["otpauth_uri"].startswith("otpauth://totp/Tollgate:dana%40example.com")
        assert len(data["recovery_codes"]) == 8
        status = client.get("/v1/auth/2fa/status", headers=_auth(token)).json()["data"]
        assert status["pending"] is True
        assert status["enabled"] is False

    def test_login_then_verify_unlocks_gated_routes(self, client, clock):
        secret, _ = _enable_two_factor(client, clock)

        login = _login(client).json()["data"]
        assert login["requires_two_factor"] is True
        token = login["token"]

        gated = client.get("/v1/auth/me", headers=_auth(token))
        assert gated.status_code == 403
        assert gated.json()["error"]["code"] == "two_factor_required"
        assert gated.json()["error"]["details"]["requires_two_factor"] is True

        verify = client.post(
            "/v1/auth/2fa/verify", json={"code": _code(secret, clock, -1)}, headers=_auth(token)
        )
        assert verify.status_code == 200
        me = client.get("/v1/auth/me", headers=_auth(token))
        assert me.status_code == 200
        assert me.json()["data"]["two_factor_enabled"] is True

    def test_wrong_code(self, client, clock):
        secret, _ = _enable_two_factor(client, clock)
        token = _login(client).json()["data"]["token"]

        response = client.post(
            "/v1/auth/2fa/verify", json={"code": _code(secret, clock, 2)}, headers=_auth(token)
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "invalid_two_factor_code"

    def test_setup_when_enabled_conflicts(self, client, clock):
        _enable_two_factor(client, clock)
        token = _login(client).json()["data"]["token"]
        response = client.post("/v1/auth/2fa/setup", headers=_auth(token))
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "already_enabled"

    def test_expired_setup(self, client, clock):
        token = _login(client).json()["data"]["token"]
        setup = client.post("/v1/auth/2fa/setup", headers=_auth(token)).json()["data"]
        clock.advance(minutes=11)
        token = _login(client).json()["data"]["token"]

        response = client.post(
            "/v1/auth/2fa/confirm", json={"code": _code(setup["secret"], clock)}, headers=_auth(token)
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "setup_expired"

    def test_recovery_code_single_use(self, client, clock):
        _, codes = _enable_two_factor(client, clock)
        token = _login(client).json()["data"]["token"]

        first = client.post("/v1/auth/2fa/verify", json={"code": codes[2]}, headers=_auth(token))
        again = client.post("/v1/auth/2fa/verify", json={"code": codes[2]}, headers=_auth(token))

        assert first.status_code == 200
        assert again.status_code == 422
        remaining = client.get("/v1/auth/2fa/recovery-codes", headers=_auth(token)).json()["data"]
        assert remaining["remaining"] == 7
        assert codes[2] not in remaining["codes"]

    def test_regenerate_and_disable(self, client, clock):
        secret, codes = _enable_two_factor(client, clock)
        token = _login(client).json()["data"]["token"]
        client.post("/v1/auth/2fa/verify", json={"code": _code(secret, clock)}, headers=_auth(token))

        regenerated = client.post(
            "/v1/auth/2fa/recovery-codes/regenerate",
            json={"password": PASSWORD},
            headers=_auth(token),
        ).json()["data"]
        assert regenerated["remaining"] == 8
        assert not set(regenerated["codes"]) & set(codes)

        disabled = client.post(
            "/v1/auth/2fa/disable", json={"password": PASSWORD}, headers=_auth(token)
        )
        assert disabled.json()["data"] == {"disabled": True}
        assert _login(client).json()["data"]["requires_two_factor"] is False


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["checks"]["store"] == "memory"
