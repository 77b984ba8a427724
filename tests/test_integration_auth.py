"""Integration tests for the HTTP auth flow.

Tests the complete flow through the FastAPI app:
- Admin registration of principals
- Login, user info and lockout
- Token refresh and replay
- Logout
- Password change and reset
"""

import pytest
from fastapi.testclient import TestClient

from crmauth import app as app_module
from crmauth.config import reset_settings_cache
from crmauth.service.runtime import get_runtime, reset_runtime_for_tests

ADMIN_LOGIN = {"login_id": "admin", "password": "AdminPassword123!"}
USER_PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _login(client, login_id, password, source="10.0.0.50"):
    return client.post(
        "/v1/auth/login",
        json={"login_id": login_id, "password": password},
        headers={"X-Forwarded-For": source},
    )


@pytest.fixture
def admin_tokens(client):
    response = _login(client, **ADMIN_LOGIN)
    assert response.status_code == 200
    return response.json()["data"]


@pytest.fixture
def registered_user(client, admin_tokens):
    response = client.post(
        "/v1/auth/register",
        json={
            "login_id": "u1",
            "email": "u1@example.com",
            "password": USER_PASSWORD,
            "full_name": "User One",
            "phone_number": "+1-555-0100",
        },
        headers=_bearer(admin_tokens["access_token"]),
    )
    assert response.status_code == 201
    return response.json()["data"]


@pytest.fixture
def trusted_proxy(monkeypatch):
    """Run behind a trusted proxy so X-Forwarded-For keys throttling."""
    monkeypatch.setenv("TRUST_FORWARDED_FOR", "true")
    reset_runtime_for_tests()


@pytest.fixture
def user_tokens(client, registered_user):
    response = _login(client, "u1", USER_PASSWORD)
    assert response.status_code == 200
    return response.json()["data"]


class TestRegistration:
    def test_admin_registers_user(self, registered_user):
        assert registered_user["login_id"] == "u1"
        assert registered_user["email"] == "u1@example.com"
        assert registered_user["roles"] == ["USER"]
        assert registered_user["tenant_id"] == "public"
        assert "password" not in registered_user
        assert "password_hash" not in registered_user

    def test_register_requires_bearer(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"login_id": "u2", "email": "u2@example.com", "password": USER_PASSWORD},
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_register_requires_admin(self, client, user_tokens):
        response = client.post(
            "/v1/auth/register",
            json={"login_id": "u2", "email": "u2@example.com", "password": USER_PASSWORD},
            headers=_bearer(user_tokens["access_token"]),
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_duplicate_login_id_conflicts(self, client, admin_tokens, registered_user):
        response = client.post(
            "/v1/auth/register",
            json={"login_id": "U1", "email": "another@example.com", "password": USER_PASSWORD},
            headers=_bearer(admin_tokens["access_token"]),
        )

        assert response.status_code == 409
        body = response.json()
        assert body["error"]["code"] == "conflict"
        assert body["error"]["details"] == {"field": "login_id"}

    @pytest.mark.parametrize(
        "payload",
        [
            {"login_id": "ab", "email": "ab@example.com", "password": USER_PASSWORD},
            {"login_id": "valid", "email": "not-an-email", "password": USER_PASSWORD},
            {"login_id": "valid", "email": "v@example.com", "password": "short"},
            {"login_id": "has space", "email": "v@example.com", "password": USER_PASSWORD},
            {"login_id": "valid", "email": "v@example.com", "password": USER_PASSWORD, "phone_number": "1" * 21},
        ],
    )
    def test_invalid_payload_rejected(self, client, admin_tokens, payload):
        response = client.post(
            "/v1/auth/register", json=payload, headers=_bearer(admin_tokens["access_token"])
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestLoginFlow:
    def test_login_and_user_info(self, client, user_tokens):
        assert user_tokens["token_type"] == "bearer"
        assert user_tokens["access_token"] != user_tokens["refresh_token"]
        assert user_tokens["principal"]["login_id"] == "u1"

        response = client.get("/v1/auth/user-info", headers=_bearer(user_tokens["access_token"]))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["login_id"] == "u1"
        assert data["full_name"] == "User One"
        assert data["last_login_at"] is not None

    def test_login_with_email(self, client, registered_user):
        response = _login(client, "u1@example.com", USER_PASSWORD)

        assert response.status_code == 200

    def test_bad_password_is_401(self, client, registered_user):
        response = _login(client, "u1", "wrong-password")

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "unauthorized",
            "message": "invalid credentials",
            "details": None,
        }
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_unknown_user_matches_bad_password(self, client, registered_user):
        wrong = _login(client, "u1", "wrong-password", source="10.0.0.60")
        unknown = _login(client, "ghost", "wrong-password", source="10.0.0.61")

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]

    def test_lockout_after_five_failures(self, trusted_proxy, client, registered_user):
        for _ in range(5):
            assert _login(client, "u1", "wrong-password", source="10.0.0.1").status_code == 401

        blocked = _login(client, "u1", USER_PASSWORD, source="10.0.0.1")
        other_source = _login(client, "u1", USER_PASSWORD, source="10.0.0.2")

        assert blocked.status_code == 401
        assert blocked.json()["error"]["message"] == "too many failed login attempts"
        assert other_source.status_code == 200

    def test_rotating_forwarded_for_does_not_escape_lockout(self, client):
        """Without a trusted proxy the peer address keys throttling, not the header."""
        for attempt in range(5):
            _login(client, "admin", "wrong-password", source=f"198.51.100.{attempt}")

        blocked = _login(client, **ADMIN_LOGIN, source="198.51.100.99")

        assert blocked.status_code == 401
        assert blocked.json()["error"]["message"] == "too many failed login attempts"

    def test_lockout_status_can_be_429(self, client, monkeypatch):
        monkeypatch.setenv("LOCKOUT_STATUS_CODE", "429")
        reset_settings_cache()
        reset_runtime_for_tests()
        for _ in range(5):
            _login(client, "admin", "wrong-password", source="10.0.0.3")

        blocked = _login(client, **ADMIN_LOGIN, source="10.0.0.3")

        assert blocked.status_code == 429
        assert blocked.json()["error"]["code"] == "rate_limited"

    def test_user_info_rejects_missing_or_bad_token(self, client):
        assert client.get("/v1/auth/user-info").status_code == 401
        assert client.get("/v1/auth/user-info", headers=_bearer("garbage")).status_code == 401
        assert (
            client.get("/v1/auth/user-info", headers={"Authorization": "Basic abc"}).status_code
            == 401
        )

    def test_refresh_token_not_accepted_as_bearer(self, client, user_tokens):
        response = client.get("/v1/auth/user-info", headers=_bearer(user_tokens["refresh_token"]))

        assert response.status_code == 401


class TestRefreshFlow:
    def test_refresh_rotates_and_rejects_replay(self, client, user_tokens):
        first = client.post(
            "/v1/auth/refresh-token", json={"refresh_token": user_tokens["refresh_token"]}
        )
        replay = client.post(
            "/v1/auth/refresh-token", json={"refresh_token": user_tokens["refresh_token"]}
        )

        assert first.status_code == 200
        assert first.json()["data"]["refresh_token"] != user_tokens["refresh_token"]
        assert replay.status_code == 401
        assert replay.json()["error"]["message"] == "invalid refresh token"

    def test_refresh_with_garbage(self, client):
        response = client.post("/v1/auth/refresh-token", json={"refresh_token": "nope"})

        assert response.status_code == 401

    def test_refresh_with_non_ascii_signature_is_401(self, client, user_tokens):
        head, payload, _ = user_tokens["refresh_token"].split(".")

        response = client.post(
            "/v1/auth/refresh-token", json={"refresh_token": f"{head}.{payload}.\u00e9"}
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestLogoutFlow:
    def test_logout_revokes_tokens(self, client, user_tokens):
        response = client.post(
            "/v1/auth/logout",
            json={"refresh_token": user_tokens["refresh_token"]},
            headers=_bearer(user_tokens["access_token"]),
        )

        assert response.status_code == 200
        assert (
            client.get("/v1/auth/user-info", headers=_bearer(user_tokens["access_token"])).status_code
            == 401
        )
        assert (
            client.post(
                "/v1/auth/refresh-token", json={"refresh_token": user_tokens["refresh_token"]}
            ).status_code
            == 401
        )

    def test_logout_twice_succeeds(self, client, user_tokens):
        headers = _bearer(user_tokens["access_token"])

        assert client.post("/v1/auth/logout", headers=headers).status_code == 200
        assert client.post("/v1/auth/logout", headers=headers).status_code == 200

    def test_logout_without_bearer_is_401(self, client):
        assert client.post("/v1/auth/logout").status_code == 401

    def test_logout_ignores_non_ascii_refresh_token(self, client, user_tokens):
        head, payload, _ = user_tokens["refresh_token"].split(".")

        response = client.post(
            "/v1/auth/logout",
            json={"refresh_token": f"{head}.{payload}.\u00e9"},
            headers=_bearer(user_tokens["access_token"]),
        )

        assert response.status_code == 200


class TestPasswordFlows:
    def test_change_password(self, client, user_tokens):
        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": USER_PASSWORD, "new_password": "NewPassword456!"},
            headers=_bearer(user_tokens["access_token"]),
        )

        assert response.status_code == 200
        assert _login(client, "u1", "NewPassword456!").status_code == 200

    def test_change_password_wrong_current(self, client, user_tokens):
        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": "wrong-password", "new_password": "NewPassword456!"},
            headers=_bearer(user_tokens["access_token"]),
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "current password is incorrect"

    def test_reset_request_does_not_reveal_accounts(self, client, registered_user):
        known = client.post("/v1/auth/password/reset-request", json={"email": "u1@example.com"})
        unknown = client.post(
            "/v1/auth/password/reset-request", json={"email": "ghost@example.com"}
        )

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_reset_password(self, client, registered_user):
        client.post("/v1/auth/password/reset-request", json={"email": "u1@example.com"})
        ticket = get_runtime().store.find_by_login_id("u1").reset_token

        response = client.post(
            "/v1/auth/password/reset",
            json={"reset_token": ticket, "new_password": "ResetPassword789!"},
        )
        reused = client.post(
            "/v1/auth/password/reset",
            json={"reset_token": ticket, "new_password": "OtherPassword000!"},
        )

        assert response.status_code == 200
        assert reused.status_code == 400
        assert _login(client, "u1", "ResetPassword789!").status_code == 200

    def test_reset_with_invalid_token(self, client, registered_user):
        before = get_runtime().store.find_by_login_id("u1").password_hash

        response = client.post(
            "/v1/auth/password/reset",
            json={"reset_token": "expired-token", "new_password": "newpass"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "invalid or expired password reset token"
        assert get_runtime().store.find_by_login_id("u1").password_hash == before


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["redis"] == {"status": "not_configured"}
        assert response.headers["Cache-Control"] == "no-store"
