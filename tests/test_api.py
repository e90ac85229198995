"""Integration tests for the HTTP surface.

Tests for:
- The six provisioning functions and their ``{error}`` failures
- The credential rpc and profile routes
- API key gate, CORS and correlation headers
"""

import pytest
from fastapi.testclient import TestClient

from classportal import app as app_module
from classportal.service.runtime import get_runtime, reset_runtime_for_tests
from classportal.storage.models import Role, TokenKind


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def admin():
    return get_runtime().store.create_profile(
        "admin@example.com", "Ada Admin", Role.ADMIN, password="adminpw"
    )


def _invite(client, email="a@b.com", full_name="A B", role="student", **extra):
    response = client.post(
        "/functions/send-invitation",
        json={"email": email, "full_name": full_name, "role": role, **extra},
    )
    assert response.status_code == 200, response.text
    return response.json()["token"]


class TestInvitationFunctions:
    def test_full_invitation_flow(self, client, admin):
        token = _invite(client, created_by=admin.id)

        response = client.post("/functions/validate-invitation-token", json={"token": token})
        assert response.status_code == 200
        assert response.json() == {
            "valid": True,
            "email": "a@b.com",
            "full_name": "A B",
            "role": "student",
        }

        response = client.post(
            "/functions/complete-invitation",
            json={"token": token, "password": "secret1"},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Account created successfully"

        rows = client.post(
            "/rpc/authenticate", json={"email": "a@b.com", "password": "secret1"}
        ).json()
        assert len(rows) == 1
        assert rows[0]["user_id"] == body["user_id"]
        assert rows[0]["role"] == "student"

    def test_body_copies_do_not_override_token_data(self, client):
        token = _invite(client, role="student")

        response = client.post(
            "/functions/complete-invitation",
            json={
                "token": token,
                "password": "secret1",
                "email": "other@b.com",
                "full_name": "Someone Else",
                "role": "admin",
            },
        )
        assert response.status_code == 200

        profile = get_runtime().store.get_profile(response.json()["user_id"])
        assert profile.email == "a@b.com"
        assert profile.full_name == "A B"
        assert profile.role is Role.STUDENT

    def test_reused_invitation_is_400(self, client):
        token = _invite(client)
        client.post("/functions/complete-invitation", json={"token": token, "password": "secret1"})

        response = client.post(
            "/functions/complete-invitation", json={"token": token, "password": "secret2"}
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid or expired token"}

    def test_unknown_token_validates_false(self, client):
        response = client.post("/functions/validate-invitation-token", json={"token": "nope"})
        assert response.status_code == 200
        assert response.json() == {"valid": False}

    def test_invalid_role_is_400(self, client):
        response = client.post(
            "/functions/send-invitation",
            json={"email": "a@b.com", "full_name": "A B", "role": "owner"},
        )
        assert response.status_code == 400
        assert "error" in response.json()

    def test_short_password_is_400(self, client):
        token = _invite(client)
        response = client.post(
            "/functions/complete-invitation", json={"token": token, "password": "12345"}
        )
        assert response.status_code == 400
        assert "at least 6 characters" in response.json()["error"]
        # rejected before the token was touched
        assert get_runtime().store.get_token(TokenKind.INVITATION, token).used is False

    def test_duplicate_email_is_400(self, client, admin):
        token = _invite(client, email="admin@example.com")
        response = client.post(
            "/functions/complete-invitation", json={"token": token, "password": "secret1"}
        )
        assert response.status_code == 400
        assert response.json() == {"error": "email already exists"}


class TestResetFunctions:
    def test_full_reset_flow(self, client, admin):
        response = client.post("/functions/forgot-password", json={"email": "admin@example.com"})
        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "message": "Password reset email sent successfully",
        }
        token = next(iter(get_runtime().store.tokens[TokenKind.RESET]))

        response = client.post("/functions/validate-reset-token", json={"token": token})
        assert response.json() == {"valid": True, "email": "admin@example.com"}

        response = client.post(
            "/functions/reset-password", json={"token": token, "password": "newpass1"}
        )
        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Password reset successfully"}

        rows = client.post(
            "/rpc/authenticate", json={"email": "admin@example.com", "password": "newpass1"}
        ).json()
        assert len(rows) == 1

    def test_forgot_password_for_unknown_email_still_succeeds(self, client):
        response = client.post("/functions/forgot-password", json={"email": "ghost@example.com"})
        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_malformed_email_is_400(self, client):
        response = client.post("/functions/forgot-password", json={"email": "not-an-email"})
        assert response.status_code == 400
        assert "email" in response.json()["error"]

    def test_missing_body_field_is_400(self, client):
        response = client.post("/functions/reset-password", json={"token": "abc"})
        assert response.status_code == 400
        assert "password" in response.json()["error"]

    def test_email_failure_is_400_error(self, client, monkeypatch):
        monkeypatch.setenv("EMAIL_DEV_MODE", "false")
        reset_runtime_for_tests()

        response = client.post("/functions/forgot-password", json={"email": "a@b.com"})
        assert response.status_code == 400
        assert response.json() == {"error": "EMAIL_API_KEY is not set"}

    def test_unexpected_failure_keeps_cors_and_request_id(self, monkeypatch):
        def broken_lookup(email):
            raise RuntimeError("profile lookup unavailable")

        monkeypatch.setattr(get_runtime().store, "get_profile_by_email", broken_lookup)
        client = TestClient(app_module.app, raise_server_exceptions=False)

        response = client.post(
            "/functions/forgot-password",
            json={"email": "a@b.com"},
            headers={"Origin": "https://classroom.example.com", "X-Request-ID": "rid-1"},
        )
        assert response.status_code == 400
        assert response.json() == {"error": "profile lookup unavailable"}
        assert response.headers["access-control-allow-origin"] == "*"
        assert response.headers["x-request-id"] == "rid-1"


class TestCredentialRoutes:
    def test_wrong_password_returns_empty_list(self, client, admin):
        response = client.post(
            "/rpc/authenticate", json={"email": "admin@example.com", "password": "nope"}
        )
        assert response.status_code == 200
        assert response.json() == []

    def test_logout_revokes_session(self, client, admin):
        row = client.post(
            "/rpc/authenticate", json={"email": "admin@example.com", "password": "adminpw"}
        ).json()[0]
        assert row["token"] in get_runtime().store.sessions

        response = client.post("/rpc/logout", json={"token": row["token"]})
        assert response.status_code == 200
        assert row["token"] not in get_runtime().store.sessions

    def test_get_profile(self, client, admin):
        response = client.get(f"/profiles/{admin.id}")
        assert response.status_code == 200
        assert response.json()["email"] == "admin@example.com"
        assert response.json()["role"] == "admin"

    def test_missing_profile_is_404(self, client):
        response = client.get("/profiles/unknown")
        assert response.status_code == 404
        assert response.json() == {"error": "Profile not found"}


class TestBoundary:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_correlation_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_cors_preflight_allows_client_headers(self, client):
        response = client.options(
            "/functions/forgot-password",
            headers={
                "Origin": "https://classroom.example.com",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "apikey, content-type",
            },
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
        allowed = response.headers["access-control-allow-headers"].lower()
        assert "apikey" in allowed

    def test_api_key_gate(self, client, monkeypatch):
        monkeypatch.setenv("BACKEND_PUBLIC_KEY", "pub-key")
        monkeypatch.setenv("SERVICE_ROLE_KEY", "service-key")
        reset_runtime_for_tests()

        response = client.post("/functions/validate-reset-token", json={"token": "x"})
        assert response.status_code == 401
        assert response.json() == {"error": "Invalid API key"}

        response = client.post(
            "/functions/validate-reset-token",
            json={"token": "x"},
            headers={"Authorization": "Bearer wrong"},
        )
        assert response.status_code == 401

        response = client.post(
            "/functions/validate-reset-token",
            json={"token": "x"},
            headers={"apikey": "pub-key"},
        )
        assert response.status_code == 200

        response = client.post(
            "/functions/validate-reset-token",
            json={"token": "x"},
            headers={"Authorization": "Bearer service-key"},
        )
        assert response.status_code == 200

        assert client.get("/health").status_code == 200
