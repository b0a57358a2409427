"""Integration tests for the authentication flow.

Covers registration, login, the profile endpoint, refresh rotation, logout,
account lockout and the internal account lookup, all through the HTTP API.
"""

import pytest

PASSWORD = "TestPassword123!"


@pytest.fixture
def test_user_email():
    return "testuser@example.com"


def _register(client, email, password=PASSWORD, display_name="Test User"):
    return client.post(
        "/v1/auth/register",
        json={"email": email, "password": password, "display_name": display_name},
    )


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegisterFlow:
    """Tests for account registration."""

    def test_register_returns_account_and_tokens(self, client, test_user_email):
        response = _register(client, test_user_email)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["account"]["email"] == test_user_email
        assert data["account"]["display_name"] == "Test User"
        assert data["account"]["role"] == "user"
        assert data["token_type"] == "bearer"
        assert data["access_token"] != data["refresh_token"]
        assert "password" not in str(data["account"])
        assert response.headers["X-Request-ID"] == body["request_id"]

    def test_register_rejects_duplicate_email(self, client, test_user_email):
        """A second registration with the same email (any case) is a conflict."""
        _register(client, test_user_email)
        response = _register(client, test_user_email.upper())

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_register_validates_email_format(self, client):
        response = _register(client, "invalid-email")

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"

    def test_register_validates_password_length(self, client, test_user_email):
        response = _register(client, test_user_email, password="short")

        assert response.status_code == 422

    def test_register_requires_display_name(self, client, test_user_email):
        response = _register(client, test_user_email, display_name="   ")

        assert response.status_code == 422


class TestLoginFlow:
    """Tests for password login and the profile endpoint."""

    def test_login_then_me(self, client, test_user_email):
        _register(client, test_user_email)
        response = client.post(
            "/v1/auth/login", json={"email": test_user_email, "password": PASSWORD}
        )

        assert response.status_code == 200
        tokens = response.json()["data"]
        me = client.get("/v1/auth/me", headers=_bearer(tokens["access_token"]))
        assert me.status_code == 200
        assert me.json()["data"]["email"] == test_user_email
        assert me.json()["data"]["last_login_at"] is not None

    def test_login_wrong_password(self, client, test_user_email):
        _register(client, test_user_email)
        response = client.post(
            "/v1/auth/login", json={"email": test_user_email, "password": "wrong-password"}
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_login_unknown_email_matches_wrong_password(self, client, test_user_email):
        """Unknown emails and wrong passwords produce the same error."""
        _register(client, test_user_email)
        wrong = client.post(
            "/v1/auth/login", json={"email": test_user_email, "password": "wrong-password"}
        )
        unknown = client.post(
            "/v1/auth/login", json={"email": "nobody@example.com", "password": PASSWORD}
        )

        assert wrong.json()["error"] == unknown.json()["error"]

    def test_lockout_after_repeated_failures(self, client, test_user_email, clock):
        """The fifth failure locks the account; the lock outlasts a correct password."""
        _register(client, test_user_email)
        bad = {"email": test_user_email, "password": "wrong-password"}
        for _ in range(4):
            assert client.post("/v1/auth/login", json=bad).json()["error"]["code"] == "unauthorized"

        locked = client.post("/v1/auth/login", json=bad)
        assert locked.status_code == 401
        assert locked.json()["error"]["code"] == "account_locked"
        assert locked.headers["Retry-After"] == "900"

        good = {"email": test_user_email, "password": PASSWORD}
        assert client.post("/v1/auth/login", json=good).json()["error"]["code"] == "account_locked"

        clock.advance(minutes=15, seconds=1)
        assert client.post("/v1/auth/login", json=good).status_code == 200

    def test_me_requires_bearer_token(self, client):
        response = client.get("/v1/auth/me")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_me_rejects_refresh_token(self, client, test_user_email):
        tokens = _register(client, test_user_email).json()["data"]
        response = client.get("/v1/auth/me", headers=_bearer(tokens["refresh_token"]))

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_invalid"

    def test_me_rejects_garbage_token(self, client):
        response = client.get("/v1/auth/me", headers=_bearer("not.a.jwt"))

        assert response.json()["error"]["code"] == "token_invalid"


class TestTokenRefresh:
    """Tests for refresh rotation and logout."""

    def test_refresh_rotates_tokens(self, client, test_user_email):
        tokens = _register(client, test_user_email).json()["data"]
        response = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})

        assert response.status_code == 200
        rotated = response.json()["data"]
        assert rotated["refresh_token"] != tokens["refresh_token"]
        assert client.get("/v1/auth/me", headers=_bearer(rotated["access_token"])).status_code == 200

    def test_refresh_token_cannot_be_reused(self, client, test_user_email):
        tokens = _register(client, test_user_email).json()["data"]
        client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        reused = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})

        assert reused.status_code == 401
        assert reused.json()["error"]["code"] == "token_invalid"

    def test_refresh_rejects_access_token(self, client, test_user_email):
        tokens = _register(client, test_user_email).json()["data"]
        response = client.post("/v1/auth/refresh", json={"refresh_token": tokens["access_token"]})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_invalid"

    def test_logout_is_idempotent(self, client, test_user_email):
        tokens = _register(client, test_user_email).json()["data"]
        body = {"refresh_token": tokens["refresh_token"]}

        first = client.post("/v1/auth/logout", json=body)
        second = client.post("/v1/auth/logout", json=body)
        assert first.status_code == second.status_code == 200
        assert first.json()["data"] == {"message": "logged out"}

        refreshed = client.post("/v1/auth/refresh", json=body)
        assert refreshed.json()["error"]["code"] == "token_invalid"


class TestInternalAccountLookup:
    """Tests for the service-to-service account endpoint."""

    def test_lookup_with_service_key(self, client, test_user_email):
        account = _register(client, test_user_email).json()["data"]["account"]
        response = client.get(
            f"/v1/internal/accounts/{account['id']}",
            headers={"X-Service-Key": "test-service-key"},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["email"] == test_user_email
        assert "updated_at" in data
        assert "password_hash" not in data

    def test_lookup_without_key_is_forbidden(self, client, test_user_email):
        account = _register(client, test_user_email).json()["data"]["account"]
        response = client.get(f"/v1/internal/accounts/{account['id']}")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_lookup_with_wrong_key_is_forbidden(self, client, test_user_email):
        account = _register(client, test_user_email).json()["data"]["account"]
        response = client.get(
            f"/v1/internal/accounts/{account['id']}",
            headers={"X-Service-Key": "nope"},
        )

        assert response.status_code == 403

    def test_lookup_unknown_account(self, client):
        response = client.get(
            "/v1/internal/accounts/3f1b6b0e-1111-4c4c-9d9d-000000000000",
            headers={"X-Service-Key": "test-service-key"},
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


class TestHealth:
    def test_health_check(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["checks"]["storage"]["status"] == "healthy"
        assert response.headers["X-Frame-Options"] == "DENY"
