"""HTTP-level tests for the auth API."""

import time

import jwt
import pytest
from fastapi.testclient import TestClient

from forkauth import app as app_module
from forkauth.service.runtime import get_runtime
from forkauth.storage.common import token_digest

PASSWORD = "correct-horse-battery"
ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "admin-password-123"


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def admin_headers(client):
    runtime = get_runtime()
    account = runtime.store.create_account(ADMIN_EMAIL, role="admin")
    runtime.passwords.set_password(account.id, ADMIN_PASSWORD)
    response = client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert response.status_code == 200
    return _bearer(response.json()["data"]["access_token"])


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _register(client, email="eater@example.com", **extra):
    response = client.post("/api/auth/register", json={"email": email, "password": PASSWORD, **extra})
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _error(response):
    body = response.json()
    assert body["status"] == "error"
    return body["error"]


class TestRegisterAndLogin:
    def test_register(self, client):
        response = client.post(
            "/api/auth/register",
            json={"email": "Eater@Example.com", "password": PASSWORD, "first_name": "Ada"},
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["user"]["email"] == "eater@example.com"
        assert data["user"]["role"] == "customer"
        assert "order:create" in data["user"]["permissions"]
        assert data["access_token"] and data["refresh_token"]
        assert data["token_type"] == "Bearer"

    def test_auth_cookies_are_http_only(self, client):
        response = client.post("/api/auth/register", json={"email": "c@example.com", "password": PASSWORD})
        cookies = response.headers.get_list("set-cookie")
        access = next(c for c in cookies if c.startswith("accessToken="))
        refresh = next(c for c in cookies if c.startswith("refreshToken="))
        assert "HttpOnly" in access
        assert "HttpOnly" in refresh
        assert "Path=/api/auth/refresh" in refresh
        assert "Secure" not in refresh

    def test_register_invalid_email(self, client):
        response = client.post("/api/auth/register", json={"email": "nope", "password": PASSWORD})
        assert response.status_code == 400
        assert _error(response)["code"] == "validation_error"

    def test_register_admin_role_refused(self, client):
        response = client.post(
            "/api/auth/register",
            json={"email": "x@example.com", "password": PASSWORD, "role": "admin"},
        )
        assert response.status_code == 400

    def test_register_duplicate(self, client):
        _register(client)
        response = client.post("/api/auth/register", json={"email": "eater@example.com", "password": PASSWORD})
        assert response.status_code == 409
        assert _error(response)["code"] == "conflict"

    def test_login(self, client):
        _register(client)
        response = client.post("/api/auth/login", json={"email": "eater@example.com", "password": PASSWORD})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["email"] == "eater@example.com"
        assert data["expires_in"] > 0

    def test_login_failures_share_message(self, client):
        _register(client)
        wrong = client.post("/api/auth/login", json={"email": "eater@example.com", "password": "bad-password"})
        unknown = client.post("/api/auth/login", json={"email": "ghost@example.com", "password": PASSWORD})
        assert wrong.status_code == unknown.status_code == 401
        assert _error(wrong) == _error(unknown)
        assert _error(wrong)["message"] == "Invalid credentials"

    def test_deactivated_account(self, client, admin_headers):
        """A deactivated account with the right password is told why login failed."""
        user = _register(client)
        response = client.put(
            f"/api/admin/users/{user['user']['id']}/status",
            json={"is_active": False},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["is_active"] is False

        response = client.post("/api/auth/login", json={"email": "eater@example.com", "password": PASSWORD})
        assert response.status_code == 401
        error = _error(response)
        assert error["code"] == "account_inactive"
        assert error["message"] == "Your account has been deactivated"

        response = client.get("/api/auth/me", headers=_bearer(user["access_token"]))
        assert response.status_code == 401
        assert _error(response)["code"] == "account_invalid"


class TestSessionLifecycle:
    def test_me_without_token(self):
        response = TestClient(app_module.app).get("/api/auth/me")
        assert response.status_code == 401
        assert _error(response)["code"] == "no_token"

    def test_me_with_bearer(self, client):
        user = _register(client)
        response = client.get("/api/auth/me", headers=_bearer(user["access_token"]))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["type"] == "user"
        assert data["user"]["id"] == user["user"]["id"]

    def test_me_with_cookie(self, client):
        _register(client)
        response = client.get("/api/auth/me")
        assert response.status_code == 200

    def test_malformed_bearer(self, client):
        response = TestClient(app_module.app).get("/api/auth/me", headers=_bearer("abc"))
        assert response.status_code == 401
        assert _error(response)["code"] == "invalid_token"

    def test_refresh_rotates(self, client):
        user = _register(client)
        response = client.post(
            "/api/auth/refresh",
            json={"refresh_token": user["refresh_token"], "old_access_token": user["access_token"]},
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["refresh_token"] != user["refresh_token"]

        replay = client.post("/api/auth/refresh", json={"refresh_token": user["refresh_token"]})
        assert replay.status_code == 401
        assert _error(replay)["code"] == "invalid_refresh_token"

        old = client.get("/api/auth/me", headers=_bearer(user["access_token"]))
        assert _error(old)["code"] == "token_revoked"

    def test_logout(self, client):
        user = _register(client)
        response = client.post(
            "/api/auth/logout",
            json={"refresh_token": user["refresh_token"]},
            headers=_bearer(user["access_token"]),
        )
        assert response.status_code == 200

        me = client.get("/api/auth/me", headers=_bearer(user["access_token"]))
        assert me.status_code == 401
        assert _error(me)["code"] == "token_revoked"
        refresh = client.post("/api/auth/refresh", json={"refresh_token": user["refresh_token"]})
        assert refresh.status_code == 401

    def test_logout_without_tokens(self):
        response = TestClient(app_module.app).post("/api/auth/logout")
        assert response.status_code == 200

    def test_logout_with_forged_expiry(self):
        forged = jwt.encode({"exp": 253402300000}, "not-the-secret", algorithm="HS256")
        response = TestClient(app_module.app).post("/api/auth/logout", headers=_bearer(forged))
        assert response.status_code == 200

        revocations = get_runtime().revocations
        deadline = revocations.local._entries[token_digest(forged)]
        assert deadline - time.monotonic() <= revocations.max_ttl

    def test_revoke_all(self, client):
        user = _register(client)
        response = client.post("/api/auth/revoke-all", headers=_bearer(user["access_token"]))
        assert response.status_code == 200
        assert response.json()["data"]["sessions_revoked"] == 1
        refresh = client.post("/api/auth/refresh", json={"refresh_token": user["refresh_token"]})
        assert refresh.status_code == 401

    def test_change_password(self, client):
        user = _register(client)
        response = client.put(
            "/api/auth/password",
            json={"current_password": PASSWORD, "new_password": "another-password-1"},
            headers=_bearer(user["access_token"]),
        )
        assert response.status_code == 200
        login = client.post(
            "/api/auth/login", json={"email": "eater@example.com", "password": "another-password-1"}
        )
        assert login.status_code == 200


class TestAdminProvisioning:
    def test_provisioned_account_changes_password(self, client, admin_headers):
        response = client.post(
            "/api/admin/users",
            json={"email": "courier@example.com", "role": "delivery-personnel"},
            headers=admin_headers,
        )
        assert response.status_code == 201
        temp_password = response.json()["data"]["temporary_password"]

        login = client.post(
            "/api/auth/login", json={"email": "courier@example.com", "password": temp_password}
        )
        assert login.status_code == 200
        pending = login.json()["data"]
        assert pending["password_change_required"] is True
        assert pending["access_token"] is None

        changed = client.post(
            "/api/auth/change-password",
            json={
                "email": "courier@example.com",
                "current_password": temp_password,
                "new_password": "courier-password-1",
            },
        )
        assert changed.status_code == 200
        assert changed.json()["data"]["access_token"]

    def test_admin_endpoints_need_admin(self, client):
        user = _register(client)
        response = client.get("/api/admin/users", headers=_bearer(user["access_token"]))
        assert response.status_code == 403
        assert _error(response)["code"] == "insufficient_permission"

    def test_list_get_and_delete(self, client, admin_headers):
        user = _register(client)
        listing = client.get("/api/admin/users", params={"role": "customer"}, headers=admin_headers)
        assert [u["email"] for u in listing.json()["data"]["items"]] == ["eater@example.com"]

        user_id = user["user"]["id"]
        assert client.get(f"/api/admin/users/{user_id}", headers=admin_headers).status_code == 200
        assert client.delete(f"/api/admin/users/{user_id}", headers=admin_headers).status_code == 200
        missing = client.get(f"/api/admin/users/{user_id}", headers=admin_headers)
        assert missing.status_code == 404
        assert _error(missing)["code"] == "not_found"

    def test_permission_overrides(self, client, admin_headers):
        user = _register(client)
        response = client.put(
            f"/api/admin/users/{user['user']['id']}/permissions",
            json={"permissions": ["payment:refund"]},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert "payment:refund" in response.json()["data"]["permissions"]

        bad = client.put(
            f"/api/admin/users/{user['user']['id']}/permissions",
            json={"permissions": ["root:all"]},
            headers=admin_headers,
        )
        assert bad.status_code == 400

    def test_reset_password(self, client, admin_headers):
        user = _register(client)
        response = client.put(
            f"/api/admin/users/{user['user']['id']}/reset-password",
            json={},
            headers=admin_headers,
        )
        assert response.status_code == 200
        temp = response.json()["data"]["temporary_password"]
        login = client.post("/api/auth/login", json={"email": "eater@example.com", "password": temp})
        assert login.json()["data"]["password_change_required"] is True


class TestServiceAccounts:
    def _create(self, client, headers, **body):
        payload = {"name": "orders", "service_name": "order-service", **body}
        return client.post("/api/services/accounts", json=payload, headers=headers)

    def test_client_credentials_flow(self, client, admin_headers):
        created = self._create(client, admin_headers)
        assert created.status_code == 201
        data = created.json()["data"]
        client_id = data["service_account"]["client_id"]
        secret = data["client_secret"]

        auth = client.post(
            "/api/services/authenticate", json={"client_id": client_id, "client_secret": secret}
        )
        assert auth.status_code == 200
        token = auth.json()["data"]["access_token"]
        assert auth.json()["data"]["service"]["service_name"] == "order-service"

        valid = client.post(
            "/api/services/validate", json={"token": token}, headers=_bearer(token)
        )
        assert valid.status_code == 200
        assert valid.json()["data"]["client_id"] == client_id

        me = client.get("/api/auth/me", headers=_bearer(token))
        assert me.json()["data"]["type"] == "service"

        # a service may revoke its own token
        revoked = client.post("/api/services/revoke", json={"token": token}, headers=_bearer(token))
        assert revoked.status_code == 200
        after = client.post(
            "/api/services/validate", json={"token": token}, headers=_bearer(token)
        )
        assert after.status_code == 401
        assert _error(after)["code"] == "token_revoked"

    def test_bad_secret(self, client, admin_headers):
        data = self._create(client, admin_headers).json()["data"]
        response = client.post(
            "/api/services/authenticate",
            json={"client_id": data["service_account"]["client_id"], "client_secret": "wrong"},
        )
        assert response.status_code == 401
        assert _error(response)["code"] == "invalid_credentials"

    def test_foreign_scopes_rejected(self, client, admin_headers):
        response = self._create(client, admin_headers, scopes=["payment-service:admin"])
        assert response.status_code == 400
        error = _error(response)
        assert error["code"] == "invalid_scopes"
        assert error["details"]["invalid_scopes"] == ["payment-service:admin"]

    def test_customer_cannot_manage(self, client):
        user = _register(client)
        response = self._create(client, _bearer(user["access_token"]))
        assert response.status_code == 403

    def test_regenerate_and_delete(self, client, admin_headers):
        data = self._create(client, admin_headers).json()["data"]
        account_id = data["service_account"]["id"]

        regenerated = client.post(
            f"/api/services/accounts/{account_id}/regenerate-secret", headers=admin_headers
        )
        assert regenerated.status_code == 200
        assert regenerated.json()["data"]["client_secret"] != data["client_secret"]

        old = client.post(
            "/api/services/authenticate",
            json={
                "client_id": data["service_account"]["client_id"],
                "client_secret": data["client_secret"],
            },
        )
        assert old.status_code == 401

        updated = client.put(
            f"/api/services/accounts/{account_id}",
            json={"scopes": ["order-service:read"], "description": "read only"},
            headers=admin_headers,
        )
        assert updated.json()["data"]["scopes"] == ["order-service:read"]

        listing = client.get("/api/services/accounts", headers=admin_headers)
        assert listing.json()["data"]["count"] == 1
        assert client.delete(f"/api/services/accounts/{account_id}", headers=admin_headers).status_code == 200
        assert client.get(f"/api/services/accounts/{account_id}", headers=admin_headers).status_code == 404

    def _service_token(self, client, headers, **body):
        data = self._create(client, headers, **body).json()["data"]
        auth = client.post(
            "/api/services/authenticate",
            json={
                "client_id": data["service_account"]["client_id"],
                "client_secret": data["client_secret"],
            },
        )
        return auth.json()["data"]["access_token"]

    def test_service_token_cannot_administer(self, client, admin_headers):
        """Default scopes include <service>:admin, which grants nothing over people."""
        token = self._service_token(
            client, admin_headers, name="restaurants", service_name="restaurant-service"
        )
        headers = _bearer(token)

        provision = client.post(
            "/api/admin/users", json={"email": "boss@example.com", "role": "admin"}, headers=headers
        )
        assert provision.status_code == 403
        assert client.get("/api/admin/users", headers=headers).status_code == 403

        gateway = self._create(
            client, headers, name="gateway", service_name="api-gateway"
        )
        assert gateway.status_code == 403
        assert client.get("/api/services/accounts", headers=headers).status_code == 403

    def test_validate_requires_caller(self, client, admin_headers):
        token = self._service_token(client, admin_headers)
        # fresh client: the admin login left an access cookie on this one
        response = TestClient(app_module.app).post("/api/services/validate", json={"token": token})
        assert response.status_code == 401
        assert _error(response)["code"] == "no_token"

    def test_user_cannot_revoke_service_tokens(self, client):
        user = _register(client)
        response = client.post(
            "/api/services/revoke", json={"token": "x"}, headers=_bearer(user["access_token"])
        )
        assert response.status_code == 403


class TestTokenUtilities:
    def test_validate_user_token(self, client):
        user = _register(client)
        response = client.post("/api/token/validate", json={"token": user["access_token"]})
        assert response.status_code == 200
        assert response.json()["data"]["user"]["id"] == user["user"]["id"]

    def test_introspect(self, client):
        user = _register(client)
        response = client.post("/api/token/introspect", json={"token": user["access_token"]})
        data = response.json()["data"]
        assert data["verified"] is False
        assert data["claims"]["sub"] == user["user"]["id"]

    def test_introspect_garbage(self, client):
        response = client.post("/api/token/introspect", json={"token": "garbage"})
        assert response.status_code == 401
        assert _error(response)["code"] == "invalid_token"


class TestAppSurface:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["redis"]["status"] == "not_configured"

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/api/nope")
        assert response.status_code == 404
        assert _error(response)["code"] == "not_found"
