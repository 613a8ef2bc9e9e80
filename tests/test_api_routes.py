"""
tests/test_api_routes.py -- Integration tests for the /api/v1/auth routes.

These tests exercise the full stack: FastAPI routing -> auth dependency
injection -> AuthService -> stores -> response model serialization and the
error envelope.

Fixtures used (from conftest.py):
  - api_client: (client, service, user) -- user "apiuser" (role author),
    password user_password, app passwords enabled.

Most tests mint tokens through the service directly: POST /login is
rate-limited per IP by slowapi and only a few tests go through it.
"""

from __future__ import annotations

import base64
import time

from auth.lifecycle import TokenLifecycleManager
from core.clock import FrozenClock
from core.config import Settings


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _fresh_headers(service, user) -> dict[str, str]:
    return _bearer(service.issue_tokens(user.id).access_token)


class TestLogin:
    def test_login_success(self, api_client, user_password) -> None:
        client, _service, _user = api_client
        resp = client.post("/api/v1/auth/login", json={"username": "apiuser", "password": user_password})
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["token_type"] == "Bearer"
        assert data["expires_in"] == 3600
        assert data["access_token"] and data["refresh_token"]
        assert resp.headers["Cache-Control"] == "no-store"

    def test_login_bad_password(self, api_client) -> None:
        client, _service, _user = api_client
        resp = client.post("/api/v1/auth/login", json={"username": "apiuser", "password": "wrong"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "auth_invalid"
        assert "WWW-Authenticate" in resp.headers

    def test_login_unknown_user_same_error(self, api_client) -> None:
        client, _service, _user = api_client
        resp = client.post("/api/v1/auth/login", json={"username": "ghost", "password": "wrong"})
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Invalid username or password."

    def test_password_with_surrounding_spaces(self, api_client, add_user) -> None:
        client, service, _user = api_client
        add_user(service, "padded", ["subscriber"], password="  padded password  ")
        resp = client.post(
            "/api/v1/auth/login",
            json={"username": " padded ", "password": "  padded password  "},
        )
        assert resp.status_code == 200, resp.text

        resp = client.post("/api/v1/auth/login", json={"username": "padded", "password": "padded password"})
        assert resp.status_code == 401

    def test_password_over_limit_is_422(self, api_client) -> None:
        client, _service, _user = api_client
        resp = client.post("/api/v1/auth/login", json={"username": "apiuser", "password": "x" * 65})
        assert resp.status_code == 422

    def test_login_validation_error(self, api_client) -> None:
        client, _service, _user = api_client
        resp = client.post("/api/v1/auth/login", json={"username": ""})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestMissingAndInvalid:
    def test_me_without_credentials(self, api_client) -> None:
        client, _service, _user = api_client
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "auth_missing"
        challenge = resp.headers["WWW-Authenticate"]
        assert "Bearer" in challenge and "Basic" in challenge

    def test_me_with_garbage_bearer(self, api_client) -> None:
        client, _service, _user = api_client
        resp = client.get("/api/v1/auth/me", headers=_bearer("a.b.c"))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "auth_invalid"
        assert resp.headers["WWW-Authenticate"].startswith("Bearer ")


class TestTokens:
    def test_me_and_verify(self, api_client) -> None:
        client, service, user = api_client
        headers = _fresh_headers(service, user)
        resp = client.get("/api/v1/auth/me", headers=headers)
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["user_id"] == user.id
        assert data["roles"] == ["author"]
        assert data["method"] == "jwt"
        assert data["session_id"]
        assert "X-RateLimit-Limit" in resp.headers

        resp = client.get("/api/v1/auth/verify", headers=headers)
        assert resp.json() == {"valid": True, "user_id": user.id, "method": "jwt"}

    def test_refresh_rotates(self, api_client) -> None:
        client, service, user = api_client
        pair = service.issue_tokens(user.id)
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": pair.refresh_token})
        assert resp.status_code == 200, resp.text
        rotated = resp.json()
        assert rotated["refresh_token"] != pair.refresh_token
        assert client.get("/api/v1/auth/me", headers=_bearer(rotated["access_token"])).status_code == 200

    def test_refresh_with_access_token_rejected(self, api_client) -> None:
        client, service, user = api_client
        pair = service.issue_tokens(user.id)
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": pair.access_token})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "auth_invalid"

    def test_logout_revokes_session(self, api_client) -> None:
        client, service, user = api_client
        pair = service.issue_tokens(user.id)
        resp = client.post("/api/v1/auth/logout", headers=_bearer(pair.access_token))
        assert resp.status_code == 200
        assert resp.json() == {"revoked": 2}

        resp = client.get("/api/v1/auth/me", headers=_bearer(pair.access_token))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "auth_revoked"
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": pair.refresh_token})
        assert resp.json()["error"]["code"] == "auth_revoked"


class TestApiKeyRoutes:
    def test_create_use_list_revoke(self, api_client) -> None:
        client, service, user = api_client
        headers = _fresh_headers(service, user)

        resp = client.post("/api/v1/auth/api-keys", json={"name": "ci", "scopes": ["read"]}, headers=headers)
        assert resp.status_code == 201, resp.text
        created = resp.json()
        raw = created["key"]
        assert raw.startswith("wack_")
        assert created["key_prefix"] == raw[:12]
        assert resp.headers["Cache-Control"] == "no-store"

        resp = client.get("/api/v1/auth/me", headers={"X-API-Key": raw})
        assert resp.status_code == 200
        assert resp.json()["method"] == "api_key"
        assert resp.json()["scopes"] == ["read"]

        resp = client.get("/api/v1/auth/verify", params={"api_key": raw})
        assert resp.status_code == 200

        listed = client.get("/api/v1/auth/api-keys", headers=headers).json()
        assert created["id"] in [k["id"] for k in listed]
        assert all("key" not in k for k in listed)

        resp = client.delete(f"/api/v1/auth/api-keys/{created['id']}", headers=headers)
        assert resp.status_code == 204

        resp = client.get("/api/v1/auth/me", headers={"X-API-Key": raw})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "auth_revoked"

    def test_revoke_unknown_key_404(self, api_client) -> None:
        client, service, user = api_client
        resp = client.delete("/api/v1/auth/api-keys/999999", headers=_fresh_headers(service, user))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_invalid_scope_is_422(self, api_client) -> None:
        client, service, user = api_client
        resp = client.post(
            "/api/v1/auth/api-keys",
            json={"name": "bad", "scopes": ["not a scope"]},
            headers=_fresh_headers(service, user),
        )
        assert resp.status_code == 422
        assert "scopes" in resp.json()["error"]["detail"]

    def test_stale_lease_cannot_create_keys(self, api_client) -> None:
        client, service, user = api_client
        past = TokenLifecycleManager(
            service.settings,
            service.tokens,
            service.users,
            service.codec,
            FrozenClock(time.time() - service.settings.jwt.lease_ttl - 60),
        )
        stale = past.issue_tokens(user.id)
        headers = _bearer(stale.access_token)

        assert client.get("/api/v1/auth/me", headers=headers).status_code == 200
        resp = client.post("/api/v1/auth/api-keys", json={"name": "late"}, headers=headers)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "auth_expired"


class TestAppPasswordRoutes:
    def test_create_and_use_app_password(self, api_client) -> None:
        client, service, user = api_client
        headers = _fresh_headers(service, user)
        resp = client.post("/api/v1/auth/app-passwords", json={"name": "mail"}, headers=headers)
        assert resp.status_code == 201, resp.text
        created = resp.json()

        basic = base64.b64encode(f"apiuser:{created['password']}".encode()).decode()
        resp = client.get("/api/v1/auth/me", headers={"Authorization": f"Basic {basic}"})
        assert resp.status_code == 200
        assert resp.json()["method"] == "app_password"

        resp = client.delete(f"/api/v1/auth/app-passwords/{created['id']}", headers=headers)
        assert resp.status_code == 204
        resp = client.get("/api/v1/auth/me", headers={"Authorization": f"Basic {basic}"})
        assert resp.status_code == 401


class TestAuthorizeRoute:
    def test_owner_may_update(self, api_client) -> None:
        client, service, user = api_client
        resp = client.post(
            "/api/v1/auth/authorize",
            json={"action": "update", "resource_owner_id": user.id},
            headers=_fresh_headers(service, user),
        )
        assert resp.status_code == 200
        assert resp.json()["allowed"] is True

    def test_non_owner_forbidden(self, api_client) -> None:
        client, service, user = api_client
        resp = client.post(
            "/api/v1/auth/authorize",
            json={"action": "update", "resource_owner_id": user.id + 1000},
            headers=_fresh_headers(service, user),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_missing_auth_short_circuits_before_policy(self, api_client) -> None:
        client, _service, _user = api_client
        resp = client.post("/api/v1/auth/authorize", json={"action": "read"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "auth_missing"


class TestSessionListing:
    def test_lists_live_sessions_and_marks_current(self, api_client) -> None:
        client, service, user = api_client
        other = service.issue_tokens(user.id)
        mine = service.issue_tokens(user.id)
        resp = client.get("/api/v1/auth/sessions", headers=_bearer(mine.access_token))
        assert resp.status_code == 200
        sessions = {s["session_id"]: s for s in resp.json()}
        assert sessions[mine.access.session_id]["current"] is True
        assert sessions[other.access.session_id]["current"] is False

        client.post("/api/v1/auth/logout", headers=_bearer(other.access_token))
        listed = client.get("/api/v1/auth/sessions", headers=_bearer(mine.access_token)).json()
        assert other.access.session_id not in [s["session_id"] for s in listed]


class TestTrustedHosts:
    def test_unknown_host_rejected(self, api_client) -> None:
        client, _service, _user = api_client
        resp = client.get("/api/v1/health", headers={"Host": "evil.example"})
        assert resp.status_code == 400

    def test_default_hosts_exclude_test_client(self) -> None:
        assert "testserver" not in Settings.model_fields["allowed_hosts"].default_factory()


class TestRevokeAllSessions:
    def test_revoke_all(self, api_client) -> None:
        client, service, user = api_client
        other = service.issue_tokens(user.id)
        resp = client.delete("/api/v1/auth/sessions", headers=_fresh_headers(service, user))
        assert resp.status_code == 200
        assert resp.json()["revoked"] >= 4
        assert client.get("/api/v1/auth/me", headers=_bearer(other.access_token)).status_code == 401
