"""Integration tests for the refresh token HTTP surface.

Tests the complete flow including:
- Token refresh and rotation
- Reuse detection over HTTP
- Logout and logout-all
- Session listing and per-session revocation
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from tokenward import app as app_module
from tokenward.service import runtime as runtime_module
from tokenward.service.runtime import configure_runtime, get_runtime


def _bearer_resolver(authorization):
    if authorization and authorization.startswith("Bearer "):
        return authorization[len("Bearer "):] or None
    return None


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def runtime():
    configure_runtime(identity_resolver=_bearer_resolver)
    return get_runtime()


def _issue(runtime, user_id="user-1", **kwargs):
    return asyncio.run(runtime.refresh_tokens.issue(user_id, **kwargs))


def _auth(user_id="user-1"):
    return {"Authorization": f"Bearer {user_id}"}


class TestRefreshFlow:
    """Tests for POST /v1/auth/refresh."""

    def test_refresh_rotates_token(self, client, runtime):
        issued = _issue(runtime)

        response = client.post(
            "/v1/auth/refresh",
            json={"refresh_token": issued.token},
            headers={"User-Agent": "integration-test"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["data"]["user_id"] == "user-1"
        assert data["data"]["refresh_token"] != issued.token
        assert data["data"]["session_id"] != issued.session_id
        record = runtime.store.find_refresh_token(data["data"]["refresh_token"])
        assert record.user_agent == "integration-test"

    def test_replay_returns_reuse_error(self, client, runtime):
        issued = _issue(runtime)
        first = client.post("/v1/auth/refresh", json={"refresh_token": issued.token})
        assert first.status_code == 200
        new_token = first.json()["data"]["refresh_token"]

        replay = client.post("/v1/auth/refresh", json={"refresh_token": issued.token})

        assert replay.status_code == 401
        body = replay.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "token_reuse_detected"
        # The owner is never echoed back to the caller
        assert "user-1" not in replay.text

        follow_up = client.post("/v1/auth/refresh", json={"refresh_token": new_token})
        assert follow_up.status_code == 401

    def test_unknown_token(self, client, runtime):
        response = client.post("/v1/auth/refresh", json={"refresh_token": "bogus"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_refresh_token"

    def test_missing_token_is_validation_error(self, client, runtime):
        response = client.post("/v1/auth/refresh", json={})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_blank_token_is_validation_error(self, client, runtime):
        response = client.post("/v1/auth/refresh", json={"refresh_token": "   "})
        assert response.status_code == 400

    def test_response_is_not_cacheable(self, client, runtime):
        issued = _issue(runtime)
        response = client.post("/v1/auth/refresh", json={"refresh_token": issued.token})
        assert "no-store" in response.headers["Cache-Control"]


class TestLogout:
    """Tests for logout endpoints."""

    def test_logout_is_idempotent(self, client, runtime):
        issued = _issue(runtime)

        for _ in range(2):
            response = client.post("/v1/auth/logout", json={"refresh_token": issued.token})
            assert response.status_code == 200
            assert response.json()["status"] == "ok"

        refresh = client.post("/v1/auth/refresh", json={"refresh_token": issued.token})
        assert refresh.status_code == 401

    def test_logout_unknown_token(self, client, runtime):
        response = client.post("/v1/auth/logout", json={"refresh_token": "never-issued"})
        assert response.status_code == 200

    def test_logout_all_closes_every_session(self, client, runtime):
        tokens = [_issue(runtime) for _ in range(3)]
        _issue(runtime, user_id="user-2")

        response = client.post("/v1/auth/logout-all", headers=_auth())

        assert response.status_code == 200
        assert response.json()["data"]["sessions_closed"] == 3
        for issued in tokens:
            refresh = client.post("/v1/auth/refresh", json={"refresh_token": issued.token})
            assert refresh.status_code == 401
        assert len(asyncio.run(runtime.refresh_tokens.list_sessions("user-2"))) == 1

    def test_logout_all_requires_identity(self, client, runtime):
        response = client.post("/v1/auth/logout-all")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestSessions:
    """Tests for session listing and revocation."""

    def test_list_sessions(self, client, runtime):
        issued = _issue(runtime, user_agent="laptop", ip_address="192.0.2.1")
        _issue(runtime, user_id="user-2")

        response = client.get("/v1/auth/sessions", headers=_auth())

        assert response.status_code == 200
        items = response.json()["data"]["items"]
        assert len(items) == 1
        assert items[0]["id"] == issued.session_id
        assert items[0]["user_agent"] == "laptop"
        assert items[0]["ip_address"] == "192.0.2.1"
        assert "token_hash" not in items[0]
        assert issued.token not in response.text

    def test_revoke_own_session(self, client, runtime):
        issued = _issue(runtime)

        response = client.post(
            f"/v1/auth/sessions/{issued.session_id}/revoke", headers=_auth()
        )

        assert response.status_code == 200
        assert response.json()["data"] == {"id": issued.session_id, "revoked": True}
        listing = client.get("/v1/auth/sessions", headers=_auth())
        assert listing.json()["data"]["items"] == []

    def test_cannot_revoke_foreign_session(self, client, runtime):
        issued = _issue(runtime, user_id="user-2")

        response = client.post(
            f"/v1/auth/sessions/{issued.session_id}/revoke", headers=_auth()
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
        assert runtime.store.find_refresh_token(issued.token) is not None

    def test_sessions_without_resolver(self, client):
        response = client.get("/v1/auth/sessions", headers=_auth())
        assert response.status_code == 401

    def test_unknown_session_is_not_found(self, client, runtime):
        response = client.post(
            "/v1/auth/sessions/018c0000-0000-7000-8000-000000000001/revoke",
            headers=_auth(),
        )

        assert response.status_code == 404
        assert response.json()["error"] == {
            "code": "not_found",
            "message": "session not found",
            "details": None,
        }


class TestIdentityResolverWiring:
    """Tests for installing the host's identity resolver."""

    def test_resolver_configured_before_runtime_exists(self, client, monkeypatch):
        monkeypatch.setattr(runtime_module, "runtime", None)

        configure_runtime(identity_resolver=_bearer_resolver)
        runtime = get_runtime()

        assert runtime.resolve_identity("Bearer user-9") == "user-9"
        _issue(runtime, user_id="user-9")
        response = client.get("/v1/auth/sessions", headers=_auth("user-9"))
        assert response.status_code == 200
        assert len(response.json()["data"]["items"]) == 1

    def test_create_app_installs_resolver(self, client):
        assert app_module.create_app(identity_resolver=_bearer_resolver) is app_module.app

        response = client.get("/v1/auth/sessions", headers=_auth())
        assert response.status_code == 200

    def test_clearing_resolver_closes_session_routes(self, client, runtime):
        configure_runtime(identity_resolver=None)

        response = client.get("/v1/auth/sessions", headers=_auth())
        assert response.status_code == 401


class TestHealth:
    """Tests for the health endpoint."""

    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert "X-Request-ID" in response.headers

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
