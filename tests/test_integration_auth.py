"""Integration tests for the authentication flow.

Covers registration, login, protected access, refresh rotation, logout and
logout-all through the HTTP surface with the in-memory store and cache.
"""

import asyncio
import base64
import json

import pytest
from fastapi.testclient import TestClient

from catalog import app as app_module
from catalog.service.runtime import get_runtime
from catalog.storage.errors import CacheUnavailableError


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def credentials():
    return {"email": "testuser@example.com", "password": "TestPassword123!", "name": "Test User"}


def _register(client, credentials):
    return client.post("/v1/auth/register", json=credentials)


def _login(client, credentials, user_agent="pytest"):
    response = client.post(
        "/v1/auth/login",
        json={"email": credentials["email"], "password": credentials["password"]},
        headers={"User-Agent": user_agent},
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegister:
    def test_register_creates_user(self, client, credentials):
        response = _register(client, credentials)
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["email"] == credentials["email"]
        assert data["name"] == "Test User"
        assert "password" not in data

    def test_duplicate_email_conflicts(self, client, credentials):
        _register(client, credentials)
        response = _register(client, {**credentials, "email": "TestUser@Example.com"})
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_weak_password_is_400(self, client, credentials):
        response = _register(client, {**credentials, "password": "password"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestLogin:
    def test_login_returns_token_pair(self, client, credentials):
        _register(client, credentials)
        data = _login(client, credentials)
        assert data["access_token"]
        assert data["refresh_token"]
        assert data["token_type"] == "Bearer"
        assert 0 < data["expires_in"] <= 3600
        assert data["session_id"]
        assert data["user"]["email"] == credentials["email"]

    def test_wrong_password_is_401(self, client, credentials):
        _register(client, credentials)
        response = client.post(
            "/v1/auth/login",
            json={"email": credentials["email"], "password": "WrongPassword1!"},
        )
        assert response.status_code == 401

    def test_unknown_user_is_401(self, client):
        response = client.post(
            "/v1/auth/login", json={"email": "ghost@example.com", "password": "Whatever1!"}
        )
        assert response.status_code == 401


class TestProtectedAccess:
    def test_missing_token_is_401(self, client):
        response = client.get("/v1/products")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid or expired credentials"

    def test_garbage_token_is_401(self, client):
        response = client.get("/v1/products", headers=_auth("not-a-token"))
        assert response.status_code == 401

    def test_forged_header_is_401(self, client):
        header = base64.urlsafe_b64encode(json.dumps({"alg": {"x": 1}}).encode()).decode().rstrip("=")
        payload = base64.urlsafe_b64encode(b"{}").decode().rstrip("=")
        response = client.get("/v1/products", headers=_auth(f"{header}.{payload}.sig"))
        assert response.status_code == 401

        body = {"refresh_token": f"{header}.{payload}.\u00e9"}
        assert client.post("/v1/auth/refresh", json=body).status_code == 401

    def test_refresh_token_cannot_access_resources(self, client, credentials):
        _register(client, credentials)
        data = _login(client, credentials)
        response = client.get("/v1/products", headers=_auth(data["refresh_token"]))
        assert response.status_code == 401


class TestLogout:
    def test_logout_revokes_token(self, client, credentials):
        _register(client, credentials)
        data = _login(client, credentials)
        headers = _auth(data["access_token"])

        assert client.get("/v1/products", headers=headers).status_code == 200
        assert client.post("/v1/auth/logout", headers=headers).status_code == 200
        assert client.get("/v1/products", headers=headers).status_code == 401

    def test_logout_leaves_other_sessions(self, client, credentials):
        _register(client, credentials)
        first = _login(client, credentials)
        second = _login(client, credentials)
        client.post("/v1/auth/logout", headers=_auth(first["access_token"]))
        assert client.get("/v1/products", headers=_auth(second["access_token"])).status_code == 200

    def test_logout_all_revokes_every_session(self, client, credentials):
        _register(client, credentials)
        first = _login(client, credentials, user_agent="laptop")
        second = _login(client, credentials, user_agent="phone")

        response = client.post("/v1/auth/logout-all", headers=_auth(first["access_token"]))
        assert response.status_code == 200
        assert response.json()["data"]["revoked_sessions"] == 2

        assert client.get("/v1/products", headers=_auth(first["access_token"])).status_code == 401
        assert client.get("/v1/products", headers=_auth(second["access_token"])).status_code == 401

    def test_logout_fails_when_revocation_cannot_be_stored(self, client, credentials, monkeypatch):
        _register(client, credentials)
        data = _login(client, credentials)
        headers = _auth(data["access_token"])

        async def unavailable(key, value, ttl=None):
            raise CacheUnavailableError("redis unavailable", key=key)

        monkeypatch.setattr(get_runtime().cache, "set", unavailable)
        response = client.post("/v1/auth/logout", headers=headers)
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        monkeypatch.undo()
        assert client.get("/v1/products", headers=headers).status_code == 200

    def test_login_after_logout_all_works(self, client, credentials):
        _register(client, credentials)
        first = _login(client, credentials)
        client.post("/v1/auth/logout-all", headers=_auth(first["access_token"]))
        fresh = _login(client, credentials)
        assert client.get("/v1/products", headers=_auth(fresh["access_token"])).status_code == 200


class TestSessions:
    def test_lists_active_sessions(self, client, credentials):
        _register(client, credentials)
        first = _login(client, credentials, user_agent="laptop")
        _login(client, credentials, user_agent="phone")
        response = client.get("/v1/auth/sessions", headers=_auth(first["access_token"]))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["total_sessions"] == 2
        agents = {s["user_agent"] for s in data["active_sessions"]}
        assert agents == {"laptop", "phone"}
        current = [s for s in data["active_sessions"] if s["current"]]
        assert [s["id"] for s in current] == [first["session_id"]]


class TestRefresh:
    def test_refresh_rotates_tokens(self, client, credentials):
        _register(client, credentials)
        data = _login(client, credentials)
        response = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert response.status_code == 200
        fresh = response.json()["data"]
        assert fresh["access_token"] != data["access_token"]
        assert client.get("/v1/products", headers=_auth(fresh["access_token"])).status_code == 200

    def test_refresh_token_is_single_use(self, client, credentials):
        _register(client, credentials)
        data = _login(client, credentials)
        body = {"refresh_token": data["refresh_token"]}
        assert client.post("/v1/auth/refresh", json=body).status_code == 200
        assert client.post("/v1/auth/refresh", json=body).status_code == 401

    def test_refresh_after_logout_fails(self, client, credentials):
        _register(client, credentials)
        data = _login(client, credentials)
        client.post("/v1/auth/logout", headers=_auth(data["access_token"]))
        response = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert response.status_code == 401

    def test_access_token_cannot_refresh(self, client, credentials):
        _register(client, credentials)
        data = _login(client, credentials)
        response = client.post("/v1/auth/refresh", json={"refresh_token": data["access_token"]})
        assert response.status_code == 401


class TestRuntimeState:
    def test_login_creates_indexed_session(self, client, credentials):
        _register(client, credentials)
        data = _login(client, credentials)
        runtime = get_runtime()
        user_id = data["user"]["id"]
        assert asyncio.run(runtime.sessions.count_active_sessions(user_id)) == 1
        assert asyncio.run(runtime.sessions.is_session_valid(data["session_id"]))
