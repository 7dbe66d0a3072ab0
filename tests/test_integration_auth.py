"""Integration tests for the HTTP authentication flow.

Tests the complete flow through FastAPI including:
- Login with and without remember-me
- Auto-login from the remember cookie on a fresh session
- Logout, password re-checks and forced sessions
- Error envelopes for rejected logins and store outages
"""

import pytest
from fastapi.testclient import TestClient

from sessionauth import app as app_module
from sessionauth.service.auth import SESSION_FORCED_KEY, SESSION_USER_KEY
from sessionauth.service.runtime import get_runtime
from sessionauth.storage.errors import StoreUnavailable


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def alice():
    runtime = get_runtime()
    return runtime.store.create_user(
        "alice", runtime.verifier.hash("correct-horse"), roles={"login"}
    )


def _login(client, password="correct-horse", remember=False):
    return client.post(
        "/v1/auth/login",
        json={"username": "alice", "password": password, "remember": remember},
    )


class TestLoginFlow:
    def test_login_then_me(self, client, alice):
        response = _login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["username"] == "alice"
        assert body["data"]["logins"] == 1
        assert client.cookies.get("session_id")

        me = client.get("/v1/auth/me")
        assert me.status_code == 200
        assert me.json()["data"]["id"] == alice.id
        assert me.json()["data"]["forced"] is False

    def test_rejections_are_indistinguishable(self, client, alice):
        wrong_password = _login(client, password="nope").json()
        unknown_user = client.post(
            "/v1/auth/login", json={"username": "mallory", "password": "correct-horse"}
        ).json()

        assert wrong_password["error"] == unknown_user["error"]
        assert wrong_password["error"]["code"] == "unauthorized"
        assert wrong_password["error"]["message"] == "invalid credentials"

    def test_rejected_login_status(self, client, alice):
        assert _login(client, password="nope").status_code == 401
        assert client.get("/v1/auth/me").status_code == 401

    def test_anonymous_me_is_unauthorized(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestSessionFixation:
    def test_planted_session_id_stays_anonymous(self, alice):
        planted = "attackerplanted0001"
        victim = TestClient(app_module.app, cookies={"session_id": planted})

        response = _login(victim)
        assert response.status_code == 200
        issued = response.cookies.get("session_id")
        assert issued and issued != planted
        session_cookies = [
            header
            for header in response.headers.get_list("set-cookie")
            if header.startswith("session_id=")
        ]
        assert len(session_cookies) == 1

        attacker = TestClient(app_module.app, cookies={"session_id": planted})
        assert attacker.get("/v1/auth/me").status_code == 401

        owner = TestClient(app_module.app, cookies={"session_id": issued})
        assert owner.get("/v1/auth/me").json()["data"]["id"] == alice.id


class TestRememberMe:
    def test_remember_cookie_logs_in_new_session(self, client, alice):
        response = _login(client, remember=True)
        assert response.status_code == 200
        remember_value = client.cookies.get("authautologin")
        assert remember_value
        login_cookie = [
            header
            for header in response.headers.get_list("set-cookie")
            if header.startswith("authautologin=")
        ][0]
        assert "Max-Age=86400" in login_cookie
        assert "HttpOnly" in login_cookie

        returning = TestClient(app_module.app, cookies={"authautologin": remember_value})
        me = returning.get("/v1/auth/me")

        assert me.status_code == 200
        assert me.json()["data"]["id"] == alice.id
        rotated = me.cookies.get("authautologin")
        assert rotated and rotated != remember_value

        replay = TestClient(app_module.app, cookies={"authautologin": remember_value})
        assert replay.get("/v1/auth/me").status_code == 401

    def test_other_user_agent_burns_token(self, client, alice):
        _login(client, remember=True)
        remember_value = client.cookies.get("authautologin")

        thief = TestClient(
            app_module.app,
            cookies={"authautologin": remember_value},
            headers={"User-Agent": "curl/8.5.0"},
        )
        assert thief.get("/v1/auth/me").status_code == 401
        assert get_runtime().store.tokens_for(alice.id) == []


class TestLogout:
    def test_logout_ends_session(self, client, alice):
        _login(client, remember=True)

        response = client.post("/v1/auth/logout")
        assert response.status_code == 200
        assert response.json()["data"]["logged_out"] is True
        assert client.get("/v1/auth/me").status_code == 401
        assert get_runtime().store.tokens_for(alice.id) == []

    def test_logout_everywhere(self, client, alice):
        other = TestClient(app_module.app)
        _login(client, remember=True)
        _login(other, remember=True)
        assert len(get_runtime().store.tokens_for(alice.id)) == 2

        response = client.post("/v1/auth/logout", json={"everywhere": True, "destroy": True})

        assert response.status_code == 200
        assert get_runtime().store.tokens_for(alice.id) == []


class TestCheckPassword:
    def test_check_password(self, client, alice):
        _login(client)

        ok = client.post("/v1/auth/check-password", json={"password": "correct-horse"})
        bad = client.post("/v1/auth/check-password", json={"password": "wrong"})

        assert ok.json()["data"]["valid"] is True
        assert bad.json()["data"]["valid"] is False

    def test_forced_session_cannot_check_password(self, client, alice):
        # Any successful auth route hands out a session id
        client.post("/v1/auth/logout")
        session_id = client.cookies.get("session_id")
        session = get_runtime().sessions.open(session_id)
        session.set(SESSION_USER_KEY, alice.id)
        session.set(SESSION_FORCED_KEY, True)

        assert client.get("/v1/auth/me").json()["data"]["forced"] is True
        response = client.post("/v1/auth/check-password", json={"password": "correct-horse"})
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"


class TestFailures:
    def test_store_outage_is_service_unavailable(self, client, alice, monkeypatch):
        def _down(*args, **kwargs):
            raise StoreUnavailable("database unavailable")

        monkeypatch.setattr(get_runtime().store, "find_by_username", _down)

        response = _login(client)
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "service_unavailable"

    def test_blank_username_is_validation_error(self, client):
        response = client.post("/v1/auth/login", json={"username": "  ", "password": "x"})
        assert response.status_code == 422

    def test_healthz_reports_memory_backends(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["sessions"]["type"] == "memory"
