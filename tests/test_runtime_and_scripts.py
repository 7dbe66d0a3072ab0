import importlib.util
from datetime import datetime, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from sessionauth import app as app_module
from sessionauth.service import runtime as runtime_module
from sessionauth.service.runtime import get_runtime, reset_runtime_for_tests
from sessionauth.storage.memory import MemorySessionBackend, MemoryStore

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "create_user.py"


@pytest.fixture
def create_user_script():
    spec = importlib.util.spec_from_file_location("create_user_script", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_runtime_uses_memory_backends_in_tests():
    runtime = get_runtime()
    assert isinstance(runtime.store, MemoryStore)
    assert isinstance(runtime.sessions, MemorySessionBackend)
    assert get_runtime() is runtime


def test_reset_builds_fresh_runtime():
    before = get_runtime()
    after = reset_runtime_for_tests()
    assert after is not before
    assert runtime_module.runtime is after


def test_reset_refused_outside_test_mode(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "false")
    with pytest.raises(RuntimeError):
        reset_runtime_for_tests()


def test_manager_for_wires_request_collaborators(make_cookies, make_request):
    runtime = get_runtime()
    runtime.store.create_user("alice", runtime.verifier.hash("pw"), roles={"login"})

    issued = []
    manager = runtime.manager_for(
        "sid-1", make_cookies(), make_request(), on_session_regenerate=issued.append
    )
    assert manager.login("alice", "pw") is True
    assert issued == [manager.session.session_id]

    again = runtime.manager_for(issued[0], make_cookies(), make_request())
    assert again.get_current_user().username == "alice"
    assert runtime.manager_for("sid-1", make_cookies(), make_request()).get_current_user() is None


def test_startup_purges_expired_tokens():
    runtime = get_runtime()
    user = runtime.store.create_user("alice", "h")
    runtime.store.create(user.id, datetime(2020, 1, 1, tzinfo=timezone.utc), "fp")
    live = runtime.store.create(user.id, datetime(2999, 1, 1, tzinfo=timezone.utc), "fp")

    with TestClient(app_module.app):
        assert runtime.store.tokens_for(user.id) == [live]


class TestCreateUserScript:
    def test_creates_login_user(self, create_user_script):
        result = create_user_script.create_user("alice", "correct-horse")

        assert result["status"] == "created"
        runtime = get_runtime()
        user = runtime.store.find_by_username("alice")
        assert user.roles == {"login"}
        assert runtime.verifier.verify("correct-horse", user.password_hash)

    def test_existing_user_left_alone(self, create_user_script):
        create_user_script.create_user("alice", "one")
        assert create_user_script.create_user("alice", "two")["status"] == "exists"

    def test_rehash_only_replaces_password(self, create_user_script):
        create_user_script.create_user("alice", "old-pw")
        result = create_user_script.create_user("alice", "new-pw", rehash_only=True)

        assert result["status"] == "rehashed"
        runtime = get_runtime()
        stored = runtime.store.find_by_username("alice").password_hash
        assert runtime.verifier.verify("new-pw", stored)
        assert not runtime.verifier.verify("old-pw", stored)

    def test_rehash_only_for_missing_user(self, create_user_script):
        assert create_user_script.create_user("ghost", "pw", rehash_only=True)["status"] == "missing"

    def test_dry_run_writes_nothing(self, create_user_script):
        result = create_user_script.create_user("alice", "pw", dry_run=True)
        assert result["status"] == "dry_run"
        assert get_runtime().store.find_by_username("alice") is None

    def test_main_with_roles(self, create_user_script):
        code = create_user_script.main(
            ["--username", "bob", "--password", "pw", "--role", "login", "--role", "admin"]
        )
        assert code == 0
        assert get_runtime().store.find_by_username("bob").roles == {"login", "admin"}

    def test_main_requires_username(self, create_user_script, monkeypatch):
        monkeypatch.delenv("AUTH_USERNAME", raising=False)
        assert create_user_script.main(["--password", "pw"]) == 1
