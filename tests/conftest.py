import os
from datetime import datetime, timedelta, timezone

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("AUTH_COOKIE_SECURE", "false")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("AUTH_HASH_TIME_COST", "1")
os.environ.setdefault("AUTH_HASH_MEMORY_COST", "1024")
os.environ.setdefault("AUTH_HASH_PARALLELISM", "1")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.pop("REDIS_URL", None)
os.environ.pop("AUTH_STATE_ROOT", None)

import pytest  # noqa: E402

from sessionauth.config import Settings  # noqa: E402
from sessionauth.service.auth import AuthSessionManager  # noqa: E402
from sessionauth.service.passwords import CredentialVerifier  # noqa: E402
from sessionauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from sessionauth.storage.errors import StoreUnavailable  # noqa: E402
from sessionauth.storage.memory import MemorySessionBackend, MemoryStore  # noqa: E402

DEFAULT_USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0"


class FakeClock:
    def __init__(self, start: datetime):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class FakeCookies:
    """Browser-side cookie jar that records the TTL of every write."""

    def __init__(self):
        self.jar = {}
        self.ttls = {}
        self.deleted = []

    def get(self, name):
        return self.jar.get(name)

    def set(self, name, value, ttl_seconds):
        self.jar[name] = value
        self.ttls[name] = ttl_seconds

    def delete(self, name):
        self.jar.pop(name, None)
        self.ttls.pop(name, None)
        self.deleted.append(name)


class FakeRequest:
    def __init__(self, user_agent: str = DEFAULT_USER_AGENT):
        self.agent = user_agent

    def user_agent(self) -> str:
        return self.agent


class FailingStore:
    """User and token store whose every call fails like a dropped connection."""

    def __getattr__(self, name):
        def _fail(*args, **kwargs):
            raise StoreUnavailable("database unavailable", {"operation": name})

        return _fail


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        lifetime=60 * 60 * 24 * 14,
        cookie_lifetime=60 * 60 * 24,
        hash_time_cost=1,
        hash_memory_cost=1024,
        hash_parallelism=1,
        use_memory_store=True,
        test_mode=True,
    )


@pytest.fixture
def verifier(settings):
    return CredentialVerifier.from_settings(settings)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def sessions():
    return MemorySessionBackend()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def make_manager(store, sessions, verifier, settings, clock):
    """Build a manager for one simulated browser.

    Reusing a ``FakeCookies`` jar with a new session id models a browser that
    returns after its server-side session has gone.
    """

    def _make(
        session_id="session-a",
        *,
        cookies=None,
        request=None,
        users=None,
        tokens=None,
        on_session_regenerate=None,
    ):
        return AuthSessionManager(
            users=users or store,
            tokens=tokens or store,
            session=sessions.open(session_id, on_regenerate=on_session_regenerate),
            cookies=cookies if cookies is not None else FakeCookies(),
            request=request or FakeRequest(),
            verifier=verifier,
            settings=settings,
            clock=clock,
        )

    return _make


@pytest.fixture
def alice(store, verifier):
    return store.create_user("alice", verifier.hash("correct-horse"), roles={"login"})


@pytest.fixture
def bob(store, verifier):
    return store.create_user("bob", verifier.hash("hunter2"), roles={"login", "admin"})


@pytest.fixture
def make_cookies():
    return FakeCookies


@pytest.fixture
def make_request():
    return FakeRequest


@pytest.fixture
def failing_store():
    return FailingStore()
