import contextlib
from datetime import datetime, timedelta, timezone

import psycopg
import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from sessionauth.logging import get_logger
from sessionauth.storage.errors import ConstraintViolation, StoreUnavailable
from sessionauth.storage.models import AutoLoginToken, TokenKind, User
from sessionauth.storage.postgres import PostgresStore

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


class DummyCursor:
    def __init__(self, row=None, rowcount=0):
        self.row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self.row


class DummyConnection:
    """Replays scripted cursors and records every statement."""

    def __init__(self, cursors=()):
        self.cursors = list(cursors)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.cursors:
            return self.cursors.pop(0)
        return DummyCursor()


class DummyPool:
    def __init__(self, conn=None, error=None):
        self.conn = conn
        self.error = error

    @contextlib.contextmanager
    def connection(self):
        if self.error is not None:
            raise self.error
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.logger = get_logger("test")
    store.pool = pool
    return store


def _token_row(value="tok-2"):
    return {
        "token": value,
        "user_id": "u1",
        "expires": NOW + timedelta(days=14),
        "user_agent": "fp",
        "kind": "remember-token",
        "created_at": NOW,
    }


def test_find_by_username_maps_row():
    conn = DummyConnection([
        DummyCursor(
            row={
                "id": "u1",
                "username": "alice",
                "password_hash": "$argon2id$x",
                "email": None,
                "logins": 4,
                "last_login": NOW,
                "created_at": NOW,
                "roles": ["login", "admin"],
            }
        )
    ])
    user = _store(DummyPool(conn)).find_by_username("alice")

    assert user.id == "u1"
    assert user.roles == {"login", "admin"}
    assert user.logins == 4
    sql, params = conn.statements[0]
    assert "WHERE u.username = %s" in sql
    assert params == ("alice",)


def test_find_by_id_miss_returns_none():
    assert _store(DummyPool(DummyConnection())).find_by_id("ghost") is None


def test_rotate_returns_new_value():
    conn = DummyConnection([DummyCursor(row=_token_row("tok-2"))])
    old = AutoLoginToken(token="tok-1", user_id="u1", expires=NOW, user_agent="fp")

    rotated = _store(DummyPool(conn)).rotate(old)

    assert rotated.token == "tok-2"
    assert rotated.kind == TokenKind.REMEMBER
    sql, params = conn.statements[0]
    assert sql.startswith("UPDATE auth_user_token SET token = %s WHERE token = %s")
    assert params[1] == "tok-1"
    assert params[0] != "tok-1"


def test_rotate_of_vanished_token_returns_none():
    old = AutoLoginToken(token="tok-1", user_id="u1", expires=NOW, user_agent="fp")
    assert _store(DummyPool(DummyConnection())).rotate(old) is None


def test_save_missing_user_is_constraint_violation():
    conn = DummyConnection([DummyCursor(rowcount=0)])
    with pytest.raises(ConstraintViolation):
        _store(DummyPool(conn)).save(User(id="ghost", username="g", password_hash="h"))


def test_save_syncs_roles():
    conn = DummyConnection([DummyCursor(rowcount=1)])
    user = User(id="u1", username="alice", password_hash="h", roles={"login", "admin"})

    _store(DummyPool(conn)).save(user)

    role_statements = [params for sql, params in conn.statements if "auth_user_role" in sql]
    assert role_statements[0] == ("u1", ["admin", "login"])
    assert ("u1", "admin") in role_statements
    assert ("u1", "login") in role_statements


def test_delete_expired_reports_rowcount():
    conn = DummyConnection([DummyCursor(rowcount=3)])
    assert _store(DummyPool(conn)).delete_expired(NOW) == 3
    assert conn.statements[0][1] == (NOW,)


def test_operational_error_is_store_unavailable():
    store = _store(DummyPool(error=psycopg.OperationalError("connection refused")))
    with pytest.raises(StoreUnavailable):
        store.find_by_username("alice")


def test_pool_timeout_is_store_unavailable():
    store = _store(DummyPool(error=PoolTimeout("no connection available")))
    with pytest.raises(StoreUnavailable):
        store.find_by_value("tok")


def test_unique_violation_is_constraint_violation():
    class RaisingConnection(DummyConnection):
        def execute(self, sql, params=None):
            raise errors.UniqueViolation("duplicate key value")

    with pytest.raises(ConstraintViolation):
        _store(DummyPool(RaisingConnection())).create_user("alice", "h")
