from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from sessionauth.logging import get_logger
from sessionauth.service.tokens import generate_token_value
from sessionauth.storage.errors import ConstraintViolation, StoreUnavailable
from sessionauth.storage.models import AutoLoginToken, TokenKind, User, utcnow

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS auth_user (
        id TEXT PRIMARY KEY,
        username TEXT UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        email TEXT,
        logins INTEGER NOT NULL DEFAULT 0,
        last_login TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_user_role (
        user_id TEXT NOT NULL REFERENCES auth_user(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        PRIMARY KEY (user_id, role)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_user_token (
        token TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES auth_user(id) ON DELETE CASCADE,
        expires TIMESTAMPTZ NOT NULL,
        user_agent TEXT NOT NULL,
        kind TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_user_token_user_idx ON auth_user_token (user_id)",
)

_USER_SELECT = """
    SELECT u.*,
           COALESCE(array_agg(r.role) FILTER (WHERE r.role IS NOT NULL), '{}') AS roles
    FROM auth_user u
    LEFT JOIN auth_user_role r ON r.user_id = u.id
"""


class PostgresStore:
    """Postgres-backed user and token store."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        """Borrow a pooled connection, translating driver failures."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "unique constraint violated",
                {"constraint": getattr(exc.diag, "constraint_name", None)},
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "referenced row does not exist",
                {"constraint": getattr(exc.diag, "constraint_name", None)},
            ) from exc
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StoreUnavailable(
                "database unavailable", {"error_type": type(exc).__name__}
            ) from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            password_hash=row["password_hash"],
            roles=set(row.get("roles") or ()),
            email=row.get("email"),
            logins=int(row.get("logins") or 0),
            last_login=row.get("last_login"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_token(row: Dict[str, Any]) -> AutoLoginToken:
        return AutoLoginToken(
            token=row["token"],
            user_id=str(row["user_id"]),
            expires=row["expires"],
            user_agent=row["user_agent"],
            kind=TokenKind(row["kind"]),
            created_at=row.get("created_at") or utcnow(),
        )

    # users
    def create_user(
        self,
        username: str,
        password_hash: str,
        *,
        roles: Optional[set[str]] = None,
        email: Optional[str] = None,
    ) -> User:
        user = User.new(username, password_hash, roles=roles, email=email)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_user (id, username, password_hash, email, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (user.id, user.username, user.password_hash, user.email, user.created_at),
            )
            for role in sorted(user.roles):
                conn.execute(
                    "INSERT INTO auth_user_role (user_id, role) VALUES (%s, %s)",
                    (user.id, role),
                )
        return user

    def find_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                _USER_SELECT + " WHERE u.username = %s GROUP BY u.id", (username,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def find_by_id(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                _USER_SELECT + " WHERE u.id = %s GROUP BY u.id", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def save(self, user: User) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_user
                SET username = %s, password_hash = %s, email = %s,
                    logins = %s, last_login = %s
                WHERE id = %s
                """,
                (
                    user.username,
                    user.password_hash,
                    user.email,
                    user.logins,
                    user.last_login,
                    user.id,
                ),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user does not exist", {"user_id": user.id})
            roles = sorted(user.roles)
            conn.execute(
                "DELETE FROM auth_user_role WHERE user_id = %s AND NOT (role = ANY(%s::text[]))",
                (user.id, roles),
            )
            for role in roles:
                conn.execute(
                    """
                    INSERT INTO auth_user_role (user_id, role) VALUES (%s, %s)
                    ON CONFLICT DO NOTHING
                    """,
                    (user.id, role),
                )

    def delete_tokens_for(self, user_id: str) -> int:
        """Remove every token of every kind owned by ``user_id``."""
        return self.delete_all_for_user(user_id)

    # tokens
    def create(
        self,
        user_id: str,
        expires: datetime,
        fingerprint: str,
        kind: TokenKind = TokenKind.REMEMBER,
    ) -> AutoLoginToken:
        token = AutoLoginToken(
            token=generate_token_value(),
            user_id=user_id,
            expires=expires,
            user_agent=fingerprint,
            kind=TokenKind(kind),
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_user_token (token, user_id, expires, user_agent, kind, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    token.token,
                    token.user_id,
                    token.expires,
                    token.user_agent,
                    token.kind.value,
                    token.created_at,
                ),
            )
        return token

    def find_by_value(self, value: str) -> Optional[AutoLoginToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_user_token WHERE token = %s", (value,)
            ).fetchone()
        return self._row_to_token(row) if row else None

    def rotate(self, token: AutoLoginToken) -> Optional[AutoLoginToken]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_user_token SET token = %s WHERE token = %s RETURNING *",
                (generate_token_value(), token.token),
            ).fetchone()
        return self._row_to_token(row) if row else None

    def delete(self, token: AutoLoginToken) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_user_token WHERE token = %s", (token.token,))

    def delete_all_for_user(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_user_token WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def delete_expired(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_user_token WHERE expires <= %s", (now,))
            return cur.rowcount

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()
