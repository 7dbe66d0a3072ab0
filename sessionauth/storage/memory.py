from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from sessionauth.logging import get_logger
from sessionauth.service.tokens import generate_token_value
from sessionauth.storage.errors import ConstraintViolation
from sessionauth.storage.models import AutoLoginToken, TokenKind, User


def _copy_user(user: User) -> User:
    return replace(user, roles=set(user.roles))


class MemoryStore:
    """In-memory user and token store with optional JSON snapshots.

    Records are copied on the way in and out so callers cannot mutate stored
    state without going through ``save``.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.tokens: Dict[str, AutoLoginToken] = {}
        # RLock so helpers can be nested inside locked sections
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # users
    def create_user(
        self,
        username: str,
        password_hash: str,
        *,
        roles: Optional[Iterable[str]] = None,
        email: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.username == username for existing in self.users.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            user = User.new(username, password_hash, roles=set(roles or ()), email=email)
            self.users[user.id] = user
            self._persist_state()
            return _copy_user(user)

    def find_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.username == username), None)
            return _copy_user(user) if user else None

    def find_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return _copy_user(user) if user else None

    def save(self, user: User) -> None:
        with self._data_lock:
            if user.id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user.id})
            clash = next(
                (
                    u
                    for u in self.users.values()
                    if u.username == user.username and u.id != user.id
                ),
                None,
            )
            if clash:
                raise ConstraintViolation("username already exists", {"field": "username"})
            self.users[user.id] = _copy_user(user)
            self._persist_state()

    def add_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.roles.add(role)
            self._persist_state()
            return _copy_user(user)

    def remove_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.roles.discard(role)
            self._persist_state()
            return _copy_user(user)

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
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            token = AutoLoginToken(
                token=self._unique_value(),
                user_id=user_id,
                expires=expires,
                user_agent=fingerprint,
                kind=TokenKind(kind),
            )
            self.tokens[token.token] = token
            self._persist_state()
            return replace(token)

    def find_by_value(self, value: str) -> Optional[AutoLoginToken]:
        with self._data_lock:
            token = self.tokens.get(value)
            return replace(token) if token else None

    def rotate(self, token: AutoLoginToken) -> Optional[AutoLoginToken]:
        with self._data_lock:
            current = self.tokens.pop(token.token, None)
            if current is None:
                # Already rotated or deleted by a concurrent request
                return None
            rotated = replace(current, token=self._unique_value())
            self.tokens[rotated.token] = rotated
            self._persist_state()
            return replace(rotated)

    def delete(self, token: AutoLoginToken) -> None:
        with self._data_lock:
            if self.tokens.pop(token.token, None) is not None:
                self._persist_state()

    def delete_all_for_user(self, user_id: str) -> int:
        with self._data_lock:
            stale = [value for value, tok in self.tokens.items() if tok.user_id == user_id]
            for value in stale:
                self.tokens.pop(value, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired(self, now: datetime) -> int:
        with self._data_lock:
            stale = [value for value, tok in self.tokens.items() if tok.is_expired(now)]
            for value in stale:
                self.tokens.pop(value, None)
            if stale:
                self._persist_state()
            return len(stale)

    def tokens_for(self, user_id: str) -> List[AutoLoginToken]:
        with self._data_lock:
            return [replace(tok) for tok in self.tokens.values() if tok.user_id == user_id]

    def _unique_value(self) -> str:
        value = generate_token_value()
        while value in self.tokens:
            value = generate_token_value()
        return value

    # persistence
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "tokens": [self._serialize_token(t) for t in self.tokens.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.tokens = {
            t["token"]: self._deserialize_token(t) for t in data.get("tokens", [])
        }
        self.logger.info(
            "memory_store_loaded", users=len(self.users), tokens=len(self.tokens)
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "password_hash": user.password_hash,
            "roles": sorted(user.roles),
            "email": user.email,
            "logins": user.logins,
            "last_login": self._serialize_datetime(user.last_login),
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: Dict[str, Any]) -> User:
        created_at = self._deserialize_datetime(data.get("created_at"))
        user = User(
            id=data["id"],
            username=data["username"],
            password_hash=data.get("password_hash", ""),
            roles=set(data.get("roles") or ()),
            email=data.get("email"),
            logins=int(data.get("logins", 0)),
            last_login=self._deserialize_datetime(data.get("last_login")),
        )
        if created_at:
            user.created_at = created_at
        return user

    def _serialize_token(self, token: AutoLoginToken) -> dict:
        return {
            "token": token.token,
            "user_id": token.user_id,
            "expires": self._serialize_datetime(token.expires),
            "user_agent": token.user_agent,
            "kind": token.kind.value,
            "created_at": self._serialize_datetime(token.created_at),
        }

    def _deserialize_token(self, data: Dict[str, Any]) -> AutoLoginToken:
        token = AutoLoginToken(
            token=data["token"],
            user_id=data["user_id"],
            expires=self._deserialize_datetime(data["expires"]),
            user_agent=data.get("user_agent", ""),
            kind=TokenKind(data.get("kind", TokenKind.REMEMBER.value)),
        )
        created_at = self._deserialize_datetime(data.get("created_at"))
        if created_at:
            token.created_at = created_at
        return token


class MemorySessionStore:
    """Session key-value state for one session id, backed by a shared dict."""

    def __init__(
        self,
        backend: "MemorySessionBackend",
        session_id: str,
        on_regenerate: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.backend = backend
        self.session_id = session_id
        self.on_regenerate = on_regenerate

    def get(self, key: str, default: Any = None) -> Any:
        with self.backend._lock:
            return self.backend.sessions.get(self.session_id, {}).get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self.backend._lock:
            self.backend.sessions.setdefault(self.session_id, {})[key] = value

    def delete(self, key: str) -> None:
        with self.backend._lock:
            data = self.backend.sessions.get(self.session_id)
            if data is not None:
                data.pop(key, None)

    def destroy(self) -> bool:
        with self.backend._lock:
            self.backend.sessions.pop(self.session_id, None)
        return True

    def regenerate(self) -> str:
        """Move this session's data under a fresh id; the old id becomes empty."""
        with self.backend._lock:
            new_id = generate_token_value()
            while new_id in self.backend.sessions:
                new_id = generate_token_value()
            data = self.backend.sessions.pop(self.session_id, None)
            if data is not None:
                self.backend.sessions[new_id] = data
            self.session_id = new_id
        if self.on_regenerate is not None:
            self.on_regenerate(new_id)
        return new_id


class MemorySessionBackend:
    """Process-local session storage for tests and single-process deployments."""

    def __init__(self) -> None:
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def open(
        self, session_id: str, on_regenerate: Optional[Callable[[str], None]] = None
    ) -> MemorySessionStore:
        return MemorySessionStore(self, session_id, on_regenerate)
