from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Set


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenKind(str, Enum):
    """Discriminator for rows sharing the token table."""

    REMEMBER = "remember-token"
    PASSWORD_RESET = "password-reset"
    API = "api-token"


@dataclass
class User:
    id: str
    username: str
    password_hash: str
    roles: Set[str] = field(default_factory=set)
    email: Optional[str] = None
    logins: int = 0
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        username: str,
        password_hash: str,
        *,
        roles: Optional[Set[str]] = None,
        email: Optional[str] = None,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            password_hash=password_hash,
            roles=set(roles or ()),
            email=email,
        )

    def has_role(self, role: str) -> bool:
        return role in self.roles


@dataclass
class AutoLoginToken:
    """Persistent credential bound to one user.

    ``token`` is the opaque bearer value handed to the client; it changes on
    every rotation while ``expires`` stays fixed.
    """

    token: str
    user_id: str
    expires: datetime
    user_agent: str
    kind: TokenKind = TokenKind.REMEMBER
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires <= now
