from __future__ import annotations

import hmac
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional, Protocol, Union

from sessionauth.config import Settings
from sessionauth.logging import get_logger
from sessionauth.service.passwords import CredentialVerifier
from sessionauth.service.tokens import fingerprint
from sessionauth.storage.models import AutoLoginToken, TokenKind, User

logger = get_logger(__name__)

SESSION_USER_KEY = "user_id"
SESSION_FORCED_KEY = "auth_forced"


class UserStore(Protocol):
    def find_by_username(self, username: str) -> Optional[User]: ...

    def find_by_id(self, user_id: str) -> Optional[User]: ...

    def save(self, user: User) -> None: ...

    def delete_tokens_for(self, user_id: str) -> int: ...


class TokenStore(Protocol):
    def create(
        self,
        user_id: str,
        expires: datetime,
        fingerprint: str,
        kind: TokenKind = TokenKind.REMEMBER,
    ) -> AutoLoginToken: ...

    def find_by_value(self, value: str) -> Optional[AutoLoginToken]: ...

    def rotate(self, token: AutoLoginToken) -> Optional[AutoLoginToken]: ...

    def delete(self, token: AutoLoginToken) -> None: ...

    def delete_all_for_user(self, user_id: str) -> int: ...

    def delete_expired(self, now: datetime) -> int: ...


class SessionStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...

    def destroy(self) -> bool: ...

    def regenerate(self) -> str: ...


class CookieTransport(Protocol):
    def get(self, name: str) -> Optional[str]: ...

    def set(self, name: str, value: str, ttl_seconds: int) -> None: ...

    def delete(self, name: str) -> None: ...


class Clock(Protocol):
    def now(self) -> datetime: ...


class RequestContext(Protocol):
    def user_agent(self) -> str: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ById:
    user_id: str


@dataclass(frozen=True)
class ByUsername:
    username: str


@dataclass(frozen=True)
class Resolved:
    user: User


UserRef = Union[ById, ByUsername, Resolved]


def as_user_ref(value: Union[UserRef, User, str]) -> UserRef:
    """Normalize the loose forms callers pass into a ``UserRef``.

    A bare string is a username and a ``User`` is already resolved.
    """
    if isinstance(value, (ById, ByUsername, Resolved)):
        return value
    if isinstance(value, User):
        return Resolved(value)
    if isinstance(value, str):
        return ByUsername(value)
    raise TypeError(f"cannot build a user reference from {type(value).__name__}")


class AuthSessionManager:
    """Login, logout and remember-me auto-login for a single request.

    Every collaborator is injected: one instance is built per request around
    that request's session, cookies and headers. Lookup misses and rejected
    credentials come back as ``False``/``None``; store failures
    (``StoreUnavailable``) propagate to the caller untouched.
    """

    def __init__(
        self,
        *,
        users: UserStore,
        tokens: TokenStore,
        session: SessionStore,
        cookies: CookieTransport,
        request: RequestContext,
        verifier: CredentialVerifier,
        settings: Settings,
        clock: Optional[Clock] = None,
    ) -> None:
        self.users = users
        self.tokens = tokens
        self.session = session
        self.cookies = cookies
        self.request = request
        self.verifier = verifier
        self.settings = settings
        self.clock: Clock = clock or SystemClock()
        self.logger = logger

    def _resolve(self, ref: UserRef) -> Optional[User]:
        if isinstance(ref, Resolved):
            return ref.user
        if isinstance(ref, ById):
            return self.users.find_by_id(ref.user_id)
        return self.users.find_by_username(ref.username)

    def login(
        self,
        user: Union[UserRef, User, str],
        password: str,
        remember: bool = False,
    ) -> bool:
        """Verify credentials and open an authenticated session.

        Nothing is written unless the password matches and the user holds the
        login role. A stale hash is upgraded afterwards on a best-effort basis.
        """
        resolved = self._resolve(as_user_ref(user))
        if resolved is None:
            # Spend the same hashing work as a real mismatch
            self.verifier.verify(password, self.verifier.dummy_hash)
            self.logger.info("login_failed", reason="user_not_found")
            return False
        if not self.verifier.verify(password, resolved.password_hash):
            self.logger.info("login_failed", reason="password_mismatch", user_id=resolved.id)
            return False
        if not resolved.has_role(self.settings.login_role):
            self.logger.info("login_failed", reason="role_missing", user_id=resolved.id)
            return False

        if remember:
            self._issue_remember_token(resolved)
        completed = self._complete_login(resolved)
        self._upgrade_password_hash(completed, password)
        self.logger.info("login_succeeded", user_id=resolved.id, remember=remember)
        return True

    def force_login(
        self,
        user: Union[UserRef, User, str],
        mark_forced: bool = False,
    ) -> bool:
        """Log a user in without a password, e.g. for admin impersonation.

        A session marked as forced lets the authorization layer refuse
        account changes made through it.
        """
        resolved = self._resolve(as_user_ref(user))
        if resolved is None:
            self.logger.warning("force_login_user_not_found")
            return False
        if mark_forced:
            self.session.set(SESSION_FORCED_KEY, True)
        self._complete_login(resolved)
        self.logger.info("force_login", user_id=resolved.id, forced=mark_forced)
        return True

    def auto_login(self) -> Optional[User]:
        """Log in from the remember cookie, rotating its token on success."""
        value = self.cookies.get(self.settings.cookie_name)
        if not value:
            return None
        token = self.tokens.find_by_value(value)
        if token is None:
            return None
        now = self.clock.now()
        if token.is_expired(now):
            self.tokens.delete(token)
            self.logger.info("auto_login_token_expired", user_id=token.user_id)
            return None
        if token.kind != TokenKind.REMEMBER:
            self.logger.warning("auto_login_wrong_token_kind", kind=token.kind.value)
            return None
        user = self.users.find_by_id(token.user_id)
        if user is None:
            return None

        current = fingerprint(self.request.user_agent())
        if not hmac.compare_digest(token.user_agent, current):
            # Possible cookie theft: burn the token rather than trust a new device
            self.tokens.delete(token)
            self.logger.warning("auto_login_fingerprint_mismatch", user_id=user.id)
            return None

        rotated = self.tokens.rotate(token)
        if rotated is None:
            self.logger.info("auto_login_token_stale", user_id=user.id)
            return None
        remaining = int((rotated.expires - now).total_seconds())
        self.cookies.set(self.settings.cookie_name, rotated.token, max(remaining, 1))
        completed = self._complete_login(user)
        self.logger.info("auto_login_succeeded", user_id=user.id)
        return completed

    def get_current_user(self) -> Optional[User]:
        user_id = self.session.get(SESSION_USER_KEY)
        if user_id:
            user = self.users.find_by_id(user_id)
            if user is not None:
                return user
            self.logger.warning("session_user_missing", user_id=user_id)
            self.session.delete(SESSION_USER_KEY)
        return self.auto_login()

    def logged_in(self, roles: Union[str, Iterable[str], None] = None) -> bool:
        """Check for a logged-in user, optionally holding every role given."""
        user = self.get_current_user()
        if user is None:
            return False
        if roles is None:
            return True
        required = {roles} if isinstance(roles, str) else set(roles)
        return required.issubset(user.roles)

    def is_forced(self) -> bool:
        return bool(self.session.get(SESSION_FORCED_KEY, False))

    def logout(self, destroy: bool = False, everywhere: bool = False) -> bool:
        """End the session and revoke the remember token.

        ``everywhere`` revokes every token the user owns, signing out other
        devices at their next request.
        """
        self.session.delete(SESSION_FORCED_KEY)
        owner_id: Optional[str] = None
        value = self.cookies.get(self.settings.cookie_name)
        if value:
            self.cookies.delete(self.settings.cookie_name)
            token = self.tokens.find_by_value(value)
            if token is not None:
                owner_id = token.user_id
                if not everywhere:
                    self.tokens.delete(token)
        if everywhere:
            owner_id = owner_id or self.session.get(SESSION_USER_KEY)
            if owner_id:
                revoked = self.tokens.delete_all_for_user(owner_id)
                self.logger.info("logout_everywhere", user_id=owner_id, revoked=revoked)

        if destroy:
            self.session.destroy()
        else:
            self.session.delete(SESSION_USER_KEY)
        return self.session.get(SESSION_USER_KEY) is None

    def check_password(self, password: str) -> bool:
        """Re-verify the password of the user already in the session."""
        user_id = self.session.get(SESSION_USER_KEY)
        if not user_id:
            return False
        user = self.users.find_by_id(user_id)
        if user is None:
            return False
        return self.verifier.verify(password, user.password_hash)

    def password_for(self, user: Union[UserRef, User, str]) -> Optional[str]:
        resolved = self._resolve(as_user_ref(user))
        return resolved.password_hash if resolved else None

    def purge_expired_tokens(self) -> int:
        removed = self.tokens.delete_expired(self.clock.now())
        if removed:
            self.logger.info("expired_tokens_purged", count=removed)
        return removed

    def _issue_remember_token(self, user: User) -> AutoLoginToken:
        token = self.tokens.create(
            user.id,
            self.clock.now() + timedelta(seconds=self.settings.lifetime),
            fingerprint(self.request.user_agent()),
            TokenKind.REMEMBER,
        )
        # The cookie never outlives the token it carries
        ttl = min(self.settings.cookie_lifetime, self.settings.lifetime)
        self.cookies.set(self.settings.cookie_name, token.token, ttl)
        return token

    def _complete_login(self, user: User) -> User:
        # New id on every privilege change so a planted session id stays anonymous
        self.session.regenerate()
        self.session.set(SESSION_USER_KEY, user.id)
        updated = replace(user, logins=user.logins + 1, last_login=self.clock.now())
        try:
            self.users.save(updated)
        except Exception as exc:
            self.logger.warning(
                "login_bookkeeping_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return user
        return updated

    def _upgrade_password_hash(self, user: User, password: str) -> None:
        try:
            if not self.verifier.needs_upgrade(user.password_hash):
                return
            upgraded = replace(user, password_hash=self.verifier.hash(password))
            self.users.save(upgraded)
        except Exception as exc:
            self.logger.warning(
                "password_rehash_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        self.logger.info(
            "password_rehashed", user_id=user.id, algorithm=self.verifier.algorithm.value
        )
