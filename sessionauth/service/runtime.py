from __future__ import annotations

import threading
from typing import Callable, Optional, Union
from urllib.parse import urlparse, urlunparse

from sessionauth.config import get_settings, reset_settings_cache
from sessionauth.logging import get_logger
from sessionauth.service.auth import (
    AuthSessionManager,
    Clock,
    SystemClock,
    CookieTransport,
    RequestContext,
)
from sessionauth.service.passwords import CredentialVerifier
from sessionauth.storage.memory import MemorySessionBackend, MemoryStore
from sessionauth.storage.postgres import PostgresStore
from sessionauth.storage.redis_cache import RedisSessionBackend

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the process-wide stores and verifier shared by every request."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info("runtime_init_started", store_type=store_type, test_mode=self.settings.test_mode)

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.state_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.sessions: Union[MemorySessionBackend, RedisSessionBackend]
        if self.settings.redis_url:
            backend = RedisSessionBackend(
                self.settings.redis_url, ttl_seconds=self.settings.session_ttl_seconds
            )
            backend.verify_connection()
            self.sessions = backend
        else:
            logger.warning(
                "session_backend_in_memory",
                message="REDIS_URL unset; sessions are process-local",
            )
            self.sessions = MemorySessionBackend()

        self.verifier = CredentialVerifier.from_settings(self.settings)
        self.clock: Clock = SystemClock()
        logger.info(
            "runtime_init_complete",
            store_type=store_type,
            session_backend="redis" if self.settings.redis_url else "memory",
            redis_url=_mask_url_password(self.settings.redis_url),
            algorithm=self.verifier.algorithm.value,
        )

    def manager_for(
        self,
        session_id: str,
        cookies: CookieTransport,
        request: RequestContext,
        *,
        clock: Optional[Clock] = None,
        on_session_regenerate: Optional[Callable[[str], None]] = None,
    ) -> AuthSessionManager:
        return AuthSessionManager(
            users=self.store,
            tokens=self.store,
            session=self.sessions.open(session_id, on_regenerate=on_session_regenerate),
            cookies=cookies,
            request=request,
            verifier=self.verifier,
            settings=self.settings,
            clock=clock or self.clock,
        )

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()
        if isinstance(self.sessions, RedisSessionBackend):
            self.sessions.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
