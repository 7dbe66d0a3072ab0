from __future__ import annotations

import contextlib
import json
from typing import Any, Callable, Iterator, Optional

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from sessionauth.logging import get_logger
from sessionauth.service.tokens import generate_token_value
from sessionauth.storage.errors import StoreUnavailable

logger = get_logger(__name__)


@contextlib.contextmanager
def _redis_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as exc:
        logger.error("redis_unavailable", operation=operation, error=str(exc))
        raise StoreUnavailable(
            "session store unavailable", {"operation": operation}
        ) from exc


class RedisSessionStore:
    """One session stored as a Redis hash with a sliding expiry.

    Values are JSON encoded so booleans and ids survive the round trip.
    """

    def __init__(
        self,
        client: Redis,
        session_id: str,
        *,
        ttl_seconds: int,
        on_regenerate: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.on_regenerate = on_regenerate
        self._bind(session_id)

    def _bind(self, session_id: str) -> None:
        self.session_id = session_id
        self.key = f"auth:session:{session_id}"

    def get(self, key: str, default: Any = None) -> Any:
        with _redis_errors("get"):
            raw = self.client.hget(self.key, key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("session_value_corrupt", field=key)
            return default

    def set(self, key: str, value: Any) -> None:
        with _redis_errors("set"):
            pipe = self.client.pipeline()
            pipe.hset(self.key, key, json.dumps(value))
            pipe.expire(self.key, self.ttl_seconds)
            pipe.execute()

    def delete(self, key: str) -> None:
        with _redis_errors("delete"):
            self.client.hdel(self.key, key)

    def destroy(self) -> bool:
        with _redis_errors("destroy"):
            self.client.delete(self.key)
        return True

    def regenerate(self) -> str:
        """Move the hash to a fresh id; RENAME keeps its remaining TTL."""
        new_id = generate_token_value()
        with _redis_errors("regenerate"):
            try:
                self.client.rename(self.key, f"auth:session:{new_id}")
            except ResponseError:
                # No such key: the session held nothing yet
                pass
        self._bind(new_id)
        if self.on_regenerate is not None:
            self.on_regenerate(new_id)
        return new_id


class RedisSessionBackend:
    """Opens per-session stores on a shared Redis connection pool."""

    def __init__(
        self, redis_url: str, *, ttl_seconds: int, socket_timeout: float = 5.0
    ) -> None:
        self.redis_url = redis_url
        self.ttl_seconds = ttl_seconds
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        with _redis_errors("ping"):
            self.client.ping()

    def open(
        self, session_id: str, on_regenerate: Optional[Callable[[str], None]] = None
    ) -> RedisSessionStore:
        return RedisSessionStore(
            self.client,
            session_id,
            ttl_seconds=self.ttl_seconds,
            on_regenerate=on_regenerate,
        )

    def close(self) -> None:
        self.client.close()
