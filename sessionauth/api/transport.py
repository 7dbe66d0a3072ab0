from __future__ import annotations

from typing import Dict, Optional

from fastapi import Request, Response

from sessionauth.config import Settings


class ResponseCookieTransport:
    """Cookie reads from the incoming request, writes onto the outgoing response.

    Values set or deleted earlier in the same request shadow the request's own
    cookies so later reads observe them.
    """

    def __init__(self, request: Request, response: Response, settings: Settings) -> None:
        self.request = request
        self.response = response
        self.settings = settings
        self._pending: Dict[str, Optional[str]] = {}

    def get(self, name: str) -> Optional[str]:
        if name in self._pending:
            return self._pending[name]
        return self.request.cookies.get(name)

    def set(self, name: str, value: str, ttl_seconds: int) -> None:
        self._pending[name] = value
        self._drop_set_cookie(name)
        self.response.set_cookie(
            name,
            value,
            max_age=ttl_seconds,
            httponly=True,
            secure=self.settings.cookie_secure,
            samesite=self.settings.cookie_samesite,
            path=self.settings.cookie_path,
        )

    def delete(self, name: str) -> None:
        self._pending[name] = None
        self._drop_set_cookie(name)
        self.response.delete_cookie(
            name,
            path=self.settings.cookie_path,
            secure=self.settings.cookie_secure,
            samesite=self.settings.cookie_samesite,
        )

    def _drop_set_cookie(self, name: str) -> None:
        # One Set-Cookie per name; a later write replaces an earlier one
        prefix = f"{name}=".encode("latin-1")
        self.response.raw_headers[:] = [
            (key, value)
            for key, value in self.response.raw_headers
            if not (key == b"set-cookie" and value.startswith(prefix))
        ]


class HeaderRequestContext:
    def __init__(self, request: Request) -> None:
        self.request = request

    def user_agent(self) -> str:
        return self.request.headers.get("user-agent", "")
