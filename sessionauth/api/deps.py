from __future__ import annotations

from typing import Optional

from fastapi import Depends, HTTPException, Request, Response

from sessionauth.api.transport import HeaderRequestContext, ResponseCookieTransport
from sessionauth.logging import get_logger, set_correlation_id
from sessionauth.service.auth import AuthSessionManager
from sessionauth.service.runtime import get_runtime
from sessionauth.service.tokens import generate_token_value
from sessionauth.storage.models import User

logger = get_logger(__name__)

# Bounds for client-supplied session ids; anything else gets a fresh id
_SESSION_ID_MIN_LENGTH = 16
_SESSION_ID_MAX_LENGTH = 128


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _valid_session_id(value: Optional[str]) -> bool:
    if not value:
        return False
    if not _SESSION_ID_MIN_LENGTH <= len(value) <= _SESSION_ID_MAX_LENGTH:
        return False
    return all(ch.isalnum() or ch in "-_" for ch in value)


async def get_auth(request: Request, response: Response) -> AuthSessionManager:
    """Build the per-request auth manager around the caller's session."""
    set_correlation_id(request.headers.get("X-Request-ID"))
    runtime = get_runtime()
    settings = runtime.settings
    cookies = ResponseCookieTransport(request, response, settings)

    def issue_session_cookie(session_id: str) -> None:
        cookies.set(settings.session_cookie_name, session_id, settings.session_ttl_seconds)

    session_id = request.cookies.get(settings.session_cookie_name)
    if not _valid_session_id(session_id):
        session_id = generate_token_value()
        issue_session_cookie(session_id)
        logger.debug("session_issued")
    return runtime.manager_for(
        session_id,
        cookies,
        HeaderRequestContext(request),
        on_session_regenerate=issue_session_cookie,
    )


async def require_user(auth: AuthSessionManager = Depends(get_auth)) -> User:
    user = auth.get_current_user()
    if user is None:
        raise _http_error("unauthorized", "login required", status_code=401)
    return user


async def require_unforced_user(
    user: User = Depends(require_user),
    auth: AuthSessionManager = Depends(get_auth),
) -> User:
    """Reject sessions opened by ``force_login(..., mark_forced=True)``."""
    if auth.is_forced():
        raise _http_error(
            "forbidden", "not allowed for an impersonated session", status_code=403
        )
    return user
