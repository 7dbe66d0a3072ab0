from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from sessionauth.api.deps import get_auth, require_unforced_user, require_user
from sessionauth.api.schemas import (
    CheckPasswordRequest,
    CheckPasswordResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    LogoutResponse,
    UserResponse,
)
from sessionauth.logging import get_logger
from sessionauth.service.auth import AuthSessionManager, ByUsername
from sessionauth.service.errors import AuthenticationError
from sessionauth.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth")


def _user_response(user: User, *, forced: bool = False) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        roles=sorted(user.roles),
        email=user.email,
        logins=user.logins,
        last_login=user.last_login,
        created_at=user.created_at,
        forced=forced,
    )


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, auth: AuthSessionManager = Depends(get_auth)):
    """Authenticate with username and password.

    With ``remember`` set, a remember cookie is issued so later visits log in
    automatically.

    Raises:
        401: For any rejected login, without saying which check failed
        503: If the user or token store is unreachable
    """
    if not auth.login(ByUsername(body.username), body.password, remember=body.remember):
        raise AuthenticationError("invalid credentials")
    user = auth.get_current_user()
    if user is None:
        raise AuthenticationError("invalid credentials")
    return Envelope(status="ok", data=_user_response(user))


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    auth: AuthSessionManager = Depends(get_auth),
):
    options = body or LogoutRequest()
    logged_out = auth.logout(destroy=options.destroy, everywhere=options.everywhere)
    return Envelope(status="ok", data=LogoutResponse(logged_out=logged_out))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(
    user: User = Depends(require_user),
    auth: AuthSessionManager = Depends(get_auth),
):
    return Envelope(status="ok", data=_user_response(user, forced=auth.is_forced()))


@router.post("/check-password", response_model=Envelope, tags=["auth"])
async def check_password(
    body: CheckPasswordRequest,
    user: User = Depends(require_unforced_user),
    auth: AuthSessionManager = Depends(get_auth),
):
    """Re-confirm the current user's password before a sensitive change."""
    valid = auth.check_password(body.password)
    if not valid:
        logger.info("check_password_failed", user_id=user.id)
    return Envelope(status="ok", data=CheckPasswordResponse(valid=valid))
