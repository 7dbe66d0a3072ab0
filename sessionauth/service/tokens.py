"""Bearer value and user-agent fingerprint helpers."""

from __future__ import annotations

import hashlib
import secrets
from typing import Optional

TOKEN_BYTES = 32


def generate_token_value() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def fingerprint(user_agent: Optional[str]) -> str:
    """Hash a user-agent string so raw header values are never stored."""
    return hashlib.sha256((user_agent or "").encode("utf-8")).hexdigest()
