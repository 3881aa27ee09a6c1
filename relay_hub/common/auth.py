from __future__ import annotations

import hmac
import os

from fastapi import Header

from .errors import ApiError


def _get_token() -> str:
    token = os.getenv("RELAY_HUB_TOKEN", "").strip()
    if not token:
        # refuse to run unauthenticated
        raise ApiError(code="UNAUTHORIZED", message="Server token not configured (RELAY_HUB_TOKEN)", http_status=401)
    return token


def _check(authorization: str | None) -> None:
    token = _get_token()
    if not authorization or not authorization.lower().startswith("bearer "):
        raise ApiError(code="UNAUTHORIZED", message="Missing Bearer token", http_status=401)
    got = authorization.split(" ", 1)[1].strip()
    if not hmac.compare_digest(got.encode("utf-8"), token.encode("utf-8")):
        raise ApiError(code="UNAUTHORIZED", message="Invalid token", http_status=401)


def require_bearer(authorization: str | None = Header(default=None)) -> None:
    """HTTP Bearer auth dependency."""
    _check(authorization)


def check_ws_bearer(authorization: str | None) -> None:
    """WebSocket Bearer auth, checked before accept."""
    _check(authorization)
