from __future__ import annotations

import hmac
from typing import Optional

from fastapi import HTTPException, Request

from posledger.app.config import sync_api_token
from posledger.app.errors import AuthenticationError


def _bearer(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization") or ""
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def check_api_token(expected: Optional[str], presented: Optional[str]) -> None:
    """Raise AuthenticationError unless `presented` matches; no-op when nothing is configured."""
    if expected is None:
        return
    if not presented or not hmac.compare_digest(presented.encode(), expected.encode()):
        raise AuthenticationError("missing or invalid bearer token")


def require_api_token(request: Request) -> None:
    """
    Dependency guarding the sync and connection routes.

    Open when SYNC_API_TOKEN is unset (local dev); otherwise the caller must
    send `Authorization: Bearer <SYNC_API_TOKEN>`.
    """
    try:
        check_api_token(sync_api_token(), _bearer(request))
    except AuthenticationError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
