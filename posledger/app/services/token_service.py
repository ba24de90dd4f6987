from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from posledger.app.errors import EncryptionError, TokenRefreshError
from posledger.app.integrations import get_adapter
from posledger.app.integrations.base import PosAdapter, ProviderCredentials
from posledger.app.models import PosConnection, as_utc
from posledger.app.services.connection_service import load_credentials
from posledger.app.services.encryption_service import EncryptionService, encrypt_optional
from posledger.app.services.security_event_service import log_security_event


logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def needs_refresh(conn: PosConnection, adapter: PosAdapter, *, now: datetime) -> bool:
    if not conn.access_token_encrypted:
        return True
    expires_at = as_utc(conn.token_expires_at)
    if expires_at is None:
        return True
    return expires_at - now <= adapter.refresh_margin


def refresh_token(
    db: Session,
    conn: PosConnection,
    *,
    adapter: PosAdapter,
    creds: ProviderCredentials,
    http: httpx.Client,
    encryption: EncryptionService,
    now: datetime,
) -> str:
    spec = adapter.build_refresh_request(creds)
    try:
        response = http.request(spec.method, spec.url, json=spec.json, params=spec.params, headers=spec.headers)
    except httpx.HTTPError as exc:
        raise TokenRefreshError(adapter.provider, f"request failed: {exc}") from exc
    if response.status_code >= 400:
        raise TokenRefreshError(
            adapter.provider,
            f"provider rejected refresh with {response.status_code}",
            status_code=response.status_code,
        )
    try:
        payload = response.json()
    except ValueError as exc:
        raise TokenRefreshError(adapter.provider, "refresh response is not JSON") from exc
    if not isinstance(payload, dict):
        raise TokenRefreshError(adapter.provider, "refresh response is not an object")

    grant = adapter.parse_refresh_response(payload, now=now)
    conn.access_token_encrypted = encryption.encrypt(grant.access_token)
    if grant.refresh_token:
        conn.refresh_token_encrypted = encrypt_optional(encryption, grant.refresh_token)
    conn.token_expires_at = grant.expires_at
    if grant.config_updates:
        conn.config_json = {**(conn.config_json or {}), **grant.config_updates}
    conn.updated_at = now
    log_security_event(
        db,
        event_type=f"{adapter.provider.upper()}_TOKEN_REFRESHED",
        restaurant_id=conn.restaurant_id,
        metadata={"provider": adapter.provider, "expires_at": grant.expires_at.isoformat()},
    )
    # a rotated refresh token must survive any later rollback of the run
    db.commit()
    logger.info("refreshed %s token for restaurant %s", adapter.provider, conn.restaurant_id)
    return grant.access_token


def ensure_valid_token(
    db: Session,
    conn: PosConnection,
    *,
    http: httpx.Client,
    encryption: EncryptionService,
    force: bool = False,
    now: Optional[datetime] = None,
    timezone_name: str = "UTC",
) -> str:
    """
    Plaintext access token for `conn`, refreshed first when forced, unset, or
    inside the provider's safety margin. The token is never cached beyond the
    caller's run.
    """
    adapter = get_adapter(conn.provider)
    current = now or _now()
    if not force and not needs_refresh(conn, adapter, now=current):
        try:
            return encryption.decrypt(conn.access_token_encrypted)
        except EncryptionError:
            logger.warning("stored %s access token unreadable; refreshing", conn.provider)

    try:
        creds = load_credentials(conn, encryption, timezone_name=timezone_name)
    except EncryptionError as exc:
        raise TokenRefreshError(conn.provider, str(exc)) from exc
    return refresh_token(
        db,
        conn,
        adapter=adapter,
        creds=creds,
        http=http,
        encryption=encryption,
        now=current,
    )
