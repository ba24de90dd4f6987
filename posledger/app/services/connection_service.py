from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional

from fastapi import HTTPException
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from posledger.app.integrations.base import ProviderCredentials
from posledger.app.models import (
    PosAdjustment,
    PosConnection,
    PosOrder,
    PosOrderLineItem,
    Restaurant,
    SyncRun,
)
from posledger.app.services.encryption_service import (
    EncryptionService,
    decrypt_json,
    decrypt_optional,
    encrypt_json,
    encrypt_optional,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def require_restaurant(db: Session, restaurant_id: str) -> Restaurant:
    restaurant = db.get(Restaurant, restaurant_id)
    if not restaurant:
        raise HTTPException(status_code=404, detail="restaurant not found")
    return restaurant


def sync_phase(conn: PosConnection) -> str:
    if conn.initial_sync_done:
        return "incremental"
    if (conn.sync_cursor or 0) == 0:
        return "new"
    return "initial_backfill"


def get_connection(db: Session, restaurant_id: str, provider: str) -> Optional[PosConnection]:
    return db.execute(
        select(PosConnection).where(
            PosConnection.restaurant_id == restaurant_id,
            PosConnection.provider == provider,
        )
    ).scalar_one_or_none()


def list_connections(db: Session, restaurant_id: str) -> List[PosConnection]:
    require_restaurant(db, restaurant_id)
    return db.execute(
        select(PosConnection)
        .where(PosConnection.restaurant_id == restaurant_id)
        .order_by(PosConnection.provider)
    ).scalars().all()


def list_active_connections(
    db: Session,
    restaurant_id: str,
    provider: Optional[str] = None,
) -> List[PosConnection]:
    stmt = select(PosConnection).where(
        PosConnection.restaurant_id == restaurant_id,
        PosConnection.is_active.is_(True),
    )
    if provider:
        stmt = stmt.where(PosConnection.provider == provider)
    return db.execute(stmt.order_by(PosConnection.provider)).scalars().all()


def select_due_connections(db: Session, limit: int) -> List[PosConnection]:
    """Least recently synced first; never-synced connections lead."""
    return db.execute(
        select(PosConnection)
        .where(PosConnection.is_active.is_(True))
        .order_by(
            PosConnection.last_sync_time.is_(None).desc(),
            PosConnection.last_sync_time.asc(),
            PosConnection.created_at.asc(),
        )
        .limit(limit)
    ).scalars().all()


def find_connections_by_account(db: Session, provider: str, account_id: Optional[str]) -> List[PosConnection]:
    if not account_id:
        return []
    candidates = db.execute(
        select(PosConnection).where(
            PosConnection.provider == provider,
            PosConnection.is_active.is_(True),
        )
    ).scalars().all()
    matches = []
    for conn in candidates:
        config = conn.config_json or {}
        if conn.external_account_id == account_id or config.get("merchant_id") == account_id:
            matches.append(conn)
    return matches


def upsert_connection(
    db: Session,
    encryption: EncryptionService,
    *,
    restaurant_id: str,
    provider: str,
    access_token: Optional[str] = None,
    refresh_token: Optional[str] = None,
    token_expires_at: Optional[datetime] = None,
    credentials: Optional[dict[str, Any]] = None,
    external_account_id: Optional[str] = None,
    region: Optional[str] = None,
    environment: Optional[str] = None,
    config: Optional[dict[str, Any]] = None,
) -> PosConnection:
    conn = get_connection(db, restaurant_id, provider)
    if conn is None:
        conn = PosConnection(restaurant_id=restaurant_id, provider=provider, created_at=_now())
        db.add(conn)

    conn.access_token_encrypted = encrypt_optional(encryption, access_token)
    conn.refresh_token_encrypted = encrypt_optional(encryption, refresh_token)
    conn.credentials_encrypted = encrypt_json(encryption, credentials)
    conn.token_expires_at = token_expires_at
    conn.external_account_id = external_account_id
    conn.region = region
    conn.environment = environment
    conn.config_json = config

    # a (re)connect starts the backfill over
    conn.sync_cursor = 0
    conn.initial_sync_done = False
    conn.connection_status = "connected"
    conn.last_error = None
    conn.last_error_at = None
    conn.is_active = True
    conn.connected_at = _now()
    conn.updated_at = _now()
    db.flush()
    return conn


def load_credentials(
    conn: PosConnection,
    encryption: EncryptionService,
    *,
    timezone_name: str,
) -> ProviderCredentials:
    return ProviderCredentials(
        refresh_token=decrypt_optional(encryption, conn.refresh_token_encrypted),
        secrets=decrypt_json(encryption, conn.credentials_encrypted),
        external_account_id=conn.external_account_id,
        region=conn.region,
        environment=conn.environment,
        config=dict(conn.config_json or {}),
        timezone=timezone_name,
    )


def mark_sync_success(conn: PosConnection, *, at: Optional[datetime] = None) -> None:
    now = at or _now()
    conn.last_sync_time = now
    conn.connection_status = "connected"
    conn.last_error = None
    conn.last_error_at = None
    conn.updated_at = now


def mark_sync_error(conn: PosConnection, message: str, *, at: Optional[datetime] = None) -> None:
    now = at or _now()
    conn.connection_status = "error"
    conn.last_error = message[:2000]
    conn.last_error_at = now
    conn.updated_at = now


def advance_cursor(conn: PosConnection, next_cursor: int, target_days: int) -> None:
    # never move backwards; overlapping runs converge on the furthest cursor
    conn.sync_cursor = min(max(conn.sync_cursor or 0, next_cursor), target_days)
    if conn.sync_cursor >= target_days:
        conn.initial_sync_done = True


def restart_backfill(conn: PosConnection) -> None:
    conn.sync_cursor = 0
    conn.initial_sync_done = False


def disconnect(db: Session, conn: PosConnection) -> dict[str, int]:
    """Delete the connection and every ledger row it produced for this restaurant."""
    restaurant_id = conn.restaurant_id
    provider = conn.provider
    order_ids = select(PosOrder.id).where(
        PosOrder.restaurant_id == restaurant_id,
        PosOrder.provider == provider,
    )
    line_items = db.execute(
        delete(PosOrderLineItem)
        .where(
            PosOrderLineItem.restaurant_id == restaurant_id,
            PosOrderLineItem.order_id.in_(order_ids),
        )
        .execution_options(synchronize_session=False)
    ).rowcount
    adjustments = db.execute(
        delete(PosAdjustment)
        .where(PosAdjustment.restaurant_id == restaurant_id, PosAdjustment.provider == provider)
        .execution_options(synchronize_session=False)
    ).rowcount
    orders = db.execute(
        delete(PosOrder)
        .where(PosOrder.restaurant_id == restaurant_id, PosOrder.provider == provider)
        .execution_options(synchronize_session=False)
    ).rowcount
    db.execute(
        delete(SyncRun)
        .where(SyncRun.restaurant_id == restaurant_id, SyncRun.provider == provider)
        .execution_options(synchronize_session=False)
    )
    db.delete(conn)
    db.flush()
    return {"orders": orders, "line_items": line_items, "adjustments": adjustments}
