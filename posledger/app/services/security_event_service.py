from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from posledger.app.models import SecurityEvent


logger = logging.getLogger(__name__)

# keys that must never reach the event log, even by accident
_SECRET_KEYS = {"access_token", "refresh_token", "password", "client_secret", "token", "api_key"}


def _scrub(metadata: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not metadata:
        return metadata
    return {k: ("[redacted]" if k.lower() in _SECRET_KEYS else v) for k, v in metadata.items()}


def log_security_event(
    db: Session,
    *,
    event_type: str,
    restaurant_id: Optional[str] = None,
    actor: str = "system",
    metadata: Optional[Dict[str, Any]] = None,
) -> SecurityEvent:
    row = SecurityEvent(
        restaurant_id=restaurant_id,
        event_type=event_type,
        actor=actor,
        metadata_json=_scrub(metadata),
    )
    db.add(row)
    db.flush()
    logger.info("security event %s restaurant=%s", event_type, restaurant_id)
    return row


def list_security_events(db: Session, restaurant_id: str, limit: int = 50) -> list[SecurityEvent]:
    return db.execute(
        select(SecurityEvent)
        .where(SecurityEvent.restaurant_id == restaurant_id)
        .order_by(SecurityEvent.created_at.desc())
        .limit(limit)
    ).scalars().all()
