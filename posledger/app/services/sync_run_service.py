from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from posledger.app.integrations.base import SyncWindow
from posledger.app.models import SyncRun


def _now() -> datetime:
    return datetime.now(timezone.utc)


def start_run(
    db: Session,
    *,
    restaurant_id: str,
    provider: str,
    trigger: str,
    window: Optional[SyncWindow] = None,
) -> SyncRun:
    run = SyncRun(
        restaurant_id=restaurant_id,
        provider=provider,
        trigger=trigger,
        mode=window.mode if window else "single_order",
        window_start=window.start if window else None,
        window_end=window.end if window else None,
        status="in_progress",
        started_at=_now(),
    )
    db.add(run)
    db.flush()
    return run


def finish_run(
    db: Session,
    run: SyncRun,
    *,
    status: str,
    counts: Optional[dict] = None,
    errors: Optional[list[str]] = None,
) -> None:
    run.status = status
    run.counts = counts
    if errors:
        run.errors = list(errors)
    run.finished_at = _now()
    db.add(run)


def list_runs(db: Session, restaurant_id: str, limit: int = 10) -> list[SyncRun]:
    return db.execute(
        select(SyncRun)
        .where(SyncRun.restaurant_id == restaurant_id)
        .order_by(SyncRun.started_at.desc())
        .limit(limit)
    ).scalars().all()
