from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Literal, Optional

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from posledger.app.api.deps import require_api_token
from posledger.app.db import get_db
from posledger.app.errors import ConnectionNotFound
from posledger.app.models import Restaurant
from posledger.app.services.sync_run_service import list_runs
from posledger.app.services.sync_service import BulkSyncResult, SyncEngine, get_sync_engine


logger = logging.getLogger(__name__)

router = APIRouter(tags=["sync"], dependencies=[Depends(require_api_token)])


class DateRangeIn(BaseModel):
    startDate: date
    endDate: date


class SyncIn(BaseModel):
    restaurantId: Optional[str] = None
    action: Optional[Literal["initial_sync", "daily_sync", "hourly_sync"]] = None
    dateRange: Optional[DateRangeIn] = None
    provider: Optional[str] = None


class SyncResultsOut(BaseModel):
    ordersSynced: int
    errors: list[str]


class SyncOut(BaseModel):
    success: bool
    results: SyncResultsOut
    syncComplete: bool
    connections: list[dict]


class BulkSyncOut(BaseModel):
    totalConnections: int
    successfulSyncs: int
    failedSyncs: int
    totalOrdersSynced: int
    errors: list[dict]


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.post("/sync", response_model=SyncOut)
def manual_sync(
    req: Optional[SyncIn] = Body(default=None),
    db: Session = Depends(get_db),
    engine: SyncEngine = Depends(get_sync_engine),
):
    if req is None or not req.restaurantId:
        return _error(400, "restaurantId is required")
    if db.get(Restaurant, req.restaurantId) is None:
        return _error(404, "restaurant not found")

    date_range = None
    if req.dateRange is not None:
        if req.dateRange.endDate < req.dateRange.startDate:
            return _error(400, "dateRange.endDate must not be before startDate")
        date_range = (req.dateRange.startDate, req.dateRange.endDate)

    try:
        return engine.run_manual_sync(
            db,
            restaurant_id=req.restaurantId,
            action=req.action,
            date_range=date_range,
            provider=req.provider,
        )
    except ConnectionNotFound as exc:
        return _error(400, str(exc))
    except Exception as exc:  # noqa: BLE001 - surface as a request-level failure
        logger.exception("manual sync failed for restaurant=%s", req.restaurantId)
        return _error(500, str(exc) or "sync failed")


@router.post("/bulk-sync", response_model=BulkSyncOut)
def bulk_sync(
    db: Session = Depends(get_db),
    engine: SyncEngine = Depends(get_sync_engine),
):
    try:
        return engine.run_bulk_sync(db).as_dict()
    except Exception as exc:  # noqa: BLE001 - cron callers always get a summary
        logger.exception("bulk sync failed before any connection ran")
        db.rollback()
        return BulkSyncResult(errors=[{"error": str(exc) or "bulk sync failed"}]).as_dict()


class SyncRunOut(BaseModel):
    id: str
    provider: str
    trigger: str
    mode: str
    status: str
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    counts: Optional[dict] = None
    errors: Optional[list] = None
    started_at: datetime
    finished_at: Optional[datetime] = None

    class Config:
        from_attributes = True


@router.get("/sync/runs/{restaurant_id}", response_model=list[SyncRunOut])
def recent_runs(restaurant_id: str, limit: int = 10, db: Session = Depends(get_db)):
    if db.get(Restaurant, restaurant_id) is None:
        return _error(404, "restaurant not found")
    return list_runs(db, restaurant_id, limit=min(max(limit, 1), 100))
