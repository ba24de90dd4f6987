from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from posledger.app.config import SyncSettings
from posledger.app.integrations.base import SyncWindow
from posledger.app.models import PosConnection
from posledger.app.norma.service_date import local_day_bounds


INCREMENTAL_ACTIONS = {"daily_sync", "hourly_sync"}


@dataclass(frozen=True)
class WindowPlan:
    window: SyncWindow
    next_cursor: Optional[int] = None  # only backfill runs move the cursor

    @property
    def advances_cursor(self) -> bool:
        return self.next_cursor is not None


def backfill_window(cursor: int, settings: SyncSettings, now: datetime) -> WindowPlan:
    """
    Next slice of the historical backfill: `batch_days` further back than the
    cursor, never past `target_days`.
    """
    cursor = max(0, cursor)
    far = min(cursor + settings.batch_days, settings.target_days)
    return WindowPlan(
        window=SyncWindow(
            start=now - timedelta(days=far),
            end=now - timedelta(days=cursor),
            mode="backfill",
        ),
        next_cursor=far,
    )


def incremental_window(settings: SyncSettings, now: datetime) -> WindowPlan:
    lookback = timedelta(hours=settings.incremental_lookback_hours + settings.incremental_buffer_hours)
    return WindowPlan(window=SyncWindow(start=now - lookback, end=now, mode="incremental"))


def range_window(start_date: date, end_date: date, tz: ZoneInfo) -> WindowPlan:
    if end_date < start_date:
        raise ValueError("endDate must not be before startDate")
    start, _ = local_day_bounds(start_date, tz)
    _, end = local_day_bounds(end_date, tz)
    return WindowPlan(window=SyncWindow(start=start, end=end, mode="range"))


def plan_window(
    conn: PosConnection,
    settings: SyncSettings,
    now: datetime,
    *,
    action: Optional[str] = None,
    date_range: Optional[tuple[date, date]] = None,
    tz: Optional[ZoneInfo] = None,
) -> WindowPlan:
    if date_range is not None:
        return range_window(date_range[0], date_range[1], tz or ZoneInfo(settings.default_timezone))
    if action in INCREMENTAL_ACTIONS or conn.initial_sync_done:
        return incremental_window(settings, now)
    return backfill_window(conn.sync_cursor or 0, settings, now)
