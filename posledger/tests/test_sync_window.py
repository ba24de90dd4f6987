from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from posledger.app.config import SyncSettings
from posledger.app.models import PosConnection
from posledger.app.services.connection_service import advance_cursor, sync_phase
from posledger.app.services.sync_window import backfill_window, plan_window, range_window


NOW = datetime(2024, 3, 16, 12, 0, tzinfo=timezone.utc)
SETTINGS = SyncSettings(batch_days=3, target_days=90)


def test_backfill_slice_never_passes_target():
    plan = backfill_window(88, SETTINGS, NOW)

    assert plan.next_cursor == 90
    assert plan.window.start == NOW - timedelta(days=90)
    assert plan.window.end == NOW - timedelta(days=88)


def test_cursor_only_moves_forward_and_marks_completion():
    conn = PosConnection(sync_cursor=30, initial_sync_done=False)

    advance_cursor(conn, 12, SETTINGS.target_days)
    assert conn.sync_cursor == 30
    assert sync_phase(conn) == "initial_backfill"

    advance_cursor(conn, 95, SETTINGS.target_days)
    assert conn.sync_cursor == 90
    assert conn.initial_sync_done is True
    assert sync_phase(conn) == "incremental"


@pytest.mark.parametrize(
    "cursor,done,action,expected",
    [
        (0, False, None, "backfill"),
        (0, False, "initial_sync", "backfill"),
        (0, False, "daily_sync", "incremental"),
        (0, False, "hourly_sync", "incremental"),
        (90, True, None, "incremental"),
    ],
)
def test_plan_picks_mode_from_state_and_action(cursor, done, action, expected):
    conn = PosConnection(sync_cursor=cursor, initial_sync_done=done)

    plan = plan_window(conn, SETTINGS, NOW, action=action)

    assert plan.window.mode == expected
    assert plan.advances_cursor is (expected == "backfill")


def test_date_range_wins_and_rejects_reversed_bounds():
    conn = PosConnection(sync_cursor=0, initial_sync_done=False)
    tz = ZoneInfo("America/Chicago")

    plan = plan_window(conn, SETTINGS, NOW, action="daily_sync", date_range=(date(2024, 3, 1), date(2024, 3, 1)), tz=tz)

    assert plan.window.mode == "range"
    assert plan.window.start == datetime(2024, 3, 1, 6, 0, tzinfo=timezone.utc)
    assert plan.window.end == datetime(2024, 3, 2, 6, 0, tzinfo=timezone.utc)
    with pytest.raises(ValueError):
        range_window(date(2024, 3, 2), date(2024, 3, 1), tz)
