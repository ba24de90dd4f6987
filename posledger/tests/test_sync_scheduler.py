from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

httpx = pytest.importorskip("httpx")

from sqlalchemy import select  # noqa: E402

from posledger.app.config import SyncSettings  # noqa: E402
from posledger.app.errors import ConnectionNotFound  # noqa: E402
from posledger.app.models import PosOrder, SecurityEvent, SyncRun  # noqa: E402
from posledger.app.services.connection_service import select_due_connections  # noqa: E402


NOW = datetime(2024, 3, 16, 12, 0, tzinfo=timezone.utc)


def _clock():
    return NOW


def _burger(line_id="L1", price=1000):
    return {"id": line_id, "name": "Burger", "price": price, "unitQty": 1000}


def _runs(db, restaurant_id):
    return db.execute(
        select(SyncRun).where(SyncRun.restaurant_id == restaurant_id).order_by(SyncRun.started_at)
    ).scalars().all()


def test_backfill_walks_back_to_target_then_switches_to_incremental(
    sqlite_session, restaurant, make_connection, make_engine, fake_clover
):
    conn = make_connection(restaurant.id, "clover")
    engine = make_engine(fake_clover.handler, clock=_clock)

    cursors = []
    for _ in range(30):
        result = engine.sync_connection(sqlite_session, conn)
        assert result.success
        assert result.mode == "backfill"
        cursors.append(conn.sync_cursor)

    assert cursors == sorted(cursors)
    assert cursors[0] == 3
    assert cursors[-1] == 90
    assert conn.initial_sync_done is True
    assert result.sync_complete is True
    assert result.phase == "incremental"

    windows = {
        (run.window_start.replace(tzinfo=timezone.utc), run.window_end.replace(tzinfo=timezone.utc))
        for run in _runs(sqlite_session, restaurant.id)
    }
    assert len(windows) == 30
    assert (NOW - timedelta(days=3), NOW) in windows
    assert (NOW - timedelta(days=90), NOW - timedelta(days=87)) in windows

    follow_up = engine.sync_connection(sqlite_session, conn)
    assert follow_up.mode == "incremental"
    assert conn.sync_cursor == 90
    [incremental] = [run for run in _runs(sqlite_session, restaurant.id) if run.mode == "incremental"]
    assert incremental.window_start.replace(tzinfo=timezone.utc) == NOW - timedelta(hours=25)


def test_orders_are_written_with_payments_and_warnings(
    sqlite_session, restaurant, make_connection, make_engine, fake_clover, clover_order
):
    conn = make_connection(restaurant.id, "clover")
    fake_clover.orders = [clover_order("O1", total=5001, lines=[_burger()])]
    fake_clover.payments["O1"] = [{"id": "P1", "amount": 5000, "taxAmount": 400, "tipAmount": 200}]
    engine = make_engine(fake_clover.handler)

    result = engine.sync_connection(sqlite_session, conn)

    assert result.success
    assert result.orders_synced == 1
    assert result.warnings == 1
    order = sqlite_session.execute(select(PosOrder)).scalar_one()
    assert order.total == Decimal("50.01")
    assert order.tax == Decimal("4.00")
    assert order.tip == Decimal("2.00")
    assert order.service_date == date(2024, 3, 15)
    assert order.reconciliation_warning is not None
    assert _runs(sqlite_session, restaurant.id)[-1].status == "ok"


def test_bad_order_is_skipped_and_the_rest_still_land(
    sqlite_session, restaurant, make_connection, make_engine, fake_clover, clover_order
):
    conn = make_connection(restaurant.id, "clover")
    broken = clover_order("O1", total=1000, lines=[_burger()], createdTime=None)
    fake_clover.orders = [broken, clover_order("O2", total=1000, lines=[_burger()])]
    engine = make_engine(fake_clover.handler)

    result = engine.sync_connection(sqlite_session, conn)

    assert result.success
    assert result.orders_synced == 1
    assert result.orders_failed == 1
    assert any("O1" in err for err in result.errors)
    ids = sqlite_session.execute(select(PosOrder.external_order_id)).scalars().all()
    assert ids == ["O2"]


@pytest.mark.parametrize(
    "broken_fields",
    [
        {"lineItems": {"elements": [{"id": "L1", "name": "Burger", "price": 1000}, "garbage"]}},
        {"createdTime": 10**20, "modifiedTime": 10**20},
        {"serviceCharge": {"id": "SC", "name": "Gratuity", "percentageDecimal": "lots"}},
    ],
)
def test_malformed_order_never_takes_down_its_page(
    sqlite_session, restaurant, make_connection, make_engine, fake_clover, clover_order, broken_fields
):
    conn = make_connection(restaurant.id, "clover")
    fake_clover.orders = [
        clover_order("O1", total=1000, lines=[_burger()]),
        clover_order("O2", total=1000, lines=[_burger()], **broken_fields),
        clover_order("O3", total=1000, lines=[_burger()]),
    ]
    engine = make_engine(fake_clover.handler)

    result = engine.sync_connection(sqlite_session, conn)

    assert result.success
    assert result.orders_synced == 2
    assert result.orders_failed == 1
    assert any(err.startswith("order O2:") for err in result.errors)
    ids = sqlite_session.execute(select(PosOrder.external_order_id)).scalars().all()
    assert sorted(ids) == ["O1", "O3"]
    sqlite_session.refresh(conn)
    assert conn.connection_status != "error"
    assert conn.sync_cursor == 3


def test_configured_page_size_drives_paging(
    sqlite_session, restaurant, make_connection, make_engine, fake_clover, clover_order
):
    conn = make_connection(restaurant.id, "clover")
    fake_clover.orders = [clover_order(f"O{i}", total=1000, lines=[_burger()]) for i in range(3)]
    engine = make_engine(fake_clover.handler, settings=SyncSettings(page_interval=0.0, page_size=2))

    result = engine.sync_connection(sqlite_session, conn)

    assert result.success
    assert result.orders_synced == 3
    assert result.pages == 2
    order_pages = [r for r in fake_clover.requests if r.url.path.endswith("/orders")]
    assert [(r.url.params["limit"], r.url.params["offset"]) for r in order_pages] == [("2", "0"), ("2", "2")]


def test_one_failing_connection_does_not_stop_the_batch(
    sqlite_session, restaurant, make_connection, make_engine, fake_clover, clover_order, sleeps
):
    make_connection(restaurant.id, "clover")
    toast = make_connection(
        restaurant.id,
        "toast",
        access_token=None,
        refresh_token=None,
        token_expires_at=None,
        external_account_id="rest-guid",
        credentials={"client_id": "cid", "client_secret": "bad"},
    )
    fake_clover.orders = [clover_order("O1", total=1000, lines=[_burger()])]

    def handler(request):
        if request.url.path.startswith("/authentication/"):
            return httpx.Response(401, json={"message": "bad client secret"})
        return fake_clover.handler(request)

    engine = make_engine(handler)

    bulk = engine.run_bulk_sync(sqlite_session)

    summary = bulk.as_dict()
    assert summary["totalConnections"] == 2
    assert summary["successfulSyncs"] == 1
    assert summary["failedSyncs"] == 1
    assert summary["totalOrdersSynced"] == 1
    [error] = summary["errors"]
    assert error["provider"] == "toast"
    assert error["restaurantId"] == restaurant.id
    assert sleeps == [2.0]

    sqlite_session.refresh(toast)
    assert toast.connection_status == "error"
    assert "toast token refresh failed" in toast.last_error
    assert toast.sync_cursor == 0
    events = sqlite_session.execute(select(SecurityEvent.event_type)).scalars().all()
    assert sorted(events) == ["SYNC_FAILED", "SYNC_SUCCESS"]


def test_due_selection_prefers_never_synced_then_oldest(sqlite_session, restaurant, make_connection):
    recent = make_connection(restaurant.id, "clover")
    never = make_connection(restaurant.id, "toast")
    stale = make_connection(restaurant.id, "square")
    recent.last_sync_time = NOW - timedelta(minutes=5)
    stale.last_sync_time = NOW - timedelta(days=2)
    sqlite_session.commit()

    picked = select_due_connections(sqlite_session, 2)

    assert [c.id for c in picked] == [never.id, stale.id]


def test_inactive_connections_are_not_selected(sqlite_session, restaurant, make_connection):
    conn = make_connection(restaurant.id, "clover")
    conn.is_active = False
    sqlite_session.commit()

    assert select_due_connections(sqlite_session, 5) == []


def test_order_budget_truncates_but_keeps_cursor_moving(
    sqlite_session, restaurant, make_connection, make_engine, fake_clover, clover_order
):
    conn = make_connection(restaurant.id, "clover")
    fake_clover.orders = [clover_order(f"O{i}", total=1000, lines=[_burger()]) for i in range(3)]
    engine = make_engine(fake_clover.handler, settings=SyncSettings(page_interval=0.0, max_orders_per_run=2))

    result = engine.sync_connection(sqlite_session, conn)

    assert result.success
    assert result.truncated is True
    assert result.orders_synced == 2
    assert result.as_dict()["progress"]["truncated"] is True
    assert conn.sync_cursor == 3


def test_page_failure_aborts_without_advancing(
    sqlite_session, restaurant, make_connection, make_engine, fake_clover
):
    conn = make_connection(restaurant.id, "clover")
    fake_clover.orders_status = 404
    engine = make_engine(fake_clover.handler)

    result = engine.sync_connection(sqlite_session, conn)

    assert result.success is False
    assert result.aborted is True
    assert conn.sync_cursor == 0
    assert conn.connection_status == "error"
    assert _runs(sqlite_session, restaurant.id)[-1].status == "partial"


def test_unauthorized_orders_call_refreshes_once(
    sqlite_session, restaurant, make_connection, make_engine, fake_clover, monkeypatch
):
    monkeypatch.setenv("CLOVER_APP_ID", "app-id")
    monkeypatch.setenv("CLOVER_APP_SECRET", "app-secret")
    conn = make_connection(restaurant.id, "clover")
    calls = {"orders": 0}

    def handler(request):
        if request.url.path.endswith("/orders"):
            calls["orders"] += 1
            if calls["orders"] == 1:
                return httpx.Response(401, json={"message": "expired"})
        return fake_clover.handler(request)

    engine = make_engine(handler)

    result = engine.sync_connection(sqlite_session, conn)

    assert result.success
    refreshes = [r for r in fake_clover.requests if r.url.path == "/oauth/v2/refresh"]
    assert len(refreshes) == 1
    assert engine.encryption.decrypt(conn.access_token_encrypted) == "refreshed-access"


def test_downstream_runs_for_touched_service_dates(
    sqlite_session, restaurant, make_connection, make_engine, fake_clover, clover_order, downstream
):
    conn = make_connection(restaurant.id, "clover")
    day_one = int(datetime(2024, 3, 14, 18, 0, tzinfo=timezone.utc).timestamp() * 1000)
    day_two = int(datetime(2024, 3, 15, 18, 0, tzinfo=timezone.utc).timestamp() * 1000)
    fake_clover.orders = [
        clover_order("O1", total=1000, lines=[_burger()], created_ms=day_two),
        clover_order("O2", total=1000, lines=[_burger()], created_ms=day_one),
    ]
    downstream.fail_pnl_for = {date(2024, 3, 14)}
    engine = make_engine(fake_clover.handler)

    result = engine.sync_connection(sqlite_session, conn)

    assert result.success
    assert downstream.unified_sales == [("clover", restaurant.id, date(2024, 3, 14), date(2024, 3, 15))]
    assert downstream.pnl == [("clover", restaurant.id, date(2024, 3, 15))]
    assert result.downstream_errors == ["pnl 2024-03-14: pnl procedure failed"]


def test_per_batch_downstream_waits_for_the_whole_batch(
    sqlite_session, restaurant, make_connection, make_engine, fake_clover, clover_order, downstream
):
    make_connection(restaurant.id, "clover")
    fake_clover.orders = [clover_order("O1", total=1000, lines=[_burger()])]
    engine = make_engine(
        fake_clover.handler,
        settings=SyncSettings(page_interval=0.0, downstream_mode="per_batch"),
    )

    engine.run_bulk_sync(sqlite_session)

    assert downstream.unified_sales == [("clover", restaurant.id, date(2024, 3, 15), date(2024, 3, 15))]
    assert downstream.pnl == [("clover", restaurant.id, date(2024, 3, 15))]


def test_manual_initial_sync_restarts_a_finished_backfill(
    sqlite_session, restaurant, make_connection, make_engine, fake_clover
):
    conn = make_connection(restaurant.id, "clover")
    conn.sync_cursor = 90
    conn.initial_sync_done = True
    sqlite_session.commit()
    engine = make_engine(fake_clover.handler)

    summary = engine.run_manual_sync(sqlite_session, restaurant_id=restaurant.id, action="initial_sync")

    assert summary["success"] is True
    assert summary["syncComplete"] is False
    [connection] = summary["connections"]
    assert connection["mode"] == "backfill"
    assert connection["progress"] == {"cursor": 3, "targetDays": 90, "phase": "initial_backfill", "truncated": False}


def test_manual_date_range_does_not_touch_the_cursor(
    sqlite_session, restaurant, make_connection, make_engine, fake_clover
):
    conn = make_connection(restaurant.id, "clover")
    engine = make_engine(fake_clover.handler)

    summary = engine.run_manual_sync(
        sqlite_session,
        restaurant_id=restaurant.id,
        date_range=(date(2024, 1, 1), date(2024, 1, 31)),
    )

    assert summary["connections"][0]["mode"] == "range"
    assert conn.sync_cursor == 0
    run = _runs(sqlite_session, restaurant.id)[-1]
    # Chicago midnight on Jan 1 through midnight after Jan 31
    assert run.window_start.replace(tzinfo=timezone.utc) == datetime(2024, 1, 1, 6, 0, tzinfo=timezone.utc)
    assert run.window_end.replace(tzinfo=timezone.utc) == datetime(2024, 2, 1, 6, 0, tzinfo=timezone.utc)


def test_manual_sync_without_connections(sqlite_session, restaurant, make_engine, fake_clover):
    engine = make_engine(fake_clover.handler)

    with pytest.raises(ConnectionNotFound):
        engine.run_manual_sync(sqlite_session, restaurant_id=restaurant.id)
