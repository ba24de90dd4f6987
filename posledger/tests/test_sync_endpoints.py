import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from sqlalchemy import select  # noqa: E402

from posledger.app.models import PosConnection, PosOrder, SecurityEvent  # noqa: E402


@pytest.fixture()
def client(api_client, make_engine, fake_clover, monkeypatch):
    from posledger.app.main import app
    from posledger.app.services.sync_service import get_sync_engine

    monkeypatch.delenv("SYNC_API_TOKEN", raising=False)
    engine = make_engine(fake_clover.handler)
    app.dependency_overrides[get_sync_engine] = lambda: engine
    try:
        yield api_client
    finally:
        app.dependency_overrides.pop(get_sync_engine, None)


def _burger_order(clover_order):
    return clover_order("O1", total=1000, lines=[{"id": "L1", "name": "Burger", "price": 1000}])


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_sync_requires_restaurant_id(client):
    res = client.post("/sync", json={})
    assert res.status_code == 400
    assert res.json() == {"error": "restaurantId is required"}

    assert client.post("/sync").status_code == 400


def test_sync_unknown_restaurant(client):
    res = client.post("/sync", json={"restaurantId": "nope"})
    assert res.status_code == 404
    assert res.json() == {"error": "restaurant not found"}


def test_sync_rejects_reversed_range_and_bad_action(client, restaurant):
    res = client.post(
        "/sync",
        json={"restaurantId": restaurant.id, "dateRange": {"startDate": "2024-02-01", "endDate": "2024-01-01"}},
    )
    assert res.status_code == 400
    assert "endDate" in res.json()["error"]

    res = client.post("/sync", json={"restaurantId": restaurant.id, "action": "weekly_sync"})
    assert res.status_code == 400
    assert "action" in res.json()["error"]


def test_sync_without_connection_is_a_bad_request(client, restaurant):
    res = client.post("/sync", json={"restaurantId": restaurant.id})
    assert res.status_code == 400
    assert "no active POS connection" in res.json()["error"]


def test_manual_sync_reports_progress(client, restaurant, make_connection, fake_clover, clover_order, sqlite_session):
    make_connection(restaurant.id, "clover")
    fake_clover.orders = [_burger_order(clover_order)]

    res = client.post("/sync", json={"restaurantId": restaurant.id, "action": "initial_sync"})

    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["results"] == {"ordersSynced": 1, "errors": []}
    assert body["syncComplete"] is False
    assert body["connections"][0]["progress"]["cursor"] == 3
    assert sqlite_session.execute(select(PosOrder.external_order_id)).scalars().all() == ["O1"]
    runs = client.get(f"/sync/runs/{restaurant.id}")
    assert runs.status_code == 200
    [run] = runs.json()
    assert run["provider"] == "clover"
    assert run["mode"] == "backfill"
    assert run["status"] == "ok"
    assert client.get("/sync/runs/missing").status_code == 404


def test_bulk_sync_always_answers_with_a_summary(client, restaurant, make_connection, fake_clover):
    make_connection(restaurant.id, "clover")
    fake_clover.orders_status = 404

    res = client.post("/bulk-sync")

    assert res.status_code == 200
    body = res.json()
    assert body["totalConnections"] == 1
    assert body["failedSyncs"] == 1
    assert body["errors"][0]["provider"] == "clover"


def test_bearer_token_guards_sync_routes(client, restaurant, monkeypatch):
    monkeypatch.setenv("SYNC_API_TOKEN", "s3cret")

    res = client.post("/bulk-sync")
    assert res.status_code == 401
    assert res.json() == {"error": "missing or invalid bearer token"}

    assert client.post("/bulk-sync", headers={"Authorization": "Bearer wrong"}).status_code == 401
    ok = client.post("/bulk-sync", headers={"Authorization": "Bearer s3cret"})
    assert ok.status_code == 200
    assert ok.json()["totalConnections"] == 0


def test_connection_lifecycle(client, sqlite_session, encryption):
    created = client.post("/restaurants", json={"name": "Cafe", "timezone": "America/New_York"})
    assert created.status_code == 200
    restaurant_id = created.json()["id"]

    res = client.post(
        f"/connections/{restaurant_id}/clover",
        json={"access_token": "tok-123", "refresh_token": "ref-456", "expires_in": 3600, "external_account_id": "M1"},
    )
    assert res.status_code == 200
    body = res.json()
    assert body["provider"] == "clover"
    assert body["sync_cursor"] == 0
    assert body["initial_sync_done"] is False
    assert "tok-123" not in res.text
    assert "access_token_encrypted" not in body

    stored = sqlite_session.execute(select(PosConnection)).scalar_one()
    assert stored.access_token_encrypted != "tok-123"
    assert encryption.decrypt(stored.access_token_encrypted) == "tok-123"

    listed = client.get(f"/connections/{restaurant_id}")
    assert [c["provider"] for c in listed.json()] == ["clover"]

    deleted = client.delete(f"/connections/{restaurant_id}/clover")
    assert deleted.status_code == 200
    assert deleted.json() == {
        "ok": True,
        "provider": "clover",
        "deleted": {"orders": 0, "line_items": 0, "adjustments": 0},
    }
    assert client.delete(f"/connections/{restaurant_id}/clover").status_code == 404

    events = sqlite_session.execute(
        select(SecurityEvent.event_type).order_by(SecurityEvent.created_at)
    ).scalars().all()
    assert events == ["CONNECTION_CREATED", "CONNECTION_DELETED"]


def test_lighthouse_alias_and_unknown_provider(client, restaurant):
    res = client.post(
        f"/connections/{restaurant.id}/lighthouse",
        json={"credentials": {"email": "a@b.c", "password": "pw"}, "config": {"location_ids": [7]}},
    )
    assert res.status_code == 200
    assert res.json()["provider"] == "shift4"

    assert client.post(f"/connections/{restaurant.id}/aloha", json={}).status_code == 400
    assert client.get("/connections/missing").status_code == 404


def test_restaurant_timezone_is_validated(client):
    res = client.post("/restaurants", json={"name": "Nowhere", "timezone": "Mars/Base"})
    assert res.status_code == 400
    assert res.json() == {"error": "unknown timezone: Mars/Base"}
