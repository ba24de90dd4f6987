import json
from decimal import Decimal

import pytest

pytest.importorskip("fastapi")
httpx = pytest.importorskip("httpx")

from sqlalchemy import select  # noqa: E402

from posledger.app.integrations.utils import hmac_base64, hmac_hex  # noqa: E402
from posledger.app.models import PosOrder  # noqa: E402


TOAST_ORDER = {
    "guid": "order-guid",
    "openedDate": "2024-03-15T17:30:00.000+0000",
    "closedDate": "2024-03-15T18:00:00.000+0000",
    "businessDate": 20240315,
    "checks": [
        {
            "guid": "c1",
            "totalAmount": 10.80,
            "selections": [
                {"guid": "s1", "displayName": "Burger", "quantity": 1, "preDiscountPrice": 10.00},
            ],
            "payments": [
                {"guid": "p1", "amount": 10.80, "tipAmount": 2.00, "paymentStatus": "CAPTURED"},
                {"guid": "p2", "amount": 99.00, "paymentStatus": "VOIDED"},
            ],
        }
    ],
}

SQUARE_ORDER = {
    "id": "sq-order",
    "state": "COMPLETED",
    "created_at": "2024-03-15T17:00:00Z",
    "closed_at": "2024-03-15T18:00:00Z",
    "total_money": {"amount": 1280, "currency": "USD"},
    "total_tip_money": {"amount": 200, "currency": "USD"},
    "line_items": [
        {
            "uid": "li1",
            "name": "Burger",
            "quantity": "1",
            "base_price_money": {"amount": 1000},
            "gross_sales_money": {"amount": 1000},
        }
    ],
    "tenders": [
        {"id": "t1", "type": "CARD", "amount_money": {"amount": 1280}, "tip_money": {"amount": 200}},
    ],
}


class FakeOrders:
    def __init__(self):
        self.requests = []

    def handler(self, request):
        self.requests.append(request)
        if request.url.path == "/orders/v2/orders/order-guid":
            return httpx.Response(200, json=TOAST_ORDER)
        if request.url.path == "/v2/orders/sq-order":
            return httpx.Response(200, json={"order": SQUARE_ORDER})
        return httpx.Response(404, json={"message": "not found"})


@pytest.fixture()
def fake_orders():
    return FakeOrders()


@pytest.fixture()
def client(api_client, make_engine, fake_orders, monkeypatch):
    from posledger.app.main import app
    from posledger.app.services.sync_service import get_sync_engine

    monkeypatch.setenv("TOAST_WEBHOOK_SECRET", "toast-secret")
    monkeypatch.setenv("SQUARE_WEBHOOK_SIGNATURE_KEY", "square-key")
    monkeypatch.setenv("SQUARE_WEBHOOK_URL", "https://hooks.example.com/webhooks/square")
    engine = make_engine(fake_orders.handler)
    app.dependency_overrides[get_sync_engine] = lambda: engine
    try:
        yield api_client
    finally:
        app.dependency_overrides.pop(get_sync_engine, None)


def _toast_body(**overrides):
    payload = {"eventType": "ORDER_UPDATED", "restaurantGuid": "rest-guid", "entityGuid": "order-guid"}
    payload.update(overrides)
    return json.dumps(payload).encode()


def _toast_post(client, body, signature=None):
    sig = signature if signature is not None else hmac_hex("toast-secret", body)
    return client.post("/webhooks/toast", content=body, headers={"Toast-Signature": sig})


def test_toast_webhook_with_bad_signature_is_rejected(client):
    res = _toast_post(client, _toast_body(), signature="deadbeef")

    assert res.status_code == 401
    assert res.json() == {"error": "webhook verification failed: invalid_signature"}


def test_toast_webhook_without_configured_secret_is_rejected(client, monkeypatch):
    monkeypatch.delenv("TOAST_WEBHOOK_SECRET")

    res = _toast_post(client, _toast_body(), signature="anything")

    assert res.status_code == 401


def test_toast_webhook_syncs_the_single_order(client, sqlite_session, restaurant, make_connection, fake_orders):
    conn = make_connection(restaurant.id, "toast", external_account_id="rest-guid")

    res = _toast_post(client, _toast_body())

    assert res.status_code == 200
    assert res.json() == {"ok": True, "provider": "toast", "received": 1, "processed": 1, "failed": 0, "ignored": 0}
    [request] = fake_orders.requests
    assert request.headers["Toast-Restaurant-External-ID"] == "rest-guid"
    assert request.headers["Authorization"] == "Bearer stored-access"

    order = sqlite_session.execute(select(PosOrder)).scalar_one()
    assert order.external_order_id == "order-guid"
    assert order.total == Decimal("10.80")
    assert order.tip == Decimal("2.00")
    assert order.tax == Decimal("0.80")
    assert order.reconciliation_warning is None
    sqlite_session.refresh(conn)
    assert conn.last_webhook_at is not None


def test_toast_webhook_for_unknown_restaurant_is_ignored(client, fake_orders):
    res = _toast_post(client, _toast_body(restaurantGuid="someone-else"))

    assert res.status_code == 200
    assert res.json()["ignored"] == 1
    assert fake_orders.requests == []


def test_non_order_events_are_acknowledged(client, restaurant, make_connection, fake_orders):
    make_connection(restaurant.id, "toast", external_account_id="rest-guid")

    res = _toast_post(client, _toast_body(eventType="MENU_UPDATED"))

    assert res.json()["ignored"] == 1
    assert fake_orders.requests == []


def test_unreadable_body_is_acknowledged(client):
    res = _toast_post(client, b"not json")

    assert res.status_code == 200
    body = res.json()
    assert body["ignored"] is True
    assert "not JSON" in body["reason"]


def test_square_webhook_signature_covers_notification_url(
    client, sqlite_session, restaurant, make_connection, fake_orders
):
    make_connection(restaurant.id, "square", external_account_id="LOC1", config={"merchant_id": "MERCH"})
    body = json.dumps({"type": "order.updated", "merchant_id": "MERCH", "data": {"id": "sq-order"}}).encode()

    unsigned = client.post("/webhooks/square", content=body, headers={"x-square-hmacsha256-signature": hmac_base64("square-key", body)})
    assert unsigned.status_code == 401

    signature = hmac_base64("square-key", b"https://hooks.example.com/webhooks/square" + body)
    res = client.post("/webhooks/square", content=body, headers={"x-square-hmacsha256-signature": signature})

    assert res.status_code == 200
    assert res.json()["processed"] == 1
    order = sqlite_session.execute(select(PosOrder)).scalar_one()
    assert order.total == Decimal("10.80")
    assert order.tip == Decimal("2.00")
    assert order.payments_total == Decimal("10.80")
    assert order.tax == Decimal("0.80")


def test_providers_without_webhooks_and_unknown_providers(client):
    assert client.post("/webhooks/clover", content=b"{}").json() == {
        "ok": True,
        "provider": "clover",
        "ignored": True,
    }
    assert client.post("/webhooks/aloha", content=b"{}").json() == {
        "ok": True,
        "provider": "aloha",
        "ignored": True,
    }


def test_datastore_failure_still_acknowledges_the_delivery(client, restaurant, make_connection, monkeypatch):
    from sqlalchemy.exc import OperationalError

    from posledger.app.services.sync_service import SyncEngine

    make_connection(restaurant.id, "toast", external_account_id="rest-guid")

    def _broken_start(self, db, conn, *, trigger, window):
        raise OperationalError("INSERT INTO pos_sync_runs", {}, Exception("database is locked"))

    monkeypatch.setattr(SyncEngine, "_start", _broken_start)

    res = _toast_post(client, _toast_body())

    assert res.status_code == 200
    assert res.json() == {"ok": True, "provider": "toast", "received": 1, "processed": 0, "failed": 1, "ignored": 0}
