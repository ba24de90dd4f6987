from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence
from zoneinfo import ZoneInfo

from posledger.app.errors import ProviderDataError, TokenRefreshError
from posledger.app.integrations.base import (
    PageResult,
    ProviderCredentials,
    RequestSpec,
    SyncWindow,
    TokenGrant,
    WebhookEvent,
    WebhookVerificationResult,
)
from posledger.app.integrations.utils import (
    as_list,
    header_value,
    hmac_base64,
    parse_json_body,
    require_field,
    signatures_match,
)
from posledger.app.norma.money import coerce_minor, coerce_quantity
from posledger.app.norma.orders import (
    DiscountDraft,
    LineDraft,
    OrderDraft,
    PaymentDraft,
    ServiceChargeDraft,
)
from posledger.app.norma.service_date import parse_timestamp


SQUARE_ENV_URLS = {
    "production": "https://connect.squareup.com",
    "sandbox": "https://connect.squareupsandbox.com",
}
SQUARE_API_VERSION = "2024-12-18"
SQUARE_SIGNATURE_HEADER = "x-square-hmacsha256-signature"
SQUARE_ORDER_EVENTS = {"order.created", "order.updated", "order.fulfillment.updated"}
NON_REVENUE_ITEM_TYPES = {"GIFT_CARD", "CUSTOM_AMOUNT_GIFT_CARD"}


def square_base_url(environment: Optional[str]) -> str:
    override = os.getenv("SQUARE_BASE_URL")
    if override:
        return override.rstrip("/")
    key = (environment or "production").strip().lower()
    return SQUARE_ENV_URLS.get(key, SQUARE_ENV_URLS["production"])


def square_app_credentials() -> tuple[str, str]:
    client_id = os.getenv("SQUARE_APPLICATION_ID")
    client_secret = os.getenv("SQUARE_APPLICATION_SECRET")
    if not client_id or not client_secret:
        raise TokenRefreshError("square", "SQUARE_APPLICATION_ID and SQUARE_APPLICATION_SECRET must be configured")
    return client_id, client_secret


def _money(payload: Any, *, field: str) -> int:
    if not isinstance(payload, dict):
        return 0
    return coerce_minor(payload.get("amount"), field=field)


def _rfc3339(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class SquareAdapter:
    provider = "square"
    refresh_margin = timedelta(hours=1)

    def __init__(self, page_size: int = 100):
        self.page_size = page_size

    def _location_id(self, creds: ProviderCredentials) -> str:
        if not creds.external_account_id:
            raise ProviderDataError("square connection has no location id")
        return creds.external_account_id

    # ---- tokens ----

    def build_refresh_request(self, creds: ProviderCredentials) -> RequestSpec:
        if not creds.refresh_token:
            raise TokenRefreshError("square", "no refresh token stored")
        client_id, client_secret = square_app_credentials()
        return RequestSpec(
            method="POST",
            url=f"{square_base_url(creds.environment)}/oauth2/token",
            json={
                "client_id": client_id,
                "client_secret": client_secret,
                "grant_type": "refresh_token",
                "refresh_token": creds.refresh_token,
            },
            headers={"Square-Version": SQUARE_API_VERSION},
        )

    def parse_refresh_response(self, payload: dict, *, now: datetime) -> TokenGrant:
        access_token = payload.get("access_token")
        if not access_token:
            raise TokenRefreshError("square", "refresh response missing access_token")
        expires_at = parse_timestamp(payload.get("expires_at"), field="expires_at") or now + timedelta(days=30)
        return TokenGrant(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_at=expires_at,
        )

    def auth_headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Square-Version": SQUARE_API_VERSION}

    # ---- orders ----

    def first_page(self) -> Optional[str]:
        return None

    def build_orders_request(
        self,
        creds: ProviderCredentials,
        window: SyncWindow,
        page: Optional[str],
    ) -> RequestSpec:
        body: dict[str, Any] = {
            "location_ids": [self._location_id(creds)],
            "query": {
                "filter": {
                    "date_time_filter": {
                        "closed_at": {"start_at": _rfc3339(window.start), "end_at": _rfc3339(window.end)},
                    },
                    "state_filter": {"states": ["COMPLETED"]},
                },
                "sort": {"sort_field": "CLOSED_AT", "sort_order": "ASC"},
            },
            "limit": self.page_size,
        }
        if page:
            body["cursor"] = page
        return RequestSpec(
            method="POST",
            url=f"{square_base_url(creds.environment)}/v2/orders/search",
            json=body,
        )

    def parse_orders_page(self, payload: Any, page: Optional[str]) -> PageResult:
        if not isinstance(payload, dict):
            raise ProviderDataError("square search response must be an object")
        cursor = payload.get("cursor")
        return PageResult(
            records=as_list(payload.get("orders")),
            has_more=bool(cursor),
            next_page=cursor,
        )

    def payments_request(self, creds: ProviderCredentials, raw_order: dict) -> Optional[RequestSpec]:
        return None

    def parse_payments(self, payload: Any) -> list[dict]:
        return []

    def embedded_payments(self, raw_order: dict) -> list[dict]:
        return as_list(raw_order.get("tenders"))

    def order_request(self, creds: ProviderCredentials, order_id: str) -> RequestSpec:
        return RequestSpec(method="GET", url=f"{square_base_url(creds.environment)}/v2/orders/{order_id}")

    def parse_order(self, payload: Any) -> Optional[dict]:
        if not isinstance(payload, dict):
            return None
        order = payload.get("order")
        return order if isinstance(order, dict) and order.get("id") else None

    # ---- webhooks ----

    def verify_webhook(self, headers: dict[str, str], body: bytes) -> WebhookVerificationResult:
        key = os.getenv("SQUARE_WEBHOOK_SIGNATURE_KEY")
        if not key:
            return WebhookVerificationResult(ok=False, reason="square_webhook_key_not_configured")
        # Square signs notification URL + raw body.
        notification_url = os.getenv("SQUARE_WEBHOOK_URL") or ""
        expected = hmac_base64(key, notification_url.encode() + body)
        if not signatures_match(expected, header_value(headers, SQUARE_SIGNATURE_HEADER)):
            return WebhookVerificationResult(ok=False, reason="invalid_signature")
        return WebhookVerificationResult(ok=True, reason="verified")

    def parse_webhook(self, body: bytes) -> list[WebhookEvent]:
        payload = parse_json_body(body, provider=self.provider)
        event_type = str(payload.get("type") or "")
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        order_id = data.get("id") if event_type in SQUARE_ORDER_EVENTS else None
        return [
            WebhookEvent(
                event_type=event_type,
                account_id=payload.get("merchant_id"),
                order_id=str(order_id) if order_id else None,
                raw=payload,
            )
        ]

    # ---- normalization ----

    def to_draft(self, raw_order: dict, raw_payments: Sequence[dict], tz: ZoneInfo) -> OrderDraft:
        order_id = str(require_field(raw_order, "id", provider=self.provider))
        created = parse_timestamp(raw_order.get("created_at"), field="created_at")
        closed = parse_timestamp(raw_order.get("closed_at"), field="closed_at")

        discount_scope = {
            d.get("uid"): (d.get("scope") or "ORDER").upper()
            for d in as_list(raw_order.get("discounts"))
            if d.get("uid")
        }
        discount_names = {d.get("uid"): d.get("name") for d in as_list(raw_order.get("discounts"))}

        lines: list[LineDraft] = []
        discounts: list[DiscountDraft] = []
        for line in as_list(raw_order.get("line_items")):
            uid = line.get("uid")
            if not uid:
                raise ProviderDataError(f"square order {order_id} has a line item without uid")
            name = line.get("name") or "Unknown Item"
            if line.get("variation_name") and line.get("variation_name") != "Regular":
                name = f"{name} ({line['variation_name']})"
            gross = line.get("gross_sales_money")
            lines.append(
                LineDraft(
                    external_id=str(uid),
                    name=name,
                    quantity=coerce_quantity(line.get("quantity")),
                    unit_price_minor=_money(line.get("base_price_money"), field="base_price_money"),
                    is_revenue=False if (line.get("item_type") or "") in NON_REVENUE_ITEM_TYPES else None,
                    category=line.get("catalog_category_name"),
                    total_minor=_money(gross, field="gross_sales_money") if gross else None,
                    raw=line,
                )
            )
            # Order-scoped discounts are also spread across lines; only count line-scoped ones here.
            for applied in as_list(line.get("applied_discounts")):
                discount_uid = applied.get("discount_uid")
                if discount_scope.get(discount_uid) != "LINE_ITEM":
                    continue
                discounts.append(
                    DiscountDraft(
                        external_id=str(applied.get("uid") or f"{uid}-{discount_uid}"),
                        name=discount_names.get(discount_uid) or "Discount",
                        amount_minor=_money(applied.get("applied_money"), field="applied_money"),
                        line_external_id=str(uid),
                        raw=applied,
                    )
                )

        for discount in as_list(raw_order.get("discounts")):
            if (discount.get("scope") or "ORDER").upper() != "ORDER":
                continue
            discounts.append(
                DiscountDraft(
                    external_id=str(discount.get("uid") or "order-discount"),
                    name=discount.get("name") or "Discount",
                    amount_minor=_money(discount.get("applied_money"), field="applied_money"),
                    raw=discount,
                )
            )

        charges = tuple(
            ServiceChargeDraft(
                external_id=str(charge.get("uid") or idx),
                name=charge.get("name") or "Service Charge",
                amount_minor=_money(charge.get("applied_money") or charge.get("amount_money"), field="service_charge"),
                raw=charge,
            )
            for idx, charge in enumerate(as_list(raw_order.get("service_charges")))
        )

        # tender amount_money includes the tip; canonical payment amounts do not
        payments = []
        for idx, tender in enumerate(raw_payments):
            tip = _money(tender.get("tip_money"), field="tip_money")
            payments.append(
                PaymentDraft(
                    external_id=str(tender.get("id") or idx),
                    amount_minor=_money(tender.get("amount_money"), field="amount_money") - tip,
                    tip_minor=tip,
                    tender=tender.get("type"),
                )
            )

        total_tip = raw_order.get("total_tip_money")
        return OrderDraft(
            provider=self.provider,
            external_order_id=order_id,
            state=raw_order.get("state"),
            total_minor=_money(raw_order.get("total_money"), field="total_money")
            - _money(total_tip, field="total_tip_money"),
            occurred_at=closed or created,
            opened_at=created,
            closed_at=closed,
            modified_at=parse_timestamp(raw_order.get("updated_at"), field="updated_at"),
            line_items=tuple(lines),
            payments=tuple(payments),
            discounts=tuple(discounts),
            service_charges=charges,
            tip_minor=_money(total_tip, field="total_tip_money") if total_tip else None,
            raw=raw_order,
        )
