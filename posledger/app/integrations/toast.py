from __future__ import annotations

import os
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
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
    first_present,
    header_value,
    hmac_hex,
    parse_json_body,
    require_field,
    signatures_match,
)
from posledger.app.norma.money import coerce_quantity, major_to_minor, round_minor
from posledger.app.norma.orders import (
    DiscountDraft,
    LineDraft,
    OrderDraft,
    PaymentDraft,
    ServiceChargeDraft,
)
from posledger.app.norma.service_date import parse_timestamp


TOAST_DEFAULT_BASE_URL = "https://ws-api.toasttab.com"
TOAST_SIGNATURE_HEADER = "toast-signature"
TOAST_ORDER_EVENTS = {"ORDER_CREATED", "ORDER_MODIFIED", "ORDER_UPDATED", "ORDER_CLOSED", "ORDER_VOIDED"}

# Selections that move money without being a sale.
NON_REVENUE_SELECTION_TYPES = {
    "HOUSE_ACCOUNT_PAY_BALANCE",
    "TOAST_CARD_SELL",
    "TOAST_CARD_RELOAD",
}
SKIPPED_PAYMENT_STATUSES = {"VOIDED", "DENIED", "CANCELLED"}


def toast_base_url() -> str:
    return (os.getenv("TOAST_API_BASE_URL") or TOAST_DEFAULT_BASE_URL).rstrip("/")


def toast_webhook_secret() -> Optional[str]:
    return os.getenv("TOAST_WEBHOOK_SECRET") or None


def format_toast_time(value: datetime) -> str:
    """Toast wants yyyy-MM-dd'T'HH:mm:ss.SSSZ with a colon-free offset."""
    utc = value.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}+0000"


def _business_date(value: Any) -> Optional[date]:
    # businessDate arrives as an int like 20240131
    if value in (None, ""):
        return None
    text = str(value)
    if len(text) != 8 or not text.isdigit():
        raise ProviderDataError(f"toast businessDate is malformed: {value!r}")
    return date(int(text[:4]), int(text[4:6]), int(text[6:]))


def _is_void(payload: dict) -> bool:
    return bool(payload.get("voided") or payload.get("deleted"))


class ToastAdapter:
    provider = "toast"
    refresh_margin = timedelta(hours=1)

    def __init__(self, page_size: int = 100):
        self.page_size = page_size

    def _restaurant_guid(self, creds: ProviderCredentials) -> str:
        if not creds.external_account_id:
            raise ProviderDataError("toast connection has no restaurant guid")
        return creds.external_account_id

    def _restaurant_headers(self, creds: ProviderCredentials) -> dict[str, str]:
        return {"Toast-Restaurant-External-ID": self._restaurant_guid(creds)}

    # ---- tokens ----

    def build_refresh_request(self, creds: ProviderCredentials) -> RequestSpec:
        client_id = creds.secrets.get("client_id")
        client_secret = creds.secrets.get("client_secret")
        if not client_id or not client_secret:
            raise TokenRefreshError("toast", "client credentials are not stored for this connection")
        return RequestSpec(
            method="POST",
            url=f"{toast_base_url()}/authentication/v1/authentication/login",
            json={
                "clientId": client_id,
                "clientSecret": client_secret,
                "userAccessType": "TOAST_MACHINE_CLIENT",
            },
        )

    def parse_refresh_response(self, payload: dict, *, now: datetime) -> TokenGrant:
        token = payload.get("token") or {}
        access_token = token.get("accessToken")
        if not access_token:
            raise TokenRefreshError("toast", "login response missing token.accessToken")
        expires_in = int(token.get("expiresIn") or 3600)
        return TokenGrant(
            access_token=access_token,
            refresh_token=None,
            expires_at=now + timedelta(seconds=expires_in),
        )

    def auth_headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    # ---- orders ----

    def first_page(self) -> int:
        return 1

    def build_orders_request(self, creds: ProviderCredentials, window: SyncWindow, page: int) -> RequestSpec:
        return RequestSpec(
            method="GET",
            url=f"{toast_base_url()}/orders/v2/ordersBulk",
            params={
                "startDate": format_toast_time(window.start),
                "endDate": format_toast_time(window.end),
                "pageSize": self.page_size,
                "page": page,
            },
            headers=self._restaurant_headers(creds),
        )

    def parse_orders_page(self, payload: Any, page: int) -> PageResult:
        if not isinstance(payload, list):
            raise ProviderDataError("toast ordersBulk response must be a list")
        return PageResult(records=payload, has_more=len(payload) == self.page_size, next_page=page + 1)

    def payments_request(self, creds: ProviderCredentials, raw_order: dict) -> Optional[RequestSpec]:
        return None

    def parse_payments(self, payload: Any) -> list[dict]:
        return []

    def embedded_payments(self, raw_order: dict) -> list[dict]:
        payments = []
        for check in as_list(raw_order.get("checks")):
            if _is_void(check):
                continue
            for payment in as_list(check.get("payments")):
                if (payment.get("paymentStatus") or "").upper() in SKIPPED_PAYMENT_STATUSES:
                    continue
                payments.append(payment)
        return payments

    def order_request(self, creds: ProviderCredentials, order_id: str) -> RequestSpec:
        return RequestSpec(
            method="GET",
            url=f"{toast_base_url()}/orders/v2/orders/{order_id}",
            headers=self._restaurant_headers(creds),
        )

    def parse_order(self, payload: Any) -> Optional[dict]:
        return payload if isinstance(payload, dict) and payload.get("guid") else None

    # ---- webhooks ----

    def verify_webhook(self, headers: dict[str, str], body: bytes) -> WebhookVerificationResult:
        secret = toast_webhook_secret()
        if not secret:
            return WebhookVerificationResult(ok=False, reason="toast_webhook_secret_not_configured")
        received = header_value(headers, TOAST_SIGNATURE_HEADER)
        if not signatures_match(hmac_hex(secret, body), received):
            return WebhookVerificationResult(ok=False, reason="invalid_signature")
        return WebhookVerificationResult(ok=True, reason="verified")

    def parse_webhook(self, body: bytes) -> list[WebhookEvent]:
        payload = parse_json_body(body, provider=self.provider)
        event_type = str(payload.get("eventType") or "")
        details = payload.get("details") if isinstance(payload.get("details"), dict) else {}
        order_id = first_present(payload, "entityGuid", "guid") or first_present(details, "guid", "entityGuid")
        return [
            WebhookEvent(
                event_type=event_type,
                account_id=payload.get("restaurantGuid"),
                order_id=str(order_id) if order_id and event_type in TOAST_ORDER_EVENTS else None,
                raw=payload,
            )
        ]

    # ---- normalization ----

    def to_draft(self, raw_order: dict, raw_payments: Sequence[dict], tz: ZoneInfo) -> OrderDraft:
        order_id = str(require_field(raw_order, "guid", provider=self.provider))
        opened = parse_timestamp(raw_order.get("openedDate"), field="openedDate")
        closed = parse_timestamp(raw_order.get("closedDate"), field="closedDate")

        lines: list[LineDraft] = []
        discounts: list[DiscountDraft] = []
        charges: list[ServiceChargeDraft] = []
        total = 0
        checks = [c for c in as_list(raw_order.get("checks")) if not _is_void(c)]
        for check in checks:
            total += major_to_minor(check.get("totalAmount"))
            for selection in as_list(check.get("selections")):
                if _is_void(selection):
                    continue
                selection_id = selection.get("guid")
                if not selection_id:
                    raise ProviderDataError(f"toast order {order_id} has a selection without guid")
                quantity = coerce_quantity(selection.get("quantity"))
                gross = major_to_minor(first_present(selection, "preDiscountPrice", "price"))
                unit = round_minor(Decimal(gross) / quantity) if quantity else gross
                sales_category = selection.get("salesCategory") or {}
                lines.append(
                    LineDraft(
                        external_id=str(selection_id),
                        name=first_present(selection, "displayName", "itemName") or "Unknown Item",
                        quantity=quantity,
                        unit_price_minor=unit,
                        is_revenue=(
                            False
                            if (selection.get("selectionType") or "") in NON_REVENUE_SELECTION_TYPES
                            else None
                        ),
                        category=sales_category.get("name") if isinstance(sales_category, dict) else None,
                        total_minor=gross,
                        raw=selection,
                    )
                )
                for applied in as_list(selection.get("appliedDiscounts")):
                    discounts.append(
                        DiscountDraft(
                            external_id=str(applied.get("guid") or f"{selection_id}-discount"),
                            name=applied.get("name") or "Discount",
                            amount_minor=major_to_minor(applied.get("discountAmount")),
                            line_external_id=str(selection_id),
                            raw=applied,
                        )
                    )
            for applied in as_list(check.get("appliedDiscounts")):
                discounts.append(
                    DiscountDraft(
                        external_id=str(applied.get("guid") or f"{check.get('guid')}-discount"),
                        name=applied.get("name") or "Discount",
                        amount_minor=major_to_minor(applied.get("discountAmount")),
                        raw=applied,
                    )
                )
            for charge in as_list(check.get("appliedServiceCharges")):
                charges.append(
                    ServiceChargeDraft(
                        external_id=str(charge.get("guid") or f"{check.get('guid')}-service-charge"),
                        name=charge.get("name") or "Service Charge",
                        amount_minor=major_to_minor(charge.get("chargeAmount")),
                        raw=charge,
                    )
                )

        payments = tuple(
            PaymentDraft(
                external_id=str(p.get("guid") or idx),
                amount_minor=major_to_minor(p.get("amount")),
                tip_minor=major_to_minor(p.get("tipAmount")),
                tender=p.get("type"),
            )
            for idx, p in enumerate(raw_payments)
        )

        if raw_order.get("voided"):
            state = "VOIDED"
        elif closed:
            state = "CLOSED"
        else:
            state = "OPEN"
        return OrderDraft(
            provider=self.provider,
            external_order_id=order_id,
            state=state,
            total_minor=total,
            occurred_at=closed or opened,
            business_date=_business_date(raw_order.get("businessDate")),
            opened_at=opened,
            closed_at=closed,
            modified_at=parse_timestamp(raw_order.get("modifiedDate"), field="modifiedDate"),
            line_items=tuple(lines),
            payments=payments,
            discounts=tuple(discounts),
            service_charges=tuple(charges),
            tax_removed=bool(checks) and all(c.get("taxExempt") for c in checks),
            raw=raw_order,
        )
