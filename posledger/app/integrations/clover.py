from __future__ import annotations

import os
from datetime import datetime, timedelta
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
    WebhooksUnsupported,
)
from posledger.app.integrations.utils import elements, first_present, require_field
from posledger.app.norma.money import coerce_minor, coerce_quantity, round_minor
from posledger.app.norma.orders import (
    DiscountDraft,
    LineDraft,
    OrderDraft,
    PaymentDraft,
    ServiceChargeDraft,
)
from posledger.app.norma.service_date import parse_timestamp


CLOVER_REGION_DOMAINS = {
    "na": "api.clover.com",
    "eu": "api.eu.clover.com",
    "latam": "api.la.clover.com",
    "apac": "api.clover.com",
}
CLOVER_SANDBOX_DOMAIN = "apisandbox.dev.clover.com"

# Clover refresh tokens are long lived; the issued access token usually is too.
CLOVER_DEFAULT_TOKEN_TTL = timedelta(days=365)


def clover_api_domain(region: Optional[str], environment: Optional[str]) -> str:
    if (environment or "").strip().lower() == "sandbox":
        return CLOVER_SANDBOX_DOMAIN
    key = (region or "na").strip().lower()
    return CLOVER_REGION_DOMAINS.get(key, CLOVER_REGION_DOMAINS["na"])


def clover_app_credentials() -> tuple[str, str]:
    client_id = os.getenv("CLOVER_APP_ID")
    client_secret = os.getenv("CLOVER_APP_SECRET")
    if not client_id or not client_secret:
        raise TokenRefreshError("clover", "CLOVER_APP_ID and CLOVER_APP_SECRET must be configured")
    return client_id, client_secret


def _percentage_of(base_minor: int, percentage: Any) -> int:
    try:
        pct = Decimal(str(percentage))
    except ArithmeticError:
        return 0
    return round_minor(Decimal(base_minor) * pct / Decimal(100))


def _discount_amount(discount: dict, base_minor: int) -> int:
    # Clover reports fixed discounts as negative cents, percentage ones as 0-100.
    if discount.get("amount") not in (None, ""):
        return abs(coerce_minor(discount.get("amount"), field="discount.amount"))
    if discount.get("percentage") not in (None, ""):
        return _percentage_of(base_minor, discount.get("percentage"))
    return 0


class CloverAdapter(WebhooksUnsupported):
    provider = "clover"
    refresh_margin = timedelta(days=7)

    def __init__(self, page_size: int = 100):
        self.page_size = page_size

    def _base_url(self, creds: ProviderCredentials) -> str:
        return f"https://{clover_api_domain(creds.region, creds.environment)}"

    def _merchant_id(self, creds: ProviderCredentials) -> str:
        if not creds.external_account_id:
            raise ProviderDataError("clover connection has no merchant id")
        return creds.external_account_id

    # ---- tokens ----

    def build_refresh_request(self, creds: ProviderCredentials) -> RequestSpec:
        if not creds.refresh_token:
            raise TokenRefreshError("clover", "no refresh token stored")
        client_id, client_secret = clover_app_credentials()
        return RequestSpec(
            method="POST",
            url=f"{self._base_url(creds)}/oauth/v2/refresh",
            json={
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": creds.refresh_token,
            },
        )

    def parse_refresh_response(self, payload: dict, *, now: datetime) -> TokenGrant:
        access_token = payload.get("access_token")
        if not access_token:
            raise TokenRefreshError("clover", "refresh response missing access_token")
        if payload.get("access_token_expiration"):
            expires_at = parse_timestamp(payload["access_token_expiration"], field="access_token_expiration")
        elif payload.get("expires_in"):
            expires_at = now + timedelta(seconds=int(payload["expires_in"]))
        else:
            expires_at = now + CLOVER_DEFAULT_TOKEN_TTL
        return TokenGrant(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_at=expires_at,
        )

    def auth_headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    # ---- orders ----

    def first_page(self) -> int:
        return 0

    def build_orders_request(self, creds: ProviderCredentials, window: SyncWindow, page: int) -> RequestSpec:
        # Clover filters on epoch seconds, not millis.
        start_ts = int(window.start.timestamp())
        end_ts = int(window.end.timestamp())
        return RequestSpec(
            method="GET",
            url=f"{self._base_url(creds)}/v3/merchants/{self._merchant_id(creds)}/orders",
            params={
                "filter": [f"modifiedTime>={start_ts}", f"modifiedTime<={end_ts}"],
                "expand": "lineItems,lineItems.discounts,discounts,serviceCharge",
                "limit": self.page_size,
                "offset": page,
            },
        )

    def parse_orders_page(self, payload: Any, page: int) -> PageResult:
        if not isinstance(payload, dict):
            raise ProviderDataError("clover orders response must be an object")
        records = elements(payload)
        return PageResult(
            records=records,
            has_more=len(records) == self.page_size,
            next_page=page + self.page_size,
        )

    def payments_request(self, creds: ProviderCredentials, raw_order: dict) -> Optional[RequestSpec]:
        order_id = require_field(raw_order, "id", provider=self.provider)
        return RequestSpec(
            method="GET",
            url=f"{self._base_url(creds)}/v3/merchants/{self._merchant_id(creds)}/orders/{order_id}/payments",
        )

    def parse_payments(self, payload: Any) -> list[dict]:
        if not isinstance(payload, dict):
            raise ProviderDataError("clover payments response must be an object")
        return [p for p in elements(payload) if (p.get("result") or "SUCCESS") == "SUCCESS"]

    def embedded_payments(self, raw_order: dict) -> list[dict]:
        return elements(raw_order.get("payments"))

    def order_request(self, creds: ProviderCredentials, order_id: str) -> RequestSpec:
        return RequestSpec(
            method="GET",
            url=f"{self._base_url(creds)}/v3/merchants/{self._merchant_id(creds)}/orders/{order_id}",
            params={"expand": "lineItems,lineItems.discounts,discounts,serviceCharge"},
        )

    def parse_order(self, payload: Any) -> Optional[dict]:
        return payload if isinstance(payload, dict) and payload.get("id") else None

    # ---- normalization ----

    def to_draft(self, raw_order: dict, raw_payments: Sequence[dict], tz: ZoneInfo) -> OrderDraft:
        order_id = str(require_field(raw_order, "id", provider=self.provider))
        created = parse_timestamp(raw_order.get("createdTime"), field="createdTime")

        lines: list[LineDraft] = []
        discounts: list[DiscountDraft] = []
        for line in elements(raw_order.get("lineItems")):
            line_id = first_present(line, "id")
            if not line_id:
                raise ProviderDataError(f"clover order {order_id} has a line item without id")
            # unitQty is in thousandths: 1000 == one item
            raw_qty = line.get("unitQty")
            quantity = coerce_quantity(raw_qty) / Decimal(1000) if raw_qty not in (None, "") else Decimal("1")
            categories = elements((line.get("item") or {}).get("categories"))
            draft_line = LineDraft(
                external_id=str(line_id),
                name=line.get("name") or "Unknown Item",
                quantity=quantity,
                unit_price_minor=coerce_minor(line.get("price"), field="lineItem.price"),
                is_revenue=line.get("isRevenue"),
                category=(categories[0].get("name") if categories else None),
                raw=line,
            )
            lines.append(draft_line)
            for discount in elements(line.get("discounts")):
                discounts.append(
                    DiscountDraft(
                        external_id=str(discount.get("id") or f"{line_id}-discount"),
                        name=discount.get("name") or "Discount",
                        amount_minor=_discount_amount(discount, draft_line.extended_minor),
                        line_external_id=str(line_id),
                        raw=discount,
                    )
                )

        gross = sum(line.extended_minor for line in lines if line.counts_as_revenue)
        for discount in elements(raw_order.get("discounts")):
            discounts.append(
                DiscountDraft(
                    external_id=str(discount.get("id") or "order-discount"),
                    name=discount.get("name") or "Discount",
                    amount_minor=_discount_amount(discount, gross),
                    raw=discount,
                )
            )

        charges: list[ServiceChargeDraft] = []
        service_charge = raw_order.get("serviceCharge")
        if isinstance(service_charge, dict):
            amount = service_charge.get("amount")
            if amount in (None, "") and service_charge.get("percentageDecimal") not in (None, ""):
                # percentageDecimal is basis points x 100 (e.g. 180000 == 18%)
                pct = Decimal(str(service_charge["percentageDecimal"])) / Decimal(10000)
                amount_minor = _percentage_of(gross, pct)
            else:
                amount_minor = coerce_minor(amount, field="serviceCharge.amount")
            charges.append(
                ServiceChargeDraft(
                    external_id=str(service_charge.get("id") or "service_charge"),
                    name=service_charge.get("name") or "Service Charge",
                    amount_minor=amount_minor,
                    raw=service_charge,
                )
            )

        payments = tuple(
            PaymentDraft(
                external_id=str(p.get("id") or idx),
                amount_minor=coerce_minor(p.get("amount"), field="payment.amount"),
                tax_minor=(
                    coerce_minor(p.get("taxAmount"), field="payment.taxAmount")
                    if p.get("taxAmount") is not None
                    else None
                ),
                tip_minor=coerce_minor(p.get("tipAmount"), field="payment.tipAmount"),
                tender=(p.get("tender") or {}).get("label"),
            )
            for idx, p in enumerate(raw_payments)
        )

        closed = parse_timestamp(
            first_present(raw_order, "clientCreatedTime", "createdTime"), field="clientCreatedTime"
        )
        return OrderDraft(
            provider=self.provider,
            external_order_id=order_id,
            state=raw_order.get("state"),
            total_minor=coerce_minor(raw_order.get("total"), field="total"),
            occurred_at=created,
            opened_at=created,
            closed_at=closed,
            modified_at=parse_timestamp(raw_order.get("modifiedTime"), field="modifiedTime"),
            line_items=tuple(lines),
            payments=payments,
            discounts=tuple(discounts),
            service_charges=tuple(charges),
            tip_minor=coerce_minor(raw_order.get("tipAmount"), field="tipAmount") if raw_order.get("tipAmount") else None,
            tax_removed=bool(raw_order.get("taxRemoved")),
            raw=raw_order,
        )
