"""
Shift4 via the Lighthouse reporting API.

Lighthouse has no OAuth: we log in with the merchant's email/password, get a
one hour token plus the location ids the account can see, and pull closed
tickets per local-day range. Ticket amounts are dollar strings and ticket
times are restaurant-local, so parsing needs the restaurant timezone.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, time, timedelta
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
from posledger.app.integrations.utils import as_list, distinct, first_present, stable_hash_id
from posledger.app.norma.money import coerce_quantity, major_to_minor, round_minor
from posledger.app.norma.orders import (
    DiscountDraft,
    LineDraft,
    OrderDraft,
    PaymentDraft,
    ServiceChargeDraft,
)
from posledger.app.norma.service_date import parse_local_ticket_time, resolve_timezone


logger = logging.getLogger(__name__)

LIGHTHOUSE_DEFAULT_BASE_URL = "https://lighthouse-api.harbortouch.com"
LIGHTHOUSE_TOKEN_TTL = timedelta(hours=1)


def lighthouse_base_url() -> str:
    return (os.getenv("LIGHTHOUSE_API_BASE_URL") or LIGHTHOUSE_DEFAULT_BASE_URL).rstrip("/")


def _is_void(payload: dict) -> bool:
    status = payload.get("status")
    return isinstance(status, str) and "void" in status.lower()


def _pair(entry: Any, *, amount_keys: tuple[str, ...] = ("amount",)) -> tuple[str, int]:
    """ticketDiscounts/Fees/Taxes come either as [name, amount, ...] or as objects."""
    if isinstance(entry, (list, tuple)):
        name = str(entry[0]) if entry else ""
        amount = entry[1] if len(entry) > 1 else None
        return name, major_to_minor(amount)
    if isinstance(entry, dict):
        return str(entry.get("name") or ""), major_to_minor(first_present(entry, *amount_keys))
    raise ProviderDataError(f"unexpected lighthouse ticket entry: {entry!r}")


def _payment(entry: Any) -> dict:
    # array form is [tenderType, amount, tax, tip]
    if isinstance(entry, (list, tuple)):
        padded = list(entry) + [None] * (4 - len(entry))
        return {"tenderType": padded[0], "amount": padded[1], "tax": padded[2], "tip": padded[3]}
    if isinstance(entry, dict):
        return entry
    raise ProviderDataError(f"unexpected lighthouse payment entry: {entry!r}")


def _location_ids(creds: ProviderCredentials) -> list[int]:
    raw = creds.config.get("location_ids") or []
    ids = [int(v) for v in raw if isinstance(v, int) or (isinstance(v, str) and v.isdigit())]
    if not ids and creds.external_account_id and str(creds.external_account_id).isdigit():
        ids = [int(creds.external_account_id)]
    return ids


class Shift4Adapter(WebhooksUnsupported):
    provider = "shift4"
    refresh_margin = timedelta(minutes=5)
    page_size = 0  # the ticket report is not paginated

    # ---- tokens ----

    def build_refresh_request(self, creds: ProviderCredentials) -> RequestSpec:
        email = creds.secrets.get("email")
        password = creds.secrets.get("password")
        if not email or not password:
            raise TokenRefreshError("shift4", "no Lighthouse credentials available")
        return RequestSpec(
            method="POST",
            url=f"{lighthouse_base_url()}/api/v1/auth/authenticate",
            json={"email": email, "password": password},
        )

    def parse_refresh_response(self, payload: dict, *, now: datetime) -> TokenGrant:
        token = payload.get("token")
        if not token:
            raise TokenRefreshError("shift4", "authenticate response missing token")
        location_ids = distinct(
            p.get("l") for p in as_list(payload.get("permissions")) if isinstance(p, dict) and isinstance(p.get("l"), int)
        )
        return TokenGrant(
            access_token=token,
            refresh_token=None,
            expires_at=now + LIGHTHOUSE_TOKEN_TTL,
            config_updates={"location_ids": location_ids},
        )

    def auth_headers(self, token: str) -> dict[str, str]:
        return {"x-access-token": token}

    # ---- tickets ----

    def first_page(self) -> None:
        return None

    def build_orders_request(self, creds: ProviderCredentials, window: SyncWindow, page: Any) -> RequestSpec:
        locations = _location_ids(creds)
        if not locations:
            raise ProviderDataError("shift4 connection has no Lighthouse location ids")
        tz = resolve_timezone(creds.timezone)
        start_day = window.start.astimezone(tz).date()
        end_day = window.end.astimezone(tz).date()
        # Lighthouse reads the range as local days dressed up as UTC strings.
        start = datetime.combine(start_day, time(0, 0, 0))
        end = datetime.combine(end_day, time(23, 59, 59, 999000))
        return RequestSpec(
            method="POST",
            url=f"{lighthouse_base_url()}/api/v1/reports/echo-pro/ticket-detail-closed",
            json={
                "start": start.strftime("%Y-%m-%dT%H:%M:%S.000Z"),
                "end": end.strftime("%Y-%m-%dT%H:%M:%S.999Z"),
                "locations": locations,
                "intradayPeriodGroupGuids": [],
                "revenueCenterGuids": [],
                "locale": "en-US",
            },
            headers={"accept": "application/json", "content-type": "application/json"},
        )

    def parse_orders_page(self, payload: Any, page: Any) -> PageResult:
        if not isinstance(payload, dict):
            raise ProviderDataError("lighthouse ticket report must be an object")
        rows = as_list(payload.get("rows"))
        tickets = [row for row in rows if isinstance(row, dict) and not _is_void(row)]
        voided = len(rows) - len(tickets)
        if voided:
            logger.info("lighthouse report skipped %s voided tickets", voided)
        return PageResult(records=tickets, has_more=False, next_page=None)

    def payments_request(self, creds: ProviderCredentials, raw_order: dict) -> Optional[RequestSpec]:
        return None

    def parse_payments(self, payload: Any) -> list[dict]:
        return []

    def embedded_payments(self, raw_order: dict) -> list[dict]:
        return [_payment(entry) for entry in as_list(raw_order.get("ticketPayments"))]

    def order_request(self, creds: ProviderCredentials, order_id: str) -> RequestSpec:
        raise ProviderDataError("lighthouse does not expose single ticket lookups")

    def parse_order(self, payload: Any) -> Optional[dict]:
        return None

    # ---- normalization ----

    def to_draft(self, raw_order: dict, raw_payments: Sequence[dict], tz: ZoneInfo) -> OrderDraft:
        order_number = first_present(raw_order, "orderNumber", "order", "ticket", "ticketNumber")
        if order_number is None:
            raise ProviderDataError("lighthouse ticket missing order number")
        occurred = parse_local_ticket_time(first_present(raw_order, "completed", "opened"), tz)
        if occurred is None:
            raise ProviderDataError(f"lighthouse ticket {order_number} has no parseable completion time")
        local = occurred.astimezone(tz)
        location = first_present(raw_order, "locationId", "location_id", "loc_id") or "unknown"
        # ticket numbers recycle daily, so the id carries location, day and time
        order_id = f"{order_number}-{location}-{local:%Y-%m-%d}-{local:%H%M%S}"

        lines: list[LineDraft] = []
        discounts: list[DiscountDraft] = []
        charges: list[ServiceChargeDraft] = []
        for index, item in enumerate(as_list(raw_order.get("items"))):
            if not isinstance(item, dict) or _is_void(item):
                continue
            quantity = coerce_quantity(item.get("qty"), default=Decimal("1")) or Decimal("1")
            subtotal = major_to_minor(item.get("subtotal"))
            item_discount = abs(major_to_minor(item.get("discountTotal")))
            surcharge = major_to_minor(item.get("surTotal"))
            name = item.get("name") or "Item"
            line_id = stable_hash_id(
                f"{order_id}-item-{index}",
                {"name": name, "qty": str(quantity), "subtotal": subtotal, "discount": item_discount, "sur": surcharge},
            )
            lines.append(
                LineDraft(
                    external_id=line_id,
                    name=name,
                    quantity=quantity,
                    unit_price_minor=round_minor(Decimal(subtotal) / quantity),
                    total_minor=subtotal,
                    raw=item,
                )
            )
            if item_discount:
                discounts.append(
                    DiscountDraft(
                        external_id=f"item-{index}",
                        name=f"{name} Discount",
                        amount_minor=item_discount,
                        line_external_id=line_id,
                        raw=item,
                    )
                )
            if surcharge:
                charges.append(
                    ServiceChargeDraft(external_id=f"item-sur-{index}", name=f"{name} Surcharge", amount_minor=surcharge)
                )

        for index, entry in enumerate(as_list(raw_order.get("ticketDiscounts"))):
            name, amount = _pair(entry)
            discounts.append(
                DiscountDraft(external_id=f"ticket-{index}", name=name or "Discount", amount_minor=abs(amount))
            )
        for index, entry in enumerate(as_list(raw_order.get("ticketFees"))):
            name, amount = _pair(entry, amount_keys=("amount", "grandTotal"))
            charges.append(ServiceChargeDraft(external_id=f"fee-{index}", name=name or "Fee", amount_minor=amount))

        payments = tuple(
            PaymentDraft(
                external_id=f"payment-{index}",
                amount_minor=major_to_minor(p.get("amount")),
                tax_minor=major_to_minor(p.get("tax")) if p.get("tax") not in (None, "") else None,
                tip_minor=major_to_minor(p.get("tip")),
                tender=p.get("tenderType"),
            )
            for index, p in enumerate(raw_payments)
        )

        return OrderDraft(
            provider=self.provider,
            external_order_id=order_id,
            state=raw_order.get("status") or "closed",
            total_minor=major_to_minor(raw_order.get("grandTotal")),
            occurred_at=occurred,
            opened_at=parse_local_ticket_time(raw_order.get("opened"), tz),
            closed_at=parse_local_ticket_time(raw_order.get("completed"), tz),
            line_items=tuple(lines),
            payments=payments,
            discounts=tuple(discounts),
            service_charges=tuple(charges),
            raw=raw_order,
        )
