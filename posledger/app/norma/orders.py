"""
Norma - POS order normalization.

Responsibility:
- Turn a provider-neutral OrderDraft (minor units, as parsed by an adapter)
  into canonical Order / LineItem / Adjustment records.
- Decide tax with a fixed precedence:
  1. payment-level tax, when any payment reports it
  2. derived: total - revenue subtotal - service charge + discount
  3. forced to zero when the order is flagged tax-removed
- Cross-check order total against captured payments (warning only).

Design notes:
- This module must be PURE:
  - no database access
  - no network calls
- Amounts travel as integer minor units and become 2dp Decimals only on output.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Optional, Sequence, TYPE_CHECKING
from zoneinfo import ZoneInfo

from posledger.app.errors import ProviderDataError, ReconciliationMismatch
from posledger.app.norma.money import round_minor, to_decimal
from posledger.app.norma.service_date import service_date_for

if TYPE_CHECKING:
    from posledger.app.integrations.base import PosAdapter


logger = logging.getLogger(__name__)

ADJUSTMENT_TYPES = ("tax", "tip", "service_charge", "discount")


# -------------------------
# Provider-neutral drafts
# -------------------------

@dataclass(frozen=True)
class LineDraft:
    external_id: str
    name: str
    quantity: Decimal
    unit_price_minor: int
    is_revenue: Optional[bool] = None  # None means the provider did not say; counts as revenue
    category: Optional[str] = None
    total_minor: Optional[int] = None  # provider-reported extended price, if any
    raw: Optional[dict] = None

    @property
    def extended_minor(self) -> int:
        if self.total_minor is not None:
            return self.total_minor
        return round_minor(Decimal(self.unit_price_minor) * self.quantity)

    @property
    def counts_as_revenue(self) -> bool:
        return self.is_revenue is not False


@dataclass(frozen=True)
class PaymentDraft:
    external_id: str
    amount_minor: int  # excludes tip
    tax_minor: Optional[int] = None
    tip_minor: int = 0
    tender: Optional[str] = None


@dataclass(frozen=True)
class DiscountDraft:
    external_id: str
    name: str
    amount_minor: int  # magnitude; sign is applied on output
    line_external_id: Optional[str] = None
    line_name: Optional[str] = None
    raw: Optional[dict] = None


@dataclass(frozen=True)
class ServiceChargeDraft:
    external_id: str
    name: str
    amount_minor: int
    raw: Optional[dict] = None


@dataclass(frozen=True)
class OrderDraft:
    provider: str
    external_order_id: str
    total_minor: int
    occurred_at: Optional[datetime]
    state: Optional[str] = None
    business_date: Optional[date] = None
    opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None
    line_items: tuple[LineDraft, ...] = ()
    payments: tuple[PaymentDraft, ...] = ()
    discounts: tuple[DiscountDraft, ...] = ()
    service_charges: tuple[ServiceChargeDraft, ...] = ()
    tip_minor: Optional[int] = None
    tax_removed: bool = False
    raw: dict = field(default_factory=dict)


# -------------------------
# Canonical output
# -------------------------

@dataclass(frozen=True)
class CanonicalOrder:
    provider: str
    external_order_id: str
    state: Optional[str]
    total: Decimal
    subtotal: Decimal
    tax: Decimal
    tip: Decimal
    discount_total: Decimal
    service_charge_total: Decimal
    payments_total: Decimal
    tax_source: str
    service_date: date
    opened_at: Optional[datetime]
    closed_at: Optional[datetime]
    modified_at: Optional[datetime]
    reconciliation_warning: Optional[str]
    raw: dict


@dataclass(frozen=True)
class CanonicalLineItem:
    external_line_item_id: str
    name: str
    quantity: Decimal
    unit_price: Decimal
    total_price: Decimal
    is_revenue: bool
    category: Optional[str]
    raw: Optional[dict]


@dataclass(frozen=True)
class CanonicalAdjustment:
    item_type: str
    external_suffix: str
    name: str
    total_price: Decimal
    line_item_name: Optional[str]
    raw: Optional[dict]


@dataclass(frozen=True)
class NormalizedOrder:
    order: CanonicalOrder
    line_items: tuple[CanonicalLineItem, ...]
    adjustments: tuple[CanonicalAdjustment, ...]
    warnings: tuple[ReconciliationMismatch, ...] = ()


@dataclass(frozen=True)
class TaxDecision:
    amount_minor: int
    source: str  # payments | derived | removed


# -------------------------
# Tax + reconciliation
# -------------------------

def revenue_subtotal_minor(line_items: Iterable[LineDraft]) -> int:
    return sum(item.extended_minor for item in line_items if item.counts_as_revenue)


def total_for_tax_calc(draft: OrderDraft) -> int:
    paid = sum(p.amount_minor for p in draft.payments)
    if draft.payments and paid != 0:
        return paid
    return draft.total_minor


def determine_tax(
    draft: OrderDraft,
    *,
    revenue_subtotal: int,
    service_charge: int,
    discount: int,
) -> TaxDecision:
    if draft.tax_removed:
        return TaxDecision(0, "removed")

    reported = [p.tax_minor for p in draft.payments if p.tax_minor is not None]
    if reported:
        return TaxDecision(sum(reported), "payments")

    derived = total_for_tax_calc(draft) - revenue_subtotal - service_charge + discount
    return TaxDecision(max(0, derived), "derived")


def check_reconciliation(draft: OrderDraft, *, tolerance_minor: int = 0) -> Optional[ReconciliationMismatch]:
    if not draft.payments:
        return None
    paid = sum(p.amount_minor for p in draft.payments)
    if paid == 0:
        return None
    if abs(draft.total_minor - paid) <= tolerance_minor:
        return None
    return ReconciliationMismatch(
        external_order_id=draft.external_order_id,
        order_total_minor=draft.total_minor,
        payments_total_minor=paid,
        tolerance_minor=tolerance_minor,
    )


# -------------------------
# Normalization
# -------------------------

def _unique_id(seen: dict[str, int], candidate: str) -> str:
    count = seen.get(candidate, 0)
    seen[candidate] = count + 1
    return candidate if count == 0 else f"{candidate}:{count + 1}"


def _non_negative(value: int, label: str, order_id: str) -> int:
    if value < 0:
        logger.warning("order %s reported negative %s (%s); storing 0", order_id, label, value)
        return 0
    return value


def _resolve_service_date(draft: OrderDraft, tz: ZoneInfo) -> date:
    if draft.occurred_at is not None:
        return service_date_for(draft.occurred_at, tz)
    if draft.business_date is not None:
        return draft.business_date
    raise ProviderDataError(f"order {draft.external_order_id} has no timestamp or business date")


def _line_items(draft: OrderDraft) -> tuple[CanonicalLineItem, ...]:
    seen: dict[str, int] = {}
    rows = []
    for item in draft.line_items:
        rows.append(
            CanonicalLineItem(
                external_line_item_id=_unique_id(seen, item.external_id),
                name=item.name,
                quantity=item.quantity,
                unit_price=to_decimal(item.unit_price_minor),
                total_price=to_decimal(item.extended_minor),
                is_revenue=item.counts_as_revenue,
                category=item.category,
                raw=item.raw,
            )
        )
    return tuple(rows)


def _adjustments(draft: OrderDraft, *, tax: int, tip: int) -> tuple[CanonicalAdjustment, ...]:
    rows: list[CanonicalAdjustment] = []
    order_id = draft.external_order_id

    if tax:
        rows.append(CanonicalAdjustment("tax", "tax", "Sales Tax", to_decimal(tax), None, None))
    if tip:
        rows.append(CanonicalAdjustment("tip", "tip", "Tip", to_decimal(tip), None, None))

    charge_ids: dict[str, int] = {}
    for charge in draft.service_charges:
        amount = _non_negative(charge.amount_minor, "service charge", order_id)
        if not amount:
            continue
        rows.append(
            CanonicalAdjustment(
                item_type="service_charge",
                external_suffix=_unique_id(charge_ids, charge.external_id),
                name=charge.name or "Service Charge",
                total_price=to_decimal(amount),
                line_item_name=None,
                raw=charge.raw,
            )
        )

    names_by_line = {item.external_id: item.name for item in draft.line_items}
    discount_ids: dict[str, int] = {}
    for discount in draft.discounts:
        magnitude = abs(discount.amount_minor)
        if not magnitude:
            continue
        linked_name = None
        if discount.line_external_id:
            linked_name = names_by_line.get(discount.line_external_id) or discount.line_name
            if linked_name is None:
                logger.warning(
                    "order %s discount %s references unknown line %s",
                    order_id,
                    discount.external_id,
                    discount.line_external_id,
                )
        rows.append(
            CanonicalAdjustment(
                item_type="discount",
                external_suffix=_unique_id(discount_ids, discount.external_id),
                name=discount.name or "Discount",
                total_price=to_decimal(-magnitude),
                line_item_name=linked_name,
                raw=discount.raw,
            )
        )
    return tuple(rows)


def normalize_order(draft: OrderDraft, tz: ZoneInfo, *, tolerance_minor: int = 0) -> NormalizedOrder:
    if not draft.external_order_id:
        raise ProviderDataError(f"{draft.provider} order is missing its id")

    service_date = _resolve_service_date(draft, tz)
    revenue = revenue_subtotal_minor(draft.line_items)
    service_charge = sum(
        max(0, c.amount_minor) for c in draft.service_charges
    )
    discount = sum(abs(d.amount_minor) for d in draft.discounts)
    tax = determine_tax(draft, revenue_subtotal=revenue, service_charge=service_charge, discount=discount)

    if draft.payments and any(p.tip_minor for p in draft.payments):
        tip = sum(p.tip_minor for p in draft.payments)
    else:
        tip = draft.tip_minor or 0
    tip = _non_negative(tip, "tip", draft.external_order_id)

    mismatch = check_reconciliation(draft, tolerance_minor=tolerance_minor)
    if mismatch:
        logger.warning("reconciliation mismatch (%s) %s", draft.provider, mismatch.message())

    order = CanonicalOrder(
        provider=draft.provider,
        external_order_id=draft.external_order_id,
        state=draft.state,
        total=to_decimal(draft.total_minor),
        subtotal=to_decimal(revenue),
        tax=to_decimal(tax.amount_minor),
        tip=to_decimal(tip),
        discount_total=to_decimal(discount),
        service_charge_total=to_decimal(service_charge),
        payments_total=to_decimal(sum(p.amount_minor for p in draft.payments)),
        tax_source=tax.source,
        service_date=service_date,
        opened_at=draft.opened_at,
        closed_at=draft.closed_at,
        modified_at=draft.modified_at,
        reconciliation_warning=mismatch.message() if mismatch else None,
        raw=draft.raw,
    )
    return NormalizedOrder(
        order=order,
        line_items=_line_items(draft),
        adjustments=_adjustments(draft, tax=tax.amount_minor, tip=tip),
        warnings=(mismatch,) if mismatch else (),
    )


def normalize(
    adapter: "PosAdapter",
    raw_order: dict[str, Any],
    raw_payments: Sequence[dict[str, Any]],
    tz: ZoneInfo,
    *,
    tolerance_minor: int = 0,
) -> NormalizedOrder:
    """Provider payload in, canonical records out."""
    if not isinstance(raw_order, dict):
        raise ProviderDataError(f"{adapter.provider} order payload must be an object")
    draft = adapter.to_draft(raw_order, list(raw_payments), tz)
    return normalize_order(draft, tz, tolerance_minor=tolerance_minor)
