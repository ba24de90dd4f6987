from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from posledger.app.errors import ProviderDataError
from posledger.app.norma.orders import (
    DiscountDraft,
    LineDraft,
    OrderDraft,
    PaymentDraft,
    ServiceChargeDraft,
    check_reconciliation,
    normalize_order,
)


CHICAGO = ZoneInfo("America/Chicago")
NOON_UTC = datetime(2024, 3, 15, 17, 0, tzinfo=timezone.utc)


def _draft(**overrides) -> OrderDraft:
    values = {
        "provider": "clover",
        "external_order_id": "ORD-1",
        "total_minor": 1080,
        "occurred_at": NOON_UTC,
        "line_items": (LineDraft("L1", "Burger", Decimal("1"), 1000),),
    }
    values.update(overrides)
    return OrderDraft(**values)


def _adjustments(normalized, item_type):
    return [a for a in normalized.adjustments if a.item_type == item_type]


def test_payment_tax_wins_over_derived_tax():
    draft = _draft(
        total_minor=1100,
        payments=(PaymentDraft("P1", 1100, tax_minor=75),),
    )

    normalized = normalize_order(draft, CHICAGO)

    assert normalized.order.tax == Decimal("0.75")
    assert normalized.order.tax_source == "payments"
    [tax] = _adjustments(normalized, "tax")
    assert tax.total_price == Decimal("0.75")
    assert tax.external_suffix == "tax"


def test_tax_falls_back_to_total_minus_revenue_service_charge_plus_discount():
    draft = _draft(
        total_minor=1200,
        service_charges=(ServiceChargeDraft("SC1", "Service Charge", 200),),
        discounts=(DiscountDraft("D1", "Promo", 100),),
    )

    normalized = normalize_order(draft, CHICAGO)

    # 1200 - 1000 - 200 + 100
    assert normalized.order.tax == Decimal("1.00")
    assert normalized.order.tax_source == "derived"


def test_derived_tax_uses_payment_total_when_payments_exist():
    draft = _draft(
        total_minor=1500,
        payments=(PaymentDraft("P1", 1090),),
    )

    normalized = normalize_order(draft, CHICAGO)

    assert normalized.order.tax == Decimal("0.90")


def test_derived_tax_never_goes_negative():
    draft = _draft(total_minor=900)

    normalized = normalize_order(draft, CHICAGO)

    assert normalized.order.tax == Decimal("0.00")
    assert _adjustments(normalized, "tax") == []


def test_tax_removed_forces_zero_even_with_payment_tax():
    draft = _draft(
        total_minor=1100,
        payments=(PaymentDraft("P1", 1100, tax_minor=100),),
        tax_removed=True,
    )

    normalized = normalize_order(draft, CHICAGO)

    assert normalized.order.tax == Decimal("0.00")
    assert normalized.order.tax_source == "removed"
    assert _adjustments(normalized, "tax") == []


def test_reconciliation_mismatch_is_a_warning_not_a_failure():
    draft = _draft(total_minor=5001, payments=(PaymentDraft("P1", 5000, tax_minor=0),))

    normalized = normalize_order(draft, CHICAGO)

    assert normalized.order.total == Decimal("50.01")
    assert normalized.order.payments_total == Decimal("50.00")
    [warning] = normalized.warnings
    assert warning.difference_minor == 1
    assert "ORD-1" in normalized.order.reconciliation_warning


def test_reconciliation_respects_tolerance_and_zero_payments():
    within = _draft(total_minor=5001, payments=(PaymentDraft("P1", 5000),))
    unpaid = _draft(total_minor=5001, payments=(PaymentDraft("P1", 0),))

    assert check_reconciliation(within, tolerance_minor=1) is None
    assert check_reconciliation(unpaid) is None
    assert check_reconciliation(_draft(total_minor=5001)) is None


@pytest.mark.parametrize("reported", [500, -500])
def test_discount_adjustment_is_negative_and_names_linked_line(reported):
    draft = _draft(
        total_minor=580,
        discounts=(DiscountDraft("D1", "Happy Hour", reported, line_external_id="L1"),),
    )

    normalized = normalize_order(draft, CHICAGO)

    [discount] = _adjustments(normalized, "discount")
    assert discount.total_price == Decimal("-5.00")
    assert discount.line_item_name == "Burger"
    assert discount.external_suffix == "D1"
    assert normalized.order.discount_total == Decimal("5.00")


def test_service_date_uses_restaurant_timezone():
    draft = _draft(occurred_at=datetime(2024, 1, 1, 5, 30, tzinfo=timezone.utc))

    normalized = normalize_order(draft, CHICAGO)

    assert normalized.order.service_date == date(2023, 12, 31)


def test_business_date_used_when_timestamp_missing():
    normalized = normalize_order(_draft(occurred_at=None, business_date=date(2024, 2, 2)), CHICAGO)
    assert normalized.order.service_date == date(2024, 2, 2)

    with pytest.raises(ProviderDataError):
        normalize_order(_draft(occurred_at=None), CHICAGO)


def test_non_revenue_lines_stay_out_of_subtotal():
    draft = _draft(
        total_minor=3000,
        line_items=(
            LineDraft("L1", "Burger", Decimal("2"), 1000),
            LineDraft("L2", "Gift Card", Decimal("1"), 1000, is_revenue=False),
            LineDraft("L3", "Fries", Decimal("0.5"), 500, is_revenue=None),
        ),
    )

    normalized = normalize_order(draft, CHICAGO)

    assert normalized.order.subtotal == Decimal("22.50")
    flags = {item.external_line_item_id: item.is_revenue for item in normalized.line_items}
    assert flags == {"L1": True, "L2": False, "L3": True}


def test_tip_comes_from_payments_and_negative_service_charge_is_dropped():
    draft = _draft(
        total_minor=1080,
        payments=(PaymentDraft("P1", 500, tip_minor=100), PaymentDraft("P2", 580, tip_minor=50)),
        service_charges=(ServiceChargeDraft("SC1", "Refund", -200),),
        tip_minor=999,
    )

    normalized = normalize_order(draft, CHICAGO)

    [tip] = _adjustments(normalized, "tip")
    assert tip.total_price == Decimal("1.50")
    assert _adjustments(normalized, "service_charge") == []


def test_each_service_charge_gets_its_own_adjustment():
    draft = _draft(
        total_minor=1500,
        service_charges=(
            ServiceChargeDraft("SC1", "Large Party", 300),
            ServiceChargeDraft("SC2", "Delivery", 200),
        ),
    )

    normalized = normalize_order(draft, CHICAGO)

    charges = {a.external_suffix: a.total_price for a in _adjustments(normalized, "service_charge")}
    assert charges == {"SC1": Decimal("3.00"), "SC2": Decimal("2.00")}
    assert normalized.order.service_charge_total == Decimal("5.00")


def test_repeated_line_ids_are_made_unique():
    draft = _draft(
        total_minor=2000,
        line_items=(
            LineDraft("L1", "Burger", Decimal("1"), 1000),
            LineDraft("L1", "Burger", Decimal("1"), 1000),
        ),
    )

    normalized = normalize_order(draft, CHICAGO)

    assert [i.external_line_item_id for i in normalized.line_items] == ["L1", "L1:2"]


def test_missing_order_id_is_rejected():
    with pytest.raises(ProviderDataError):
        normalize_order(_draft(external_order_id=""), CHICAGO)
