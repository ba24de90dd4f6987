from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Iterable, Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from posledger.app.db import dialect_name
from posledger.app.models import PosAdjustment, PosOrder, PosOrderLineItem, uuid_str
from posledger.app.norma.orders import (
    CanonicalAdjustment,
    CanonicalLineItem,
    CanonicalOrder,
    NormalizedOrder,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ConflictKey:
    name: str
    columns: tuple[str, ...]


ORDER_KEY = ConflictKey(
    "uq_pos_order_restaurant_provider_external",
    ("restaurant_id", "provider", "external_order_id"),
)
LINE_ITEM_KEY = ConflictKey(
    "uq_pos_line_item_restaurant_order_external",
    ("restaurant_id", "order_id", "external_line_item_id"),
)
ADJUSTMENT_KEY = ConflictKey(
    "uq_pos_adjustment_identity",
    ("restaurant_id", "provider", "external_order_id", "item_type", "external_suffix"),
)


@dataclass(frozen=True)
class WriteResult:
    order_id: str
    line_items: int
    adjustments: int


def _insert(db: Session):
    name = dialect_name(db)
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"keyed upserts are not supported on {name}")
    return insert


class OrderRepository:
    """
    Idempotent writes for one restaurant. Every statement is filtered by
    restaurant_id; conflict keys mirror the table unique constraints.
    """

    def __init__(self, db: Session, restaurant_id: str):
        if not restaurant_id:
            raise ValueError("restaurant_id is required")
        self.db = db
        self.restaurant_id = restaurant_id

    def _upsert(self, model, key: ConflictKey, values: dict[str, Any]) -> None:
        insert = _insert(self.db)
        stmt = insert(model).values(**values)
        immutable = {"id", *key.columns}
        stmt = stmt.on_conflict_do_update(
            index_elements=list(key.columns),
            set_={col: stmt.excluded[col] for col in values if col not in immutable},
        )
        self.db.execute(stmt)

    def upsert_order(self, order: CanonicalOrder) -> str:
        self._upsert(
            PosOrder,
            ORDER_KEY,
            {
                "id": uuid_str(),
                "restaurant_id": self.restaurant_id,
                "provider": order.provider,
                "external_order_id": order.external_order_id,
                "state": order.state,
                "total": order.total,
                "subtotal": order.subtotal,
                "tax": order.tax,
                "tip": order.tip,
                "discount_total": order.discount_total,
                "service_charge_total": order.service_charge_total,
                "payments_total": order.payments_total,
                "tax_source": order.tax_source,
                "service_date": order.service_date,
                "opened_at": order.opened_at,
                "closed_at": order.closed_at,
                "modified_at": order.modified_at,
                "reconciliation_warning": order.reconciliation_warning,
                "raw_json": order.raw,
                "synced_at": _now(),
            },
        )
        return self.db.execute(
            select(PosOrder.id).where(
                PosOrder.restaurant_id == self.restaurant_id,
                PosOrder.provider == order.provider,
                PosOrder.external_order_id == order.external_order_id,
            )
        ).scalar_one()

    def replace_line_items(self, order_id: str, items: Sequence[CanonicalLineItem]) -> int:
        # last occurrence wins if a provider repeats an id
        unique = {item.external_line_item_id: item for item in items}
        with self.db.begin_nested():
            self.db.execute(
                delete(PosOrderLineItem).where(
                    PosOrderLineItem.restaurant_id == self.restaurant_id,
                    PosOrderLineItem.order_id == order_id,
                )
            )
            if unique:
                self.db.execute(
                    _insert(self.db)(PosOrderLineItem),
                    [
                        {
                            "id": uuid_str(),
                            "restaurant_id": self.restaurant_id,
                            "order_id": order_id,
                            "external_line_item_id": item.external_line_item_id,
                            "name": item.name,
                            "quantity": item.quantity,
                            "unit_price": item.unit_price,
                            "total_price": item.total_price,
                            "is_revenue": item.is_revenue,
                            "category": item.category,
                            "raw_json": item.raw,
                            "synced_at": _now(),
                        }
                        for item in unique.values()
                    ],
                )
        return len(unique)

    def upsert_adjustments(
        self,
        *,
        provider: str,
        external_order_id: str,
        service_date: date,
        adjustments: Iterable[CanonicalAdjustment],
    ) -> int:
        count = 0
        for adj in adjustments:
            self._upsert(
                PosAdjustment,
                ADJUSTMENT_KEY,
                {
                    "id": uuid_str(),
                    "restaurant_id": self.restaurant_id,
                    "provider": provider,
                    "external_order_id": external_order_id,
                    "item_type": adj.item_type,
                    "external_suffix": adj.external_suffix,
                    "name": adj.name,
                    "total_price": adj.total_price,
                    "line_item_name": adj.line_item_name,
                    "service_date": service_date,
                    "raw_json": adj.raw,
                    "synced_at": _now(),
                },
            )
            count += 1
        return count


def write_normalized_order(db: Session, restaurant_id: str, normalized: NormalizedOrder) -> WriteResult:
    """Order, its line items and its adjustments land together or not at all."""
    repo = OrderRepository(db, restaurant_id)
    order = normalized.order
    with db.begin_nested():
        order_id = repo.upsert_order(order)
        line_count = repo.replace_line_items(order_id, normalized.line_items)
        adjustment_count = repo.upsert_adjustments(
            provider=order.provider,
            external_order_id=order.external_order_id,
            service_date=order.service_date,
            adjustments=normalized.adjustments,
        )
    return WriteResult(order_id=order_id, line_items=line_count, adjustments=adjustment_count)
