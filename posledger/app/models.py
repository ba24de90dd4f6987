from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from posledger.app.db import Base


# -------------------------
# Helpers
# -------------------------

PROVIDERS = ("clover", "toast", "square", "shift4")

Money = Numeric(12, 2)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def uuid_str() -> str:
    return str(uuid.uuid4())


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone=True columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# -------------------------
# Tenants
# -------------------------

class Restaurant(Base):
    __tablename__ = "restaurants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="America/Chicago")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    pos_connections = relationship(
        "PosConnection",
        back_populates="restaurant",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


# -------------------------
# Connections
# -------------------------

class PosConnection(Base):
    __tablename__ = "pos_connections"
    __table_args__ = (
        UniqueConstraint("restaurant_id", "provider", name="uq_pos_connection_restaurant_provider"),
        Index("ix_pos_connections_restaurant_id", "restaurant_id"),
        Index("ix_pos_connections_active_last_sync", "is_active", "last_sync_time"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    restaurant_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("restaurants.id", ondelete="CASCADE"),
        nullable=False,
    )
    provider: Mapped[str] = mapped_column(String(40), nullable=False)

    # credentials, ciphertext only
    access_token_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refresh_token_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    credentials_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    external_account_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    region: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    environment: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    config_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # sync state
    sync_cursor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    initial_sync_done: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    connection_status: Mapped[str] = mapped_column(String(32), nullable=False, default="connected")
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_error_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_webhook_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    connected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    restaurant = relationship("Restaurant", back_populates="pos_connections")


# -------------------------
# Canonical ledger
# -------------------------

class PosOrder(Base):
    __tablename__ = "pos_orders"
    __table_args__ = (
        UniqueConstraint(
            "restaurant_id",
            "provider",
            "external_order_id",
            name="uq_pos_order_restaurant_provider_external",
        ),
        Index("ix_pos_orders_restaurant_service_date", "restaurant_id", "service_date"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    restaurant_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("restaurants.id", ondelete="CASCADE"),
        nullable=False,
    )
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    external_order_id: Mapped[str] = mapped_column(String(200), nullable=False)
    state: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)

    total: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    subtotal: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    tax: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    tip: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    discount_total: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    service_charge_total: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    payments_total: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    tax_source: Mapped[str] = mapped_column(String(20), nullable=False, default="derived")

    service_date: Mapped[date] = mapped_column(Date, nullable=False)
    opened_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    modified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reconciliation_warning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class PosOrderLineItem(Base):
    __tablename__ = "pos_order_line_items"
    __table_args__ = (
        UniqueConstraint(
            "restaurant_id",
            "order_id",
            "external_line_item_id",
            name="uq_pos_line_item_restaurant_order_external",
        ),
        Index("ix_pos_order_line_items_order_id", "order_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    restaurant_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("restaurants.id", ondelete="CASCADE"),
        nullable=False,
    )
    order_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("pos_orders.id", ondelete="CASCADE"),
        nullable=False,
    )
    external_line_item_id: Mapped[str] = mapped_column(String(200), nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False, default=Decimal("1"))
    unit_price: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    total_price: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    is_revenue: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    category: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    raw_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class PosAdjustment(Base):
    __tablename__ = "pos_adjustments"
    __table_args__ = (
        UniqueConstraint(
            "restaurant_id",
            "provider",
            "external_order_id",
            "item_type",
            "external_suffix",
            name="uq_pos_adjustment_identity",
        ),
        Index("ix_pos_adjustments_restaurant_service_date", "restaurant_id", "service_date"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    restaurant_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("restaurants.id", ondelete="CASCADE"),
        nullable=False,
    )
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    external_order_id: Mapped[str] = mapped_column(String(200), nullable=False)
    item_type: Mapped[str] = mapped_column(String(32), nullable=False)
    external_suffix: Mapped[str] = mapped_column(String(200), nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    line_item_name: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    service_date: Mapped[date] = mapped_column(Date, nullable=False)
    raw_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


# -------------------------
# Operational ledgers
# -------------------------

class SyncRun(Base):
    __tablename__ = "pos_sync_runs"
    __table_args__ = (
        Index("ix_pos_sync_runs_restaurant_started", "restaurant_id", "started_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    restaurant_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("restaurants.id", ondelete="CASCADE"),
        nullable=False,
    )
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    trigger: Mapped[str] = mapped_column(String(20), nullable=False)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    window_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    window_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="in_progress")
    counts: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    errors: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class SecurityEvent(Base):
    __tablename__ = "security_events"
    __table_args__ = (
        Index("ix_security_events_restaurant_created", "restaurant_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    restaurant_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("restaurants.id", ondelete="CASCADE"),
        nullable=True,
    )
    event_type: Mapped[str] = mapped_column(String(80), nullable=False)
    actor: Mapped[str] = mapped_column(String(80), nullable=False, default="system")
    metadata_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
