"""create pos ledger tables

Revision ID: 5e1c0a9d2b41
Revises:
Create Date: 2026-10-18 09:12:40.118204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5e1c0a9d2b41'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _money(name: str, nullable: bool = False, default: bool = True) -> sa.Column:
    return sa.Column(
        name,
        sa.Numeric(12, 2),
        nullable=nullable,
        server_default=sa.text("0") if default else None,
    )


def upgrade() -> None:
    op.create_table(
        "restaurants",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="America/Chicago"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "pos_connections",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "restaurant_id",
            sa.String(length=36),
            sa.ForeignKey("restaurants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("access_token_encrypted", sa.Text(), nullable=True),
        sa.Column("refresh_token_encrypted", sa.Text(), nullable=True),
        sa.Column("credentials_encrypted", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_account_id", sa.String(length=120), nullable=True),
        sa.Column("region", sa.String(length=32), nullable=True),
        sa.Column("environment", sa.String(length=32), nullable=True),
        sa.Column("config_json", sa.JSON(), nullable=True),
        sa.Column("sync_cursor", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("initial_sync_done", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("connection_status", sa.String(length=32), nullable=False, server_default="connected"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_error_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_webhook_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("connected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("restaurant_id", "provider", name="uq_pos_connection_restaurant_provider"),
    )
    op.create_index("ix_pos_connections_restaurant_id", "pos_connections", ["restaurant_id"])
    op.create_index("ix_pos_connections_active_last_sync", "pos_connections", ["is_active", "last_sync_time"])

    op.create_table(
        "pos_orders",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "restaurant_id",
            sa.String(length=36),
            sa.ForeignKey("restaurants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("external_order_id", sa.String(length=200), nullable=False),
        sa.Column("state", sa.String(length=40), nullable=True),
        _money("total"),
        _money("subtotal"),
        _money("tax"),
        _money("tip"),
        _money("discount_total"),
        _money("service_charge_total"),
        _money("payments_total"),
        sa.Column("tax_source", sa.String(length=20), nullable=False, server_default="derived"),
        sa.Column("service_date", sa.Date(), nullable=False),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("modified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reconciliation_warning", sa.Text(), nullable=True),
        sa.Column("raw_json", sa.JSON(), nullable=True),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "restaurant_id",
            "provider",
            "external_order_id",
            name="uq_pos_order_restaurant_provider_external",
        ),
    )
    op.create_index("ix_pos_orders_restaurant_service_date", "pos_orders", ["restaurant_id", "service_date"])

    op.create_table(
        "pos_order_line_items",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "restaurant_id",
            sa.String(length=36),
            sa.ForeignKey("restaurants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "order_id",
            sa.String(length=36),
            sa.ForeignKey("pos_orders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_line_item_id", sa.String(length=200), nullable=False),
        sa.Column("name", sa.String(length=300), nullable=False),
        sa.Column("quantity", sa.Numeric(12, 3), nullable=False, server_default=sa.text("1")),
        _money("unit_price"),
        _money("total_price"),
        sa.Column("is_revenue", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("category", sa.String(length=200), nullable=True),
        sa.Column("raw_json", sa.JSON(), nullable=True),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "restaurant_id",
            "order_id",
            "external_line_item_id",
            name="uq_pos_line_item_restaurant_order_external",
        ),
    )
    op.create_index("ix_pos_order_line_items_order_id", "pos_order_line_items", ["order_id"])

    op.create_table(
        "pos_adjustments",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "restaurant_id",
            sa.String(length=36),
            sa.ForeignKey("restaurants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("external_order_id", sa.String(length=200), nullable=False),
        sa.Column("item_type", sa.String(length=32), nullable=False),
        sa.Column("external_suffix", sa.String(length=200), nullable=False),
        sa.Column("name", sa.String(length=300), nullable=False),
        _money("total_price", default=False),
        sa.Column("line_item_name", sa.String(length=300), nullable=True),
        sa.Column("service_date", sa.Date(), nullable=False),
        sa.Column("raw_json", sa.JSON(), nullable=True),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "restaurant_id",
            "provider",
            "external_order_id",
            "item_type",
            "external_suffix",
            name="uq_pos_adjustment_identity",
        ),
    )
    op.create_index(
        "ix_pos_adjustments_restaurant_service_date",
        "pos_adjustments",
        ["restaurant_id", "service_date"],
    )

    op.create_table(
        "pos_sync_runs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "restaurant_id",
            sa.String(length=36),
            sa.ForeignKey("restaurants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("trigger", sa.String(length=20), nullable=False),
        sa.Column("mode", sa.String(length=20), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="in_progress"),
        sa.Column("counts", sa.JSON(), nullable=True),
        sa.Column("errors", sa.JSON(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_pos_sync_runs_restaurant_started", "pos_sync_runs", ["restaurant_id", "started_at"])

    op.create_table(
        "security_events",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "restaurant_id",
            sa.String(length=36),
            sa.ForeignKey("restaurants.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("event_type", sa.String(length=80), nullable=False),
        sa.Column("actor", sa.String(length=80), nullable=False, server_default="system"),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_security_events_restaurant_created",
        "security_events",
        ["restaurant_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_security_events_restaurant_created", table_name="security_events")
    op.drop_table("security_events")
    op.drop_index("ix_pos_sync_runs_restaurant_started", table_name="pos_sync_runs")
    op.drop_table("pos_sync_runs")
    op.drop_index("ix_pos_adjustments_restaurant_service_date", table_name="pos_adjustments")
    op.drop_table("pos_adjustments")
    op.drop_index("ix_pos_order_line_items_order_id", table_name="pos_order_line_items")
    op.drop_table("pos_order_line_items")
    op.drop_index("ix_pos_orders_restaurant_service_date", table_name="pos_orders")
    op.drop_table("pos_orders")
    op.drop_index("ix_pos_connections_active_last_sync", table_name="pos_connections")
    op.drop_index("ix_pos_connections_restaurant_id", table_name="pos_connections")
    op.drop_table("pos_connections")
    op.drop_table("restaurants")
