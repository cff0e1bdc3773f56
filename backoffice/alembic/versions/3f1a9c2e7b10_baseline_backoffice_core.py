"""baseline back-office core (ledger, orders, promo, assemblies)

Revision ID: 3f1a9c2e7b10
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

from backoffice.app.db.models.core_types import (
    AssemblyStatus,
    DiscountType,
    LocationType,
    MovementType,
    OrderKind,
    OrderStatus,
    PaymentStatus,
)

# revision identifiers, used by Alembic.
revision: str = "3f1a9c2e7b10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# SQLAlchemy persiste le NOM des membres d'enum
ENUMS = {
    "location_type": LocationType,
    "movement_type": MovementType,
    "order_kind": OrderKind,
    "order_status": OrderStatus,
    "payment_status": PaymentStatus,
    "discount_type": DiscountType,
    "assembly_status": AssemblyStatus,
}

QTY = sa.Numeric(14, 3)
MONEY = sa.Numeric(14, 2)
TS = sa.DateTime(timezone=True)


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*[m.name for m in ENUMS[name]], name=name, create_type=False)


def upgrade() -> None:
    bind = op.get_bind()
    # Types créés une seule fois (order_status sert à plusieurs colonnes)
    for name, py_enum in ENUMS.items():
        postgresql.ENUM(*[m.name for m in py_enum], name=name).create(bind, checkfirst=True)

    # ---------- MASTER DATA ----------
    op.create_table(
        "locations",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False, unique=True),
        sa.Column("type", _enum("location_type"), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    op.create_table(
        "items",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("sku", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("unit", sa.String(32), nullable=False, server_default="piece"),
        sa.Column("price", MONEY, nullable=False, server_default="0"),
        sa.Column("always_available", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", TS, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("price >= 0", name="ck_item_price_nonneg"),
    )
    op.create_index("ix_items_name", "items", ["name"])

    # ---------- INVENTORY ----------
    op.create_table(
        "inventory_records",
        sa.Column("item_id", sa.BigInteger(), sa.ForeignKey("items.id", ondelete="RESTRICT"), primary_key=True),
        sa.Column("location_id", sa.BigInteger(), sa.ForeignKey("locations.id", ondelete="RESTRICT"), primary_key=True),
        sa.Column("quantity", QTY, nullable=False, server_default="0"),
        sa.Column("qty_reserved", QTY, nullable=False, server_default="0"),
        sa.Column("unit", sa.String(32)),
        sa.Column("minimum_stock_level", QTY),
        sa.Column("maximum_stock_level", QTY),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.Column("updated_at", TS, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("qty_reserved >= 0", name="ck_inventory_reserved_nonneg"),
        sa.CheckConstraint(
            "minimum_stock_level IS NULL OR maximum_stock_level IS NULL "
            "OR minimum_stock_level <= maximum_stock_level",
            name="ck_inventory_thresholds_ordered",
        ),
    )

    op.create_table(
        "inventory_movements",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("item_id", sa.BigInteger(), nullable=False),
        sa.Column("location_id", sa.BigInteger(), nullable=False),
        sa.Column("movement_type", _enum("movement_type"), nullable=False),
        sa.Column("delta", QTY, nullable=False),
        sa.Column("quantity_after", QTY, nullable=False),
        sa.Column("reason", sa.String(255)),
        sa.Column("reference_type", sa.String(32)),
        sa.Column("reference_id", sa.String(64)),
        sa.Column("actor_id", sa.BigInteger()),
        sa.Column("idempotency_key", sa.String(64), unique=True),
        sa.Column("created_at", TS, nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(
            ["item_id", "location_id"],
            ["inventory_records.item_id", "inventory_records.location_id"],
            ondelete="RESTRICT",
            name="fk_movement_inventory_record",
        ),
    )
    op.create_index(
        "ix_inventory_movements_record_time",
        "inventory_movements",
        ["item_id", "location_id", "created_at"],
    )

    op.create_table(
        "sequence_counters",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("name", sa.String(50), nullable=False, unique=True),
        sa.Column("current_value", sa.BigInteger(), nullable=False, server_default="0"),
    )

    # ---------- PROMO ----------
    op.create_table(
        "promo_codes",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("code", sa.String(50), nullable=False, unique=True),
        sa.Column("description", sa.String(200)),
        sa.Column("discount_type", _enum("discount_type"), nullable=False),
        sa.Column("discount_value", MONEY, nullable=False),
        sa.Column("start_date", TS, nullable=False),
        sa.Column("end_date", TS),
        sa.Column("usage_limit", sa.Integer()),
        sa.Column("used_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("usage_limit_per_user", sa.Integer()),
        sa.Column("minimum_order_amount", MONEY),
        sa.Column("maximum_discount_amount", MONEY),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.BigInteger()),
        sa.Column("created_at", TS, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", TS),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.CheckConstraint("discount_value >= 0", name="ck_promo_value_nonneg"),
        sa.CheckConstraint("used_count >= 0", name="ck_promo_used_count_nonneg"),
    )

    op.create_table(
        "promo_code_users",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("promo_code_id", sa.BigInteger(), sa.ForeignKey("promo_codes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("email", sa.String(200)),
        sa.Column("name", sa.String(200)),
        sa.Column("assigned_at", TS, nullable=False, server_default=sa.func.now()),
        sa.Column("is_notified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notified_at", TS),
        sa.UniqueConstraint("promo_code_id", "user_id", name="uq_promo_user"),
    )

    op.create_table(
        "promo_code_items",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("promo_code_id", sa.BigInteger(), sa.ForeignKey("promo_codes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("item_id", sa.BigInteger(), sa.ForeignKey("items.id", ondelete="CASCADE"), nullable=False),
        sa.UniqueConstraint("promo_code_id", "item_id", name="uq_promo_item"),
    )

    # ---------- ASSEMBLY ----------
    op.create_table(
        "assemblies",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("build_quantity", QTY, nullable=False),
        sa.Column("unit", sa.String(32)),
        sa.Column("status", _enum("assembly_status"), nullable=False),
        sa.Column("sale_price", MONEY),
        sa.Column("location_id", sa.BigInteger(), sa.ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.BigInteger()),
        sa.Column("completed_by", sa.BigInteger()),
        sa.Column("created_at", TS, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", TS),
        sa.Column("started_at", TS),
        sa.Column("completed_at", TS),
        sa.Column("cancelled_at", TS),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.CheckConstraint("build_quantity > 0", name="ck_assembly_build_qty_pos"),
        sa.CheckConstraint("sale_price IS NULL OR sale_price >= 0", name="ck_assembly_sale_price_nonneg"),
    )
    op.create_index("ix_assemblies_status", "assemblies", ["status"])

    op.create_table(
        "bill_of_materials",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("assembly_id", sa.BigInteger(), sa.ForeignKey("assemblies.id", ondelete="CASCADE"), nullable=False),
        sa.Column("raw_item_id", sa.BigInteger(), sa.ForeignKey("items.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("location_id", sa.BigInteger(), sa.ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("required_quantity_per_build", QTY, nullable=False),
        sa.Column("unit", sa.String(32)),
        sa.Column("notes", sa.String(500)),
        sa.CheckConstraint("required_quantity_per_build > 0", name="ck_bom_required_qty_pos"),
    )
    op.create_index("ix_bill_of_materials_assembly_id", "bill_of_materials", ["assembly_id"])

    # ---------- ORDERS ----------
    op.create_table(
        "orders",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("kind", _enum("order_kind"), nullable=False),
        sa.Column("order_number", sa.String(50), nullable=False, unique=True),
        sa.Column("status", _enum("order_status"), nullable=False),
        sa.Column("payment_status", _enum("payment_status"), nullable=False),
        sa.Column("payment_method", sa.String(50)),
        sa.Column("subtotal", MONEY, nullable=False, server_default="0"),
        sa.Column("shipping_cost", MONEY, nullable=False, server_default="0"),
        sa.Column("discount_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("total_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("down_payment", MONEY),
        sa.Column("promo_code_id", sa.BigInteger(), sa.ForeignKey("promo_codes.id", ondelete="SET NULL")),
        sa.Column("customer_user_id", sa.BigInteger()),
        sa.Column("customer_name", sa.String(100)),
        sa.Column("customer_email", sa.String(100)),
        sa.Column("customer_phone", sa.String(50)),
        sa.Column("customer_address", sa.String(500)),
        sa.Column("supplier_name", sa.String(200)),
        sa.Column("notes", sa.Text()),
        sa.Column("created_by", sa.BigInteger()),
        sa.Column("confirmed_by", sa.BigInteger()),
        sa.Column("order_date", TS, nullable=False, server_default=sa.func.now()),
        sa.Column("delivery_date", TS),
        sa.Column("estimated_delivery_date", TS),
        sa.Column("accepted_at", TS),
        sa.Column("shipped_at", TS),
        sa.Column("delivered_at", TS),
        sa.Column("cancelled_at", TS),
        sa.Column("cancellation_reason", sa.String(500)),
        sa.Column("created_at", TS, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", TS),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.CheckConstraint("total_amount >= 0", name="ck_order_total_nonneg"),
        sa.CheckConstraint("discount_amount >= 0", name="ck_order_discount_nonneg"),
    )
    op.create_index("ix_orders_kind", "orders", ["kind"])
    op.create_index("ix_orders_status", "orders", ["status"])
    op.create_index("ix_orders_customer_user_id", "orders", ["customer_user_id"])

    op.create_table(
        "order_lines",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("order_id", sa.BigInteger(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("item_id", sa.BigInteger(), sa.ForeignKey("items.id", ondelete="RESTRICT")),
        sa.Column("assembly_id", sa.BigInteger(), sa.ForeignKey("assemblies.id", ondelete="RESTRICT")),
        sa.Column("location_id", sa.BigInteger(), sa.ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("quantity", QTY, nullable=False),
        sa.Column("unit_price", MONEY, nullable=False),
        sa.Column("total_price", MONEY, nullable=False),
        sa.Column("unit", sa.String(32)),
        sa.Column("notes", sa.String(500)),
        sa.CheckConstraint("quantity > 0", name="ck_order_line_qty_pos"),
        sa.CheckConstraint("unit_price >= 0", name="ck_order_line_unit_price_nonneg"),
        sa.CheckConstraint("(item_id IS NULL) <> (assembly_id IS NULL)", name="ck_order_line_item_xor_assembly"),
    )
    op.create_index("ix_order_lines_order_id", "order_lines", ["order_id"])

    op.create_table(
        "order_status_history",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("order_id", sa.BigInteger(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("from_status", _enum("order_status")),
        sa.Column("to_status", _enum("order_status"), nullable=False),
        sa.Column("action", sa.String(32), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("actor_id", sa.BigInteger()),
        sa.Column("created_at", TS, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_order_status_history_order_id", "order_status_history", ["order_id"])

    op.create_table(
        "promo_code_usages",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("promo_code_id", sa.BigInteger(), sa.ForeignKey("promo_codes.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("order_id", sa.BigInteger(), sa.ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("user_id", sa.BigInteger()),
        sa.Column("discount_amount", MONEY, nullable=False),
        sa.Column("used_at", TS, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("order_id", name="uq_promo_usage_order"),
    )
    op.create_index("ix_promo_usage_code_user", "promo_code_usages", ["promo_code_id", "user_id"])

    # ---------- AUDIT ----------
    op.create_table(
        "audit_log",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("actor_id", sa.BigInteger()),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("before", sa.Text()),
        sa.Column("after", sa.Text()),
        sa.Column("created_at", TS, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_entity", "audit_log", ["entity_type", "entity_id"])


def downgrade() -> None:
    for table in (
        "audit_log",
        "promo_code_usages",
        "order_status_history",
        "order_lines",
        "orders",
        "bill_of_materials",
        "assemblies",
        "promo_code_items",
        "promo_code_users",
        "promo_codes",
        "sequence_counters",
        "inventory_movements",
        "inventory_records",
        "items",
        "locations",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
