from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    String,
    Integer,
    BigInteger,
    DateTime,
    Boolean,
    ForeignKey,
    ForeignKeyConstraint,
    Numeric,
    Text,
    Enum,
    UniqueConstraint,
    Index,
    CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backoffice.app.core.timeutils import utcnow
from backoffice.app.db.base import Base, BigIntPK
from backoffice.app.db.models.core_types import (
    LocationType,
    MovementType,
    OrderKind,
    OrderStatus,
    PaymentStatus,
    DiscountType,
    AssemblyStatus,
)

QTY = Numeric(14, 3)
MONEY = Numeric(14, 2)


# ---------- MASTER DATA ----------
class Location(Base):
    __tablename__ = "locations"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    type: Mapped[LocationType] = mapped_column(Enum(LocationType, name="location_type"), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Item(Base):
    __tablename__ = "items"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    sku: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    unit: Mapped[str] = mapped_column(String(32), default="piece", nullable=False)
    price: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    # Vendable même sans stock (le stock peut alors passer en négatif)
    always_available: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (CheckConstraint("price >= 0", name="ck_item_price_nonneg"),)


# ---------- INVENTORY ----------
class InventoryRecord(Base):
    __tablename__ = "inventory_records"
    item_id: Mapped[int] = mapped_column(ForeignKey("items.id", ondelete="RESTRICT"), primary_key=True)
    location_id: Mapped[int] = mapped_column(ForeignKey("locations.id", ondelete="RESTRICT"), primary_key=True)

    quantity: Mapped[Decimal] = mapped_column(QTY, default=Decimal("0"), nullable=False)
    # Réservé par les assemblages en cours
    qty_reserved: Mapped[Decimal] = mapped_column(QTY, default=Decimal("0"), nullable=False)
    unit: Mapped[str | None] = mapped_column(String(32))

    # Seuils indicatifs, jamais bloquants
    minimum_stock_level: Mapped[Decimal | None] = mapped_column(QTY)
    maximum_stock_level: Mapped[Decimal | None] = mapped_column(QTY)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    item: Mapped[Item] = relationship()

    __mapper_args__ = {"version_id_col": version_id}
    __table_args__ = (
        CheckConstraint("qty_reserved >= 0", name="ck_inventory_reserved_nonneg"),
        CheckConstraint(
            "minimum_stock_level IS NULL OR maximum_stock_level IS NULL "
            "OR minimum_stock_level <= maximum_stock_level",
            name="ck_inventory_thresholds_ordered",
        ),
    )

    @property
    def available(self) -> Decimal:
        return self.quantity - self.qty_reserved


class InventoryMovement(Base):
    __tablename__ = "inventory_movements"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    item_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    location_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    movement_type: Mapped[MovementType] = mapped_column(Enum(MovementType, name="movement_type"), nullable=False)
    delta: Mapped[Decimal] = mapped_column(QTY, nullable=False)
    quantity_after: Mapped[Decimal] = mapped_column(QTY, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255))

    reference_type: Mapped[str | None] = mapped_column(String(32))
    reference_id: Mapped[str | None] = mapped_column(String(64))
    actor_id: Mapped[int | None] = mapped_column(BigInteger)

    idempotency_key: Mapped[str | None] = mapped_column(String(64), unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        # L'historique empêche la suppression physique d'un enregistrement de stock
        ForeignKeyConstraint(
            ["item_id", "location_id"],
            ["inventory_records.item_id", "inventory_records.location_id"],
            ondelete="RESTRICT",
            name="fk_movement_inventory_record",
        ),
        Index("ix_inventory_movements_record_time", "item_id", "location_id", "created_at"),
    )


class SequenceCounter(Base):
    __tablename__ = "sequence_counters"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    current_value: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)


# ---------- PROMO ----------
class PromoCode(Base):
    __tablename__ = "promo_codes"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    # Toujours stocké en majuscules : unicité insensible à la casse
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(String(200))

    discount_type: Mapped[DiscountType] = mapped_column(Enum(DiscountType, name="discount_type"), nullable=False)
    discount_value: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    usage_limit: Mapped[int | None] = mapped_column(Integer)
    used_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    usage_limit_per_user: Mapped[int | None] = mapped_column(Integer)

    minimum_order_amount: Mapped[Decimal | None] = mapped_column(MONEY)
    maximum_discount_amount: Mapped[Decimal | None] = mapped_column(MONEY)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), onupdate=utcnow)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    users: Mapped[list["PromoCodeUser"]] = relationship(back_populates="promo_code", cascade="all, delete-orphan")
    items: Mapped[list["PromoCodeItem"]] = relationship(back_populates="promo_code", cascade="all, delete-orphan")

    __mapper_args__ = {"version_id_col": version_id}
    __table_args__ = (
        CheckConstraint("discount_value >= 0", name="ck_promo_value_nonneg"),
        CheckConstraint("used_count >= 0", name="ck_promo_used_count_nonneg"),
    )


class PromoCodeUser(Base):
    __tablename__ = "promo_code_users"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    promo_code_id: Mapped[int] = mapped_column(ForeignKey("promo_codes.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    email: Mapped[str | None] = mapped_column(String(200))
    name: Mapped[str | None] = mapped_column(String(200))
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    is_notified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    promo_code: Mapped[PromoCode] = relationship(back_populates="users")

    __table_args__ = (UniqueConstraint("promo_code_id", "user_id", name="uq_promo_user"),)


class PromoCodeItem(Base):
    __tablename__ = "promo_code_items"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    promo_code_id: Mapped[int] = mapped_column(ForeignKey("promo_codes.id", ondelete="CASCADE"), nullable=False)
    item_id: Mapped[int] = mapped_column(ForeignKey("items.id", ondelete="CASCADE"), nullable=False)

    promo_code: Mapped[PromoCode] = relationship(back_populates="items")

    __table_args__ = (UniqueConstraint("promo_code_id", "item_id", name="uq_promo_item"),)


class PromoCodeUsage(Base):
    __tablename__ = "promo_code_usages"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    promo_code_id: Mapped[int] = mapped_column(ForeignKey("promo_codes.id", ondelete="RESTRICT"), nullable=False)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False)
    user_id: Mapped[int | None] = mapped_column(BigInteger)
    discount_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    used_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        # Une seule utilisation par commande
        UniqueConstraint("order_id", name="uq_promo_usage_order"),
        Index("ix_promo_usage_code_user", "promo_code_id", "user_id"),
    )


# ---------- ORDERS ----------
class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    kind: Mapped[OrderKind] = mapped_column(Enum(OrderKind, name="order_kind"), nullable=False, index=True)
    order_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus, name="order_status"),
        default=OrderStatus.pending,
        nullable=False,
        index=True,
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, name="payment_status"),
        default=PaymentStatus.pending,
        nullable=False,
    )
    payment_method: Mapped[str | None] = mapped_column(String(50))

    subtotal: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    shipping_cost: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    down_payment: Mapped[Decimal | None] = mapped_column(MONEY)
    promo_code_id: Mapped[int | None] = mapped_column(ForeignKey("promo_codes.id", ondelete="SET NULL"))

    # Client inscrit OU invité
    customer_user_id: Mapped[int | None] = mapped_column(BigInteger, index=True)
    customer_name: Mapped[str | None] = mapped_column(String(100))
    customer_email: Mapped[str | None] = mapped_column(String(100))
    customer_phone: Mapped[str | None] = mapped_column(String(50))
    customer_address: Mapped[str | None] = mapped_column(String(500))
    supplier_name: Mapped[str | None] = mapped_column(String(200))

    notes: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[int | None] = mapped_column(BigInteger)
    confirmed_by: Mapped[int | None] = mapped_column(BigInteger)

    order_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    delivery_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    estimated_delivery_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancellation_reason: Mapped[str | None] = mapped_column(String(500))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), onupdate=utcnow)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    lines: Mapped[list["OrderLine"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderLine.id",
    )
    history: Mapped[list["OrderStatusHistory"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderStatusHistory.id",
    )

    __mapper_args__ = {"version_id_col": version_id}
    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_order_total_nonneg"),
        CheckConstraint("discount_amount >= 0", name="ck_order_discount_nonneg"),
    )


class OrderLine(Base):
    __tablename__ = "order_lines"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    item_id: Mapped[int | None] = mapped_column(ForeignKey("items.id", ondelete="RESTRICT"))
    assembly_id: Mapped[int | None] = mapped_column(ForeignKey("assemblies.id", ondelete="RESTRICT"))
    location_id: Mapped[int] = mapped_column(ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(QTY, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    total_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    unit: Mapped[str | None] = mapped_column(String(32))
    notes: Mapped[str | None] = mapped_column(String(500))

    order: Mapped[Order] = relationship(back_populates="lines")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_line_qty_pos"),
        CheckConstraint("unit_price >= 0", name="ck_order_line_unit_price_nonneg"),
        CheckConstraint("(item_id IS NULL) <> (assembly_id IS NULL)", name="ck_order_line_item_xor_assembly"),
    )


class OrderStatusHistory(Base):
    __tablename__ = "order_status_history"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    from_status: Mapped[OrderStatus | None] = mapped_column(Enum(OrderStatus, name="order_status"))
    to_status: Mapped[OrderStatus] = mapped_column(Enum(OrderStatus, name="order_status"), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    actor_id: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    order: Mapped[Order] = relationship(back_populates="history")


# ---------- ASSEMBLY ----------
class Assembly(Base):
    __tablename__ = "assemblies"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    # Unités produites par un build
    build_quantity: Mapped[Decimal] = mapped_column(QTY, nullable=False)
    unit: Mapped[str | None] = mapped_column(String(32))
    status: Mapped[AssemblyStatus] = mapped_column(
        Enum(AssemblyStatus, name="assembly_status"),
        default=AssemblyStatus.pending,
        nullable=False,
        index=True,
    )
    sale_price: Mapped[Decimal | None] = mapped_column(MONEY)
    location_id: Mapped[int] = mapped_column(ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_by: Mapped[int | None] = mapped_column(BigInteger)
    completed_by: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), onupdate=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    bill_of_materials: Mapped[list["BillOfMaterial"]] = relationship(
        back_populates="assembly",
        cascade="all, delete-orphan",
        order_by="BillOfMaterial.id",
    )

    __mapper_args__ = {"version_id_col": version_id}
    __table_args__ = (
        CheckConstraint("build_quantity > 0", name="ck_assembly_build_qty_pos"),
        CheckConstraint("sale_price IS NULL OR sale_price >= 0", name="ck_assembly_sale_price_nonneg"),
    )


class BillOfMaterial(Base):
    __tablename__ = "bill_of_materials"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    assembly_id: Mapped[int] = mapped_column(ForeignKey("assemblies.id", ondelete="CASCADE"), nullable=False, index=True)
    raw_item_id: Mapped[int] = mapped_column(ForeignKey("items.id", ondelete="RESTRICT"), nullable=False)
    location_id: Mapped[int] = mapped_column(ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False)
    # Quantité pour UN build (jamais pré-multipliée)
    required_quantity_per_build: Mapped[Decimal] = mapped_column(QTY, nullable=False)
    unit: Mapped[str | None] = mapped_column(String(32))
    notes: Mapped[str | None] = mapped_column(String(500))

    assembly: Mapped[Assembly] = relationship(back_populates="bill_of_materials")
    raw_item: Mapped[Item] = relationship()

    __table_args__ = (CheckConstraint("required_quantity_per_build > 0", name="ck_bom_required_qty_pos"),)


# ---------- AUDIT ----------
class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    actor_id: Mapped[int | None] = mapped_column(BigInteger)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    before: Mapped[str | None] = mapped_column(Text)
    after: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (Index("ix_audit_entity", "entity_type", "entity_id"),)
