from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from backoffice.app.core import config
from backoffice.app.core.timeutils import as_utc, utcnow
from backoffice.app.db.models.core_types import OrderAction, OrderChannel, OrderKind, OrderStatus
from backoffice.app.db.models.models_v1 import InventoryRecord, Item, Order
from backoffice.services.errors import ValidationFailure
from backoffice.services.inventory import ZERO, to_qty
from backoffice.services.orders import (
    CustomerInfo,
    OrderLineInput,
    TransitionResult,
    create_order,
    list_orders,
    online_location_id,
    transition_order,
)
from backoffice.services.promo import to_money
from backoffice.services.scope import AccessScope

log = logging.getLogger(__name__)

STATUS_ACTIONS = {
    OrderStatus.accepted: OrderAction.accept,
    OrderStatus.shipped: OrderAction.ship,
    OrderStatus.delivered: OrderAction.deliver,
    OrderStatus.cancelled: OrderAction.cancel,
}


@dataclass
class OrderValidation:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class LineAvailability:
    item_id: int
    requested: Decimal
    available: Decimal
    sufficient: bool
    always_available: bool


@dataclass
class NewOnlineOrder:
    order: Order
    warnings: list[str]


@dataclass(frozen=True)
class AttentionItem:
    order: Order
    reason: str


# ---------- Validation (aucune mutation) ----------
def _online_location(db: Session) -> int:
    location_id = online_location_id(db)
    if location_id is None:
        raise ValidationFailure(f"Online store location '{config.ONLINE_STORE_NAME}' is not configured")
    return location_id


def _aggregate(lines: Iterable[OrderLineInput]) -> dict[int, Decimal]:
    totals: dict[int, Decimal] = {}
    for line in lines:
        totals[int(line.item_id)] = totals.get(int(line.item_id), ZERO) + to_qty(line.quantity)
    return totals


def check_inventory_availability(db: Session, lines: Iterable[OrderLineInput]) -> list[LineAvailability]:
    location_id = _online_location(db)
    totals = _aggregate(lines)
    if not totals:
        return []

    items = {i.id: i for i in db.execute(select(Item).where(Item.id.in_(list(totals)))).scalars()}
    records = {
        r.item_id: r
        for r in db.execute(
            select(InventoryRecord)
            .where(InventoryRecord.location_id == location_id)
            .where(InventoryRecord.item_id.in_(list(totals)))
        ).scalars()
    }

    result = []
    for item_id, requested in totals.items():
        item = items.get(item_id)
        always = bool(item and item.always_available)
        rec = records.get(item_id)
        available = rec.available if rec else ZERO
        result.append(
            LineAvailability(
                item_id=item_id,
                requested=requested,
                available=available,
                sufficient=always or available >= requested,
                always_available=always,
            )
        )
    return result


def validate_order(db: Session, *, lines: Iterable[OrderLineInput], customer: CustomerInfo) -> OrderValidation:
    lines = list(lines)
    report = OrderValidation()

    location_id = online_location_id(db)
    if location_id is None:
        report.errors.append(f"Online store location '{config.ONLINE_STORE_NAME}' is not configured")
        return report

    if not lines:
        report.errors.append("Order must contain at least one line")
    if customer.user_id is None and (not customer.name or not (customer.email or customer.phone)):
        report.errors.append("Guest orders require a customer name and an email or phone")
    if not customer.address:
        report.warnings.append("No delivery address provided")

    for line in lines:
        if to_qty(line.quantity) <= 0:
            report.errors.append(f"Quantity must be positive (item {line.item_id})")
        if line.location_id is not None and line.location_id != location_id:
            report.errors.append(f"Online orders are fulfilled from the online store (item {line.item_id})")
        item = db.get(Item, line.item_id)
        if item is None:
            report.errors.append(f"Item {line.item_id} not found")
        elif not item.active:
            report.errors.append(f"Item {item.sku} is not available for sale")
    if report.errors:
        return report

    records = {
        r.item_id: r
        for r in db.execute(
            select(InventoryRecord)
            .where(InventoryRecord.location_id == location_id)
            .where(InventoryRecord.item_id.in_([l.item_id for l in lines]))
        ).scalars()
    }
    for check in check_inventory_availability(db, lines):
        if not check.sufficient:
            report.errors.append(
                f"Insufficient stock for item {check.item_id} (requested={check.requested}, available={check.available})"
            )
        elif check.always_available and check.available < check.requested:
            report.warnings.append(f"Item {check.item_id} will be back-ordered (always available)")
        else:
            rec = records.get(check.item_id)
            if rec is not None and rec.minimum_stock_level is not None:
                if check.available - check.requested <= rec.minimum_stock_level:
                    report.warnings.append(f"Item {check.item_id} will be at or below its minimum stock level")
    return report


# ---------- Création ----------
def process_new_order(
    db: Session,
    scope: AccessScope,
    *,
    lines: Iterable[OrderLineInput],
    customer: CustomerInfo,
    promo_code: str | None = None,
    shipping_cost=ZERO,
    payment_method: str | None = None,
    notes: str | None = None,
) -> NewOnlineOrder:
    """Valide puis crée la commande (ON : saisie staff, CUST : client inscrit, GUEST : invité)."""
    location_id = _online_location(db)
    lines = [
        OrderLineInput(
            item_id=l.item_id,
            quantity=l.quantity,
            location_id=l.location_id if l.location_id is not None else location_id,
            unit_price=l.unit_price,
            notes=l.notes,
        )
        for l in lines
    ]

    report = validate_order(db, lines=lines, customer=customer)
    if not report.is_valid:
        raise ValidationFailure("; ".join(report.errors))

    if scope.is_staff:
        channel = OrderChannel.online
    elif customer.user_id is not None:
        channel = OrderChannel.customer
    else:
        channel = OrderChannel.guest

    order = create_order(
        db,
        scope,
        kind=OrderKind.online,
        lines=lines,
        customer=customer,
        channel=channel,
        promo_code=promo_code,
        shipping_cost=shipping_cost,
        payment_method=payment_method,
        notes=notes,
    )
    return NewOnlineOrder(order=order, warnings=report.warnings)


# ---------- Transitions ----------
def accept_order(db: Session, scope: AccessScope, order_id: int, *, notes: str | None = None,
                 estimated_delivery_date: datetime | None = None) -> TransitionResult:
    return transition_order(
        db,
        scope,
        order_id=order_id,
        action=OrderAction.accept,
        notes=notes,
        expected_kind=OrderKind.online,
        options={"estimated_delivery_date": estimated_delivery_date},
    )


def ship_order(db: Session, scope: AccessScope, order_id: int, *, delivery_date: datetime | None = None,
               notes: str | None = None) -> TransitionResult:
    return transition_order(
        db,
        scope,
        order_id=order_id,
        action=OrderAction.ship,
        notes=notes,
        expected_kind=OrderKind.online,
        options={"delivery_date": delivery_date},
    )


def deliver_order(db: Session, scope: AccessScope, order_id: int, *, notes: str | None = None) -> TransitionResult:
    return transition_order(
        db, scope, order_id=order_id, action=OrderAction.deliver, notes=notes, expected_kind=OrderKind.online
    )


def cancel_order(db: Session, scope: AccessScope, order_id: int, *, reason: str | None) -> TransitionResult:
    return transition_order(
        db,
        scope,
        order_id=order_id,
        action=OrderAction.cancel,
        notes=reason,
        expected_kind=OrderKind.online,
        options={"reason": reason},
    )


def update_order_status(
    db: Session,
    scope: AccessScope,
    order_id: int,
    *,
    status: OrderStatus,
    notes: str | None = None,
) -> TransitionResult:
    action = STATUS_ACTIONS.get(status)
    if action is None:
        raise ValidationFailure(f"Cannot set an online order to {status.value}")
    options = {"reason": notes} if action == OrderAction.cancel else None
    return transition_order(
        db,
        scope,
        order_id=order_id,
        action=action,
        notes=notes,
        expected_kind=OrderKind.online,
        options=options,
    )


# ---------- Requêtes ----------
def get_orders_by_status(db: Session, scope: AccessScope, status: OrderStatus) -> list[Order]:
    return list_orders(db, scope, kind=OrderKind.online, status=status)


def get_orders_requiring_attention(db: Session, scope: AccessScope, *, now: datetime | None = None) -> list[AttentionItem]:
    """Pending trop ancienne, Accepted non expédiée, Shipped en retard."""
    scope.require_online_manager(online_location_id(db))
    now = now or utcnow()
    pending_cutoff = now - timedelta(hours=config.ATTENTION_PENDING_HOURS)
    accepted_cutoff = now - timedelta(hours=config.ATTENTION_ACCEPTED_HOURS)

    orders = db.execute(
        select(Order)
        .where(Order.kind == OrderKind.online)
        .where(Order.status.in_([OrderStatus.pending, OrderStatus.accepted, OrderStatus.shipped]))
        .order_by(Order.order_date.asc(), Order.id.asc())
    ).scalars()

    result = []
    for order in orders:
        if order.status == OrderStatus.pending and as_utc(order.order_date) < pending_cutoff:
            result.append(AttentionItem(order, f"Pending for more than {config.ATTENTION_PENDING_HOURS} hours"))
        elif order.status == OrderStatus.accepted and as_utc(order.accepted_at or order.order_date) < accepted_cutoff:
            result.append(AttentionItem(order, f"Accepted but not shipped for more than {config.ATTENTION_ACCEPTED_HOURS} hours"))
        elif (
            order.status == OrderStatus.shipped
            and order.estimated_delivery_date is not None
            and as_utc(order.estimated_delivery_date) < now
        ):
            result.append(AttentionItem(order, "Past estimated delivery date"))
    return result


def get_order_analytics(
    db: Session,
    scope: AccessScope,
    *,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
) -> dict:
    scope.require_online_manager(online_location_id(db))

    def _window(stmt):
        stmt = stmt.where(Order.kind == OrderKind.online)
        if from_date is not None:
            stmt = stmt.where(Order.order_date >= from_date)
        if to_date is not None:
            stmt = stmt.where(Order.order_date <= to_date)
        return stmt

    by_status = {status.value: 0 for status in (
        OrderStatus.pending,
        OrderStatus.accepted,
        OrderStatus.shipped,
        OrderStatus.delivered,
        OrderStatus.cancelled,
    )}
    for status, count in db.execute(_window(select(Order.status, func.count(Order.id)).group_by(Order.status))).all():
        by_status[status.value] = int(count)

    revenue, discounts, paying = db.execute(
        _window(
            select(
                func.coalesce(func.sum(Order.total_amount), 0),
                func.coalesce(func.sum(Order.discount_amount), 0),
                func.count(Order.id),
            ).where(Order.status != OrderStatus.cancelled)
        )
    ).one()

    revenue = to_money(revenue)
    total_orders = sum(by_status.values())
    return {
        "total_orders": total_orders,
        "orders_by_status": by_status,
        "total_revenue": revenue,
        "average_order_value": to_money(revenue / paying) if paying else to_money(0),
        "total_discounts": to_money(discounts),
        "from_date": from_date,
        "to_date": to_date,
    }
