"""
Machines à états des commandes (vente, achat, en ligne).

Une machine = une chaîne ordonnée de statuts + l'annulation. Chaque
transition relit la commande sous verrou, vérifie le statut de départ,
applique ses effets stock et écrit l'historique dans le même commit.

Refus :
- statut déjà au niveau (ou au-delà) de la cible, ou terminal -> ConcurrencyConflict
  (une autre requête est passée avant)
- statut en amont du statut de départ -> IllegalTransition
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from backoffice.app.core import config
from backoffice.app.core.timeutils import utcnow
from backoffice.app.db.models.core_types import (
    OrderAction,
    OrderChannel,
    OrderKind,
    OrderStatus,
    PaymentStatus,
)
from backoffice.app.db.models.models_v1 import (
    Item,
    Location,
    Order,
    OrderLine,
    OrderStatusHistory,
)
from backoffice.services import inventory, promo, sinks
from backoffice.services.errors import (
    AccessDenied,
    ConcurrencyConflict,
    EntityNotFound,
    IllegalTransition,
    InsufficientStock,
    ValidationFailure,
)
from backoffice.services.inventory import LedgerLine, to_qty
from backoffice.services.scope import AccessScope
from backoffice.services.sequences import next_order_number
from backoffice.services.uow import atomic

log = logging.getLogger(__name__)

ZERO = Decimal("0")

# Valeurs de payment_method considérées "paiement à la livraison"
CASH_ON_DELIVERY = {"cashondelivery", "cod", "cash"}


# ---------- Machines ----------
@dataclass(frozen=True)
class Transition:
    action: OrderAction
    sources: frozenset
    target: OrderStatus


@dataclass(frozen=True)
class OrderMachine:
    kind: OrderKind
    chain: tuple
    transitions: dict
    terminal: frozenset

    def rank(self, status: OrderStatus) -> int | None:
        return self.chain.index(status) if status in self.chain else None

    def reject(self, order: Order, transition: Transition) -> Exception:
        current = order.status
        if current in self.terminal:
            return ConcurrencyConflict(f"Order {order.order_number} is already {current.value}")
        current_rank = self.rank(current)
        target_rank = self.rank(transition.target)
        if current_rank is not None and target_rank is not None and current_rank >= target_rank:
            return ConcurrencyConflict(f"Order {order.order_number} is already {current.value}")
        return IllegalTransition("Order", order.order_number, current.value, transition.action.value)


def _machine(kind: OrderKind, chain: tuple, actions: tuple, cancellable: tuple) -> OrderMachine:
    transitions = {
        action: Transition(action, frozenset({src}), dst)
        for action, src, dst in zip(actions, chain, chain[1:])
    }
    transitions[OrderAction.cancel] = Transition(OrderAction.cancel, frozenset(cancellable), OrderStatus.cancelled)
    return OrderMachine(
        kind=kind,
        chain=chain,
        transitions=transitions,
        terminal=frozenset({chain[-1], OrderStatus.cancelled}),
    )


SALES_MACHINE = _machine(
    OrderKind.sale,
    (OrderStatus.pending, OrderStatus.confirmed, OrderStatus.shipped, OrderStatus.delivered),
    (OrderAction.confirm, OrderAction.ship, OrderAction.deliver),
    (OrderStatus.pending, OrderStatus.confirmed, OrderStatus.shipped),
)

PURCHASE_MACHINE = _machine(
    OrderKind.purchase,
    (OrderStatus.pending, OrderStatus.approved, OrderStatus.received),
    (OrderAction.approve, OrderAction.receive),
    (OrderStatus.pending, OrderStatus.approved),
)

ONLINE_MACHINE = _machine(
    OrderKind.online,
    (OrderStatus.pending, OrderStatus.accepted, OrderStatus.shipped, OrderStatus.delivered),
    (OrderAction.accept, OrderAction.ship, OrderAction.deliver),
    (OrderStatus.pending, OrderStatus.accepted, OrderStatus.shipped),
)

MACHINES = {m.kind: m for m in (SALES_MACHINE, PURCHASE_MACHINE, ONLINE_MACHINE)}

DEFAULT_CHANNELS = {
    OrderKind.sale: OrderChannel.sale,
    OrderKind.purchase: OrderChannel.purchase,
    OrderKind.online: OrderChannel.online,
}


# ---------- Entrées ----------
@dataclass(frozen=True)
class OrderLineInput:
    item_id: int
    quantity: Decimal
    location_id: int | None = None
    unit_price: Decimal | None = None
    notes: str | None = None


@dataclass(frozen=True)
class CustomerInfo:
    user_id: int | None = None
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    address: str | None = None

    @property
    def is_guest(self) -> bool:
        return self.user_id is None


@dataclass
class TransitionContext:
    actor_id: int | None
    notes: str | None
    now: datetime
    options: dict = field(default_factory=dict)


@dataclass
class TransitionResult:
    order: Order
    previous_status: OrderStatus
    status: OrderStatus
    actions_performed: list[str]


# ---------- Lecture ----------
def online_location_id(db: Session) -> int | None:
    return db.execute(select(Location.id).where(Location.name == config.ONLINE_STORE_NAME)).scalar_one_or_none()


def _lock_order(db: Session, order_id: int) -> Order:
    order = (
        db.execute(
            select(Order).where(Order.id == order_id).with_for_update().execution_options(populate_existing=True)
        )
        .scalar_one_or_none()
    )
    if order is None:
        raise EntityNotFound("Order", order_id)
    return order


def require_order_access(db: Session, scope: AccessScope, order: Order) -> None:
    """Lecture / mutation d'une commande existante."""
    if scope.is_staff:
        if order.kind == OrderKind.online:
            scope.require_online_manager(online_location_id(db))
            return
        for line in order.lines:
            scope.require_location(line.location_id)
        return
    if scope.is_customer and scope.user_id is not None and order.customer_user_id == scope.user_id:
        return
    raise AccessDenied("Access denied to this order")


def get_order(db: Session, scope: AccessScope, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise EntityNotFound("Order", order_id)
    require_order_access(db, scope, order)
    return order


def list_orders(
    db: Session,
    scope: AccessScope,
    *,
    kind: OrderKind,
    status: OrderStatus | None = None,
    limit: int = 200,
) -> list[Order]:
    stmt = select(Order).where(Order.kind == kind).order_by(Order.order_date.desc(), Order.id.desc()).limit(limit)
    if status is not None:
        stmt = stmt.where(Order.status == status)

    if scope.is_staff:
        if kind == OrderKind.online:
            scope.require_online_manager(online_location_id(db))
        else:
            restricted = scope.location_filter()
            if restricted is not None:
                stmt = stmt.where(
                    Order.id.in_(select(OrderLine.order_id).where(OrderLine.location_id == restricted))
                )
    elif scope.is_customer and scope.user_id is not None:
        stmt = stmt.where(Order.customer_user_id == scope.user_id)
    else:
        raise AccessDenied("Access denied to orders")
    return list(db.execute(stmt).scalars())


# ---------- Création ----------
def add_history(
    db: Session,
    order: Order,
    *,
    from_status: OrderStatus | None,
    to_status: OrderStatus,
    action: str,
    actor_id: int | None,
    notes: str | None = None,
) -> None:
    order.history.append(
        OrderStatusHistory(
            from_status=from_status,
            to_status=to_status,
            action=action,
            notes=notes,
            actor_id=actor_id,
        )
    )


def new_order(
    db: Session,
    *,
    kind: OrderKind,
    channel: OrderChannel,
    lines: list[OrderLine],
    customer: CustomerInfo,
    status: OrderStatus = OrderStatus.pending,
    payment_status: PaymentStatus = PaymentStatus.pending,
    payment_method: str | None = None,
    shipping_cost=ZERO,
    notes: str | None = None,
    supplier_name: str | None = None,
    actor_id: int | None = None,
) -> Order:
    """Numérote, calcule les totaux et insère (sans commit)."""
    now = utcnow()
    subtotal = sum((line.total_price for line in lines), ZERO)
    shipping_cost = promo.to_money(shipping_cost)

    order = Order(
        kind=kind,
        order_number=next_order_number(db, channel, at=now),
        status=status,
        payment_status=payment_status,
        payment_method=payment_method,
        subtotal=promo.to_money(subtotal),
        shipping_cost=shipping_cost,
        discount_amount=ZERO,
        total_amount=promo.to_money(subtotal + shipping_cost),
        customer_user_id=customer.user_id,
        customer_name=customer.name,
        customer_email=customer.email,
        customer_phone=customer.phone,
        customer_address=customer.address,
        supplier_name=supplier_name,
        notes=notes,
        created_by=actor_id,
        order_date=now,
    )
    order.lines = lines
    add_history(db, order, from_status=None, to_status=status, action="create", actor_id=actor_id, notes=notes)
    db.add(order)
    db.flush()
    return order


def _validate_customer(kind: OrderKind, customer: CustomerInfo) -> None:
    if kind == OrderKind.purchase:
        return
    if customer.user_id is None:
        if not customer.name or not (customer.email or customer.phone):
            raise ValidationFailure("Guest orders require a customer name and an email or phone")


def _build_lines(db: Session, kind: OrderKind, lines: Iterable[OrderLineInput]) -> list[OrderLine]:
    lines = list(lines)
    if not lines:
        raise ValidationFailure("Order must contain at least one line")

    built = []
    for line in lines:
        quantity = to_qty(line.quantity)
        if quantity <= 0:
            raise ValidationFailure(f"Quantity must be positive (item {line.item_id})")
        if line.location_id is None:
            raise ValidationFailure(f"Location is required (item {line.item_id})")

        item = db.get(Item, line.item_id)
        if item is None:
            raise EntityNotFound("Item", line.item_id)
        if not item.active and kind != OrderKind.purchase:
            raise ValidationFailure(f"Item {item.sku} is not available for sale")
        if db.get(Location, line.location_id) is None:
            raise EntityNotFound("Location", line.location_id)

        unit_price = promo.to_money(line.unit_price if line.unit_price is not None else item.price)
        if unit_price < 0:
            raise ValidationFailure(f"Unit price cannot be negative (item {line.item_id})")

        built.append(
            OrderLine(
                item_id=item.id,
                location_id=line.location_id,
                quantity=quantity,
                unit_price=unit_price,
                total_price=promo.to_money(unit_price * quantity),
                unit=item.unit,
                notes=line.notes,
            )
        )
    return built


def _require_create_scope(db: Session, scope: AccessScope, kind: OrderKind, lines, customer: CustomerInfo) -> None:
    if kind == OrderKind.online:
        if scope.is_staff:
            scope.require_online_manager(online_location_id(db))
            return
        # client inscrit : uniquement pour lui-même ; invité : pas d'identité
        if customer.user_id is not None and customer.user_id != scope.user_id:
            raise AccessDenied("Customers can only place orders for themselves")
        return
    scope.require_staff()
    for line in lines:
        if line.location_id is not None:
            scope.require_location(line.location_id)


def create_order(
    db: Session,
    scope: AccessScope,
    *,
    kind: OrderKind,
    lines: Iterable[OrderLineInput],
    customer: CustomerInfo | None = None,
    channel: OrderChannel | None = None,
    promo_code: str | None = None,
    shipping_cost=ZERO,
    payment_method: str | None = None,
    notes: str | None = None,
    supplier_name: str | None = None,
    down_payment=None,
) -> Order:
    """
    Crée une commande Pending. Ventes et commandes en ligne : pré-contrôle
    du stock (hors articles always available), la déduction se fait au ship.
    Le code promo éventuel est appliqué dans la même transaction, l'acompte
    (ventes uniquement) est contrôlé contre le total remisé.
    """
    customer = customer or CustomerInfo()
    lines = list(lines)
    _require_create_scope(db, scope, kind, lines, customer)

    with atomic(db, label=f"create_{kind.value.lower()}_order") as uow:
        _validate_customer(kind, customer)
        if down_payment is not None and kind != OrderKind.sale:
            raise ValidationFailure("Down payments apply to sales orders only")
        built = _build_lines(db, kind, lines)

        if kind != OrderKind.purchase:
            shortages = inventory.find_shortages(
                db, [LedgerLine(l.item_id, l.location_id, l.quantity) for l in built]
            )
            if shortages:
                raise InsufficientStock(shortages)

        order = new_order(
            db,
            kind=kind,
            channel=channel or DEFAULT_CHANNELS[kind],
            lines=built,
            customer=customer,
            payment_method=payment_method,
            shipping_cost=shipping_cost,
            notes=notes,
            supplier_name=supplier_name,
            actor_id=scope.user_id,
        )
        if promo_code:
            promo.apply_promo(db, order, promo_code, user_id=customer.user_id)
        if down_payment is not None:
            order.down_payment = _down_payment_amount(down_payment)
            settle_down_payment(order)

        uow.after_commit(
            sinks.audit,
            "Order",
            order.id,
            "create",
            after={"order_number": order.order_number, "kind": kind.value, "total": order.total_amount},
            actor_user_id=scope.user_id,
        )

    log.info("order %s created (%s, total=%s)", order.order_number, kind.value, order.total_amount)
    return order


# ---------- Acompte ----------
def _down_payment_amount(amount) -> Decimal:
    amount = promo.to_money(amount)
    if amount < ZERO:
        raise ValidationFailure("Down payment cannot be negative")
    return amount


def settle_down_payment(order: Order) -> None:
    """PartiallyPaid tant qu'il reste un solde, Paid quand l'acompte couvre le total."""
    if order.down_payment is None:
        return
    if order.down_payment > order.total_amount:
        raise ValidationFailure(
            f"Down payment {order.down_payment} exceeds order total {order.total_amount}"
        )
    if order.down_payment == order.total_amount:
        order.payment_status = PaymentStatus.paid
    elif order.down_payment > ZERO:
        order.payment_status = PaymentStatus.partially_paid
    else:
        order.payment_status = PaymentStatus.pending


def record_down_payment(db: Session, scope: AccessScope, *, order_id: int, amount) -> Order:
    """Enregistre (ou corrige) l'acompte d'une vente non annulée."""
    scope.require_staff()
    amount = _down_payment_amount(amount)

    with atomic(db, label="record_down_payment") as uow:
        order = _lock_order(db, order_id)
        require_order_access(db, scope, order)
        if order.kind != OrderKind.sale:
            raise ValidationFailure("Down payments apply to sales orders only")
        if order.status == OrderStatus.cancelled:
            raise ValidationFailure(f"Order {order.order_number} is cancelled")

        before = order.down_payment
        order.down_payment = amount
        settle_down_payment(order)
        uow.after_commit(
            sinks.audit,
            "Order",
            order.id,
            "down_payment",
            before={"down_payment": before},
            after={"down_payment": amount, "payment_status": order.payment_status.value},
            actor_user_id=scope.user_id,
        )

    log.info("order %s down payment %s (%s)", order.order_number, amount, order.payment_status.value)
    return order


# ---------- Effets des transitions ----------
def _item_lines(order: Order) -> list[LedgerLine]:
    return [LedgerLine(l.item_id, l.location_id, l.quantity) for l in order.lines if l.item_id is not None]


def _deduct_stock(db: Session, order: Order, ctx: TransitionContext) -> list[str]:
    inventory.deduct_lines(
        db,
        _item_lines(order),
        reason=f"Shipped {order.order_number}",
        reference_type="order",
        reference_id=order.id,
        actor_id=ctx.actor_id,
    )
    return ["inventory_deducted"]


def _receive_stock(db: Session, order: Order, ctx: TransitionContext) -> list[str]:
    inventory.credit_lines(
        db,
        _item_lines(order),
        reason=f"Received {order.order_number}",
        reference_type="order",
        reference_id=order.id,
        actor_id=ctx.actor_id,
    )
    order.delivery_date = ctx.now
    return ["inventory_received"]


def _record_confirmation(db: Session, order: Order, ctx: TransitionContext) -> list[str]:
    order.confirmed_by = ctx.actor_id
    return []


def _prevalidate_stock(db: Session, order: Order, ctx: TransitionContext) -> list[str]:
    """Accept : contrôle sans mutation, la déduction reste au ship."""
    shortages = inventory.find_shortages(db, _item_lines(order))
    if shortages:
        raise InsufficientStock(shortages)
    order.estimated_delivery_date = ctx.options.get("estimated_delivery_date") or (
        ctx.now + timedelta(days=config.ONLINE_DEFAULT_DELIVERY_DAYS)
    )
    return ["inventory_validated", "estimated_delivery_set"]


def _set_delivery_date(db: Session, order: Order, ctx: TransitionContext) -> list[str]:
    delivery = ctx.options.get("delivery_date") or (ctx.now + timedelta(days=config.SHIP_DEFAULT_DELIVERY_DAYS))
    order.delivery_date = delivery
    order.estimated_delivery_date = delivery
    return ["delivery_date_set"]


def _settle_cash_on_delivery(db: Session, order: Order, ctx: TransitionContext) -> list[str]:
    method = "".join(ch for ch in (order.payment_method or "").lower() if ch.isalnum())
    if order.payment_status in (PaymentStatus.pending, PaymentStatus.partially_paid) and method in CASH_ON_DELIVERY:
        order.payment_status = PaymentStatus.paid
        return ["payment_collected"]
    return []


def _record_cancellation(db: Session, order: Order, ctx: TransitionContext) -> list[str]:
    # Pas de remise en stock, même après expédition
    reason = ctx.options.get("reason") or ctx.notes
    if order.kind == OrderKind.online and not reason:
        raise ValidationFailure("A cancellation reason is required")
    order.cancellation_reason = reason
    return []


EFFECTS: dict[tuple[OrderKind, OrderAction], tuple[Callable, ...]] = {
    (OrderKind.sale, OrderAction.confirm): (_record_confirmation,),
    (OrderKind.sale, OrderAction.ship): (_deduct_stock,),
    (OrderKind.sale, OrderAction.cancel): (_record_cancellation,),
    (OrderKind.purchase, OrderAction.approve): (_record_confirmation,),
    (OrderKind.purchase, OrderAction.receive): (_receive_stock,),
    (OrderKind.purchase, OrderAction.cancel): (_record_cancellation,),
    (OrderKind.online, OrderAction.accept): (_record_confirmation, _prevalidate_stock),
    (OrderKind.online, OrderAction.ship): (_deduct_stock, _set_delivery_date),
    (OrderKind.online, OrderAction.deliver): (_settle_cash_on_delivery,),
    (OrderKind.online, OrderAction.cancel): (_record_cancellation,),
}

STATUS_TIMESTAMPS = {
    OrderStatus.accepted: "accepted_at",
    OrderStatus.shipped: "shipped_at",
    OrderStatus.delivered: "delivered_at",
    OrderStatus.received: "delivered_at",
    OrderStatus.cancelled: "cancelled_at",
}


# ---------- Transition ----------
def transition_order(
    db: Session,
    scope: AccessScope,
    *,
    order_id: int,
    action: OrderAction,
    notes: str | None = None,
    expected_status: OrderStatus | None = None,
    expected_kind: OrderKind | None = None,
    options: dict | None = None,
) -> TransitionResult:
    with atomic(db, label=f"order_{action.value}") as uow:
        order = _lock_order(db, order_id)
        if expected_kind is not None and order.kind != expected_kind:
            raise EntityNotFound(f"{expected_kind.value.title()} order", order_id)
        require_order_access(db, scope, order)
        if not scope.is_staff:
            raise AccessDenied("Staff role required")

        machine = MACHINES[order.kind]
        transition = machine.transitions.get(action)
        if transition is None:
            raise ValidationFailure(f"Action '{action.value}' is not available for {order.kind.value} orders")

        if expected_status is not None and order.status != expected_status:
            raise ConcurrencyConflict(
                f"Order {order.order_number} is {order.status.value}, expected {expected_status.value}"
            )
        if order.status not in transition.sources:
            raise machine.reject(order, transition)

        ctx = TransitionContext(actor_id=scope.user_id, notes=notes, now=utcnow(), options=dict(options or {}))
        previous = order.status
        performed = []
        for effect in EFFECTS.get((order.kind, action), ()):
            performed.extend(effect(db, order, ctx))

        order.status = transition.target
        stamp = STATUS_TIMESTAMPS.get(transition.target)
        if stamp:
            setattr(order, stamp, ctx.now)
        add_history(
            db,
            order,
            from_status=previous,
            to_status=transition.target,
            action=action.value,
            actor_id=scope.user_id,
            notes=notes,
        )
        performed.insert(0, f"status_{transition.target.value.lower()}")
        db.flush()

        uow.after_commit(
            sinks.audit,
            "Order",
            order.id,
            action.value,
            before={"status": previous.value},
            after={"status": transition.target.value},
            actor_user_id=scope.user_id,
        )

    log.info("order %s: %s -> %s (%s)", order.order_number, previous.value, transition.target.value, action.value)
    return TransitionResult(order=order, previous_status=previous, status=transition.target, actions_performed=performed)


# ---------- Ventes ----------
def create_sales_order(db: Session, scope: AccessScope, *, lines, customer: CustomerInfo, **kwargs) -> Order:
    return create_order(db, scope, kind=OrderKind.sale, lines=lines, customer=customer, **kwargs)


def confirm_sales_order(db: Session, scope: AccessScope, order_id: int, *, notes=None) -> TransitionResult:
    return transition_order(db, scope, order_id=order_id, action=OrderAction.confirm, notes=notes, expected_kind=OrderKind.sale)


def ship_sales_order(db: Session, scope: AccessScope, order_id: int, *, notes=None) -> TransitionResult:
    return transition_order(db, scope, order_id=order_id, action=OrderAction.ship, notes=notes, expected_kind=OrderKind.sale)


def deliver_sales_order(db: Session, scope: AccessScope, order_id: int, *, notes=None) -> TransitionResult:
    return transition_order(db, scope, order_id=order_id, action=OrderAction.deliver, notes=notes, expected_kind=OrderKind.sale)


def cancel_sales_order(db: Session, scope: AccessScope, order_id: int, *, notes=None) -> TransitionResult:
    return transition_order(db, scope, order_id=order_id, action=OrderAction.cancel, notes=notes, expected_kind=OrderKind.sale)
