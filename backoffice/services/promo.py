from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from backoffice.app.core.timeutils import as_utc, utcnow
from backoffice.app.db.models.core_types import DiscountType, OrderStatus
from backoffice.app.db.models.models_v1 import (
    Item,
    Order,
    PromoCode,
    PromoCodeItem,
    PromoCodeUsage,
    PromoCodeUser,
)
from backoffice.services import sinks
from backoffice.services.errors import (
    ConcurrencyConflict,
    EntityNotFound,
    PromoIneligible,
    ValidationFailure,
)
from backoffice.services.scope import AccessScope
from backoffice.services.uow import atomic

log = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def to_money(value) -> Decimal:
    value = value if isinstance(value, Decimal) else Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PromoEvaluation:
    valid: bool
    discount_amount: Decimal = ZERO
    reason: str | None = None
    promo_code_id: int | None = None
    code: str | None = None
    discount_type: DiscountType | None = None
    discount_value: Decimal | None = None

    @classmethod
    def rejected(cls, reason: str, promo: PromoCode | None = None) -> "PromoEvaluation":
        return cls(valid=False, reason=reason, promo_code_id=promo.id if promo else None)


@dataclass(frozen=True)
class PromoUserAssignment:
    user_id: int
    email: str | None = None
    name: str | None = None


# ---------- Moteur (lecture seule) ----------
def compute_discount(promo: PromoCode, order_amount: Decimal) -> Decimal:
    if promo.discount_type == DiscountType.percentage:
        discount = order_amount * promo.discount_value / HUNDRED
    else:
        discount = promo.discount_value
    if promo.maximum_discount_amount is not None and discount > promo.maximum_discount_amount:
        discount = promo.maximum_discount_amount
    return to_money(discount)


def user_usage_count(db: Session, promo_code_id: int, user_id: int) -> int:
    return int(
        db.execute(
            select(func.count(PromoCodeUsage.id))
            .where(PromoCodeUsage.promo_code_id == promo_code_id)
            .where(PromoCodeUsage.user_id == user_id)
        ).scalar_one()
    )


def evaluate_promo_row(
    db: Session,
    promo: PromoCode | None,
    *,
    user_id: int | None,
    order_amount,
    item_ids: Iterable[int] = (),
    now: datetime | None = None,
) -> PromoEvaluation:
    """
    Règles, dans cet ordre (premier échec = raison renvoyée) :
    actif, fenêtre de validité, limite globale, montant minimum,
    utilisateurs éligibles (+ limite par utilisateur), articles éligibles,
    calcul de la remise plafonnée.
    """
    now = now or utcnow()
    order_amount = to_money(order_amount)

    if promo is None:
        return PromoEvaluation.rejected("Invalid promo code")
    if not promo.is_active:
        return PromoEvaluation.rejected("This promo code has been deactivated", promo)

    if now < as_utc(promo.start_date):
        return PromoEvaluation.rejected("This promo code is not yet valid", promo)
    if promo.end_date is not None and now > as_utc(promo.end_date):
        return PromoEvaluation.rejected("This promo code has expired", promo)

    if promo.usage_limit is not None and promo.used_count >= promo.usage_limit:
        return PromoEvaluation.rejected("This promo code has reached its usage limit", promo)

    if promo.minimum_order_amount is not None and order_amount < promo.minimum_order_amount:
        return PromoEvaluation.rejected(
            f"Minimum order amount of {to_money(promo.minimum_order_amount)} required", promo
        )

    eligible_users = {u.user_id for u in promo.users}
    if eligible_users:
        if user_id is None:
            return PromoEvaluation.rejected("You must be a registered user to use this promo code", promo)
        if user_id not in eligible_users:
            return PromoEvaluation.rejected("This promo code is not available for your account", promo)
        # limite par utilisateur : seulement pour les codes réservés
        if promo.usage_limit_per_user is not None and user_usage_count(db, promo.id, user_id) >= promo.usage_limit_per_user:
            return PromoEvaluation.rejected("You have reached the usage limit for this promo code", promo)

    eligible_items = {i.item_id for i in promo.items}
    if eligible_items:
        wanted = {int(i) for i in item_ids if i is not None}
        if not wanted:
            return PromoEvaluation.rejected("This promo code requires specific products in your cart", promo)
        if not wanted & eligible_items:
            return PromoEvaluation.rejected("None of the products in your cart are eligible for this promo code", promo)

    return PromoEvaluation(
        valid=True,
        discount_amount=compute_discount(promo, order_amount),
        promo_code_id=promo.id,
        code=promo.code,
        discount_type=promo.discount_type,
        discount_value=promo.discount_value,
    )


def find_promo(db: Session, code: str, *, for_update: bool = False) -> PromoCode | None:
    stmt = select(PromoCode).where(PromoCode.code == normalize_code(code))
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return db.execute(stmt).scalar_one_or_none()


def evaluate_promo(
    db: Session,
    code: str,
    *,
    user_id: int | None = None,
    order_amount,
    item_ids: Iterable[int] = (),
    now: datetime | None = None,
) -> PromoEvaluation:
    """Validation pure : ne modifie rien (l'application se fait dans la transaction de la commande)."""
    promo = find_promo(db, code)
    return evaluate_promo_row(db, promo, user_id=user_id, order_amount=order_amount, item_ids=item_ids, now=now)


# ---------- Application (dans la transaction de l'appelant) ----------
def apply_promo(
    db: Session,
    order: Order,
    code: str,
    *,
    user_id: int | None,
    now: datetime | None = None,
) -> PromoCodeUsage:
    """
    Évalue ET applique sous verrou de la ligne promo : used_count +1,
    une PromoCodeUsage, totaux de la commande. Jamais de commit ici.

    Le verrou sérialise les applications concurrentes d'un même code, les
    limites (globale et par utilisateur) sont donc évaluées sur un état frais.
    """
    if order.promo_code_id is not None:
        raise ValidationFailure(f"Order {order.order_number} already has a promo code")

    db.flush()
    promo = find_promo(db, code, for_update=True)
    item_ids = [line.item_id for line in order.lines if line.item_id is not None]
    result = evaluate_promo_row(
        db,
        promo,
        user_id=user_id,
        order_amount=order.subtotal,
        item_ids=item_ids,
        now=now,
    )
    if not result.valid:
        raise PromoIneligible(result.reason)

    # Jamais de total négatif
    discount = min(result.discount_amount, to_money(order.subtotal))

    promo.used_count += 1
    usage = PromoCodeUsage(
        promo_code_id=promo.id,
        order_id=order.id,
        user_id=user_id,
        discount_amount=discount,
    )
    db.add(usage)

    order.promo_code_id = promo.id
    order.discount_amount = discount
    order.total_amount = to_money(order.subtotal + order.shipping_cost - discount)
    db.flush()

    log.info("promo %s applied to order %s: discount=%s", promo.code, order.order_number, discount)
    return usage


def apply_promo_to_order(
    db: Session,
    scope: AccessScope,
    *,
    order_id: int,
    code: str,
) -> Order:
    """L'utilisateur du code est toujours le client de la commande."""
    from backoffice.services.orders import require_order_access, settle_down_payment

    with atomic(db, label="apply_promo_to_order") as uow:
        order = (
            db.execute(
                select(Order).where(Order.id == order_id).with_for_update().execution_options(populate_existing=True)
            )
            .scalar_one_or_none()
        )
        if order is None:
            raise EntityNotFound("Order", order_id)
        require_order_access(db, scope, order)

        if order.status != OrderStatus.pending:
            raise ConcurrencyConflict(f"Order {order.order_number} is {order.status.value}, promo codes apply to pending orders only")

        usage = apply_promo(db, order, code, user_id=order.customer_user_id)
        settle_down_payment(order)
        uow.after_commit(
            sinks.audit,
            "Order",
            order.id,
            "apply_promo",
            after={"code": normalize_code(code), "discount": usage.discount_amount},
            actor_user_id=scope.user_id,
        )
    return order


# ---------- Gestion des codes ----------
def get_promo(db: Session, promo_id: int) -> PromoCode:
    promo = db.get(PromoCode, promo_id)
    if promo is None:
        raise EntityNotFound("PromoCode", promo_id)
    return promo


def list_promos(db: Session, *, active_only: bool = False) -> list[PromoCode]:
    stmt = select(PromoCode).order_by(PromoCode.created_at.desc(), PromoCode.id.desc())
    if active_only:
        stmt = stmt.where(PromoCode.is_active.is_(True))
    return list(db.execute(stmt).scalars())


def _validate_promo_values(
    discount_type: DiscountType,
    discount_value: Decimal,
    start_date: datetime,
    end_date: datetime | None,
    usage_limit: int | None,
    usage_limit_per_user: int | None,
) -> None:
    if discount_value < 0:
        raise ValidationFailure("Discount value cannot be negative")
    if discount_type == DiscountType.percentage and discount_value > HUNDRED:
        raise ValidationFailure("Percentage discount must be between 0 and 100")
    if end_date is not None and as_utc(end_date) < as_utc(start_date):
        raise ValidationFailure("End date must be after start date")
    if usage_limit is not None and usage_limit < 0:
        raise ValidationFailure("usage_limit cannot be negative")
    if usage_limit_per_user is not None and usage_limit_per_user < 0:
        raise ValidationFailure("usage_limit_per_user cannot be negative")


def create_promo_code(
    db: Session,
    scope: AccessScope,
    *,
    code: str,
    discount_type: DiscountType,
    discount_value,
    start_date: datetime,
    end_date: datetime | None = None,
    description: str | None = None,
    usage_limit: int | None = None,
    usage_limit_per_user: int | None = None,
    minimum_order_amount=None,
    maximum_discount_amount=None,
    item_ids: Iterable[int] = (),
    users: Iterable[PromoUserAssignment] = (),
) -> PromoCode:
    scope.require_staff()
    normalized = normalize_code(code)
    discount_value = to_money(discount_value)

    with atomic(db, label="create_promo_code") as uow:
        if not normalized:
            raise ValidationFailure("Promo code is required")
        _validate_promo_values(discount_type, discount_value, start_date, end_date, usage_limit, usage_limit_per_user)
        if find_promo(db, normalized) is not None:
            raise ValidationFailure(f"A promo code with code '{normalized}' already exists")

        promo = PromoCode(
            code=normalized,
            description=description,
            discount_type=discount_type,
            discount_value=discount_value,
            start_date=start_date,
            end_date=end_date,
            usage_limit=usage_limit,
            usage_limit_per_user=usage_limit_per_user,
            minimum_order_amount=to_money(minimum_order_amount) if minimum_order_amount is not None else None,
            maximum_discount_amount=to_money(maximum_discount_amount) if maximum_discount_amount is not None else None,
            used_count=0,
            is_active=True,
            created_by=scope.user_id,
        )
        db.add(promo)
        db.flush()

        _add_items(db, promo, item_ids)
        assigned = _add_users(db, promo, users)

        uow.after_commit(
            sinks.audit,
            "PromoCode",
            promo.id,
            "create",
            after={"code": normalized, "type": discount_type.value, "value": discount_value},
            actor_user_id=scope.user_id,
        )
        if assigned:
            uow.after_commit(_notify_assigned_users, db, promo.id, [a.id for a in assigned])

    log.info("promo code %s created (%s %s)", normalized, discount_type.value, discount_value)
    return promo


def _add_items(db: Session, promo: PromoCode, item_ids: Iterable[int]) -> list[PromoCodeItem]:
    wanted = sorted({int(i) for i in item_ids})
    if not wanted:
        return []
    found = set(db.execute(select(Item.id).where(Item.id.in_(wanted))).scalars())
    missing = [i for i in wanted if i not in found]
    if missing:
        raise EntityNotFound("Item", missing[0])

    existing = {pi.item_id for pi in promo.items}
    added = []
    for item_id in wanted:
        if item_id in existing:
            continue
        link = PromoCodeItem(item_id=item_id)
        promo.items.append(link)
        added.append(link)
    db.flush()
    return added


def _add_users(db: Session, promo: PromoCode, users: Iterable[PromoUserAssignment]) -> list[PromoCodeUser]:
    existing = {pu.user_id for pu in promo.users}
    added = []
    for u in users:
        if u.user_id in existing:
            continue
        existing.add(u.user_id)
        link = PromoCodeUser(user_id=u.user_id, email=u.email, name=u.name)
        promo.users.append(link)
        added.append(link)
    db.flush()
    return added


def assign_items(db: Session, scope: AccessScope, *, promo_id: int, item_ids: Iterable[int]) -> PromoCode:
    scope.require_staff()
    with atomic(db, label="assign_promo_items") as uow:
        promo = get_promo(db, promo_id)
        added = _add_items(db, promo, item_ids)
        uow.after_commit(
            sinks.audit,
            "PromoCode",
            promo.id,
            "assign_items",
            after={"item_ids": [a.item_id for a in added]},
            actor_user_id=scope.user_id,
        )
    return promo


def assign_users(
    db: Session,
    scope: AccessScope,
    *,
    promo_id: int,
    users: Iterable[PromoUserAssignment],
) -> list[PromoCodeUser]:
    """
    Ajoute des utilisateurs éligibles. Les notifications partent après le
    commit ; un échec d'envoi laisse simplement is_notified à False.
    """
    scope.require_staff()
    with atomic(db, label="assign_promo_users") as uow:
        promo = get_promo(db, promo_id)
        added = _add_users(db, promo, users)
        uow.after_commit(
            sinks.audit,
            "PromoCode",
            promo.id,
            "assign_users",
            after={"user_ids": [a.user_id for a in added]},
            actor_user_id=scope.user_id,
        )
        if added:
            uow.after_commit(_notify_assigned_users, db, promo.id, [a.id for a in added])
    return added


def _notify_assigned_users(db: Session, promo_id: int, assignment_ids: list[int]) -> int:
    promo = get_promo(db, promo_id)
    sink = sinks.get_notification_sink()

    notified = []
    for assignment in promo.users:
        if assignment.id not in assignment_ids or not assignment.email or assignment.is_notified:
            continue
        try:
            sent = sink.send_promo_notification(
                assignment.email,
                assignment.name,
                promo.code,
                promo.discount_value,
                promo.discount_type.value,
                promo.end_date,
            )
        except Exception:
            log.warning("promo notification to %s failed", assignment.email, exc_info=True)
            continue
        if sent:
            notified.append(assignment.id)

    if notified:
        with atomic(db, label="mark_promo_notified"):
            now = utcnow()
            for assignment in promo.users:
                if assignment.id in notified:
                    assignment.is_notified = True
                    assignment.notified_at = now
    return len(notified)


def deactivate_promo_code(db: Session, scope: AccessScope, *, promo_id: int) -> PromoCode:
    """Suppression logique : l'historique d'utilisation reste intact."""
    scope.require_staff()
    with atomic(db, label="deactivate_promo_code") as uow:
        promo = get_promo(db, promo_id)
        promo.is_active = False
        uow.after_commit(
            sinks.audit,
            "PromoCode",
            promo.id,
            "deactivate",
            before={"is_active": True},
            after={"is_active": False},
            actor_user_id=scope.user_id,
        )
    return promo


def promo_usage_report(db: Session, scope: AccessScope, *, promo_id: int) -> dict:
    scope.require_staff()
    promo = get_promo(db, promo_id)

    rows = db.execute(
        select(
            PromoCodeUsage.user_id,
            func.count(PromoCodeUsage.id),
            func.coalesce(func.sum(PromoCodeUsage.discount_amount), 0),
        )
        .where(PromoCodeUsage.promo_code_id == promo.id)
        .group_by(PromoCodeUsage.user_id)
        .order_by(PromoCodeUsage.user_id)
    ).all()

    per_user = []
    total_discount = ZERO
    for user_id, count, discount in rows:
        discount = to_money(discount)
        total_discount += discount
        per_user.append(
            {
                "user_id": user_id,
                "usage_count": int(count),
                "total_discount": discount,
                "limit_reached": (
                    user_id is not None
                    and promo.usage_limit_per_user is not None
                    and count >= promo.usage_limit_per_user
                ),
            }
        )

    return {
        "promo_code_id": promo.id,
        "code": promo.code,
        "used_count": promo.used_count,
        "usage_limit": promo.usage_limit,
        "remaining": (promo.usage_limit - promo.used_count) if promo.usage_limit is not None else None,
        "total_discount": total_discount,
        "users": per_user,
    }
