from __future__ import annotations

from typing import Iterable

from sqlalchemy.orm import Session

from backoffice.app.db.models.core_types import OrderAction, OrderKind
from backoffice.app.db.models.models_v1 import Order
from backoffice.services.orders import (
    CustomerInfo,
    OrderLineInput,
    TransitionResult,
    create_order,
    transition_order,
)
from backoffice.services.scope import AccessScope


def create_purchase_order(
    db: Session,
    scope: AccessScope,
    *,
    lines: Iterable[OrderLineInput],
    supplier_name: str | None = None,
    notes: str | None = None,
) -> Order:
    """
    PO en Pending. Aucun effet stock avant la réception : les lignes
    (location incluse) désignent où la marchandise sera créditée.
    """
    return create_order(
        db,
        scope,
        kind=OrderKind.purchase,
        lines=lines,
        customer=CustomerInfo(),
        supplier_name=supplier_name,
        notes=notes,
    )


def approve_purchase_order(db: Session, scope: AccessScope, order_id: int, *, notes: str | None = None) -> TransitionResult:
    return transition_order(
        db, scope, order_id=order_id, action=OrderAction.approve, notes=notes, expected_kind=OrderKind.purchase
    )


def receive_purchase_order(db: Session, scope: AccessScope, order_id: int, *, notes: str | None = None) -> TransitionResult:
    """
    Approved -> Received : crédite chaque ligne (création de l'enregistrement
    si absent). Une double réception échoue en conflit, sans double crédit.
    """
    return transition_order(
        db, scope, order_id=order_id, action=OrderAction.receive, notes=notes, expected_kind=OrderKind.purchase
    )


def cancel_purchase_order(db: Session, scope: AccessScope, order_id: int, *, notes: str | None = None) -> TransitionResult:
    return transition_order(
        db, scope, order_id=order_id, action=OrderAction.cancel, notes=notes, expected_kind=OrderKind.purchase
    )
