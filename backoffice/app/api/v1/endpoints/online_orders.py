from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backoffice.app.api.deps import get_db, get_scope
from backoffice.app.db.models.core_types import OrderKind, OrderStatus
from backoffice.app.schemas.orders import (
    CustomerIn,
    OrderDetailRead,
    OrderLineCreate,
    OrderRead,
    TransitionRead,
    transition_payload,
)
from backoffice.services import online_orders, orders
from backoffice.services.orders import CustomerInfo, OrderLineInput
from backoffice.services.scope import AccessScope

router = APIRouter(prefix="/online-orders")


# ---------- Schemas ----------
class OnlineOrderCreate(BaseModel):
    customer: CustomerIn
    lines: list[OrderLineCreate] = Field(min_length=1)
    promo_code: str | None = None
    shipping_cost: Decimal = Field(default=Decimal("0"), ge=0)
    payment_method: str | None = None
    notes: str | None = None


class OnlineOrderCheck(BaseModel):
    customer: CustomerIn = Field(default_factory=CustomerIn)
    lines: list[OrderLineCreate] = Field(min_length=1)


class AcceptIn(BaseModel):
    notes: str | None = None
    estimated_delivery_date: datetime | None = None


class ShipIn(BaseModel):
    delivery_date: datetime | None = None
    notes: str | None = None


class NotesIn(BaseModel):
    notes: str | None = None


class CancelIn(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class StatusUpdate(BaseModel):
    status: OrderStatus
    notes: str | None = None


def _lines(payload) -> list[OrderLineInput]:
    return [OrderLineInput(**l.model_dump()) for l in payload.lines]


# ---------- Endpoints ----------
@router.get("", response_model=list[OrderRead])
def list_online_orders(
    status: OrderStatus | None = None,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    return orders.list_orders(db, scope, kind=OrderKind.online, status=status)


@router.get("/attention")
def orders_requiring_attention(db: Session = Depends(get_db), scope: AccessScope = Depends(get_scope)):
    return [
        {"order": OrderRead.model_validate(a.order), "reason": a.reason}
        for a in online_orders.get_orders_requiring_attention(db, scope)
    ]


@router.get("/analytics")
def order_analytics(
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    return online_orders.get_order_analytics(db, scope, from_date=from_date, to_date=to_date)


@router.get("/status/{status}", response_model=list[OrderRead])
def orders_by_status(status: OrderStatus, db: Session = Depends(get_db), scope: AccessScope = Depends(get_scope)):
    return online_orders.get_orders_by_status(db, scope, status)


@router.get("/{order_id}", response_model=OrderDetailRead)
def get_online_order(order_id: int, db: Session = Depends(get_db), scope: AccessScope = Depends(get_scope)):
    return orders.get_order(db, scope, order_id)


@router.post("", status_code=201)
def create_online_order(
    payload: OnlineOrderCreate,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    created = online_orders.process_new_order(
        db,
        scope,
        customer=CustomerInfo(**payload.customer.model_dump()),
        lines=_lines(payload),
        promo_code=payload.promo_code,
        shipping_cost=payload.shipping_cost,
        payment_method=payload.payment_method,
        notes=payload.notes,
    )
    return {"order": OrderRead.model_validate(created.order), "warnings": created.warnings}


@router.post("/validate")
def validate_online_order(payload: OnlineOrderCheck, db: Session = Depends(get_db)):
    report = online_orders.validate_order(
        db, lines=_lines(payload), customer=CustomerInfo(**payload.customer.model_dump())
    )
    return {"is_valid": report.is_valid, "errors": report.errors, "warnings": report.warnings}


@router.post("/check-inventory")
def check_inventory(payload: OnlineOrderCheck, db: Session = Depends(get_db)):
    checks = online_orders.check_inventory_availability(db, _lines(payload))
    return {
        "all_available": all(c.sufficient for c in checks),
        "lines": [
            {
                "item_id": c.item_id,
                "requested": c.requested,
                "available": c.available,
                "sufficient": c.sufficient,
                "always_available": c.always_available,
            }
            for c in checks
        ],
    }


@router.post("/{order_id}/accept", response_model=TransitionRead)
def accept_online_order(
    order_id: int,
    payload: AcceptIn | None = None,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    payload = payload or AcceptIn()
    result = online_orders.accept_order(
        db, scope, order_id, notes=payload.notes, estimated_delivery_date=payload.estimated_delivery_date
    )
    return transition_payload(result)


@router.post("/{order_id}/ship", response_model=TransitionRead)
def ship_online_order(
    order_id: int,
    payload: ShipIn | None = None,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    payload = payload or ShipIn()
    result = online_orders.ship_order(db, scope, order_id, delivery_date=payload.delivery_date, notes=payload.notes)
    return transition_payload(result)


@router.post("/{order_id}/deliver", response_model=TransitionRead)
def deliver_online_order(
    order_id: int,
    payload: NotesIn | None = None,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    payload = payload or NotesIn()
    return transition_payload(online_orders.deliver_order(db, scope, order_id, notes=payload.notes))


@router.post("/{order_id}/cancel", response_model=TransitionRead)
def cancel_online_order(
    order_id: int,
    payload: CancelIn,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    return transition_payload(online_orders.cancel_order(db, scope, order_id, reason=payload.reason))


@router.put("/{order_id}/status", response_model=TransitionRead)
def update_online_order_status(
    order_id: int,
    payload: StatusUpdate,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    result = online_orders.update_order_status(db, scope, order_id, status=payload.status, notes=payload.notes)
    return transition_payload(result)
