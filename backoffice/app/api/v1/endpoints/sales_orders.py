from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backoffice.app.api.deps import get_db, get_scope
from backoffice.app.db.models.core_types import OrderAction, OrderKind, OrderStatus
from backoffice.app.schemas.orders import (
    CustomerIn,
    OrderDetailRead,
    OrderLineCreate,
    OrderRead,
    TransitionIn,
    TransitionRead,
    transition_payload,
)
from backoffice.services import orders
from backoffice.services.orders import CustomerInfo, OrderLineInput
from backoffice.services.scope import AccessScope

router = APIRouter(prefix="/sales-orders")


class SalesOrderCreate(BaseModel):
    customer: CustomerIn
    lines: list[OrderLineCreate] = Field(min_length=1)
    promo_code: str | None = None
    payment_method: str | None = None
    notes: str | None = None
    down_payment: Decimal | None = Field(default=None, ge=0)


class DownPaymentIn(BaseModel):
    amount: Decimal = Field(ge=0)


@router.get("", response_model=list[OrderRead])
def list_sales_orders(
    status: OrderStatus | None = None,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    return orders.list_orders(db, scope, kind=OrderKind.sale, status=status)


@router.get("/{order_id}", response_model=OrderDetailRead)
def get_sales_order(order_id: int, db: Session = Depends(get_db), scope: AccessScope = Depends(get_scope)):
    return orders.get_order(db, scope, order_id)


@router.post("", response_model=OrderRead, status_code=201)
def create_sales_order(
    payload: SalesOrderCreate,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    return orders.create_sales_order(
        db,
        scope,
        customer=CustomerInfo(**payload.customer.model_dump()),
        lines=[OrderLineInput(**l.model_dump()) for l in payload.lines],
        promo_code=payload.promo_code,
        payment_method=payload.payment_method,
        notes=payload.notes,
        down_payment=payload.down_payment,
    )


@router.put("/{order_id}/down-payment", response_model=OrderRead)
def record_down_payment(
    order_id: int,
    payload: DownPaymentIn,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    return orders.record_down_payment(db, scope, order_id=order_id, amount=payload.amount)

@router.post("/{order_id}/{action}", response_model=TransitionRead)
def transition_sales_order(
    order_id: int,
    action: OrderAction,
    payload: TransitionIn | None = None,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    """confirm / ship / deliver / cancel"""
    payload = payload or TransitionIn()
    result = orders.transition_order(
        db,
        scope,
        order_id=order_id,
        action=action,
        notes=payload.notes,
        expected_status=payload.expected_status,
        expected_kind=OrderKind.sale,
    )
    return transition_payload(result)
