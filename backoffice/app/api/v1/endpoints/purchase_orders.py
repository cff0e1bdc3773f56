from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backoffice.app.api.deps import get_db, get_scope
from backoffice.app.db.models.core_types import OrderAction, OrderKind, OrderStatus
from backoffice.app.schemas.orders import (
    OrderDetailRead,
    OrderLineCreate,
    OrderRead,
    TransitionIn,
    TransitionRead,
    transition_payload,
)
from backoffice.services import orders, procurement
from backoffice.services.orders import OrderLineInput
from backoffice.services.scope import AccessScope

router = APIRouter(prefix="/purchase-orders")


class POCreate(BaseModel):
    supplier_name: str | None = Field(default=None, max_length=200)
    notes: str | None = None
    lines: list[OrderLineCreate] = Field(min_length=1)


@router.get("", response_model=list[OrderRead])
def list_pos(
    status: OrderStatus | None = None,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    return orders.list_orders(db, scope, kind=OrderKind.purchase, status=status)


@router.get("/{po_id}", response_model=OrderDetailRead)
def get_po(po_id: int, db: Session = Depends(get_db), scope: AccessScope = Depends(get_scope)):
    return orders.get_order(db, scope, po_id)


@router.post("", response_model=OrderRead, status_code=201)
def create_po(payload: POCreate, db: Session = Depends(get_db), scope: AccessScope = Depends(get_scope)):
    return procurement.create_purchase_order(
        db,
        scope,
        supplier_name=payload.supplier_name,
        notes=payload.notes,
        lines=[OrderLineInput(**l.model_dump()) for l in payload.lines],
    )


@router.post("/{po_id}/{action}", response_model=TransitionRead)
def transition_po(
    po_id: int,
    action: OrderAction,
    payload: TransitionIn | None = None,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    """approve / receive / cancel"""
    payload = payload or TransitionIn()
    result = orders.transition_order(
        db,
        scope,
        order_id=po_id,
        action=action,
        notes=payload.notes,
        expected_status=payload.expected_status,
        expected_kind=OrderKind.purchase,
    )
    return transition_payload(result)
