from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from backoffice.app.api.deps import get_db, get_scope
from backoffice.app.db.models.models_v1 import Item
from backoffice.services.scope import AccessScope

router = APIRouter(prefix="/items")


class ItemCreate(BaseModel):
    sku: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    unit: str = Field(default="piece", min_length=1, max_length=32)
    price: Decimal = Field(default=Decimal("0"), ge=0)
    always_available: bool = False
    active: bool = True


def _item_out(i: Item) -> dict:
    return {
        "id": i.id,
        "sku": i.sku,
        "name": i.name,
        "unit": i.unit,
        "price": i.price,
        "always_available": i.always_available,
        "active": i.active,
    }


@router.get("")
def list_items(active_only: bool = True, db: Session = Depends(get_db)):
    stmt = select(Item).order_by(Item.sku)
    if active_only:
        stmt = stmt.where(Item.active.is_(True))
    return [_item_out(i) for i in db.execute(stmt).scalars().all()]


@router.post("", status_code=201)
def create_item(
    payload: ItemCreate,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    scope.require_staff()
    exists = db.execute(select(Item).where(Item.sku == payload.sku)).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="SKU already exists")

    item = Item(
        sku=payload.sku,
        name=payload.name,
        unit=payload.unit,
        price=payload.price,
        always_available=payload.always_available,
        active=payload.active,
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    return _item_out(item)
