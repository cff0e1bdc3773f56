from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backoffice.app.api.deps import get_db, get_scope, require_idempotency_key
from backoffice.app.schemas.inventory import (
    InventoryMovementRead,
    InventoryRecordRead,
    ShortageRead,
)
from backoffice.services import inventory
from backoffice.services.inventory import LedgerLine
from backoffice.services.scope import AccessScope

router = APIRouter(prefix="/inventory")


# ---------- Schemas ----------
class AdjustCreate(BaseModel):
    item_id: int
    location_id: int
    delta: Decimal
    reason: str | None = Field(default=None, max_length=255)


class ThresholdsUpdate(BaseModel):
    minimum_stock_level: Decimal | None = Field(default=None, ge=0)
    maximum_stock_level: Decimal | None = Field(default=None, ge=0)


class SufficiencyLine(BaseModel):
    item_id: int
    location_id: int
    quantity: Decimal = Field(gt=0)


class SufficiencyCheck(BaseModel):
    lines: list[SufficiencyLine] = Field(min_length=1)


# ---------- Endpoints ----------
@router.get("", response_model=list[InventoryRecordRead])
def list_inventory(
    location_id: int | None = None,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    """Stock (READ ONLY) limité au périmètre de l'utilisateur."""
    return inventory.list_inventory(db, scope, location_id=location_id)


@router.get("/low-stock", response_model=list[InventoryRecordRead])
def low_stock(db: Session = Depends(get_db), scope: AccessScope = Depends(get_scope)):
    return inventory.low_stock(db, scope)


@router.get("/{item_id}/{location_id}/movements", response_model=list[InventoryMovementRead])
def list_movements(
    item_id: int,
    location_id: int,
    limit: int = 100,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    return inventory.list_movements(db, scope, item_id=item_id, location_id=location_id, limit=limit)


@router.post("/adjust", response_model=InventoryMovementRead)
def adjust_inventory(
    payload: AdjustCreate,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    idem = require_idempotency_key(idempotency_key)
    return inventory.adjust_inventory(
        db,
        scope,
        item_id=payload.item_id,
        location_id=payload.location_id,
        delta=payload.delta,
        reason=payload.reason,
        idempotency_key=idem,
    )


@router.put("/{item_id}/{location_id}/thresholds", response_model=InventoryRecordRead)
def set_thresholds(
    item_id: int,
    location_id: int,
    payload: ThresholdsUpdate,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    return inventory.set_thresholds(
        db,
        scope,
        item_id=item_id,
        location_id=location_id,
        minimum=payload.minimum_stock_level,
        maximum=payload.maximum_stock_level,
    )


@router.post("/check-sufficiency")
def check_sufficiency(payload: SufficiencyCheck, db: Session = Depends(get_db)):
    shortages = inventory.check_inventory_sufficiency(
        db, [LedgerLine(l.item_id, l.location_id, l.quantity) for l in payload.lines]
    )
    return {
        "sufficient": not shortages,
        "shortages": [ShortageRead.model_validate(s) for s in shortages],
    }
