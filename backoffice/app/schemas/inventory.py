from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from backoffice.app.db.models.core_types import MovementType


class InventoryRecordRead(BaseModel):
    item_id: int
    location_id: int

    quantity: Decimal
    qty_reserved: Decimal
    available: Decimal  # READ ONLY : quantity - qty_reserved
    unit: str | None = None

    minimum_stock_level: Decimal | None = None
    maximum_stock_level: Decimal | None = None
    updated_at: datetime

    class Config:
        from_attributes = True


class InventoryMovementRead(BaseModel):
    id: int
    item_id: int
    location_id: int
    movement_type: MovementType
    delta: Decimal
    quantity_after: Decimal
    reason: str | None = None
    reference_type: str | None = None
    reference_id: str | None = None
    idempotency_key: str | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class ShortageRead(BaseModel):
    item_id: int
    location_id: int
    required: Decimal
    available: Decimal

    class Config:
        from_attributes = True
