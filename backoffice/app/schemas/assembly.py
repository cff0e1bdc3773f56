from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from backoffice.app.db.models.core_types import AssemblyStatus
from backoffice.app.schemas.orders import CustomerIn


class BomLineCreate(BaseModel):
    raw_item_id: int
    required_quantity_per_build: Decimal = Field(gt=0)
    location_id: int | None = None
    unit: str | None = None
    notes: str | None = None


class AssemblyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    build_quantity: Decimal = Field(gt=0)
    location_id: int | None = None
    unit: str | None = None
    sale_price: Decimal | None = Field(default=None, ge=0)
    description: str | None = None
    notes: str | None = None
    bill_of_materials: list[BomLineCreate] = Field(min_length=1)


class AssemblySellIn(BaseModel):
    customer: CustomerIn = Field(default_factory=CustomerIn)
    payment_method: str | None = None
    notes: str | None = None


class BomLineRead(BaseModel):
    id: int
    raw_item_id: int
    location_id: int
    required_quantity_per_build: Decimal
    unit: str | None = None

    class Config:
        from_attributes = True


class AssemblyRead(BaseModel):
    id: int
    name: str
    description: str | None = None
    build_quantity: Decimal
    unit: str | None = None
    status: AssemblyStatus
    sale_price: Decimal | None = None
    location_id: int
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    bill_of_materials: list[BomLineRead] = Field(default_factory=list)

    class Config:
        from_attributes = True
