from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from backoffice.app.db.models.core_types import OrderKind, OrderStatus, PaymentStatus


# ---------- Entrées ----------
class OrderLineCreate(BaseModel):
    item_id: int
    quantity: Decimal = Field(gt=0)
    location_id: int | None = None
    unit_price: Decimal | None = Field(default=None, ge=0)
    notes: str | None = None


class CustomerIn(BaseModel):
    user_id: int | None = None
    name: str | None = Field(default=None, max_length=100)
    email: str | None = Field(default=None, max_length=100)
    phone: str | None = Field(default=None, max_length=50)
    address: str | None = Field(default=None, max_length=500)


class TransitionIn(BaseModel):
    notes: str | None = None
    expected_status: OrderStatus | None = None


# ---------- Sorties ----------
class OrderLineRead(BaseModel):
    id: int
    item_id: int | None = None
    assembly_id: int | None = None
    location_id: int
    quantity: Decimal
    unit_price: Decimal
    total_price: Decimal
    unit: str | None = None

    class Config:
        from_attributes = True


class OrderHistoryRead(BaseModel):
    from_status: OrderStatus | None = None
    to_status: OrderStatus
    action: str
    notes: str | None = None
    actor_id: int | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class OrderRead(BaseModel):
    id: int
    kind: OrderKind
    order_number: str
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: str | None = None

    subtotal: Decimal
    shipping_cost: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    down_payment: Decimal | None = None
    promo_code_id: int | None = None

    customer_user_id: int | None = None
    customer_name: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    customer_address: str | None = None
    supplier_name: str | None = None
    notes: str | None = None

    order_date: datetime
    estimated_delivery_date: datetime | None = None
    delivery_date: datetime | None = None
    accepted_at: datetime | None = None
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None

    lines: list[OrderLineRead] = Field(default_factory=list)

    class Config:
        from_attributes = True


class OrderDetailRead(OrderRead):
    history: list[OrderHistoryRead] = Field(default_factory=list)


class TransitionRead(BaseModel):
    order_id: int
    order_number: str
    previous_status: OrderStatus
    status: OrderStatus
    actions_performed: list[str]
    estimated_delivery_date: datetime | None = None


def transition_payload(result) -> dict:
    return {
        "order_id": result.order.id,
        "order_number": result.order.order_number,
        "previous_status": result.previous_status,
        "status": result.status,
        "actions_performed": result.actions_performed,
        "estimated_delivery_date": result.order.estimated_delivery_date,
    }
