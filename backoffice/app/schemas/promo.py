from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from backoffice.app.db.models.core_types import DiscountType


class PromoUserIn(BaseModel):
    user_id: int
    email: str | None = None
    name: str | None = None


class PromoCodeCreate(BaseModel):
    code: str = Field(min_length=1, max_length=50)
    description: str | None = Field(default=None, max_length=200)
    discount_type: DiscountType
    discount_value: Decimal = Field(ge=0)
    start_date: datetime
    end_date: datetime | None = None
    usage_limit: int | None = Field(default=None, ge=0)
    usage_limit_per_user: int | None = Field(default=None, ge=0)
    minimum_order_amount: Decimal | None = Field(default=None, ge=0)
    maximum_discount_amount: Decimal | None = Field(default=None, ge=0)
    item_ids: list[int] = Field(default_factory=list)
    users: list[PromoUserIn] = Field(default_factory=list)


class PromoValidateIn(BaseModel):
    code: str
    user_id: int | None = None
    order_amount: Decimal = Field(ge=0)
    item_ids: list[int] = Field(default_factory=list)


class PromoApplyIn(BaseModel):
    code: str


class PromoEvaluationRead(BaseModel):
    valid: bool
    discount_amount: Decimal
    reason: str | None = None
    code: str | None = None
    discount_type: DiscountType | None = None
    discount_value: Decimal | None = None

    class Config:
        from_attributes = True


class PromoUserRead(BaseModel):
    user_id: int
    email: str | None = None
    name: str | None = None
    is_notified: bool
    notified_at: datetime | None = None

    class Config:
        from_attributes = True


class PromoCodeRead(BaseModel):
    id: int
    code: str
    description: str | None = None
    discount_type: DiscountType
    discount_value: Decimal
    start_date: datetime
    end_date: datetime | None = None
    usage_limit: int | None = None
    used_count: int
    usage_limit_per_user: int | None = None
    minimum_order_amount: Decimal | None = None
    maximum_discount_amount: Decimal | None = None
    is_active: bool
    users: list[PromoUserRead] = Field(default_factory=list)
    item_ids: list[int] = Field(default_factory=list)

    class Config:
        from_attributes = True


def promo_payload(promo) -> PromoCodeRead:
    read = PromoCodeRead.model_validate(promo)
    read.item_ids = sorted(pi.item_id for pi in promo.items)
    return read
