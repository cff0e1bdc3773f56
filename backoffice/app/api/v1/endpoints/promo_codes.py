from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backoffice.app.api.deps import get_db, get_scope
from backoffice.app.schemas.orders import OrderRead
from backoffice.app.schemas.promo import (
    PromoApplyIn,
    PromoCodeCreate,
    PromoCodeRead,
    PromoEvaluationRead,
    PromoUserIn,
    PromoUserRead,
    PromoValidateIn,
    promo_payload,
)
from backoffice.services import promo
from backoffice.services.promo import PromoUserAssignment
from backoffice.services.scope import AccessScope

router = APIRouter(prefix="/promo-codes")


class AssignUsersIn(BaseModel):
    users: list[PromoUserIn] = Field(min_length=1)


class AssignItemsIn(BaseModel):
    item_ids: list[int] = Field(min_length=1)


@router.get("", response_model=list[PromoCodeRead])
def list_promo_codes(
    active_only: bool = False,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    scope.require_staff()
    return [promo_payload(p) for p in promo.list_promos(db, active_only=active_only)]


@router.get("/{promo_id}", response_model=PromoCodeRead)
def get_promo_code(promo_id: int, db: Session = Depends(get_db), scope: AccessScope = Depends(get_scope)):
    scope.require_staff()
    return promo_payload(promo.get_promo(db, promo_id))


@router.post("", response_model=PromoCodeRead, status_code=201)
def create_promo_code(
    payload: PromoCodeCreate,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    created = promo.create_promo_code(
        db,
        scope,
        code=payload.code,
        description=payload.description,
        discount_type=payload.discount_type,
        discount_value=payload.discount_value,
        start_date=payload.start_date,
        end_date=payload.end_date,
        usage_limit=payload.usage_limit,
        usage_limit_per_user=payload.usage_limit_per_user,
        minimum_order_amount=payload.minimum_order_amount,
        maximum_discount_amount=payload.maximum_discount_amount,
        item_ids=payload.item_ids,
        users=[PromoUserAssignment(u.user_id, u.email, u.name) for u in payload.users],
    )
    return promo_payload(created)


@router.delete("/{promo_id}", response_model=PromoCodeRead)
def deactivate_promo_code(promo_id: int, db: Session = Depends(get_db), scope: AccessScope = Depends(get_scope)):
    return promo_payload(promo.deactivate_promo_code(db, scope, promo_id=promo_id))


@router.post("/{promo_id}/users", response_model=list[PromoUserRead])
def assign_users(
    promo_id: int,
    payload: AssignUsersIn,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    return promo.assign_users(
        db,
        scope,
        promo_id=promo_id,
        users=[PromoUserAssignment(u.user_id, u.email, u.name) for u in payload.users],
    )


@router.post("/{promo_id}/items", response_model=PromoCodeRead)
def assign_items(
    promo_id: int,
    payload: AssignItemsIn,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    return promo_payload(promo.assign_items(db, scope, promo_id=promo_id, item_ids=payload.item_ids))


@router.get("/{promo_id}/usage")
def promo_usage(promo_id: int, db: Session = Depends(get_db), scope: AccessScope = Depends(get_scope)):
    return promo.promo_usage_report(db, scope, promo_id=promo_id)


@router.post("/validate", response_model=PromoEvaluationRead)
def validate_promo_code(payload: PromoValidateIn, db: Session = Depends(get_db)):
    """Évaluation seule : aucune utilisation n'est enregistrée."""
    return promo.evaluate_promo(
        db,
        payload.code,
        user_id=payload.user_id,
        order_amount=payload.order_amount,
        item_ids=payload.item_ids,
    )


@router.post("/orders/{order_id}/apply", response_model=OrderRead)
def apply_promo_to_order(
    order_id: int,
    payload: PromoApplyIn,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    return promo.apply_promo_to_order(db, scope, order_id=order_id, code=payload.code)
