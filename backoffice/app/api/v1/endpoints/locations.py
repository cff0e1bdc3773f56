from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from backoffice.app.api.deps import get_db
from backoffice.app.db.models.core_types import LocationType
from backoffice.app.db.models.models_v1 import Location

router = APIRouter(prefix="/locations")


@router.get("")
def list_locations(
    type: LocationType | None = None,
    db: Session = Depends(get_db),
):
    stmt = select(Location).where(Location.active.is_(True)).order_by(Location.id)
    if type is not None:
        stmt = stmt.where(Location.type == type)

    rows = db.execute(stmt).scalars().all()
    return [{"id": l.id, "name": l.name, "type": l.type} for l in rows]
