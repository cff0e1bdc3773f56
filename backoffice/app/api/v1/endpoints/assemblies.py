from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from backoffice.app.api.deps import get_db, get_scope
from backoffice.app.db.models.core_types import AssemblyStatus
from backoffice.app.schemas.assembly import AssemblyCreate, AssemblyRead, AssemblySellIn
from backoffice.app.schemas.inventory import ShortageRead
from backoffice.app.schemas.orders import OrderRead
from backoffice.services import assembly as assembly_service
from backoffice.services.assembly import BomLineInput
from backoffice.services.orders import CustomerInfo
from backoffice.services.scope import AccessScope

router = APIRouter(prefix="/assemblies")


@router.get("", response_model=list[AssemblyRead])
def list_assemblies(
    status: AssemblyStatus | None = None,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    return assembly_service.list_assemblies(db, scope, status=status)


@router.get("/{assembly_id}", response_model=AssemblyRead)
def get_assembly(assembly_id: int, db: Session = Depends(get_db), scope: AccessScope = Depends(get_scope)):
    return assembly_service.get_assembly(db, scope, assembly_id)


@router.get("/{assembly_id}/shortages")
def assembly_shortages(assembly_id: int, db: Session = Depends(get_db), scope: AccessScope = Depends(get_scope)):
    a = assembly_service.get_assembly(db, scope, assembly_id)
    shortages = assembly_service.validate_assembly(db, a)
    return {"can_build": not shortages, "shortages": [ShortageRead.model_validate(s) for s in shortages]}


@router.post("", response_model=AssemblyRead, status_code=201)
def create_assembly(payload: AssemblyCreate, db: Session = Depends(get_db), scope: AccessScope = Depends(get_scope)):
    return assembly_service.create_assembly(
        db,
        scope,
        name=payload.name,
        build_quantity=payload.build_quantity,
        location_id=payload.location_id,
        unit=payload.unit,
        sale_price=payload.sale_price,
        description=payload.description,
        notes=payload.notes,
        bom=[BomLineInput(**b.model_dump()) for b in payload.bill_of_materials],
    )


@router.post("/{assembly_id}/start", response_model=AssemblyRead)
def start_assembly(assembly_id: int, db: Session = Depends(get_db), scope: AccessScope = Depends(get_scope)):
    return assembly_service.start_assembly(db, scope, assembly_id)


@router.post("/{assembly_id}/complete")
def complete_assembly(assembly_id: int, db: Session = Depends(get_db), scope: AccessScope = Depends(get_scope)):
    result = assembly_service.complete_assembly(db, scope, assembly_id)
    return {
        "assembly": AssemblyRead.model_validate(result.assembly),
        "finished_item_id": result.finished_item_id,
        "finished_quantity": result.finished_quantity,
        "consumed": [
            {"item_id": l.item_id, "location_id": l.location_id, "quantity": l.quantity} for l in result.consumed
        ],
    }


@router.post("/{assembly_id}/cancel", response_model=AssemblyRead)
def cancel_assembly(assembly_id: int, db: Session = Depends(get_db), scope: AccessScope = Depends(get_scope)):
    return assembly_service.cancel_assembly(db, scope, assembly_id)


@router.post("/{assembly_id}/sell")
def sell_assembly(
    assembly_id: int,
    payload: AssemblySellIn | None = None,
    db: Session = Depends(get_db),
    scope: AccessScope = Depends(get_scope),
):
    """Vente directe en point de vente."""
    payload = payload or AssemblySellIn()
    sale = assembly_service.sell_assembly(
        db,
        scope,
        assembly_id=assembly_id,
        customer=CustomerInfo(**payload.customer.model_dump()),
        payment_method=payload.payment_method,
        notes=payload.notes,
    )
    return {
        "order": OrderRead.model_validate(sale.order),
        "consumed": [
            {"item_id": l.item_id, "location_id": l.location_id, "quantity": l.quantity} for l in sale.consumed
        ],
    }
