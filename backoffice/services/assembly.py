"""
Assemblages (BOM) : des matières premières combinées en un produit vendable.

    Pending -> InProgress -> Completed
    Pending | InProgress -> Cancelled

required_quantity_per_build est TOUJOURS pour un seul build. Toute
vérification ou déduction passe par `scaled_requirements` (R x Q), pour
le démarrage, la complétion et la vente directe.

Start réserve les matières (reserved += R x Q), complete consomme la
réservation, cancel la libère : les autres consommateurs raisonnent sur
le disponible (quantity - reserved) et ne peuvent pas vendre des matières
déjà engagées dans un build.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from backoffice.app.core.timeutils import utcnow
from backoffice.app.db.models.core_types import (
    AssemblyStatus,
    MovementType,
    OrderChannel,
    OrderKind,
    OrderStatus,
    PaymentStatus,
)
from backoffice.app.db.models.models_v1 import (
    Assembly,
    BillOfMaterial,
    Item,
    Location,
    Order,
    OrderLine,
)
from backoffice.services import inventory, sinks
from backoffice.services.errors import (
    ConcurrencyConflict,
    EntityNotFound,
    IllegalTransition,
    Shortage,
    ValidationFailure,
)
from backoffice.services.inventory import LedgerLine, to_qty
from backoffice.services.orders import CustomerInfo, new_order
from backoffice.services.promo import to_money
from backoffice.services.scope import AccessScope
from backoffice.services.uow import atomic

log = logging.getLogger(__name__)

TERMINAL = {AssemblyStatus.completed, AssemblyStatus.cancelled}


@dataclass(frozen=True)
class BomLineInput:
    raw_item_id: int
    required_quantity_per_build: Decimal
    location_id: int | None = None
    unit: str | None = None
    notes: str | None = None


@dataclass
class AssemblyCompletion:
    assembly: Assembly
    consumed: list[LedgerLine]
    finished_item_id: int | None
    finished_quantity: Decimal


@dataclass
class AssemblySale:
    assembly: Assembly
    order: Order
    consumed: list[LedgerLine]


def scaled_requirements(assembly: Assembly) -> list[LedgerLine]:
    """Besoin réel par ligne de BOM = required_quantity_per_build x build_quantity."""
    return [
        LedgerLine(
            bom.raw_item_id,
            bom.location_id,
            bom.required_quantity_per_build * assembly.build_quantity,
        )
        for bom in assembly.bill_of_materials
    ]


def validate_assembly(db: Session, assembly: Assembly) -> list[Shortage]:
    """Ruptures sur le disponible (quantity - reserved), formule mise à l'échelle."""
    return inventory.find_shortages(db, scaled_requirements(assembly), skip_always_available=False)


# ---------- Lecture ----------
def _lock_assembly(db: Session, assembly_id: int) -> Assembly:
    assembly = (
        db.execute(
            select(Assembly)
            .where(Assembly.id == assembly_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        .scalar_one_or_none()
    )
    if assembly is None:
        raise EntityNotFound("Assembly", assembly_id)
    return assembly


def get_assembly(db: Session, scope: AccessScope, assembly_id: int) -> Assembly:
    scope.require_staff()
    assembly = db.get(Assembly, assembly_id)
    if assembly is None:
        raise EntityNotFound("Assembly", assembly_id)
    scope.require_location(assembly.location_id)
    return assembly


def list_assemblies(db: Session, scope: AccessScope, *, status: AssemblyStatus | None = None) -> list[Assembly]:
    scope.require_staff()
    stmt = select(Assembly).where(Assembly.is_active.is_(True)).order_by(Assembly.created_at.desc(), Assembly.id.desc())
    restricted = scope.location_filter()
    if restricted is not None:
        stmt = stmt.where(Assembly.location_id == restricted)
    if status is not None:
        stmt = stmt.where(Assembly.status == status)
    return list(db.execute(stmt).scalars())


def finished_item_for(db: Session, assembly: Assembly) -> Item | None:
    """Le produit fini est l'article du catalogue portant exactement le nom de l'assemblage."""
    return (
        db.execute(select(Item).where(Item.name == assembly.name).order_by(Item.id.asc()))
        .scalars()
        .first()
    )


# ---------- Création ----------
def create_assembly(
    db: Session,
    scope: AccessScope,
    *,
    name: str,
    build_quantity,
    location_id: int | None,
    bom: Iterable[BomLineInput],
    unit: str | None = None,
    sale_price=None,
    description: str | None = None,
    notes: str | None = None,
) -> Assembly:
    scope.require_staff()
    # Un store manager assemble toujours dans son propre magasin
    if not scope.is_super_admin:
        location_id = scope.assigned_location_id
    if location_id is None:
        raise ValidationFailure("A location is required")
    scope.require_location(location_id)

    build_quantity = to_qty(build_quantity)
    bom = list(bom)

    with atomic(db, label="create_assembly") as uow:
        if not name or not name.strip():
            raise ValidationFailure("Assembly name is required")
        if build_quantity <= 0:
            raise ValidationFailure("build_quantity must be positive")
        if not bom:
            raise ValidationFailure("An assembly needs at least one bill of materials line")
        if sale_price is not None and to_money(sale_price) < 0:
            raise ValidationFailure("sale_price cannot be negative")
        if db.get(Location, location_id) is None:
            raise EntityNotFound("Location", location_id)

        assembly = Assembly(
            name=name.strip(),
            description=description,
            build_quantity=build_quantity,
            unit=unit,
            status=AssemblyStatus.pending,
            sale_price=to_money(sale_price) if sale_price is not None else None,
            location_id=location_id,
            notes=notes,
            created_by=scope.user_id,
        )
        for line in bom:
            required = to_qty(line.required_quantity_per_build)
            if required <= 0:
                raise ValidationFailure(f"Required quantity must be positive (item {line.raw_item_id})")
            item = db.get(Item, line.raw_item_id)
            if item is None:
                raise EntityNotFound("Item", line.raw_item_id)
            bom_location = line.location_id if line.location_id is not None else location_id
            scope.require_location(bom_location)
            assembly.bill_of_materials.append(
                BillOfMaterial(
                    raw_item_id=item.id,
                    location_id=bom_location,
                    required_quantity_per_build=required,
                    unit=line.unit or item.unit,
                    notes=line.notes,
                )
            )
        db.add(assembly)
        db.flush()

        uow.after_commit(
            sinks.audit,
            "Assembly",
            assembly.id,
            "create",
            after={"name": assembly.name, "build_quantity": build_quantity, "bom_lines": len(bom)},
            actor_user_id=scope.user_id,
        )

    log.info("assembly %s created (%s x%s)", assembly.id, assembly.name, build_quantity)
    return assembly


# ---------- Transitions ----------
def _reject(assembly: Assembly, action: str, allowed: set[AssemblyStatus]) -> None:
    if assembly.status in allowed:
        return
    if assembly.status in TERMINAL:
        raise ConcurrencyConflict(f"Assembly {assembly.id} is already {assembly.status.value}")
    # InProgress alors qu'on veut démarrer : quelqu'un l'a déjà fait
    if action == "start" and assembly.status == AssemblyStatus.in_progress:
        raise ConcurrencyConflict(f"Assembly {assembly.id} is already {assembly.status.value}")
    raise IllegalTransition("Assembly", assembly.id, assembly.status.value, action)


def start_assembly(db: Session, scope: AccessScope, assembly_id: int) -> Assembly:
    """Pending -> InProgress, uniquement sans rupture ; réserve les matières."""
    scope.require_staff()
    with atomic(db, label="start_assembly") as uow:
        assembly = _lock_assembly(db, assembly_id)
        scope.require_location(assembly.location_id)
        _reject(assembly, "start", {AssemblyStatus.pending})

        inventory.reserve_lines(
            db,
            scaled_requirements(assembly),
            reference_type="assembly",
            reference_id=assembly.id,
            actor_id=scope.user_id,
        )
        assembly.status = AssemblyStatus.in_progress
        assembly.started_at = utcnow()

        uow.after_commit(
            sinks.audit,
            "Assembly",
            assembly.id,
            "start",
            before={"status": AssemblyStatus.pending.value},
            after={"status": AssemblyStatus.in_progress.value},
            actor_user_id=scope.user_id,
        )
    log.info("assembly %s started", assembly_id)
    return assembly


def complete_assembly(db: Session, scope: AccessScope, assembly_id: int) -> AssemblyCompletion:
    """
    InProgress -> Completed : consomme R x Q par ligne, crédite le produit
    fini (+build_quantity) s'il existe au catalogue. Tout ou rien.
    """
    scope.require_staff()
    with atomic(db, label="complete_assembly") as uow:
        assembly = _lock_assembly(db, assembly_id)
        scope.require_location(assembly.location_id)
        _reject(assembly, "complete", {AssemblyStatus.in_progress})

        required = scaled_requirements(assembly)
        inventory.consume_reserved_lines(
            db,
            required,
            reference_type="assembly",
            reference_id=assembly.id,
            actor_id=scope.user_id,
        )

        finished = finished_item_for(db, assembly)
        if finished is not None:
            inventory.adjust(
                db,
                item_id=finished.id,
                location_id=assembly.location_id,
                delta=assembly.build_quantity,
                movement_type=MovementType.assembly_output,
                reason=f"Assembly {assembly.id} completed",
                reference_type="assembly",
                reference_id=assembly.id,
                actor_id=scope.user_id,
            )

        assembly.status = AssemblyStatus.completed
        assembly.completed_at = utcnow()
        assembly.completed_by = scope.user_id
        result = AssemblyCompletion(
            assembly=assembly,
            consumed=required,
            finished_item_id=finished.id if finished else None,
            finished_quantity=assembly.build_quantity if finished else Decimal("0"),
        )

        uow.after_commit(
            sinks.audit,
            "Assembly",
            assembly.id,
            "complete",
            before={"status": AssemblyStatus.in_progress.value},
            after={"status": AssemblyStatus.completed.value, "finished_item_id": result.finished_item_id},
            actor_user_id=scope.user_id,
        )
    log.info("assembly %s completed (finished item=%s)", assembly_id, result.finished_item_id)
    return result


def cancel_assembly(db: Session, scope: AccessScope, assembly_id: int) -> Assembly:
    """Pending | InProgress -> Cancelled ; un build en cours libère sa réservation."""
    scope.require_staff()
    with atomic(db, label="cancel_assembly") as uow:
        assembly = _lock_assembly(db, assembly_id)
        scope.require_location(assembly.location_id)
        _reject(assembly, "cancel", {AssemblyStatus.pending, AssemblyStatus.in_progress})

        previous = assembly.status
        if previous == AssemblyStatus.in_progress:
            inventory.release_lines(
                db,
                scaled_requirements(assembly),
                reference_type="assembly",
                reference_id=assembly.id,
                actor_id=scope.user_id,
            )
        assembly.status = AssemblyStatus.cancelled
        assembly.cancelled_at = utcnow()

        uow.after_commit(
            sinks.audit,
            "Assembly",
            assembly.id,
            "cancel",
            before={"status": previous.value},
            after={"status": AssemblyStatus.cancelled.value},
            actor_user_id=scope.user_id,
        )
    log.info("assembly %s cancelled (was %s)", assembly_id, previous.value)
    return assembly


# ---------- Vente directe (point de vente) ----------
def sell_assembly(
    db: Session,
    scope: AccessScope,
    *,
    assembly_id: int,
    customer: CustomerInfo | None = None,
    payment_method: str | None = None,
    notes: str | None = None,
) -> AssemblySale:
    """
    Vend un assemblage terminé comme une unité : revalide et déduit R x Q
    (même formule que complete), puis crée une commande ASM livrée et payée.
    """
    scope.require_staff()
    customer = customer or CustomerInfo()

    with atomic(db, label="sell_assembly") as uow:
        assembly = _lock_assembly(db, assembly_id)
        scope.require_location(assembly.location_id)
        if assembly.status != AssemblyStatus.completed or not assembly.is_active:
            raise ValidationFailure(f"Only completed assemblies can be sold (assembly {assembly.id} is {assembly.status.value})")
        if assembly.sale_price is None:
            raise ValidationFailure(f"Assembly {assembly.id} has no sale price")

        order = new_order(
            db,
            kind=OrderKind.sale,
            channel=OrderChannel.assembly,
            lines=[
                OrderLine(
                    assembly_id=assembly.id,
                    location_id=assembly.location_id,
                    quantity=Decimal("1"),
                    unit_price=assembly.sale_price,
                    total_price=assembly.sale_price,
                    unit=assembly.unit,
                    notes=notes,
                )
            ],
            customer=customer,
            status=OrderStatus.delivered,
            payment_status=PaymentStatus.paid,
            payment_method=payment_method,
            notes=notes,
            actor_id=scope.user_id,
        )
        order.delivered_at = order.order_date

        required = scaled_requirements(assembly)
        inventory.deduct_lines(
            db,
            required,
            movement_type=MovementType.assembly_consume,
            reason=f"Assembly {assembly.id} sold ({order.order_number})",
            reference_type="order",
            reference_id=order.id,
            actor_id=scope.user_id,
            exempt_always_available=False,
        )

        uow.after_commit(
            sinks.audit,
            "Assembly",
            assembly.id,
            "sell",
            after={"order_number": order.order_number, "price": assembly.sale_price},
            actor_user_id=scope.user_id,
        )
    log.info("assembly %s sold as %s", assembly_id, order.order_number)
    return AssemblySale(assembly=assembly, order=order, consumed=required)
