from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from sqlalchemy import select, tuple_
from sqlalchemy.orm import Session

from backoffice.app.db.models.core_types import MovementType
from backoffice.app.db.models.models_v1 import (
    InventoryMovement,
    InventoryRecord,
    Item,
    Location,
)
from backoffice.services import sinks
from backoffice.services.errors import (
    EntityNotFound,
    InsufficientStock,
    Shortage,
    ValidationFailure,
)
from backoffice.services.scope import AccessScope
from backoffice.services.uow import atomic

log = logging.getLogger(__name__)

ZERO = Decimal("0")


def to_qty(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


@dataclass(frozen=True)
class LedgerLine:
    item_id: int
    location_id: int
    quantity: Decimal


def aggregate_lines(lines: Iterable[LedgerLine]) -> dict[tuple[int, int], Decimal]:
    """Regroupe par (item, location), clés triées : ordre de verrouillage stable."""
    totals: dict[tuple[int, int], Decimal] = {}
    for line in lines:
        key = (int(line.item_id), int(line.location_id))
        totals[key] = totals.get(key, ZERO) + to_qty(line.quantity)
    return dict(sorted(totals.items()))


# ---------- Primitives (dans la transaction de l'appelant, jamais de commit) ----------
def _get_or_create_record(db: Session, item_id: int, location_id: int) -> InventoryRecord:
    """Verrouille l'enregistrement (FOR UPDATE), le crée à zéro s'il n'existe pas."""
    rec = (
        db.execute(
            select(InventoryRecord)
            .where(InventoryRecord.item_id == item_id)
            .where(InventoryRecord.location_id == location_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        .scalar_one_or_none()
    )
    if rec:
        return rec

    unit = db.execute(select(Item.unit).where(Item.id == item_id)).scalar_one_or_none()
    rec = InventoryRecord(
        item_id=item_id,
        location_id=location_id,
        quantity=ZERO,
        qty_reserved=ZERO,
        unit=unit,
    )
    db.add(rec)
    # Course perdue sur l'insert -> IntegrityError -> ConcurrencyConflict
    db.flush()
    return rec


def _lock_records(db: Session, keys: Iterable[tuple[int, int]]) -> dict[tuple[int, int], InventoryRecord]:
    db.flush()
    return {key: _get_or_create_record(db, *key) for key in sorted(set(keys))}


def _always_available_ids(db: Session, item_ids: Iterable[int]) -> set[int]:
    ids = {int(i) for i in item_ids}
    if not ids:
        return set()
    rows = db.execute(select(Item.id).where(Item.id.in_(ids)).where(Item.always_available.is_(True))).scalars()
    return {int(i) for i in rows}


def _record_movement(
    db: Session,
    rec: InventoryRecord,
    *,
    movement_type: MovementType,
    delta: Decimal,
    reason: str | None = None,
    reference_type: str | None = None,
    reference_id=None,
    actor_id: int | None = None,
    idempotency_key: str | None = None,
) -> InventoryMovement:
    # Pour RESERVE / UNRESERVE, delta = variation du réservé (la quantité ne bouge pas)
    mv = InventoryMovement(
        item_id=rec.item_id,
        location_id=rec.location_id,
        movement_type=movement_type,
        delta=delta,
        quantity_after=rec.quantity,
        reason=reason,
        reference_type=reference_type,
        reference_id=str(reference_id) if reference_id is not None else None,
        actor_id=actor_id,
        idempotency_key=idempotency_key,
    )
    db.add(mv)
    return mv


def adjust(
    db: Session,
    *,
    item_id: int,
    location_id: int,
    delta,
    enforce: bool = True,
    movement_type: MovementType | None = None,
    reason: str | None = None,
    reference_type: str | None = None,
    reference_id=None,
    actor_id: int | None = None,
    idempotency_key: str | None = None,
) -> InventoryMovement:
    """
    Applique `delta` sur (item, location) dans la transaction courante.

    Relit la quantité sous verrou puis, si `enforce` et delta < 0, exige
    quantity - reserved + delta >= 0. Les articles "always available"
    doivent être traités par l'appelant (enforce=False).
    """
    delta = to_qty(delta)
    rec = _get_or_create_record(db, item_id, location_id)

    if enforce and delta < 0:
        available = rec.quantity - rec.qty_reserved
        if available + delta < 0:
            raise InsufficientStock([Shortage(item_id, location_id, -delta, available)])

    rec.quantity += delta
    if movement_type is None:
        movement_type = MovementType.receipt if delta >= 0 else MovementType.issue
    mv = _record_movement(
        db,
        rec,
        movement_type=movement_type,
        delta=delta,
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
        actor_id=actor_id,
        idempotency_key=idempotency_key,
    )
    db.flush()
    return mv


def deduct_lines(
    db: Session,
    lines: Iterable[LedgerLine],
    *,
    movement_type: MovementType = MovementType.issue,
    reason: str | None = None,
    reference_type: str | None = None,
    reference_id=None,
    actor_id: int | None = None,
    exempt_always_available: bool = True,
) -> None:
    """
    Déduit toutes les lignes ou aucune.

    Verrouille dans l'ordre (item, location), collecte TOUTES les ruptures
    avant de lever une seule InsufficientStock. Les articles toujours
    disponibles ne sont pas contrôlés, sauf si exempt_always_available=False.
    """
    totals = aggregate_lines(lines)
    if not totals:
        return

    exempt = _always_available_ids(db, {item_id for item_id, _ in totals}) if exempt_always_available else set()
    records = _lock_records(db, totals)

    shortages = []
    for key, required in totals.items():
        if key[0] in exempt:
            continue
        rec = records[key]
        available = rec.quantity - rec.qty_reserved
        if available < required:
            shortages.append(Shortage(key[0], key[1], required, available))
    if shortages:
        raise InsufficientStock(shortages)

    for key, required in totals.items():
        rec = records[key]
        rec.quantity -= required
        _record_movement(
            db,
            rec,
            movement_type=movement_type,
            delta=-required,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            actor_id=actor_id,
        )
    db.flush()


def credit_lines(
    db: Session,
    lines: Iterable[LedgerLine],
    *,
    movement_type: MovementType = MovementType.receipt,
    reason: str | None = None,
    reference_type: str | None = None,
    reference_id=None,
    actor_id: int | None = None,
) -> None:
    totals = aggregate_lines(lines)
    records = _lock_records(db, totals)
    for key, qty in totals.items():
        rec = records[key]
        rec.quantity += qty
        _record_movement(
            db,
            rec,
            movement_type=movement_type,
            delta=qty,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            actor_id=actor_id,
        )
    db.flush()


# ---------- Réservations (assemblages en cours) ----------
def reserve_lines(db: Session, lines: Iterable[LedgerLine], *, reference_type=None, reference_id=None, actor_id=None) -> None:
    """reserved += qty si le disponible (quantity - reserved) suffit, sinon rien."""
    totals = aggregate_lines(lines)
    records = _lock_records(db, totals)

    shortages = []
    for key, qty in totals.items():
        rec = records[key]
        available = rec.quantity - rec.qty_reserved
        if available < qty:
            shortages.append(Shortage(key[0], key[1], qty, available))
    if shortages:
        raise InsufficientStock(shortages)

    for key, qty in totals.items():
        rec = records[key]
        rec.qty_reserved += qty
        _record_movement(
            db,
            rec,
            movement_type=MovementType.reserve,
            delta=qty,
            reference_type=reference_type,
            reference_id=reference_id,
            actor_id=actor_id,
        )
    db.flush()


def release_lines(db: Session, lines: Iterable[LedgerLine], *, reference_type=None, reference_id=None, actor_id=None) -> None:
    totals = aggregate_lines(lines)
    records = _lock_records(db, totals)
    for key, qty in totals.items():
        rec = records[key]
        if rec.qty_reserved < qty:
            raise ValidationFailure(
                f"Cannot release {qty} for item {key[0]} at location {key[1]} (reserved={rec.qty_reserved})"
            )
        rec.qty_reserved -= qty
        _record_movement(
            db,
            rec,
            movement_type=MovementType.unreserve,
            delta=-qty,
            reference_type=reference_type,
            reference_id=reference_id,
            actor_id=actor_id,
        )
    db.flush()


def consume_reserved_lines(
    db: Session,
    lines: Iterable[LedgerLine],
    *,
    reference_type=None,
    reference_id=None,
    actor_id=None,
) -> None:
    """
    Consomme ce qui a été réservé : quantity -= qty et reserved -= qty.

    Revalide sous verrou : si la réservation ou la quantité a été entamée
    entre-temps, rien n'est consommé.
    """
    totals = aggregate_lines(lines)
    records = _lock_records(db, totals)

    shortages = []
    for key, qty in totals.items():
        rec = records[key]
        if rec.qty_reserved < qty or rec.quantity < qty:
            shortages.append(Shortage(key[0], key[1], qty, min(rec.qty_reserved, rec.quantity)))
    if shortages:
        raise InsufficientStock(shortages)

    for key, qty in totals.items():
        rec = records[key]
        rec.qty_reserved -= qty
        rec.quantity -= qty
        _record_movement(
            db,
            rec,
            movement_type=MovementType.assembly_consume,
            delta=-qty,
            reference_type=reference_type,
            reference_id=reference_id,
            actor_id=actor_id,
        )
    db.flush()


# ---------- Lecture / pré-contrôle ----------
def get_record(db: Session, item_id: int, location_id: int) -> InventoryRecord | None:
    return db.get(InventoryRecord, (item_id, location_id))


def current_quantity(db: Session, item_id: int, location_id: int) -> Decimal:
    rec = get_record(db, item_id, location_id)
    return rec.quantity if rec else ZERO


def available_quantity(db: Session, item_id: int, location_id: int) -> Decimal:
    rec = get_record(db, item_id, location_id)
    return rec.available if rec else ZERO


def find_shortages(db: Session, lines: Iterable[LedgerLine], *, skip_always_available: bool = True) -> list[Shortage]:
    """Pré-contrôle sans verrou : ce n'est PAS le point d'application de l'invariant."""
    totals = aggregate_lines(lines)
    if not totals:
        return []

    exempt = _always_available_ids(db, {i for i, _ in totals}) if skip_always_available else set()
    rows = db.execute(
        select(InventoryRecord).where(
            tuple_(InventoryRecord.item_id, InventoryRecord.location_id).in_(list(totals))
        )
    ).scalars()
    available = {(r.item_id, r.location_id): r.available for r in rows}

    shortages = []
    for key, required in totals.items():
        if key[0] in exempt:
            continue
        have = available.get(key, ZERO)
        if have < required:
            shortages.append(Shortage(key[0], key[1], required, have))
    return shortages


def check_sufficient(db: Session, item_id: int, location_id: int, required) -> bool:
    return not find_shortages(db, [LedgerLine(item_id, location_id, to_qty(required))])


def check_inventory_sufficiency(db: Session, lines: Iterable[LedgerLine]) -> list[Shortage]:
    return find_shortages(db, lines)


# ---------- Opérations exposées ----------
def _require_item(db: Session, item_id: int) -> Item:
    item = db.get(Item, item_id)
    if item is None:
        raise EntityNotFound("Item", item_id)
    return item


def _require_location(db: Session, location_id: int) -> Location:
    loc = db.get(Location, location_id)
    if loc is None:
        raise EntityNotFound("Location", location_id)
    return loc


def find_movement_by_key(db: Session, idempotency_key: str) -> InventoryMovement | None:
    return db.execute(
        select(InventoryMovement).where(InventoryMovement.idempotency_key == idempotency_key)
    ).scalar_one_or_none()


def adjust_inventory(
    db: Session,
    scope: AccessScope,
    *,
    item_id: int,
    location_id: int,
    delta,
    reason: str | None = None,
    idempotency_key: str | None = None,
) -> InventoryMovement:
    """Ajustement manuel (inventaire, casse...). Rejoué à l'identique pour une même clé."""
    scope.require_location(location_id)
    delta = to_qty(delta)

    if idempotency_key:
        existing = find_movement_by_key(db, idempotency_key)
        if existing:
            return existing

    with atomic(db, label="adjust_inventory") as uow:
        if delta == 0:
            raise ValidationFailure("delta must not be zero")
        item = _require_item(db, item_id)
        _require_location(db, location_id)

        before = current_quantity(db, item_id, location_id)
        mv = adjust(
            db,
            item_id=item_id,
            location_id=location_id,
            delta=delta,
            enforce=not item.always_available,
            movement_type=MovementType.adjustment,
            reason=reason,
            reference_type="manual",
            actor_id=scope.user_id,
            idempotency_key=idempotency_key,
        )
        uow.after_commit(
            sinks.audit,
            "InventoryRecord",
            f"{item_id}:{location_id}",
            "adjust",
            before={"quantity": before},
            after={"quantity": mv.quantity_after, "delta": delta, "reason": reason},
            actor_user_id=scope.user_id,
        )

    log.info("inventory adjusted item=%s location=%s delta=%s -> %s", item_id, location_id, delta, mv.quantity_after)
    return mv


def set_thresholds(
    db: Session,
    scope: AccessScope,
    *,
    item_id: int,
    location_id: int,
    minimum=None,
    maximum=None,
) -> InventoryRecord:
    """Seuils indicatifs : jamais utilisés pour bloquer un mouvement."""
    scope.require_location(location_id)
    minimum = to_qty(minimum) if minimum is not None else None
    maximum = to_qty(maximum) if maximum is not None else None

    with atomic(db, label="set_thresholds") as uow:
        if (minimum is not None and minimum < 0) or (maximum is not None and maximum < 0):
            raise ValidationFailure("Stock levels must be non-negative")
        if minimum is not None and maximum is not None and minimum > maximum:
            raise ValidationFailure("minimum_stock_level must be <= maximum_stock_level")
        _require_item(db, item_id)
        _require_location(db, location_id)

        rec = _get_or_create_record(db, item_id, location_id)
        rec.minimum_stock_level = minimum
        rec.maximum_stock_level = maximum
        uow.after_commit(
            sinks.audit,
            "InventoryRecord",
            f"{item_id}:{location_id}",
            "set_thresholds",
            after={"minimum": minimum, "maximum": maximum},
            actor_user_id=scope.user_id,
        )
    return rec


def list_inventory(db: Session, scope: AccessScope, *, location_id: int | None = None) -> list[InventoryRecord]:
    stmt = select(InventoryRecord).order_by(InventoryRecord.location_id, InventoryRecord.item_id)
    restricted = scope.location_filter()
    if restricted is not None:
        stmt = stmt.where(InventoryRecord.location_id == restricted)
    if location_id is not None:
        stmt = stmt.where(InventoryRecord.location_id == location_id)
    return list(db.execute(stmt).scalars())


def low_stock(db: Session, scope: AccessScope) -> list[InventoryRecord]:
    """Enregistrements au niveau ou sous le minimum (seuil renseigné uniquement)."""
    stmt = (
        select(InventoryRecord)
        .where(InventoryRecord.minimum_stock_level.is_not(None))
        .where(InventoryRecord.quantity <= InventoryRecord.minimum_stock_level)
        .order_by(InventoryRecord.location_id, InventoryRecord.item_id)
    )
    restricted = scope.location_filter()
    if restricted is not None:
        stmt = stmt.where(InventoryRecord.location_id == restricted)
    return list(db.execute(stmt).scalars())


def list_movements(db: Session, scope: AccessScope, *, item_id: int, location_id: int, limit: int = 100) -> list[InventoryMovement]:
    scope.require_location(location_id)
    return list(
        db.execute(
            select(InventoryMovement)
            .where(InventoryMovement.item_id == item_id)
            .where(InventoryMovement.location_id == location_id)
            .order_by(InventoryMovement.id.desc())
            .limit(limit)
        ).scalars()
    )
