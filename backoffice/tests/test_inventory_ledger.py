from decimal import Decimal

import pytest
from sqlalchemy import select

from backoffice.app.db.models.core_types import MovementType
from backoffice.app.db.models.models_v1 import InventoryMovement, InventoryRecord
from backoffice.services import inventory
from backoffice.services.errors import AccessDenied, EntityNotFound, InsufficientStock, ValidationFailure
from backoffice.services.inventory import LedgerLine


def test_adjust_creates_record_lazily(db_session, locations, make_item, qty):
    item = make_item()
    wh = locations["warehouse"]

    assert inventory.get_record(db_session, item, wh) is None

    inventory.adjust(db_session, item_id=item, location_id=wh, delta=Decimal("7"))
    db_session.commit()

    assert qty(item, wh) == Decimal("7")
    mv = db_session.execute(select(InventoryMovement)).scalar_one()
    assert mv.movement_type == MovementType.receipt
    assert mv.quantity_after == Decimal("7")


def test_negative_adjust_rejected_without_mutation(db_session, locations, make_item, stock, qty):
    """
    GIVEN ledger(item, wh) = 3
    WHEN adjust(-5)
    THEN InsufficientStock (item, required, available) et ledger inchangé
    """
    item = make_item()
    wh = locations["warehouse"]
    stock(item, wh, 3)

    with pytest.raises(InsufficientStock) as exc:
        inventory.adjust(db_session, item_id=item, location_id=wh, delta=Decimal("-5"))
    db_session.rollback()

    shortage = exc.value.shortages[0]
    assert (shortage.item_id, shortage.location_id) == (item, wh)
    assert shortage.required == Decimal("5")
    assert shortage.available == Decimal("3")
    assert qty(item, wh) == Decimal("3")


def test_adjust_down_to_exactly_zero_is_allowed(db_session, locations, make_item, stock, qty):
    item = make_item()
    wh = locations["warehouse"]
    stock(item, wh, 4)

    inventory.adjust(db_session, item_id=item, location_id=wh, delta=Decimal("-4"))
    db_session.commit()

    assert qty(item, wh) == Decimal("0")


def test_always_available_item_may_go_negative_when_caller_skips_check(db_session, locations, make_item, qty):
    item = make_item(always_available=True)
    store = locations["store"]

    inventory.deduct_lines(db_session, [LedgerLine(item, store, Decimal("2"))])
    db_session.commit()

    assert qty(item, store) == Decimal("-2")


def test_deduct_lines_is_all_or_nothing_and_reports_every_shortage(db_session, locations, make_item, stock, qty):
    a, b, c = make_item(), make_item(), make_item()
    wh = locations["warehouse"]
    stock(a, wh, 10)
    stock(b, wh, 1)
    # c : aucun enregistrement

    lines = [
        LedgerLine(a, wh, Decimal("4")),
        LedgerLine(b, wh, Decimal("2")),
        LedgerLine(c, wh, Decimal("1")),
    ]
    with pytest.raises(InsufficientStock) as exc:
        inventory.deduct_lines(db_session, lines)
    db_session.rollback()

    assert {s.item_id for s in exc.value.shortages} == {b, c}
    assert qty(a, wh) == Decimal("10")
    assert qty(b, wh) == Decimal("1")


def test_deduct_lines_aggregates_same_item_location(db_session, locations, make_item, stock, qty):
    item = make_item()
    wh = locations["warehouse"]
    stock(item, wh, 5)

    # 3 + 3 > 5 : chaque ligne passe seule, pas la somme
    with pytest.raises(InsufficientStock):
        inventory.deduct_lines(
            db_session,
            [LedgerLine(item, wh, Decimal("3")), LedgerLine(item, wh, Decimal("3"))],
        )
    db_session.rollback()
    assert qty(item, wh) == Decimal("5")


def test_reserved_quantity_is_not_available(db_session, locations, make_item, stock, qty):
    item = make_item()
    wh = locations["warehouse"]
    stock(item, wh, 10)

    inventory.reserve_lines(db_session, [LedgerLine(item, wh, Decimal("6"))])
    db_session.commit()

    assert inventory.available_quantity(db_session, item, wh) == Decimal("4")
    assert not inventory.check_sufficient(db_session, item, wh, 5)
    with pytest.raises(InsufficientStock):
        inventory.adjust(db_session, item_id=item, location_id=wh, delta=Decimal("-5"))
    db_session.rollback()

    inventory.release_lines(db_session, [LedgerLine(item, wh, Decimal("6"))])
    db_session.commit()
    assert inventory.available_quantity(db_session, item, wh) == Decimal("10")
    assert qty(item, wh) == Decimal("10")


def test_release_more_than_reserved_is_rejected(db_session, locations, make_item, stock):
    item = make_item()
    wh = locations["warehouse"]
    stock(item, wh, 10)

    with pytest.raises(ValidationFailure):
        inventory.release_lines(db_session, [LedgerLine(item, wh, Decimal("1"))])
    db_session.rollback()


def test_check_inventory_sufficiency_is_preflight_only(db_session, locations, make_item, stock, qty):
    a, b = make_item(), make_item(always_available=True)
    wh = locations["warehouse"]
    stock(a, wh, 2)

    shortages = inventory.check_inventory_sufficiency(
        db_session,
        [LedgerLine(a, wh, Decimal("3")), LedgerLine(b, wh, Decimal("100"))],
    )

    assert [(s.item_id, s.required, s.available) for s in shortages] == [(a, Decimal("3"), Decimal("2"))]
    assert qty(a, wh) == Decimal("2")


def test_adjust_inventory_is_idempotent_by_key(db_session, admin, locations, make_item, qty, audit_sink):
    item = make_item()
    wh = locations["warehouse"]

    first = inventory.adjust_inventory(
        db_session, admin, item_id=item, location_id=wh, delta=5, reason="count", idempotency_key="adj-1"
    )
    replay = inventory.adjust_inventory(
        db_session, admin, item_id=item, location_id=wh, delta=5, reason="count", idempotency_key="adj-1"
    )

    assert first.id == replay.id
    assert qty(item, wh) == Decimal("5")
    assert audit_sink.actions("InventoryRecord") == ["adjust"]


def test_adjust_inventory_rejects_zero_and_unknown_item(db_session, admin, locations):
    with pytest.raises(ValidationFailure):
        inventory.adjust_inventory(db_session, admin, item_id=1, location_id=locations["warehouse"], delta=0)
    with pytest.raises(EntityNotFound):
        inventory.adjust_inventory(db_session, admin, item_id=999, location_id=locations["warehouse"], delta=1)


def test_store_manager_cannot_adjust_other_location(db_session, store_manager, locations, make_item):
    item = make_item()
    with pytest.raises(AccessDenied):
        inventory.adjust_inventory(db_session, store_manager, item_id=item, location_id=locations["warehouse"], delta=1)


def test_thresholds_are_advisory_and_feed_low_stock(db_session, admin, store_manager, locations, make_item, stock):
    item = make_item()
    store = locations["store"]
    stock(item, store, 3)

    inventory.set_thresholds(db_session, admin, item_id=item, location_id=store, minimum=5, maximum=50)
    # un seuil ne bloque jamais un mouvement
    inventory.adjust(db_session, item_id=item, location_id=store, delta=Decimal("-2"))
    db_session.commit()

    low = inventory.low_stock(db_session, store_manager)
    assert [(r.item_id, r.location_id) for r in low] == [(item, store)]


def test_thresholds_must_be_ordered(db_session, admin, locations, make_item):
    item = make_item()
    with pytest.raises(ValidationFailure):
        inventory.set_thresholds(db_session, admin, item_id=item, location_id=locations["store"], minimum=10, maximum=2)
    assert db_session.get(InventoryRecord, (item, locations["store"])) is None
