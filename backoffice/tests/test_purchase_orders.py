from decimal import Decimal

import pytest

from backoffice.app.db.models.core_types import OrderStatus
from backoffice.services import procurement
from backoffice.services.errors import AccessDenied, ConcurrencyConflict, IllegalTransition
from backoffice.services.orders import OrderLineInput


@pytest.fixture
def new_po(db_session, admin, locations, make_item):
    def _new(quantity=12, location=None):
        item = make_item(price="3.00")
        location = location or locations["warehouse"]
        po = procurement.create_purchase_order(
            db_session,
            admin,
            supplier_name="Timber Co",
            lines=[OrderLineInput(item_id=item, quantity=Decimal(quantity), location_id=location, unit_price=Decimal("2.50"))],
        )
        return po, item, location

    return _new


def test_purchase_order_needs_no_stock_and_uses_po_prefix(db_session, new_po):
    po, _, _ = new_po()

    assert po.order_number.startswith("PO")
    assert po.status == OrderStatus.pending
    assert po.total_amount == Decimal("30.00")
    assert po.supplier_name == "Timber Co"


def test_receive_credits_each_line_creating_the_record(db_session, admin, new_po, qty):
    """
    GIVEN un PO approuvé de 12 unités, aucun enregistrement de stock
    WHEN receive
    THEN ledger = 12 (enregistrement créé à la volée)
    """
    po, item, wh = new_po(quantity=12)
    procurement.approve_purchase_order(db_session, admin, po.id)

    result = procurement.receive_purchase_order(db_session, admin, po.id)

    assert result.status == OrderStatus.received
    assert "inventory_received" in result.actions_performed
    assert qty(item, wh) == Decimal("12")


def test_double_receive_is_a_conflict_and_credits_once(db_session, admin, new_po, qty):
    po, item, wh = new_po(quantity=5)
    procurement.approve_purchase_order(db_session, admin, po.id)
    procurement.receive_purchase_order(db_session, admin, po.id)

    with pytest.raises(ConcurrencyConflict):
        procurement.receive_purchase_order(db_session, admin, po.id)
    assert qty(item, wh) == Decimal("5")


def test_receive_before_approval_is_illegal(db_session, admin, new_po, qty):
    po, item, wh = new_po()

    with pytest.raises(IllegalTransition):
        procurement.receive_purchase_order(db_session, admin, po.id)
    assert qty(item, wh) == Decimal("0")


def test_cancelled_po_cannot_be_received(db_session, admin, new_po):
    po, _, _ = new_po()
    procurement.approve_purchase_order(db_session, admin, po.id)
    procurement.cancel_purchase_order(db_session, admin, po.id, notes="supplier out of stock")

    with pytest.raises(ConcurrencyConflict):
        procurement.receive_purchase_order(db_session, admin, po.id)


def test_customers_cannot_create_purchase_orders(db_session, customer, locations, make_item):
    item = make_item()
    with pytest.raises(AccessDenied):
        procurement.create_purchase_order(
            db_session,
            customer,
            lines=[OrderLineInput(item_id=item, quantity=Decimal(1), location_id=locations["warehouse"])],
        )
