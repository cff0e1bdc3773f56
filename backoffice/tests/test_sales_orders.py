from decimal import Decimal

import pytest
from sqlalchemy import func, select

from backoffice.app.db.models.core_types import OrderAction, OrderKind, OrderStatus, PaymentStatus
from backoffice.app.db.models.models_v1 import InventoryMovement, Order
from backoffice.services import inventory, orders
from backoffice.services.errors import (
    AccessDenied,
    ConcurrencyConflict,
    IllegalTransition,
    InsufficientStock,
    ValidationFailure,
)
from backoffice.services.orders import CustomerInfo, OrderLineInput

GUEST = CustomerInfo(name="Walk-in", phone="555-0100")


@pytest.fixture
def new_sale(db_session, admin, locations, make_item, stock):
    def _new(quantity=2, on_hand=10, item=None, location=None):
        item = item or make_item(price="15.00")
        location = location or locations["warehouse"]
        if on_hand:
            stock(item, location, on_hand)
        order = orders.create_sales_order(
            db_session,
            admin,
            lines=[OrderLineInput(item_id=item, quantity=Decimal(quantity), location_id=location)],
            customer=GUEST,
        )
        return order, item, location

    return _new


def test_create_sales_order_allocates_number_and_totals(db_session, new_sale):
    order, _, _ = new_sale(quantity=3)

    assert order.order_number.startswith("SO")
    assert order.order_number.endswith("0001")
    assert order.status == OrderStatus.pending
    assert order.total_amount == Decimal("45.00")
    assert [h.to_status for h in order.history] == [OrderStatus.pending]


def test_create_requires_lines_and_guest_identity(db_session, admin, locations, make_item):
    item = make_item()
    with pytest.raises(ValidationFailure):
        orders.create_sales_order(db_session, admin, lines=[], customer=GUEST)
    with pytest.raises(ValidationFailure):
        orders.create_sales_order(
            db_session,
            admin,
            lines=[OrderLineInput(item_id=item, quantity=Decimal(1), location_id=locations["warehouse"])],
            customer=CustomerInfo(name="No contact"),
        )


def test_create_preflight_rejects_insufficient_stock(db_session, admin, locations, make_item, stock):
    item = make_item()
    stock(item, locations["warehouse"], 1)

    with pytest.raises(InsufficientStock):
        orders.create_sales_order(
            db_session,
            admin,
            lines=[OrderLineInput(item_id=item, quantity=Decimal(5), location_id=locations["warehouse"])],
            customer=GUEST,
        )
    assert db_session.execute(select(Order)).first() is None


def test_full_lifecycle_deducts_once_at_ship(db_session, admin, new_sale, qty, audit_sink):
    order, item, wh = new_sale(quantity=4, on_hand=10)

    orders.confirm_sales_order(db_session, admin, order.id)
    assert qty(item, wh) == Decimal("10")

    result = orders.ship_sales_order(db_session, admin, order.id)
    assert result.previous_status == OrderStatus.confirmed
    assert result.status == OrderStatus.shipped
    assert "inventory_deducted" in result.actions_performed
    assert qty(item, wh) == Decimal("6")

    orders.deliver_sales_order(db_session, admin, order.id)
    db_session.expire_all()
    assert order.status == OrderStatus.delivered
    assert order.delivered_at is not None
    assert qty(item, wh) == Decimal("6")
    assert [h.action for h in order.history] == ["create", "confirm", "ship", "deliver"]
    assert audit_sink.actions("Order") == ["create", "confirm", "ship", "deliver"]


def test_ship_with_insufficient_stock_fails_and_changes_nothing(db_session, admin, new_sale, qty):
    """
    GIVEN ligne (item, location 1, qty 10), ledger = 3, commande Confirmed
    WHEN ship
    THEN échec, commande toujours Confirmed, ledger toujours 3
    """
    order, item, wh = new_sale(quantity=10, on_hand=10)
    orders.confirm_sales_order(db_session, admin, order.id)
    # le stock a été consommé ailleurs depuis la création
    inventory.adjust(db_session, item_id=item, location_id=wh, delta=Decimal("-7"))
    db_session.commit()
    assert qty(item, wh) == Decimal("3")

    with pytest.raises(InsufficientStock) as exc:
        orders.ship_sales_order(db_session, admin, order.id)

    assert exc.value.shortages[0].required == Decimal("10")
    assert exc.value.shortages[0].available == Decimal("3")
    db_session.expire_all()
    assert order.status == OrderStatus.confirmed
    assert qty(item, wh) == Decimal("3")


def test_double_ship_is_a_conflict_and_never_double_deducts(db_session, admin, new_sale, qty):
    order, item, wh = new_sale(quantity=2, on_hand=10)
    orders.confirm_sales_order(db_session, admin, order.id)
    orders.ship_sales_order(db_session, admin, order.id)

    with pytest.raises(ConcurrencyConflict):
        orders.ship_sales_order(db_session, admin, order.id)

    assert qty(item, wh) == Decimal("8")
    issues = db_session.execute(
        select(InventoryMovement).where(InventoryMovement.reference_type == "order")
    ).scalars().all()
    assert len(issues) == 1


def test_ship_from_pending_is_illegal_without_side_effects(db_session, admin, new_sale, qty):
    order, item, wh = new_sale(quantity=2, on_hand=10)

    with pytest.raises(IllegalTransition):
        orders.ship_sales_order(db_session, admin, order.id)

    db_session.expire_all()
    assert order.status == OrderStatus.pending
    assert qty(item, wh) == Decimal("10")


def test_expected_status_mismatch_is_a_conflict(db_session, admin, new_sale):
    order, _, _ = new_sale()

    with pytest.raises(ConcurrencyConflict):
        orders.transition_order(
            db_session,
            admin,
            order_id=order.id,
            action=OrderAction.confirm,
            expected_status=OrderStatus.confirmed,
        )


def test_unknown_action_for_kind_is_rejected(db_session, admin, new_sale):
    order, _, _ = new_sale()
    with pytest.raises(ValidationFailure):
        orders.transition_order(db_session, admin, order_id=order.id, action=OrderAction.receive)


def test_cancel_after_ship_does_not_restock(db_session, admin, new_sale, qty):
    order, item, wh = new_sale(quantity=4, on_hand=10)
    orders.confirm_sales_order(db_session, admin, order.id)
    orders.ship_sales_order(db_session, admin, order.id)

    result = orders.cancel_sales_order(db_session, admin, order.id, notes="customer changed mind")

    assert result.status == OrderStatus.cancelled
    assert qty(item, wh) == Decimal("6")
    db_session.expire_all()
    assert order.cancellation_reason == "customer changed mind"


def test_cancelled_order_cannot_move_again(db_session, admin, new_sale):
    order, _, _ = new_sale()
    orders.cancel_sales_order(db_session, admin, order.id)

    with pytest.raises(ConcurrencyConflict):
        orders.confirm_sales_order(db_session, admin, order.id)
    with pytest.raises(ConcurrencyConflict):
        orders.cancel_sales_order(db_session, admin, order.id)


def test_always_available_items_ship_below_zero(db_session, admin, locations, make_item, qty):
    item = make_item(always_available=True)
    store = locations["store"]
    order = orders.create_sales_order(
        db_session,
        admin,
        lines=[OrderLineInput(item_id=item, quantity=Decimal(3), location_id=store)],
        customer=GUEST,
    )
    orders.confirm_sales_order(db_session, admin, order.id)
    orders.ship_sales_order(db_session, admin, order.id)

    assert qty(item, store) == Decimal("-3")


def test_store_manager_is_scoped_to_its_location(db_session, admin, store_manager, new_sale, locations):
    order, _, _ = new_sale(location=locations["warehouse"])

    with pytest.raises(AccessDenied):
        orders.confirm_sales_order(db_session, store_manager, order.id)
    assert orders.list_orders(db_session, store_manager, kind=OrderKind.sale) == []

    own, _, _ = new_sale(location=locations["store"])
    assert [o.id for o in orders.list_orders(db_session, store_manager, kind=OrderKind.sale)] == [own.id]


# ---------- Acompte ----------
def test_down_payment_at_creation_sets_payment_status(db_session, admin, locations, make_item, stock):
    item = make_item(price="15.00")
    stock(item, locations["warehouse"], 10)

    def _sale(down_payment):
        return orders.create_sales_order(
            db_session,
            admin,
            lines=[OrderLineInput(item_id=item, quantity=Decimal(2), location_id=locations["warehouse"])],
            customer=GUEST,
            down_payment=down_payment,
        )

    partial = _sale(Decimal("10"))
    full = _sale(Decimal("30"))

    assert (partial.down_payment, partial.payment_status) == (Decimal("10.00"), PaymentStatus.partially_paid)
    assert (full.down_payment, full.payment_status) == (Decimal("30.00"), PaymentStatus.paid)

    with pytest.raises(ValidationFailure):
        _sale(Decimal("30.01"))
    with pytest.raises(ValidationFailure):
        _sale(Decimal("-1"))
    assert db_session.execute(select(func.count(Order.id))).scalar_one() == 2


def test_record_down_payment_updates_and_settles(db_session, admin, new_sale, audit_sink):
    order, _, _ = new_sale(quantity=2)

    orders.record_down_payment(db_session, admin, order_id=order.id, amount=Decimal("12.5"))
    assert order.payment_status == PaymentStatus.partially_paid

    orders.record_down_payment(db_session, admin, order_id=order.id, amount=Decimal("30"))
    assert order.payment_status == PaymentStatus.paid
    assert audit_sink.actions("Order").count("down_payment") == 2

    with pytest.raises(ValidationFailure):
        orders.record_down_payment(db_session, admin, order_id=order.id, amount=Decimal("31"))
    db_session.expire_all()
    assert order.down_payment == Decimal("30.00")


def test_down_payment_is_refused_on_cancelled_orders_and_for_other_scopes(
    db_session, admin, store_manager, customer, new_sale
):
    order, _, _ = new_sale()

    with pytest.raises(AccessDenied):
        orders.record_down_payment(db_session, store_manager, order_id=order.id, amount=Decimal("5"))
    with pytest.raises(AccessDenied):
        orders.record_down_payment(db_session, customer, order_id=order.id, amount=Decimal("5"))

    orders.cancel_sales_order(db_session, admin, order.id, notes="no show")
    with pytest.raises(ValidationFailure):
        orders.record_down_payment(db_session, admin, order_id=order.id, amount=Decimal("5"))


def test_down_payment_only_for_sales(db_session, admin, locations, make_item):
    item = make_item()
    with pytest.raises(ValidationFailure):
        orders.create_order(
            db_session,
            admin,
            kind=OrderKind.purchase,
            lines=[OrderLineInput(item_id=item, quantity=Decimal(1), location_id=locations["warehouse"])],
            supplier_name="Acme",
            down_payment=Decimal("1"),
        )
