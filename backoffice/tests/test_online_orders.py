from datetime import timedelta
from decimal import Decimal

import pytest

from backoffice.app.core.timeutils import as_utc, utcnow
from backoffice.app.db.models.core_types import OrderKind, OrderStatus, PaymentStatus
from backoffice.services import online_orders, orders
from backoffice.services.errors import AccessDenied, InsufficientStock, ValidationFailure
from backoffice.services.orders import CustomerInfo, OrderLineInput
from backoffice.services.scope import AccessScope

GUEST = CustomerInfo(name="Jane Guest", email="jane@example.com", address="1 Harbour Rd")
ANONYMOUS = AccessScope()


@pytest.fixture
def online_item(locations, make_item, stock):
    def _item(on_hand=10, **kwargs):
        item = make_item(**kwargs)
        if on_hand:
            stock(item, locations["online"], on_hand)
        return item

    return _item


@pytest.fixture
def place(db_session, online_item):
    def _place(scope=ANONYMOUS, customer=GUEST, quantity=2, item=None, **kwargs):
        item = item or online_item()
        created = online_orders.process_new_order(
            db_session,
            scope,
            lines=[OrderLineInput(item_id=item, quantity=Decimal(quantity))],
            customer=customer,
            **kwargs,
        )
        return created.order, item

    return _place


# ---------- Création ----------
def test_channel_follows_who_places_the_order(db_session, place, online_manager, customer):
    guest_order, _ = place()
    cust_order, _ = place(scope=customer, customer=CustomerInfo(user_id=42, address="2 Quay St"))
    staff_order, _ = place(scope=online_manager)

    assert guest_order.order_number.startswith("GUEST")
    assert cust_order.order_number.startswith("CUST")
    assert cust_order.customer_user_id == 42
    assert staff_order.order_number.startswith("ON")
    assert {o.status for o in (guest_order, cust_order, staff_order)} == {OrderStatus.pending}


def test_lines_default_to_the_online_store(db_session, place, locations):
    order, _ = place()

    assert [l.location_id for l in order.lines] == [locations["online"]]
    assert order.total_amount == Decimal("20.00")


def test_customer_cannot_order_for_someone_else(db_session, place, customer):
    with pytest.raises(AccessDenied):
        place(scope=customer, customer=CustomerInfo(user_id=7))


def test_process_new_order_rejects_shortage_without_side_effects(db_session, online_item, place, qty, locations):
    item = online_item(on_hand=1)

    with pytest.raises(ValidationFailure):
        place(item=item, quantity=2)
    assert qty(item, locations["online"]) == Decimal("1")
    assert orders.list_orders(db_session, AccessScope.system(), kind=OrderKind.online) == []


def test_validate_order_reports_errors_and_warnings(db_session, online_item, locations):
    item = online_item(on_hand=3)
    report = online_orders.validate_order(
        db_session,
        lines=[OrderLineInput(item_id=item, quantity=Decimal(2))],
        customer=CustomerInfo(name="No address", phone="555-0101"),
    )
    assert report.is_valid
    assert "No delivery address provided" in report.warnings

    report = online_orders.validate_order(
        db_session,
        lines=[OrderLineInput(item_id=item, quantity=Decimal(1), location_id=locations["warehouse"])],
        customer=CustomerInfo(name="Nobody"),
    )
    assert not report.is_valid
    assert len(report.errors) == 2


def test_check_inventory_availability(db_session, online_item):
    stocked = online_item(on_hand=4)
    backorder = online_item(on_hand=0, always_available=True)

    checks = {
        c.item_id: c
        for c in online_orders.check_inventory_availability(
            db_session,
            [
                OrderLineInput(item_id=stocked, quantity=Decimal(3)),
                OrderLineInput(item_id=stocked, quantity=Decimal(2)),
                OrderLineInput(item_id=backorder, quantity=Decimal(9)),
            ],
        )
    }

    # lignes agrégées par article : 3 + 2 > 4
    assert checks[stocked].requested == Decimal("5")
    assert not checks[stocked].sufficient
    assert checks[backorder].sufficient and checks[backorder].always_available


# ---------- Cycle de vie ----------
def test_full_lifecycle_deducts_at_ship_and_collects_cash(db_session, place, online_manager, qty, locations, audit_sink):
    order, item = place(quantity=3, payment_method="Cash on Delivery")

    accepted = online_orders.accept_order(db_session, online_manager, order.id)
    assert accepted.status == OrderStatus.accepted
    assert "inventory_validated" in accepted.actions_performed
    assert accepted.order.estimated_delivery_date is not None
    assert qty(item, locations["online"]) == Decimal("10")

    shipped = online_orders.ship_order(db_session, online_manager, order.id)
    assert shipped.status == OrderStatus.shipped
    assert shipped.order.delivery_date is not None
    assert qty(item, locations["online"]) == Decimal("7")

    delivered = online_orders.deliver_order(db_session, online_manager, order.id)
    assert delivered.status == OrderStatus.delivered
    assert "payment_collected" in delivered.actions_performed
    assert delivered.order.payment_status == PaymentStatus.paid
    assert audit_sink.actions("Order") == ["create", "accept", "ship", "deliver"]


def test_accept_revalidates_stock(db_session, place, online_manager, stock, locations):
    order, item = place(quantity=5)
    stock(item, locations["online"], -8)

    with pytest.raises(InsufficientStock):
        online_orders.accept_order(db_session, online_manager, order.id)
    db_session.expire_all()
    assert orders.get_order(db_session, online_manager, order.id).status == OrderStatus.pending


def test_cancel_requires_a_reason_and_never_restocks(db_session, place, online_manager, qty, locations):
    order, item = place(quantity=4)
    online_orders.accept_order(db_session, online_manager, order.id)
    online_orders.ship_order(db_session, online_manager, order.id)

    with pytest.raises(ValidationFailure):
        online_orders.cancel_order(db_session, online_manager, order.id, reason=None)

    result = online_orders.cancel_order(db_session, online_manager, order.id, reason="Lost by carrier")
    assert result.status == OrderStatus.cancelled
    assert result.order.cancellation_reason == "Lost by carrier"
    assert qty(item, locations["online"]) == Decimal("6")


def test_update_order_status_maps_to_actions(db_session, place, online_manager):
    order, _ = place()

    with pytest.raises(ValidationFailure):
        online_orders.update_order_status(db_session, online_manager, order.id, status=OrderStatus.confirmed)

    result = online_orders.update_order_status(db_session, online_manager, order.id, status=OrderStatus.accepted)
    assert result.previous_status == OrderStatus.pending
    assert result.status == OrderStatus.accepted


# ---------- Accès ----------
def test_only_online_managers_run_online_transitions(db_session, place, store_manager, admin):
    order, _ = place()

    with pytest.raises(AccessDenied):
        online_orders.accept_order(db_session, store_manager, order.id)
    assert online_orders.accept_order(db_session, admin, order.id).status == OrderStatus.accepted


def test_customers_see_only_their_orders_and_cannot_transition(db_session, place, customer):
    order, _ = place(scope=customer, customer=CustomerInfo(user_id=42))
    place()

    assert orders.get_order(db_session, customer, order.id).id == order.id
    assert [o.id for o in orders.list_orders(db_session, customer, kind=OrderKind.online)] == [order.id]
    with pytest.raises(AccessDenied):
        orders.get_order(db_session, AccessScope(user_id=43, roles=frozenset({"Customer"})), order.id)
    with pytest.raises(AccessDenied):
        online_orders.accept_order(db_session, customer, order.id)


# ---------- Suivi ----------
def test_orders_requiring_attention(db_session, place, online_manager):
    waiting, _ = place()
    accepted, _ = place()
    online_orders.accept_order(db_session, online_manager, accepted.id)

    assert online_orders.get_orders_requiring_attention(db_session, online_manager) == []

    later = utcnow() + timedelta(hours=30)
    flagged = online_orders.get_orders_requiring_attention(db_session, online_manager, now=later)
    assert [a.order.id for a in flagged] == [waiting.id]

    much_later = utcnow() + timedelta(hours=72)
    flagged = {a.order.id: a.reason for a in online_orders.get_orders_requiring_attention(
        db_session, online_manager, now=much_later
    )}
    assert set(flagged) == {waiting.id, accepted.id}
    assert flagged[accepted.id].startswith("Accepted but not shipped")


def test_orders_by_status(db_session, place, online_manager):
    first, _ = place()
    second, _ = place()
    online_orders.accept_order(db_session, online_manager, second.id)

    pending = online_orders.get_orders_by_status(db_session, online_manager, OrderStatus.pending)
    assert [o.id for o in pending] == [first.id]


def test_analytics_exclude_cancelled_revenue(db_session, place, online_manager):
    kept, _ = place()
    dropped, _ = place()
    online_orders.cancel_order(db_session, online_manager, dropped.id, reason="Customer request")

    stats = online_orders.get_order_analytics(db_session, online_manager)

    assert stats["total_orders"] == 2
    assert stats["orders_by_status"]["Pending"] == 1
    assert stats["orders_by_status"]["Cancelled"] == 1
    assert stats["total_revenue"] == Decimal("20.00")
    assert stats["average_order_value"] == Decimal("20.00")


def test_estimated_delivery_defaults_to_configured_days(db_session, place, online_manager):
    order, _ = place()
    before = utcnow()

    result = online_orders.accept_order(db_session, online_manager, order.id)

    eta = as_utc(result.order.estimated_delivery_date)
    assert before + timedelta(days=2) < eta <= utcnow() + timedelta(days=3)
