from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from backoffice.app.core.timeutils import utcnow
from backoffice.app.db.models.core_types import DiscountType, OrderKind, Role
from backoffice.app.db.models.models_v1 import PromoCodeUsage
from backoffice.services import online_orders, orders, promo, sinks
from backoffice.services.errors import AccessDenied, PromoIneligible, ValidationFailure
from backoffice.services.orders import CustomerInfo, OrderLineInput
from backoffice.services.promo import PromoUserAssignment
from backoffice.services.scope import AccessScope


@pytest.fixture
def make_promo(db_session, admin):
    def _make(code="SAVE", discount_type=DiscountType.percentage, value="10", **kwargs):
        kwargs.setdefault("start_date", utcnow() - timedelta(days=1))
        return promo.create_promo_code(
            db_session, admin, code=code, discount_type=discount_type, discount_value=Decimal(value), **kwargs
        )

    return _make


def _eval(db, code, amount, **kwargs):
    return promo.evaluate_promo(db, code, order_amount=Decimal(str(amount)), **kwargs)


def test_percentage_discount_is_clamped_to_maximum(db_session, make_promo):
    """50% plafonné à 20 sur 100 -> remise 20, reste à payer 80."""
    make_promo(code="HALF", value="50", maximum_discount_amount=Decimal("20"))

    result = _eval(db_session, "HALF", 100)

    assert result.valid
    assert result.discount_amount == Decimal("20.00")
    assert Decimal("100") - result.discount_amount == Decimal("80")


def test_fixed_amount_discount(db_session, make_promo):
    make_promo(code="FIVE", discount_type=DiscountType.fixed_amount, value="5")
    assert _eval(db_session, "FIVE", 42).discount_amount == Decimal("5.00")


def test_code_lookup_is_case_insensitive(db_session, make_promo):
    make_promo(code="  welcome ")
    assert _eval(db_session, "WeLcOmE", 50).valid


def test_duplicate_code_rejected_case_insensitively(db_session, make_promo):
    make_promo(code="DUP")
    with pytest.raises(ValidationFailure):
        make_promo(code="dup")


def test_percentage_above_100_rejected(db_session, make_promo):
    with pytest.raises(ValidationFailure):
        make_promo(code="TOO", value="150")


def test_unknown_and_inactive_codes(db_session, admin, make_promo):
    p = make_promo(code="OLD")
    promo.deactivate_promo_code(db_session, admin, promo_id=p.id)

    assert _eval(db_session, "NOPE", 10).reason == "Invalid promo code"
    result = _eval(db_session, "OLD", 10)
    assert not result.valid
    assert "deactivated" in result.reason


def test_validity_window(db_session, make_promo):
    now = utcnow()
    make_promo(code="SOON", start_date=now + timedelta(days=2))
    make_promo(code="GONE", start_date=now - timedelta(days=10), end_date=now - timedelta(days=1))

    assert "not yet valid" in _eval(db_session, "SOON", 10).reason
    assert "expired" in _eval(db_session, "GONE", 10).reason


def test_rules_short_circuit_in_order(db_session, make_promo, make_item):
    """Limite globale avant montant minimum, montant minimum avant utilisateurs."""
    item = make_item()
    p = make_promo(
        code="ORDERED",
        usage_limit=0,
        minimum_order_amount=Decimal("100"),
        users=[PromoUserAssignment(user_id=7)],
        item_ids=[item],
    )

    assert "usage limit" in _eval(db_session, "ORDERED", 10).reason

    p.usage_limit = None
    db_session.commit()
    assert "Minimum order amount" in _eval(db_session, "ORDERED", 10).reason
    assert "registered user" in _eval(db_session, "ORDERED", 200).reason
    assert "not available for your account" in _eval(db_session, "ORDERED", 200, user_id=8).reason
    assert "requires specific products" in _eval(db_session, "ORDERED", 200, user_id=7).reason
    assert "None of the products" in _eval(db_session, "ORDERED", 200, user_id=7, item_ids=[item + 1000]).reason
    assert _eval(db_session, "ORDERED", 200, user_id=7, item_ids=[item]).valid


def test_evaluate_is_pure(db_session, make_promo):
    p = make_promo(code="PURE")
    _eval(db_session, "PURE", 10, user_id=1)
    db_session.expire_all()

    assert p.used_count == 0
    assert db_session.execute(select(func.count(PromoCodeUsage.id))).scalar_one() == 0


# ---------- Application dans la commande ----------
@pytest.fixture
def sale(db_session, admin, locations, make_item, stock):
    item = make_item(price="25.00")
    stock(item, locations["warehouse"], 100)

    def _sale(user_id=None, promo_code=None, quantity=4):
        return orders.create_order(
            db_session,
            admin,
            kind=OrderKind.sale,
            lines=[OrderLineInput(item_id=item, quantity=Decimal(quantity), location_id=locations["warehouse"])],
            customer=CustomerInfo(user_id=user_id, name="Jane", email="jane@example.com"),
            promo_code=promo_code,
        )

    return _sale


def test_apply_creates_exactly_one_usage_and_increments_count(db_session, admin, make_promo, sale):
    p = make_promo(code="HALF", value="50", maximum_discount_amount=Decimal("20"))
    order = sale(user_id=5)

    promo.apply_promo_to_order(db_session, admin, order_id=order.id, code="half")
    db_session.expire_all()

    assert order.subtotal == Decimal("100.00")
    assert order.discount_amount == Decimal("20.00")
    assert order.total_amount == Decimal("80.00")
    assert order.promo_code_id == p.id
    assert p.used_count == 1
    usages = db_session.execute(select(PromoCodeUsage)).scalars().all()
    assert [(u.order_id, u.user_id, u.discount_amount) for u in usages] == [(order.id, 5, Decimal("20.00"))]


def test_second_application_on_same_order_is_rejected(db_session, admin, make_promo, sale):
    p = make_promo(code="ONCE")
    order = sale()
    promo.apply_promo_to_order(db_session, admin, order_id=order.id, code="ONCE")

    with pytest.raises(ValidationFailure):
        promo.apply_promo_to_order(db_session, admin, order_id=order.id, code="ONCE")

    db_session.expire_all()
    assert p.used_count == 1


def test_ineligible_promo_leaves_order_untouched(db_session, admin, make_promo, sale):
    make_promo(code="BIG", minimum_order_amount=Decimal("1000"))
    order = sale()

    with pytest.raises(PromoIneligible) as exc:
        promo.apply_promo_to_order(db_session, admin, order_id=order.id, code="BIG")

    assert "Minimum order amount" in exc.value.reason
    db_session.expire_all()
    assert order.promo_code_id is None
    assert order.total_amount == Decimal("100.00")


@pytest.fixture
def web_order(db_session, locations, make_item, stock):
    item = make_item(price="25.00")
    stock(item, locations["online"], 20)

    def _order(scope, user_id=None):
        created = online_orders.process_new_order(
            db_session,
            scope,
            lines=[OrderLineInput(item_id=item, quantity=Decimal(2))],
            customer=CustomerInfo(user_id=user_id, name="Jane", address="2 Quay St"),
        )
        return created.order

    return _order


def test_customer_applies_codes_as_themselves(db_session, customer, make_promo, web_order):
    make_promo(code="VIP", users=[PromoUserAssignment(user_id=5)])
    mine = make_promo(code="MINE", users=[PromoUserAssignment(user_id=42)])
    order = web_order(customer, user_id=42)

    with pytest.raises(PromoIneligible) as exc:
        promo.apply_promo_to_order(db_session, customer, order_id=order.id, code="VIP")
    assert "not available for your account" in exc.value.reason

    promo.apply_promo_to_order(db_session, customer, order_id=order.id, code="MINE")
    db_session.expire_all()
    usages = db_session.execute(select(PromoCodeUsage)).scalars().all()
    assert [(u.promo_code_id, u.user_id) for u in usages] == [(mine.id, 42)]


def test_staff_apply_codes_for_the_order_customer(db_session, online_manager, make_promo, web_order):
    make_promo(code="VIP", users=[PromoUserAssignment(user_id=5)])
    order = web_order(online_manager, user_id=5)

    promo.apply_promo_to_order(db_session, online_manager, order_id=order.id, code="VIP")

    usage = db_session.execute(select(PromoCodeUsage)).scalar_one()
    assert usage.user_id == 5


def test_online_orders_take_codes_from_online_managers_only(db_session, store_manager, customer, make_promo, web_order):
    make_promo(code="WEB")
    order = web_order(customer, user_id=42)

    with pytest.raises(AccessDenied):
        promo.apply_promo_to_order(db_session, store_manager, order_id=order.id, code="WEB")
    with pytest.raises(AccessDenied):
        promo.apply_promo_to_order(db_session, AccessScope(user_id=7, roles=frozenset({Role.customer.value})), order_id=order.id, code="WEB")

    db_session.expire_all()
    assert order.promo_code_id is None


def test_per_user_limit_counts_recorded_usages(db_session, make_promo, sale):
    make_promo(code="PERUSER", usage_limit_per_user=1, users=[PromoUserAssignment(user_id=5)])

    sale(user_id=5, promo_code="PERUSER")
    with pytest.raises(PromoIneligible) as exc:
        sale(user_id=5, promo_code="PERUSER")

    assert "usage limit for this promo code" in exc.value.reason


def test_per_user_limit_only_binds_codes_reserved_to_users(db_session, make_promo, sale):
    """Code public : la limite par utilisateur n'est pas appliquée."""
    p = make_promo(code="PUBLIC", usage_limit_per_user=1)

    sale(user_id=5, promo_code="PUBLIC")
    second = sale(user_id=5, promo_code="PUBLIC")
    db_session.expire_all()

    assert second.promo_code_id == p.id
    assert p.used_count == 2


def test_global_limit_reached_after_applications(db_session, make_promo, sale):
    make_promo(code="TWICE", usage_limit=2)
    sale(promo_code="TWICE")
    sale(promo_code="TWICE")

    with pytest.raises(PromoIneligible):
        sale(promo_code="TWICE")


def test_fixed_discount_never_exceeds_order_amount(db_session, make_promo, sale):
    make_promo(code="HUGE", discount_type=DiscountType.fixed_amount, value="500")
    order = sale(promo_code="HUGE", quantity=1)

    assert order.discount_amount == Decimal("25.00")
    assert order.total_amount == Decimal("0.00")


# ---------- Gestion ----------
class FakeMailer:
    def __init__(self, ok=True):
        self.ok = ok
        self.sent = []

    def send_promo_notification(self, email, name, code, value, discount_type, expiry):
        self.sent.append((email, code))
        return self.ok


@pytest.fixture
def mailer():
    previous = sinks.get_notification_sink()
    fake = FakeMailer()
    sinks.set_notification_sink(fake)
    yield fake
    sinks.set_notification_sink(previous)


def test_assign_users_notifies_after_commit(db_session, admin, make_promo, mailer):
    p = make_promo(code="VIP")
    promo.assign_users(
        db_session,
        admin,
        promo_id=p.id,
        users=[PromoUserAssignment(10, "a@example.com", "A"), PromoUserAssignment(11, None, "B")],
    )
    db_session.expire_all()

    assert mailer.sent == [("a@example.com", "VIP")]
    notified = {u.user_id: u.is_notified for u in p.users}
    assert notified == {10: True, 11: False}


def test_failed_notification_never_blocks_assignment(db_session, admin, make_promo, mailer):
    mailer.ok = False
    p = make_promo(code="VIP2")
    promo.assign_users(db_session, admin, promo_id=p.id, users=[PromoUserAssignment(10, "a@example.com")])
    db_session.expire_all()

    assert [(u.user_id, u.is_notified) for u in p.users] == [(10, False)]


def test_usage_report_groups_by_user(db_session, admin, make_promo, sale):
    p = make_promo(code="REPORT", usage_limit_per_user=2)
    sale(user_id=5, promo_code="REPORT")
    sale(user_id=5, promo_code="REPORT")
    sale(user_id=6, promo_code="REPORT")

    report = promo.promo_usage_report(db_session, admin, promo_id=p.id)

    assert report["used_count"] == 3
    by_user = {u["user_id"]: u for u in report["users"]}
    assert by_user[5]["usage_count"] == 2
    assert by_user[5]["limit_reached"] is True
    assert by_user[6]["limit_reached"] is False


def test_customers_cannot_manage_promo_codes(db_session, customer):
    with pytest.raises(AccessDenied):
        promo.create_promo_code(
            db_session,
            customer,
            code="NOPE",
            discount_type=DiscountType.fixed_amount,
            discount_value=Decimal("1"),
            start_date=utcnow(),
        )
