import os
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backoffice.app.core.config import ONLINE_STORE_NAME
from backoffice.app.db.base import Base
from backoffice.app.db.models import models_v1  # noqa: F401  (tables)
from backoffice.app.db.models.core_types import LocationType, Role
from backoffice.app.db.models.models_v1 import Item, Location
from backoffice.services import inventory, sinks
from backoffice.services.scope import AccessScope

# Postgres pour les tests de concurrence, sqlite en mémoire sinon
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")
IS_POSTGRES = TEST_DATABASE_URL.startswith("postgresql")


def pytest_configure(config):
    config.addinivalue_line("markers", "postgres: needs a real PostgreSQL (row locks, threads)")


def pytest_collection_modifyitems(config, items):
    if IS_POSTGRES:
        return
    skip = pytest.mark.skip(reason="TEST_DATABASE_URL is not PostgreSQL")
    for item in items:
        if "postgres" in item.keywords:
            item.add_marker(skip)


@pytest.fixture(scope="session")
def engine():
    if IS_POSTGRES:
        eng = create_engine(TEST_DATABASE_URL, pool_pre_ping=True)
    else:
        eng = create_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    """
    Schéma recréé pour chaque test : aucune donnée ne fuit d'un test à
    l'autre, même après commit() (les services commitent eux-mêmes).
    """
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


class RecordingAuditSink:
    def __init__(self):
        self.entries = []

    def log(self, entity, entity_id, action, before=None, after=None, actor_user_id=None):
        self.entries.append((entity, entity_id, action, before, after, actor_user_id))

    def actions(self, entity=None):
        return [e[2] for e in self.entries if entity is None or e[0] == entity]


@pytest.fixture(autouse=True)
def audit_sink():
    previous = sinks.get_audit_sink()
    sink = RecordingAuditSink()
    sinks.set_audit_sink(sink)
    try:
        yield sink
    finally:
        sinks.set_audit_sink(previous)


# ---------- Scopes ----------
@pytest.fixture
def admin():
    return AccessScope(user_id=1, roles=frozenset({Role.super_admin.value}))


@pytest.fixture
def locations(db_session):
    """warehouse, store, online (nom configuré pour la boutique en ligne)."""
    rows = {
        "warehouse": Location(name="Main Warehouse", type=LocationType.warehouse),
        "store": Location(name="Downtown Store", type=LocationType.store),
        "online": Location(name=ONLINE_STORE_NAME, type=LocationType.online),
    }
    db_session.add_all(rows.values())
    db_session.commit()
    return {k: v.id for k, v in rows.items()}


@pytest.fixture
def store_manager(locations):
    return AccessScope(user_id=2, roles=frozenset({Role.store_manager.value}), assigned_location_id=locations["store"])


@pytest.fixture
def online_manager(locations):
    return AccessScope(user_id=3, roles=frozenset({Role.store_manager.value}), assigned_location_id=locations["online"])


@pytest.fixture
def customer():
    return AccessScope(user_id=42, roles=frozenset({Role.customer.value}))


# ---------- Données ----------
@pytest.fixture
def make_item(db_session):
    counter = {"n": 0}

    def _make(name=None, *, price="10.00", always_available=False, unit="piece"):
        counter["n"] += 1
        item = Item(
            sku=f"TEST-SKU-{counter['n']}",
            name=name or f"Test item {counter['n']}",
            unit=unit,
            price=Decimal(price),
            always_available=always_available,
            active=True,
        )
        db_session.add(item)
        db_session.commit()
        return item.id

    return _make


@pytest.fixture
def stock(db_session):
    """Pose une quantité initiale (mouvement RECEIPT) puis commit."""

    def _stock(item_id, location_id, quantity):
        inventory.adjust(db_session, item_id=item_id, location_id=location_id, delta=Decimal(str(quantity)))
        db_session.commit()

    return _stock


@pytest.fixture
def qty(db_session):
    """Quantité en base, relue hors cache de session."""

    def _qty(item_id, location_id):
        db_session.expire_all()
        return inventory.current_quantity(db_session, item_id, location_id)

    return _qty
