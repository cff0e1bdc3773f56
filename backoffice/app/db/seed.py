from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import select

from backoffice.app.core.config import ONLINE_STORE_NAME
from backoffice.app.core.logging_config import configure_logging
from backoffice.app.db.session import SessionLocal
from backoffice.app.db.models.models_v1 import Item, Location
from backoffice.app.db.models.core_types import LocationType

log = logging.getLogger(__name__)

LOCATIONS = [
    ("Main Warehouse", LocationType.warehouse),
    ("Downtown Store", LocationType.store),
    (ONLINE_STORE_NAME, LocationType.online),
]

ITEMS = [
    # sku, name, unit, price, always_available
    ("WOOD-OAK", "Oak plank", "piece", Decimal("12.50"), False),
    ("SCREW-40", "Wood screw 40mm", "box", Decimal("4.20"), False),
    ("VARNISH", "Varnish 1L", "can", Decimal("18.00"), False),
    ("TABLE-OAK", "Oak coffee table", "piece", Decimal("240.00"), False),
    ("GIFT-WRAP", "Gift wrapping", "service", Decimal("5.00"), True),
]


def run_seed():
    db = SessionLocal()
    try:
        for name, type_ in LOCATIONS:
            if not db.scalar(select(Location).where(Location.name == name)):
                db.add(Location(name=name, type=type_, active=True))

        for sku, name, unit, price, always in ITEMS:
            if not db.scalar(select(Item).where(Item.sku == sku)):
                db.add(Item(sku=sku, name=name, unit=unit, price=price, always_available=always, active=True))

        db.commit()
        log.info("SEED OK: %s locations, %s items", len(LOCATIONS), len(ITEMS))
    finally:
        db.close()


if __name__ == "__main__":
    configure_logging()
    run_seed()
