from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from backoffice.app.core.timeutils import utcnow
from backoffice.app.db.models.core_types import OrderChannel
from backoffice.app.db.models.models_v1 import SequenceCounter

log = logging.getLogger(__name__)


def next_value(db: Session, name: str) -> int:
    """
    Incrémente le compteur `name` sous verrou (SELECT ... FOR UPDATE).

    Jamais de count()+1 / max()+1 : le compteur verrouillé est la seule
    source de vérité. Pas de commit ici, la valeur n'est consommée que si
    la transaction de l'appelant commit.

    Premier usage : insertion du compteur. Si une autre transaction l'a
    inséré en même temps, le flush lève IntegrityError -> conflit au commit.
    """
    counter = (
        db.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == name)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        .scalar_one_or_none()
    )
    if counter is None:
        counter = SequenceCounter(name=name, current_value=0)
        db.add(counter)
        db.flush()

    counter.current_value += 1
    db.flush()
    log.debug("sequence %s -> %s", name, counter.current_value)
    return int(counter.current_value)


def next_order_number(db: Session, channel: OrderChannel, *, at: datetime | None = None) -> str:
    """PO202501150001 : préfixe canal + date du jour + compteur journalier sur 4 chiffres."""
    day = (at or utcnow()).strftime("%Y%m%d")
    prefix = f"{channel.value}{day}"
    n = next_value(db, prefix)
    return f"{prefix}{n:04d}"
