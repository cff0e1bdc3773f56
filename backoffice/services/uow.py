from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, Iterator

from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from backoffice.services.errors import BackofficeError, ConcurrencyConflict, InternalFailure

log = logging.getLogger(__name__)

# lock_not_available, serialization_failure, deadlock_detected
_CONFLICT_SQLSTATES = {"55P03", "40001", "40P01"}


def _is_lock_failure(exc: DBAPIError) -> bool:
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _CONFLICT_SQLSTATES:
        return True
    # sqlite
    return "database is locked" in str(orig)


class UnitOfWork:
    """Une opération métier = un commit. Les effets externes passent après."""

    def __init__(self, db: Session):
        self.db = db
        self._after_commit: list[tuple[Callable, tuple, dict]] = []

    def after_commit(self, fn: Callable, *args, **kwargs) -> None:
        self._after_commit.append((fn, args, kwargs))

    def _run_after_commit(self) -> None:
        for fn, args, kwargs in self._after_commit:
            try:
                fn(*args, **kwargs)
            except Exception:
                # audit / notification : best effort, jamais remonté
                log.warning("post-commit callback %s failed", getattr(fn, "__name__", fn), exc_info=True)


@contextmanager
def atomic(db: Session, *, label: str = "operation") -> Iterator[UnitOfWork]:
    """
    Enveloppe une opération métier :
    - commit à la sortie, puis callbacks post-commit
    - rollback sur toute erreur
    - erreurs du store traduites en ConcurrencyConflict / InternalFailure
    Pas de retry automatique.
    """
    uow = UnitOfWork(db)
    try:
        yield uow
        db.commit()
    except BackofficeError as exc:
        db.rollback()
        log.info("%s rejected: %s", label, exc.message)
        raise
    except StaleDataError as exc:
        db.rollback()
        log.warning("%s conflict (stale version): %s", label, exc)
        raise ConcurrencyConflict("The record was modified by another request, reload and retry") from exc
    except IntegrityError as exc:
        db.rollback()
        log.warning("%s conflict (integrity): %s", label, exc.orig)
        raise ConcurrencyConflict("A concurrent request created the same record, reload and retry") from exc
    except DBAPIError as exc:
        db.rollback()
        if _is_lock_failure(exc):
            log.warning("%s conflict (lock): %s", label, exc.orig)
            raise ConcurrencyConflict("The record is locked by another request, retry") from exc
        log.exception("%s failed", label)
        raise InternalFailure() from exc
    except SQLAlchemyError as exc:
        db.rollback()
        log.exception("%s failed", label)
        raise InternalFailure() from exc
    except Exception:
        db.rollback()
        raise

    uow._run_after_commit()
