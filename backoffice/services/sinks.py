from __future__ import annotations

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Protocol

from sqlalchemy.orm import Session

from backoffice.app.db.models.models_v1 import AuditLog

log = logging.getLogger(__name__)


# ---------- Interfaces ----------
class AuditSink(Protocol):
    def log(
        self,
        entity: str,
        entity_id: Any,
        action: str,
        before: dict | None = None,
        after: dict | None = None,
        actor_user_id: int | None = None,
    ) -> None: ...


class NotificationSink(Protocol):
    def send_promo_notification(
        self,
        email: str,
        name: str | None,
        code: str,
        value: Decimal,
        discount_type: str,
        expiry: datetime | None,
    ) -> bool: ...


def _to_json(payload: dict | None) -> str | None:
    if payload is None:
        return None
    return json.dumps(payload, default=str, sort_keys=True)


# ---------- Implémentations ----------
class LoggingAuditSink:
    def log(self, entity, entity_id, action, before=None, after=None, actor_user_id=None) -> None:
        log.info(
            "audit %s %s %s actor=%s before=%s after=%s",
            entity,
            entity_id,
            action,
            actor_user_id,
            _to_json(before),
            _to_json(after),
        )


class DbAuditSink:
    """Écrit dans audit_log avec sa propre session (jamais celle de l'opération)."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def log(self, entity, entity_id, action, before=None, after=None, actor_user_id=None) -> None:
        db = self.session_factory()
        try:
            db.add(
                AuditLog(
                    actor_id=actor_user_id,
                    action=action,
                    entity_type=entity,
                    entity_id=str(entity_id),
                    before=_to_json(before),
                    after=_to_json(after),
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class LoggingNotificationSink:
    """Pas d'envoi réel : rien n'est marqué notifié."""

    def send_promo_notification(self, email, name, code, value, discount_type, expiry) -> bool:
        log.info("promo notification not sent (no mailer configured): %s -> %s", code, email)
        return False


# ---------- Registre ----------
_audit_sink: AuditSink = LoggingAuditSink()
_notification_sink: NotificationSink = LoggingNotificationSink()


def get_audit_sink() -> AuditSink:
    return _audit_sink


def set_audit_sink(sink: AuditSink) -> None:
    global _audit_sink
    _audit_sink = sink


def get_notification_sink() -> NotificationSink:
    return _notification_sink


def set_notification_sink(sink: NotificationSink) -> None:
    global _notification_sink
    _notification_sink = sink


def audit(entity: str, entity_id, action: str, *, before=None, after=None, actor_user_id=None) -> None:
    """Appelé en post-commit via UnitOfWork.after_commit."""
    get_audit_sink().log(entity, entity_id, action, before=before, after=after, actor_user_id=actor_user_id)
