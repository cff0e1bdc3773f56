"""
Erreurs métier du back-office.

Chaque exception porte un `code` stable (utilisé tel quel dans les réponses
HTTP) et des données structurées, pour que l'appelant n'ait jamais à
parser un message.

    BackofficeError
    +-- ValidationFailure
    |   +-- EntityNotFound
    |   +-- IllegalTransition
    |   +-- InsufficientStock
    |   +-- PromoIneligible
    +-- AccessDenied
    +-- ConcurrencyConflict
    +-- InternalFailure
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True)
class Shortage:
    item_id: int
    location_id: int
    required: Decimal
    available: Decimal

    def as_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "location_id": self.location_id,
            "required": str(self.required),
            "available": str(self.available),
        }


class BackofficeError(Exception):
    code: str = "backoffice_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def details(self) -> dict:
        return {}


class ValidationFailure(BackofficeError):
    """Entrée invalide : aucune mutation n'a eu lieu."""

    code = "validation_error"


class EntityNotFound(ValidationFailure):
    code = "not_found"

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class IllegalTransition(ValidationFailure):
    code = "illegal_transition"

    def __init__(self, entity: str, entity_id, status: str, action: str):
        self.entity = entity
        self.entity_id = entity_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} {entity} {entity_id} in status {status}")

    def details(self) -> dict:
        return {"status": self.status, "action": self.action}


class InsufficientStock(ValidationFailure):
    code = "insufficient_stock"

    def __init__(self, shortages: list[Shortage]):
        self.shortages = list(shortages)
        first = self.shortages[0]
        message = (
            f"Insufficient stock for item {first.item_id} at location {first.location_id} "
            f"(required={first.required}, available={first.available})"
        )
        if len(self.shortages) > 1:
            message += f" and {len(self.shortages) - 1} more line(s)"
        super().__init__(message)

    def details(self) -> dict:
        return {"shortages": [s.as_dict() for s in self.shortages]}


class PromoIneligible(ValidationFailure):
    code = "promo_ineligible"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)

    def details(self) -> dict:
        return {"reason": self.reason}


class AccessDenied(BackofficeError):
    code = "access_denied"


class ConcurrencyConflict(BackofficeError):
    """L'entité a bougé entre-temps : relire puis réessayer."""

    code = "conflict"


class InternalFailure(BackofficeError):
    code = "internal_error"

    def __init__(self, message: str = "Internal failure"):
        super().__init__(message)
