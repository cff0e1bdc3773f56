from __future__ import annotations

from dataclasses import dataclass, field

from backoffice.app.db.models.core_types import Role
from backoffice.services.errors import AccessDenied


@dataclass(frozen=True)
class AccessScope:
    """
    Périmètre d'accès calculé une fois par requête (identité fournie par
    le provider externe) puis passé à chaque service.
    """

    user_id: int | None = None
    roles: frozenset[str] = field(default_factory=frozenset)
    assigned_location_id: int | None = None

    @classmethod
    def system(cls) -> "AccessScope":
        """Scope interne (seed, scripts) : équivalent SuperAdmin."""
        return cls(user_id=None, roles=frozenset({Role.super_admin.value}))

    def has_role(self, role: Role) -> bool:
        return role.value in self.roles

    @property
    def is_super_admin(self) -> bool:
        return self.has_role(Role.super_admin)

    @property
    def is_store_manager(self) -> bool:
        return self.has_role(Role.store_manager)

    @property
    def is_customer(self) -> bool:
        return self.has_role(Role.customer)

    @property
    def is_staff(self) -> bool:
        return self.is_super_admin or self.is_store_manager

    def location_filter(self) -> int | None:
        """None = pas de restriction, sinon la seule location visible."""
        if self.is_super_admin:
            return None
        if self.is_store_manager and self.assigned_location_id is not None:
            return self.assigned_location_id
        raise AccessDenied("No location assigned to this user")

    def can_access_location(self, location_id: int) -> bool:
        if self.is_super_admin:
            return True
        return self.is_store_manager and self.assigned_location_id == location_id

    def require_location(self, location_id: int) -> None:
        if not self.can_access_location(location_id):
            raise AccessDenied(f"Access denied to location {location_id}")

    def require_staff(self) -> None:
        if not self.is_staff:
            raise AccessDenied("Staff role required")

    def is_online_manager(self, online_location_id: int | None) -> bool:
        if self.is_super_admin:
            return True
        return (
            self.is_store_manager
            and online_location_id is not None
            and self.assigned_location_id == online_location_id
        )

    def require_online_manager(self, online_location_id: int | None) -> None:
        if not self.is_online_manager(online_location_id):
            raise AccessDenied("Only online store managers can manage online orders")
