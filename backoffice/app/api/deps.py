from __future__ import annotations

from typing import Generator

from fastapi import Header, HTTPException

from backoffice.app.db.session import SessionLocal
from backoffice.services.scope import AccessScope


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _parse_int(value: str | None, header: str) -> int | None:
    if value is None or not value.strip():
        return None
    try:
        return int(value.strip())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {header} header")


def get_scope(
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    x_user_roles: str | None = Header(default=None, alias="X-User-Roles"),
    x_assigned_location_id: str | None = Header(default=None, alias="X-Assigned-Location-Id"),
) -> AccessScope:
    """
    Identité posée par le provider externe (gateway d'auth) devant l'API.
    Sans en-têtes : visiteur anonyme (invité).
    """
    roles = frozenset(r.strip() for r in (x_user_roles or "").split(",") if r.strip())
    return AccessScope(
        user_id=_parse_int(x_user_id, "X-User-Id"),
        roles=roles,
        assigned_location_id=_parse_int(x_assigned_location_id, "X-Assigned-Location-Id"),
    )


def require_idempotency_key(idempotency_key: str | None) -> str:
    if not idempotency_key or not idempotency_key.strip():
        raise HTTPException(status_code=400, detail="Missing Idempotency-Key header")
    return idempotency_key.strip()
