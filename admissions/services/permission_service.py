"""
Permission Service — role-backed capability sets with a TTL cache.

An actor's capabilities are the union of the codenames granted by every
role assigned to it. Evaluation is deny-by-default: an actor with no role
assignments holds no capabilities.

Writes (create_role, assign_role) own their commit and invalidate the
cache for the affected actors.
"""

from __future__ import annotations

import logging
import threading
import time

from flask import current_app, has_app_context
from sqlalchemy import select

from admissions.models import db
from admissions.models.audit import write_audit
from admissions.models.role import ActorRole, Role, RolePermission

logger = logging.getLogger(__name__)

CACHE_TTL = 300  # 5 minutes

# Cache key: actor_id
_permission_cache: dict[str, tuple[float, frozenset[str]]] = {}
_cache_lock = threading.Lock()


def _ttl() -> int:
    if has_app_context():
        return int(current_app.config.get("PERMISSION_CACHE_TTL", CACHE_TTL))
    return CACHE_TTL


def _get_cached(actor_id: str) -> frozenset[str] | None:
    with _cache_lock:
        entry = _permission_cache.get(actor_id)
        if entry is None:
            return None
        cached_at, perms = entry
        if time.time() - cached_at > _ttl():
            del _permission_cache[actor_id]
            return None
        return perms


def _set_cached(actor_id: str, perms: frozenset[str]) -> None:
    with _cache_lock:
        _permission_cache[actor_id] = (time.time(), perms)


def invalidate_cache(actor_id: str) -> None:
    with _cache_lock:
        _permission_cache.pop(actor_id, None)


def invalidate_all_cache() -> None:
    with _cache_lock:
        _permission_cache.clear()


# ── Queries ───────────────────────────────────────────────────────────────────


def get_actor_permissions(actor_id: str | None) -> frozenset[str]:
    """Return the capability codenames held by *actor_id* (cached)."""
    if not actor_id:
        return frozenset()

    cached = _get_cached(actor_id)
    if cached is not None:
        return cached

    stmt = (
        select(RolePermission.codename)
        .join(ActorRole, ActorRole.role_id == RolePermission.role_id)
        .where(ActorRole.actor_id == actor_id)
    )
    perms = frozenset(db.session.execute(stmt).scalars().all())
    _set_cached(actor_id, perms)
    return perms


def list_roles() -> list[dict]:
    roles = db.session.execute(select(Role).order_by(Role.name)).scalars().all()
    return [r.to_dict(include_actors=True) for r in roles]


# ── Writes ────────────────────────────────────────────────────────────────────


def create_role(
    name: str,
    permissions: list[str] | None = None,
    description: str | None = None,
    actor_id: str | None = None,
) -> tuple[dict, None] | tuple[None, dict]:
    """Create a role with its capability codenames.

    Returns:
        (role_dict, None) on success.
        (None, {"error": ..., "status": int}) on validation failure.
    """
    if name is not None and not isinstance(name, str):
        return None, {"error": "Field 'name' must be a string.", "status": 400, "field": "name"}
    name = (name or "").strip()
    if not name:
        return None, {"error": "Field 'name' is required.", "status": 400, "field": "name"}
    if len(name) > 100:
        return None, {"error": "Role name must be at most 100 characters.", "status": 400, "field": "name"}
    if permissions is not None and not isinstance(permissions, list):
        return None, {"error": "Field 'permissions' must be a list.", "status": 400, "field": "permissions"}

    exists = db.session.execute(select(Role.id).where(Role.name == name)).first()
    if exists:
        return None, {"error": f"Role '{name}' already exists.", "status": 409, "field": "name"}

    role = Role(name=name, description=description)
    for codename in sorted({str(p).strip() for p in permissions or [] if str(p).strip()}):
        role.role_permissions.append(RolePermission(codename=codename))
    db.session.add(role)
    db.session.flush()
    write_audit(
        entity_type="role", entity_id=role.id, action="role.create",
        actor=actor_id, diff={"name": name, "permissions": role.codenames},
    )
    db.session.commit()
    invalidate_all_cache()

    logger.info("Role created", extra={"actor": actor_id})
    return role.to_dict(include_actors=True), None


def assign_role(
    role_id: int,
    actor_id: str,
    assigned_by: str | None = None,
) -> tuple[dict, None] | tuple[None, dict]:
    """Assign a role to an actor. Re-assigning is a no-op success."""
    if actor_id is not None and not isinstance(actor_id, str):
        return None, {"error": "Field 'actor_id' must be a string.", "status": 400, "field": "actor_id"}
    actor_id = (actor_id or "").strip()
    if not actor_id:
        return None, {"error": "Field 'actor_id' is required.", "status": 400, "field": "actor_id"}

    role = db.session.get(Role, role_id)
    if role is None:
        return None, {"error": "Role not found.", "status": 404}

    existing = db.session.execute(
        select(ActorRole).where(ActorRole.actor_id == actor_id, ActorRole.role_id == role_id)
    ).scalar_one_or_none()
    if existing is None:
        db.session.add(ActorRole(actor_id=actor_id, role_id=role_id, assigned_by=assigned_by))
        write_audit(
            entity_type="role", entity_id=role_id, action="role.assign",
            actor=assigned_by, diff={"actor_id": actor_id},
        )
        db.session.commit()
    invalidate_cache(actor_id)

    return {
        "role": role.to_dict(include_actors=True),
        "actor_id": actor_id,
        "permissions": sorted(get_actor_permissions(actor_id)),
    }, None
