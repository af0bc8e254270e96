from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.authz.catalog import ADMIN_ROLE_KEY, ALL_PERMISSIONS, PermissionKey, normalize_role_key, to_permissions
from app.authz.gate import has_permission
from app.authz.models import DirectoryUser, Role
from app.metrics import observe_role_cache_hit, observe_role_cache_miss


logger = logging.getLogger("app.authz.resolver")

# Request-scoped: build one per request (or per batch) and discard it.
PermissionCache = dict[str, frozenset[PermissionKey]]

_ALL = frozenset(ALL_PERMISSIONS)


def _load_role(session: Session, role_key: str) -> Role | None:
    role = session.scalar(select(Role).where(Role.key == role_key))
    if role is not None:
        return role
    try:
        role_id = uuid.UUID(role_key)
    except ValueError:
        return None
    return session.get(Role, role_id)


def resolve_role_permissions(
    session: Session,
    role_key: str | None,
    cache: PermissionCache | None = None,
) -> frozenset[PermissionKey]:
    key = normalize_role_key(role_key)
    if not key:
        return frozenset()
    if key == ADMIN_ROLE_KEY:
        return _ALL

    if cache is not None and key in cache:
        observe_role_cache_hit()
        return cache[key]
    observe_role_cache_miss()

    role = _load_role(session, key)
    if role is None:
        logger.info("authz.role_unknown", extra={"role_key": key})
        permissions: frozenset[PermissionKey] = frozenset()
    elif normalize_role_key(role.key) == ADMIN_ROLE_KEY:
        permissions = _ALL
    else:
        permissions = frozenset(to_permissions(role.permissions))

    if cache is not None:
        cache[key] = permissions
    return permissions


def find_users_with_permission(
    session: Session,
    required: Iterable[str],
    *,
    exclude_user_id: str | None = None,
    cache: PermissionCache | None = None,
) -> list[str]:
    """Ids of active directory users whose role grants any of ``required``."""
    required_list = list(required)
    shared = cache if cache is not None else {}
    users = session.scalars(
        select(DirectoryUser).where(DirectoryUser.active.is_(True)).order_by(DirectoryUser.id.asc())
    ).all()

    matches: list[str] = []
    for user in users:
        if exclude_user_id and user.id == exclude_user_id:
            continue
        granted = resolve_role_permissions(session, user.role, shared)
        if has_permission(granted, required_list):
            matches.append(user.id)
    return matches


def list_active_user_ids(session: Session) -> list[str]:
    return list(
        session.scalars(
            select(DirectoryUser.id).where(DirectoryUser.active.is_(True)).order_by(DirectoryUser.id.asc())
        ).all()
    )


def resolve_role_key(session: Session, role_input: str | None) -> str:
    """Map an administrator's role entry (key, display name or id) to a stored role key.

    Unmatched input is kept in normalized form; such users resolve to no permissions.
    """
    trimmed = (role_input or "").strip()
    key = normalize_role_key(trimmed)
    if not key or key == ADMIN_ROLE_KEY:
        return key
    role = session.scalar(select(Role).where(Role.key == key))
    if role is None:
        role = session.scalar(select(Role).where(Role.name == trimmed))
    if role is None:
        try:
            role = session.get(Role, uuid.UUID(trimmed))
        except ValueError:
            role = None
    return normalize_role_key(role.key) if role is not None else key
