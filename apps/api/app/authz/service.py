from __future__ import annotations

import logging
import re
import uuid

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.authz.catalog import ADMIN_ROLE_KEY, ALL_PERMISSIONS, PermissionKey, normalize_permission_update, normalize_role_key
from app.authz.models import DirectoryUser, Role
from app.authz.resolver import PermissionCache, resolve_role_key, resolve_role_permissions
from app.authz.schemas import (
    DirectoryUserCreate,
    DirectoryUserRead,
    DirectoryUserUpdate,
    RoleCreate,
    RoleRead,
    RoleUpdate,
)


logger = logging.getLogger("app.authz.roles")

_NON_SLUG = re.compile(r"[^a-z0-9]+")


def to_role_key(name: str) -> str:
    return _NON_SLUG.sub("-", name.strip().lower()).strip("-")


class RoleAdminService:
    def create_role(self, session: Session, dto: RoleCreate) -> RoleRead:
        name = dto.name.strip()
        key = to_role_key(name)
        if not name or not key:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="role name is invalid")

        existing = session.scalar(select(Role).where(Role.key == key))
        if existing is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="role already exists")

        description = dto.description.strip() if dto.description and dto.description.strip() else None
        role = Role(key=key, name=name, description=description, permissions=[])
        session.add(role)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="role already exists")
        session.refresh(role)
        logger.info("authz.role_created", extra={"role_key": key})
        return self._to_read(role)

    def list_roles(self, session: Session) -> list[RoleRead]:
        rows = session.scalars(select(Role).order_by(Role.name.asc())).all()
        return [self._to_read(row) for row in rows]

    def update_role(self, session: Session, role_id: uuid.UUID, dto: RoleUpdate) -> RoleRead:
        fields = dto.model_dump(exclude_unset=True)
        updates: dict[str, object] = {}
        if fields.get("permissions") is not None:
            updates["permissions"] = [str(permission) for permission in normalize_permission_update(dto.permissions)]
        if isinstance(fields.get("description"), str):
            updates["description"] = fields["description"].strip()
        if not updates:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="no updates provided")

        role = session.get(Role, role_id)
        if role is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="role not found")
        if normalize_role_key(role.key) == ADMIN_ROLE_KEY:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin role permissions are locked")

        for name, value in updates.items():
            setattr(role, name, value)
        session.commit()
        session.refresh(role)
        logger.info("authz.role_updated", extra={"role_key": role.key})
        return self._to_read(role)

    def _to_read(self, role: Role) -> RoleRead:
        if normalize_role_key(role.key) == ADMIN_ROLE_KEY:
            permissions = [str(permission) for permission in ALL_PERMISSIONS]
        else:
            permissions = [value for value in (role.permissions or []) if isinstance(value, str)]
        return RoleRead(
            id=role.id,
            key=role.key,
            name=role.name,
            description=role.description,
            permissions=permissions,
            created_at=role.created_at,
        )


class DirectoryAdminService:
    """Administrator view of the user directory."""

    def list_users(self, session: Session) -> list[DirectoryUserRead]:
        rows = session.scalars(
            select(DirectoryUser).order_by(DirectoryUser.full_name.asc(), DirectoryUser.id.asc())
        ).all()
        # Users share a handful of roles; each role is read once per listing.
        cache: PermissionCache = {}
        return [self._to_read(row, resolve_role_permissions(session, row.role, cache)) for row in rows]

    def create_user(self, session: Session, dto: DirectoryUserCreate) -> DirectoryUserRead:
        full_name = dto.full_name.strip()
        role_key = resolve_role_key(session, dto.role)
        if not full_name or not role_key:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="full name and role are required",
            )
        user_id = (dto.id or "").strip() or uuid.uuid4().hex
        email = str(dto.email).strip()

        if session.get(DirectoryUser, user_id) is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="user id already exists")
        self._ensure_email_free(session, email)

        record = DirectoryUser(id=user_id, full_name=full_name, email=email, role=role_key, active=dto.active)
        session.add(record)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="user id already exists")
        session.refresh(record)
        logger.info("authz.user_created", extra={"entity_id": record.id, "role_key": role_key})
        return self._to_read(record, resolve_role_permissions(session, role_key, {}))

    def update_user(self, session: Session, user_id: str, dto: DirectoryUserUpdate) -> DirectoryUserRead:
        fields = dto.model_dump(exclude_unset=True)
        updates: dict[str, object] = {}
        if fields.get("full_name") is not None:
            updates["full_name"] = fields["full_name"].strip()
        if fields.get("email") is not None:
            updates["email"] = str(fields["email"]).strip()
        if fields.get("role") is not None:
            updates["role"] = resolve_role_key(session, fields["role"])
        if fields.get("active") is not None:
            updates["active"] = fields["active"]
        if not updates:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="no updates provided")
        if updates.get("full_name") == "" or updates.get("role") == "":
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="full name and role cannot be blank",
            )

        record = session.get(DirectoryUser, user_id)
        if record is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")
        if "email" in updates:
            self._ensure_email_free(session, str(updates["email"]), exclude_user_id=record.id)

        for name, value in updates.items():
            setattr(record, name, value)
        session.commit()
        session.refresh(record)
        logger.info(
            "authz.user_updated",
            extra={"entity_id": record.id, "role_key": record.role, "status": "active" if record.active else "inactive"},
        )
        return self._to_read(record, resolve_role_permissions(session, record.role, {}))

    def _ensure_email_free(self, session: Session, email: str, exclude_user_id: str | None = None) -> None:
        query = select(DirectoryUser.id).where(func.lower(DirectoryUser.email) == email.lower())
        if exclude_user_id is not None:
            query = query.where(DirectoryUser.id != exclude_user_id)
        taken = session.scalar(query)
        if taken is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="email already exists")

    def _to_read(self, record: DirectoryUser, permissions: frozenset[PermissionKey]) -> DirectoryUserRead:
        return DirectoryUserRead(
            id=record.id,
            full_name=record.full_name or "",
            email=record.email,
            role=record.role or "",
            active=record.active is not False,
            permissions=[str(permission) for permission in ALL_PERMISSIONS if permission in permissions],
            created_at=record.created_at,
        )


role_admin_service = RoleAdminService()
directory_admin_service = DirectoryAdminService()
