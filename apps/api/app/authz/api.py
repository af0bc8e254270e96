from __future__ import annotations

import logging
import secrets
import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.errors import error_response
from app.authz.catalog import PermissionKey
from app.authz.gate import accessible_sections, first_accessible_path
from app.authz.models import DirectoryUser
from app.authz.schemas import (
    DirectoryUserCreate,
    DirectoryUserRead,
    DirectoryUserUpdate,
    MeRead,
    NavSectionRead,
    RoleCreate,
    RoleRead,
    RoleUpdate,
    SessionExchangeRequest,
    SessionRead,
)
from app.authz.service import directory_admin_service, role_admin_service
from app.core.auth import get_authed_user, issue_session_token
from app.core.config import get_settings
from app.core.database import get_db
from app.core.rbac import require_permissions
from app.platform.security.context import AuthedUser


logger = logging.getLogger("app.authz.api")

admin_router = APIRouter(prefix="/api/admin", tags=["admin"])
me_router = APIRouter(prefix="/api", tags=["auth"])
session_router = APIRouter(prefix="/api/auth", tags=["auth"])

_LOCAL_ENVS = {"local", "dev", "development", "test"}


@admin_router.post("/roles", response_model=RoleRead, status_code=status.HTTP_201_CREATED)
def create_role(
    request: Request,
    dto: RoleCreate,
    db: Session = Depends(get_db),
    _user: AuthedUser = Depends(require_permissions(PermissionKey.ADMIN)),
) -> RoleRead | JSONResponse:
    try:
        return role_admin_service.create_role(db, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="role_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@admin_router.get("/roles", response_model=list[RoleRead])
def list_roles(
    db: Session = Depends(get_db),
    _user: AuthedUser = Depends(require_permissions(PermissionKey.ADMIN)),
) -> list[RoleRead]:
    return role_admin_service.list_roles(db)


@admin_router.patch("/roles/{role_id}", response_model=RoleRead)
def update_role(
    request: Request,
    role_id: uuid.UUID,
    dto: RoleUpdate,
    db: Session = Depends(get_db),
    _user: AuthedUser = Depends(require_permissions(PermissionKey.ADMIN)),
) -> RoleRead | JSONResponse:
    try:
        return role_admin_service.update_role(db, role_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="role_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@admin_router.get("/users", response_model=list[DirectoryUserRead])
def list_users(
    response: Response,
    db: Session = Depends(get_db),
    _user: AuthedUser = Depends(require_permissions(PermissionKey.ADMIN)),
) -> list[DirectoryUserRead]:
    response.headers["Cache-Control"] = "no-store"
    return directory_admin_service.list_users(db)


@admin_router.post("/users", response_model=DirectoryUserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    request: Request,
    dto: DirectoryUserCreate,
    db: Session = Depends(get_db),
    _user: AuthedUser = Depends(require_permissions(PermissionKey.ADMIN)),
) -> DirectoryUserRead | JSONResponse:
    try:
        return directory_admin_service.create_user(db, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="user_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@admin_router.patch("/users/{user_id}", response_model=DirectoryUserRead)
def update_user(
    request: Request,
    user_id: str,
    dto: DirectoryUserUpdate,
    db: Session = Depends(get_db),
    _user: AuthedUser = Depends(require_permissions(PermissionKey.ADMIN)),
) -> DirectoryUserRead | JSONResponse:
    try:
        return directory_admin_service.update_user(db, user_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="user_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@me_router.get("/me", response_model=MeRead)
def me(user: AuthedUser = Depends(get_authed_user)) -> MeRead:
    sections = accessible_sections(user.permissions) if user.active else []
    return MeRead(
        id=user.id,
        full_name=user.full_name,
        email=user.email,
        role_key=user.role_key,
        active=user.active,
        permissions=sorted(str(permission) for permission in user.permissions),
        sections=[NavSectionRead(label=section.label, href=section.href) for section in sections],
        home_path=first_accessible_path(user.permissions) if user.active else "/app",
    )


@session_router.post("/session", response_model=SessionRead)
def exchange_session(
    request: Request,
    response: Response,
    dto: SessionExchangeRequest,
    db: Session = Depends(get_db),
) -> SessionRead | JSONResponse:
    """Mint a session for a directory user. Local environments only."""
    settings = get_settings()
    expected = settings.session_exchange_secret
    if settings.app_env.lower() not in _LOCAL_ENVS or not expected:
        return error_response(request, status_code=status.HTTP_404_NOT_FOUND, code="not_found", message="not found")
    if not secrets.compare_digest(dto.secret, expected):
        return error_response(request, status_code=status.HTTP_401_UNAUTHORIZED, code="unauthorized", message="unauthorized")

    record = db.get(DirectoryUser, dto.user_id)
    if record is None:
        return error_response(request, status_code=status.HTTP_401_UNAUTHORIZED, code="unauthorized", message="unauthorized")

    token, expires_at = issue_session_token(record.id, active=record.active is not False)
    response.set_cookie(
        settings.session_cookie_name,
        token,
        httponly=True,
        samesite="lax",
        max_age=settings.session_ttl_minutes * 60,
    )
    logger.info("auth.session_issued", extra={"user_id": record.id})
    return SessionRead(token=token, expires_at=expires_at)
