from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from app.authz.catalog import PermissionKey
from app.metrics import observe_authz_denial
from app.platform.security.errors import AuthorizationError

if TYPE_CHECKING:
    from app.platform.security.context import AuthedUser


logger = logging.getLogger("app.authz.gate")


def has_permission(granted: Iterable[str] | None, required: Iterable[str] | None = None) -> bool:
    """True when nothing is required or when any required key is granted."""
    required_keys = list(required or [])
    if not required_keys:
        return True
    granted_keys = set(granted or [])
    return any(key in granted_keys for key in required_keys)


def is_authorized(user: AuthedUser, required: Iterable[str] | None) -> bool:
    if not user.active:
        return False
    return has_permission(user.permissions, required)


def ensure_authorized(user: AuthedUser, required: Iterable[str] | None) -> AuthedUser:
    required_keys = [str(key) for key in (required or [])]
    if not user.active:
        observe_authz_denial("inactive")
        logger.info("authz.denied", extra={"user_id": user.id, "required": required_keys, "status": "inactive"})
        raise AuthorizationError("inactive user")
    if not has_permission(user.permissions, required_keys):
        observe_authz_denial("missing_permission")
        logger.info("authz.denied", extra={"user_id": user.id, "required": required_keys, "status": "missing"})
        raise AuthorizationError(f"requires one of: {', '.join(required_keys)}")
    return user


@dataclass(frozen=True)
class NavSection:
    label: str
    href: str
    required: tuple[PermissionKey, ...]


NAV_SECTIONS: tuple[NavSection, ...] = (
    NavSection("Dashboard", "/app", (PermissionKey.ADMIN, PermissionKey.DASHBOARD)),
    NavSection("CRM", "/app/crm", (PermissionKey.ADMIN, PermissionKey.CRM, PermissionKey.LEAD_VIEW)),
    NavSection("Customers", "/app/customers", (PermissionKey.ADMIN, PermissionKey.CUSTOMER_VIEW)),
    NavSection("Projects", "/app/projects", (PermissionKey.ADMIN, PermissionKey.PROJECT_VIEW)),
    NavSection("Tasks", "/app/tasks", (PermissionKey.ADMIN, PermissionKey.TASKS, PermissionKey.TASK_VIEW)),
    NavSection("Calendar", "/app/calendar", (PermissionKey.ADMIN, PermissionKey.CALENDAR_VIEW)),
    NavSection("Quotations", "/app/quotations", (PermissionKey.ADMIN, PermissionKey.QUOTATION_VIEW)),
    NavSection(
        "Quotation requests",
        "/app/quotation-requests",
        (PermissionKey.ADMIN, PermissionKey.QUOTATION_REQUEST_VIEW),
    ),
    NavSection(
        "Accounts",
        "/app/accounts",
        (
            PermissionKey.ADMIN,
            PermissionKey.SALES_ORDER,
            PermissionKey.PO_REQUEST_VIEW,
            PermissionKey.SALES_ORDER_REQUEST_VIEW,
        ),
    ),
    NavSection("Reports", "/app/reports", (PermissionKey.ADMIN, PermissionKey.REPORTS_VIEW)),
    NavSection("Settings", "/app/settings", (PermissionKey.ADMIN, PermissionKey.SETTINGS)),
)


def accessible_sections(permissions: Iterable[str]) -> list[NavSection]:
    granted = set(permissions)
    return [section for section in NAV_SECTIONS if has_permission(granted, section.required)]


def first_accessible_path(permissions: Iterable[str], fallback: str = "/app") -> str:
    sections = accessible_sections(permissions)
    return sections[0].href if sections else fallback
