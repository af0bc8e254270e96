from __future__ import annotations

from collections.abc import Iterable
from enum import StrEnum
from typing import Any


class PermissionKey(StrEnum):
    ADMIN = "admin"
    LEAD_CREATE = "lead_create"
    LEAD_VIEW = "lead_view"
    LEAD_VIEW_ALL = "lead_view_all"
    LEAD_EDIT = "lead_edit"
    LEAD_DELETE = "lead_delete"
    LEAD_ASSIGN = "lead_assign"
    LEAD_IMPORT = "lead_import"
    LEAD_EXPORT = "lead_export"
    PROFILE_VIEW = "profile_view"
    PROFILE_EDIT = "profile_edit"
    CALENDAR_VIEW = "calendar_view"
    CALENDAR_VIEW_ALL = "calendar_view_all"
    CALENDAR_CREATE = "calendar_create"
    CALENDAR_EDIT = "calendar_edit"
    CALENDAR_DELETE = "calendar_delete"
    CALENDAR_ASSIGN = "calendar_assign"
    REPORTS_VIEW = "reports_view"
    DASHBOARD = "dashboard"
    CRM = "crm"
    TASKS = "tasks"
    TASK_VIEW = "task_view"
    TASK_VIEW_ALL = "task_view_all"
    TASK_CREATE = "task_create"
    TASK_EDIT = "task_edit"
    TASK_DELETE = "task_delete"
    TASK_ASSIGN = "task_assign"
    CUSTOMER_VIEW = "customer_view"
    CUSTOMER_VIEW_ALL = "customer_view_all"
    CUSTOMER_CREATE = "customer_create"
    CUSTOMER_EDIT = "customer_edit"
    CUSTOMER_DELETE = "customer_delete"
    PROJECT_VIEW = "project_view"
    PROJECT_VIEW_ALL = "project_view_all"
    PROJECT_CREATE = "project_create"
    PROJECT_EDIT = "project_edit"
    PROJECT_DELETE = "project_delete"
    QUOTATION_VIEW = "quotation_view"
    QUOTATION_CREATE = "quotation_create"
    QUOTATION_EDIT = "quotation_edit"
    QUOTATION_DELETE = "quotation_delete"
    QUOTATION_APPROVE = "quotation_approve"
    QUOTATION_REQUEST_VIEW = "quotation_request_view"
    QUOTATION_REQUEST_CREATE = "quotation_request_create"
    QUOTATION_REQUEST_EDIT = "quotation_request_edit"
    QUOTATION_REQUEST_DELETE = "quotation_request_delete"
    SALES_ORDER_REQUEST_CREATE = "sales_order_request_create"
    SALES_ORDER_REQUEST_VIEW = "sales_order_request_view"
    SALES_ORDER_REQUEST_APPROVE = "sales_order_request_approve"
    PO_REQUEST_CREATE = "po_request_create"
    PO_REQUEST_VIEW = "po_request_view"
    PO_REQUEST_APPROVE = "po_request_approve"
    INVOICES_VIEW = "invoices_view"
    SALES = "sales"
    OPERATIONS = "operations"
    SALES_ORDER = "sales_order"
    STORE = "store"
    PROCUREMENT = "procurement"
    LOGISTICS = "logistics"
    MARKETING = "marketing"
    FLEET = "fleet"
    COMPLIANCE = "compliance"
    SETTINGS = "settings"


ADMIN_PERMISSION = PermissionKey.ADMIN
ADMIN_ROLE_KEY = "admin"

ALL_PERMISSIONS: tuple[PermissionKey, ...] = tuple(PermissionKey)

_KNOWN = {permission.value: permission for permission in PermissionKey}

# Legacy keys still found in older role documents. Expanded only when an
# administrator saves a role; resolution never consults this table.
LEGACY_PERMISSION_ALIASES: dict[str, tuple[PermissionKey, ...]] = {
    "accounts": (
        PermissionKey.SALES_ORDER,
        PermissionKey.PO_REQUEST_CREATE,
        PermissionKey.PO_REQUEST_VIEW,
        PermissionKey.PO_REQUEST_APPROVE,
    ),
}


def is_permission(value: Any) -> bool:
    return isinstance(value, str) and value in _KNOWN


def to_permissions(values: Iterable[Any] | None) -> list[PermissionKey]:
    """Keep catalog members only, in first-seen order, without duplicates."""
    if not values or isinstance(values, (str, bytes)):
        return []
    result: list[PermissionKey] = []
    seen: set[PermissionKey] = set()
    for value in values:
        if not is_permission(value):
            continue
        permission = _KNOWN[value]
        if permission in seen:
            continue
        seen.add(permission)
        result.append(permission)
    return result


def normalize_permission_update(values: Iterable[Any] | None) -> list[PermissionKey]:
    if not values or isinstance(values, (str, bytes)):
        return []
    expanded: list[Any] = []
    for value in values:
        if isinstance(value, str) and value in LEGACY_PERMISSION_ALIASES:
            expanded.extend(LEGACY_PERMISSION_ALIASES[value])
        else:
            expanded.append(value)
    return to_permissions(expanded)


def normalize_role_key(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower()
