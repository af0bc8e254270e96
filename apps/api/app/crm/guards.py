from __future__ import annotations

from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Any

from fastapi import HTTPException, status

from app.authz.catalog import PermissionKey
from app.authz.gate import ensure_authorized
from app.crm.schemas import TaskRead
from app.notifications.recipients import are_same_recipient_sets, assignee_list
from app.platform.security.context import AuthedUser
from app.platform.security.errors import AuthorizationError

ESTIMATE_FIELDS = frozenset({"estimate_number", "estimate_amount"})
ASSIGNMENT_FIELDS = frozenset({"assigned_to", "assigned_users"})


def is_task_assignee(task: TaskRead, user_id: str) -> bool:
    return user_id == task.assigned_to or user_id in assignee_list(task.assigned_to, task.assigned_users)


def changed_task_fields(previous: TaskRead, requested: Mapping[str, Any]) -> dict[str, Any]:
    """The subset of ``requested`` whose value differs from ``previous``."""
    changed: dict[str, Any] = {}
    for name, value in requested.items():
        if name == "assigned_users":
            if not are_same_recipient_sets(previous.assigned_users, value or []):
                changed[name] = value or []
            continue
        if getattr(previous, name) != value:
            changed[name] = value
    return changed


def assignment_changed(previous: TaskRead, assigned_to: str | None, assigned_users: list[str]) -> bool:
    return previous.assigned_to != assigned_to or not are_same_recipient_sets(
        assignee_list(previous.assigned_to, previous.assigned_users),
        assignee_list(assigned_to, assigned_users),
    )


def validate_estimate(changes: Mapping[str, Any]) -> None:
    if not ESTIMATE_FIELDS & changes.keys():
        return
    number = (changes.get("estimate_number") or "").strip()
    amount = changes.get("estimate_amount")
    if not number or amount is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="provide both estimate_number and estimate_amount",
        )
    if Decimal(amount) <= 0:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="estimate_amount must be greater than 0",
        )


def ensure_task_update_allowed(actor: AuthedUser, previous: TaskRead, changes: Mapping[str, Any]) -> None:
    """Reject the update before anything is diffed or written.

    ``changes`` holds only fields whose value actually changes.
    """
    ensure_authorized(actor, None)
    assignee = is_task_assignee(previous, actor.id)
    unassigned = not assignee_list(previous.assigned_to, previous.assigned_users)

    general = set(changes) - ESTIMATE_FIELDS
    if general:
        ensure_authorized(actor, [PermissionKey.ADMIN, PermissionKey.TASK_EDIT])
        # Creators keep control of their tasks until someone is assigned.
        owns_unassigned = unassigned and previous.created_by == actor.id
        if not actor.is_admin and not assignee and not owns_unassigned:
            raise AuthorizationError("task is not assigned to the actor")

    if ESTIMATE_FIELDS & changes.keys() and not assignee:
        raise AuthorizationError("estimate details are limited to assignees")

    if ASSIGNMENT_FIELDS & changes.keys():
        new_assigned_to = changes.get("assigned_to", previous.assigned_to)
        new_assigned_users = changes.get("assigned_users", previous.assigned_users)
        if assignment_changed(previous, new_assigned_to, list(new_assigned_users or [])):
            if not unassigned:
                ensure_authorized(actor, [PermissionKey.ADMIN])
            else:
                ensure_authorized(actor, [PermissionKey.ADMIN, PermissionKey.TASK_ASSIGN])


def ensure_task_update_requested(actor: AuthedUser, requested: Iterable[str]) -> None:
    """Checks that need only the requested field names; run before the task is loaded.

    Callers without task edit rights may only send estimate fields.
    """
    ensure_authorized(actor, None)
    if set(requested) - ESTIMATE_FIELDS:
        ensure_authorized(actor, [PermissionKey.ADMIN, PermissionKey.TASK_EDIT])
