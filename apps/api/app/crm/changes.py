"""Diffs between two snapshots of the same task or project.

``previous`` is captured before the write and ``updated`` is read back after the
commit. Each save yields at most one composite activity note plus the
notification events the change warrants.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from app.crm.guards import assignment_changed
from app.crm.schemas import ProjectRead, TaskRead
from app.notifications.emitter import NotificationEventInput
from app.notifications.recipients import assignee_list, build_recipient_list
from app.platform.security.context import AuthedUser


@dataclass(slots=True)
class ChangeSet:
    note: str | None = None
    events: list[NotificationEventInput] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.note is None and not self.events


def task_status_label(value: str) -> str:
    return value.replace("-", " ", 1)


def project_status_label(value: str) -> str:
    return " ".join(segment[:1].upper() + segment[1:] for segment in value.split("-"))


def _format_date(value: date | None) -> str:
    return value.isoformat() if value else "None"


def _format_amount(value: Decimal) -> str:
    if value == value.to_integral_value():
        return f"{int(value):,}"
    return f"{value:,.2f}"


def _actor_name(actor: AuthedUser) -> str:
    return actor.full_name or "Someone"


def detect_task_changes(previous: TaskRead, updated: TaskRead, actor: AuthedUser) -> ChangeSet:
    changes = ChangeSet()
    previous_assignees = assignee_list(previous.assigned_to, previous.assigned_users)
    updated_assignees = assignee_list(updated.assigned_to, updated.assigned_users)

    if assignment_changed(previous, updated.assigned_to, list(updated.assigned_users)):
        changes.events.append(
            NotificationEventInput(
                type="task.assigned",
                title="New Task Assignment",
                body=f"{_actor_name(actor)} assigned: {updated.title}.",
                actor_id=actor.id,
                recipients=build_recipient_list(updated.assigned_to, updated_assignees, actor.id),
                entity_type="task",
                entity_id=str(updated.id),
                meta={"assigned_to": updated.assigned_to, "previous_assignees": previous_assignees},
            )
        )

    if previous.status != updated.status:
        changes.events.append(
            NotificationEventInput(
                type="task.status_changed",
                title="Task Status Updated",
                body=f"{_actor_name(actor)} changed {updated.title} to {task_status_label(updated.status)}.",
                actor_id=actor.id,
                recipients=build_recipient_list(updated.created_by, [updated.assigned_to, *updated_assignees], actor.id),
                entity_type="task",
                entity_id=str(updated.id),
                meta={"status": updated.status},
            )
        )

    lines: list[str] = []
    if previous.title != updated.title:
        lines.append(f"Title updated to {updated.title}.")
    if previous.status != updated.status:
        lines.append(f"Status updated to {task_status_label(updated.status)}.")
        if updated.status == "done":
            lines.append("Task completed.")
    if previous.priority != updated.priority:
        lines.append(f"Priority updated to {updated.priority}.")
    if previous.due_date != updated.due_date:
        lines.append(f"Due date updated to {_format_date(updated.due_date)}.")
    if (previous.reference_model_number or "") != (updated.reference_model_number or ""):
        lines.append(f"Reference Model Number updated to {updated.reference_model_number or 'None'}.")
    if lines:
        changes.note = f"Task updated: {updated.title}. {' '.join(lines)}"
    return changes


def detect_project_changes(
    previous: ProjectRead,
    updated: ProjectRead,
    actor: AuthedUser,
    owner_names: Mapping[str, str] | None = None,
) -> ChangeSet:
    changes = ChangeSet()
    names = owner_names or {}

    if previous.assigned_to != updated.assigned_to:
        changes.events.append(
            NotificationEventInput(
                type="project.assigned",
                title="Project Assigned",
                body=f"{_actor_name(actor)} assigned you to {updated.name}.",
                actor_id=actor.id,
                recipients=build_recipient_list(updated.assigned_to, [], actor.id),
                entity_type="project",
                entity_id=str(updated.id),
                meta={"status": updated.status},
            )
        )

    if previous.status != updated.status:
        changes.events.append(
            NotificationEventInput(
                type="project.status_changed",
                title="Project Status Updated",
                body=f"{_actor_name(actor)} changed {updated.name} to {project_status_label(updated.status)}.",
                actor_id=actor.id,
                recipients=build_recipient_list(updated.created_by, [updated.assigned_to], actor.id),
                entity_type="project",
                entity_id=str(updated.id),
                meta={"status": updated.status},
            )
        )

    lines: list[str] = []
    if previous.name != updated.name:
        lines.append(f"Name updated to {updated.name}.")
    if previous.customer_name != updated.customer_name:
        lines.append(f"Customer updated to {updated.customer_name}.")
    if previous.assigned_to != updated.assigned_to:
        owner = updated.assigned_to or ""
        lines.append(f"Owner updated to {names.get(owner, owner) or 'None'}.")
    if previous.status != updated.status:
        lines.append(f"Status updated to {project_status_label(updated.status)}.")
    if previous.value != updated.value:
        lines.append(f"Value updated to AED {_format_amount(updated.value)}.")
    if previous.start_date != updated.start_date:
        lines.append(f"Start date updated to {_format_date(updated.start_date)}.")
    if previous.due_date != updated.due_date:
        lines.append(f"Due date updated to {_format_date(updated.due_date)}.")
    if previous.description.strip() != updated.description.strip():
        lines.append("Description updated.")
    if lines:
        changes.note = f"Project updated: {' '.join(lines)}"
    return changes
