from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from app.authz.catalog import PermissionKey
from app.authz.gate import ensure_authorized, has_permission
from app.authz.models import DirectoryUser
from app.authz.resolver import PermissionCache, find_users_with_permission
from app.crm.activity import list_activities, record_activity_safe
from app.crm.changes import detect_project_changes, detect_task_changes
from app.crm.guards import (
    ESTIMATE_FIELDS,
    changed_task_fields,
    ensure_task_update_allowed,
    ensure_task_update_requested,
    validate_estimate,
)
from app.crm.models import CRMLead, CRMProject, CRMPurchaseOrderRequest, CRMSalesOrderRequest, CRMTask
from app.crm.schemas import (
    ActivityRead,
    LeadCreate,
    LeadRead,
    PORequestCreate,
    PORequestRead,
    ProjectCreate,
    ProjectRead,
    ProjectUpdate,
    SalesOrderRequestCreate,
    SalesOrderRequestRead,
    TaskCreate,
    TaskRead,
    TaskUpdate,
)
from app.notifications.emitter import NotificationEventInput, emit_all_safe, emit_safe
from app.notifications.recipients import build_recipient_list
from app.platform.security.context import AuthedUser
from app.platform.security.errors import AuthorizationError


logger = logging.getLogger("app.crm")

_CENT = Decimal("0.01")

_VIEW_PERMISSIONS: dict[str, tuple[PermissionKey, ...]] = {
    "lead": (PermissionKey.ADMIN, PermissionKey.LEAD_VIEW),
    "project": (PermissionKey.ADMIN, PermissionKey.PROJECT_VIEW),
    "task": (PermissionKey.ADMIN, PermissionKey.TASK_VIEW, PermissionKey.TASKS),
}


def _actor_name(actor: AuthedUser) -> str:
    return actor.full_name or "Someone"


def _round_currency(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def _requestable_project(session: Session, actor: AuthedUser, project_id: uuid.UUID) -> CRMProject:
    project = session.get(CRMProject, project_id)
    if project is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="project not found")
    if not has_permission(actor.permissions, [PermissionKey.ADMIN, PermissionKey.PROJECT_VIEW_ALL]):
        if project.assigned_to != actor.id:
            raise AuthorizationError("project is not owned by the actor")
    return project


def _find_approvers(session: Session, actor: AuthedUser, required: list[PermissionKey]) -> list[str]:
    # One cache for the requester check and every approver lookup.
    cache: PermissionCache = {actor.role_key: actor.permissions} if actor.role_key else {}
    return find_users_with_permission(session, required, exclude_user_id=actor.id, cache=cache)


def _request_no(prefix: str, request_id: uuid.UUID, now: datetime) -> str:
    return f"{prefix}-{now:%Y%m%d}-{request_id.hex[:6].upper()}"


class LeadService:
    entity_type = "lead"

    def create_lead(self, session: Session, actor: AuthedUser, dto: LeadCreate) -> LeadRead:
        ensure_authorized(actor, [PermissionKey.ADMIN, PermissionKey.LEAD_CREATE])
        lead = CRMLead(
            name=dto.name.strip(),
            company=dto.company,
            email=str(dto.email) if dto.email else None,
            phone=dto.phone,
            source=dto.source,
            status=dto.status,
            owner_id=dto.owner_id or actor.id,
            created_by=actor.id,
        )
        session.add(lead)
        session.commit()
        session.refresh(lead)
        result = LeadRead.model_validate(lead)

        record_activity_safe(session, self.entity_type, result.id, "Lead created.", actor_id=actor.id)
        emit_safe(
            session,
            NotificationEventInput(
                type="lead.created",
                title="New Lead",
                body=f"{_actor_name(actor)} added {result.name}.",
                actor_id=actor.id,
                recipients=build_recipient_list(result.owner_id, [], actor.id),
                entity_type=self.entity_type,
                entity_id=str(result.id),
            ),
        )
        return result

    def get_lead(self, session: Session, actor: AuthedUser, lead_id: uuid.UUID) -> LeadRead:
        ensure_authorized(actor, [PermissionKey.ADMIN, PermissionKey.LEAD_VIEW])
        lead = session.get(CRMLead, lead_id)
        if lead is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead not found")
        return LeadRead.model_validate(lead)


class TaskService:
    entity_type = "task"
    _required_fields = frozenset({"title", "status", "priority", "description"})

    def create_task(self, session: Session, actor: AuthedUser, dto: TaskCreate) -> TaskRead:
        ensure_authorized(actor, [PermissionKey.ADMIN, PermissionKey.TASK_CREATE])
        assigned_users = build_recipient_list(dto.assigned_to, dto.assigned_users)
        assigned_to = dto.assigned_to or (assigned_users[0] if assigned_users else None)
        if any(user_id != actor.id for user_id in assigned_users):
            ensure_authorized(actor, [PermissionKey.ADMIN, PermissionKey.TASK_ASSIGN])

        task = CRMTask(
            title=dto.title.strip(),
            description=dto.description.strip(),
            status=dto.status,
            priority=dto.priority,
            due_date=dto.due_date,
            assigned_to=assigned_to,
            assigned_users=assigned_users,
            project_id=dto.project_id,
            lead_id=dto.lead_id,
            reference_model_number=dto.reference_model_number,
            created_by=actor.id,
        )
        session.add(task)
        session.commit()
        session.refresh(task)
        created = TaskRead.model_validate(task)

        entity_type, entity_id = self.activity_target(created)
        record_activity_safe(session, entity_type, entity_id, f"Task created: {created.title}.", actor_id=actor.id, type="task")
        emit_safe(
            session,
            NotificationEventInput(
                type="task.assigned",
                title="New Task",
                body=f"{_actor_name(actor)} assigned: {created.title}.",
                actor_id=actor.id,
                recipients=build_recipient_list(created.assigned_to, created.assigned_users, actor.id),
                entity_type=self.entity_type,
                entity_id=str(created.id),
            ),
        )
        return created

    def get_task(self, session: Session, actor: AuthedUser, task_id: uuid.UUID) -> TaskRead:
        ensure_authorized(actor, _VIEW_PERMISSIONS[self.entity_type])
        return TaskRead.model_validate(self._get(session, task_id))

    def update_task(self, session: Session, actor: AuthedUser, task_id: uuid.UUID, dto: TaskUpdate) -> TaskRead:
        requested: dict[str, Any] = {}
        for name, value in dto.model_dump(exclude_unset=True).items():
            if value is None and name in self._required_fields:
                continue
            if isinstance(value, str) and name in {"title", "description"}:
                value = value.strip()
            if name == "assigned_users":
                value = build_recipient_list(None, value or [])
            requested[name] = value
        ensure_task_update_requested(actor, requested)
        if not requested:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="no updates provided")

        task = self._get(session, task_id)
        previous = TaskRead.model_validate(task)
        changes = changed_task_fields(previous, requested)
        # A no-op still returns the task, so it faces the same checks as a real change.
        ensure_task_update_allowed(actor, previous, changes or requested)
        if ESTIMATE_FIELDS & changes.keys():
            validate_estimate(requested)
        if not changes:
            return previous

        for name, value in changes.items():
            setattr(task, name, value)
        if "assigned_users" in changes and "assigned_to" not in changes and changes["assigned_users"]:
            if task.assigned_to not in changes["assigned_users"]:
                task.assigned_to = changes["assigned_users"][0]
        session.commit()
        session.refresh(task)
        updated = TaskRead.model_validate(task)

        change_set = detect_task_changes(previous, updated, actor)
        if change_set.note:
            entity_type, entity_id = self.activity_target(updated)
            record_activity_safe(session, entity_type, entity_id, change_set.note, actor_id=actor.id, type="task")
        emit_all_safe(session, change_set.events)
        return updated

    @staticmethod
    def activity_target(task: TaskRead) -> tuple[str, uuid.UUID]:
        if task.project_id is not None:
            return "project", task.project_id
        if task.lead_id is not None:
            return "lead", task.lead_id
        return "task", task.id

    def _get(self, session: Session, task_id: uuid.UUID) -> CRMTask:
        task = session.get(CRMTask, task_id)
        if task is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="task not found")
        return task


class ProjectService:
    entity_type = "project"
    _required_fields = frozenset({"name", "customer_name", "status", "value", "description"})

    def create_project(self, session: Session, actor: AuthedUser, dto: ProjectCreate) -> ProjectRead:
        ensure_authorized(actor, [PermissionKey.ADMIN, PermissionKey.PROJECT_CREATE])
        project = CRMProject(
            name=dto.name.strip(),
            customer_id=dto.customer_id,
            customer_name=dto.customer_name.strip(),
            assigned_to=dto.assigned_to or actor.id,
            status=dto.status,
            value=dto.value,
            start_date=dto.start_date,
            due_date=dto.due_date,
            description=dto.description.strip(),
            created_by=actor.id,
        )
        session.add(project)
        session.commit()
        session.refresh(project)
        created = ProjectRead.model_validate(project)

        record_activity_safe(session, self.entity_type, created.id, f"Project created: {created.name}.", actor_id=actor.id)
        emit_safe(
            session,
            NotificationEventInput(
                type="project.assigned",
                title="New Project",
                body=f"{_actor_name(actor)} created {created.name}.",
                actor_id=actor.id,
                recipients=build_recipient_list(created.assigned_to, [], actor.id),
                entity_type=self.entity_type,
                entity_id=str(created.id),
                meta={"status": created.status},
            ),
        )
        return created

    def update_project(
        self,
        session: Session,
        actor: AuthedUser,
        project_id: uuid.UUID,
        dto: ProjectUpdate,
    ) -> ProjectRead:
        ensure_authorized(actor, [PermissionKey.ADMIN, PermissionKey.PROJECT_EDIT])
        project = session.get(CRMProject, project_id)
        if project is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="project not found")
        previous = ProjectRead.model_validate(project)
        if not has_permission(actor.permissions, [PermissionKey.ADMIN, PermissionKey.PROJECT_VIEW_ALL]):
            if actor.id not in {previous.assigned_to, previous.created_by}:
                raise AuthorizationError("project is not owned by the actor")

        requested = {
            name: value.strip() if isinstance(value, str) and name in {"name", "customer_name", "description"} else value
            for name, value in dto.model_dump(exclude_unset=True).items()
            if not (value is None and name in self._required_fields)
        }
        if not requested:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="no updates provided")

        for name, value in requested.items():
            setattr(project, name, value)
        session.commit()
        session.refresh(project)
        updated = ProjectRead.model_validate(project)

        change_set = detect_project_changes(previous, updated, actor, self._owner_names(session, updated.assigned_to))
        if change_set.note:
            record_activity_safe(session, self.entity_type, updated.id, change_set.note, actor_id=actor.id)
        emit_all_safe(session, change_set.events)
        return updated

    def _owner_names(self, session: Session, owner_id: str | None) -> dict[str, str]:
        if not owner_id:
            return {}
        owner = session.get(DirectoryUser, owner_id)
        if owner is None or not owner.full_name:
            return {}
        return {owner.id: owner.full_name}


class ActivityQueryService:
    def list_for_entity(
        self,
        session: Session,
        actor: AuthedUser,
        entity_type: str,
        entity_id: uuid.UUID,
    ) -> list[ActivityRead]:
        required = _VIEW_PERMISSIONS.get(entity_type)
        if required is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="unknown entity type")
        ensure_authorized(actor, required)
        return list_activities(session, entity_type, entity_id)


class PurchaseOrderRequestService:
    def create_request(self, session: Session, actor: AuthedUser, dto: PORequestCreate) -> PORequestRead:
        ensure_authorized(actor, [PermissionKey.ADMIN, PermissionKey.PO_REQUEST_CREATE])
        project = _requestable_project(session, actor, dto.project_id)

        line_items: list[dict[str, Any]] = []
        subtotal = Decimal("0")
        tax_total = Decimal("0")
        for item in dto.line_items:
            qty = Decimal(str(item.qty))
            unit_price = Decimal(str(item.unit_price))
            tax_rate = Decimal(str(item.tax_rate))
            base = qty * unit_price
            tax_amount = base * tax_rate / Decimal("100")
            subtotal += base
            tax_total += _round_currency(tax_amount)
            line_items.append(
                {
                    "description": item.description.strip(),
                    "qty": float(qty),
                    "unit_price": float(_round_currency(unit_price)),
                    "tax_rate": float(_round_currency(tax_rate)),
                    "tax_amount": float(_round_currency(tax_amount)),
                    "line_total": float(_round_currency(base + tax_amount)),
                    "notes": item.notes.strip(),
                }
            )
        subtotal = _round_currency(subtotal)
        tax_total = _round_currency(tax_total)
        total = _round_currency(subtotal + tax_total)

        request_id = uuid.uuid4()
        now = datetime.now(timezone.utc)
        request_no = _request_no("POR", request_id, now)
        currency = (dto.currency or "").strip().upper() or "AED"

        approvers = _find_approvers(session, actor, [PermissionKey.ADMIN, PermissionKey.PO_REQUEST_APPROVE])

        po_request = CRMPurchaseOrderRequest(
            id=request_id,
            request_no=request_no,
            project_id=project.id,
            project_name=project.name,
            requested_by=actor.id,
            vendor_name=dto.vendor_name.strip(),
            currency=currency,
            line_items=line_items,
            subtotal=subtotal,
            tax_amount=tax_total,
            total=total,
            notes=dto.notes.strip(),
            created_at=now,
        )
        session.add(po_request)
        session.commit()
        session.refresh(po_request)
        result = PORequestRead.model_validate(po_request)

        record_activity_safe(
            session,
            "project",
            project.id,
            f"PO request {request_no} submitted for approval ({currency} {total:,.2f}).",
            actor_id=actor.id,
        )
        emit_safe(
            session,
            NotificationEventInput(
                type="po_request.submitted",
                title="New PO Request",
                body=f"{_actor_name(actor)} submitted {request_no} for {result.project_name or 'a project'}.",
                actor_id=actor.id,
                recipients=approvers,
                entity_type="purchaseOrderRequest",
                entity_id=str(result.id),
                meta={"request_no": request_no, "project_id": str(project.id), "total": float(total), "currency": currency},
            ),
        )
        logger.info("crm.po_request_submitted", extra={"entity_id": str(result.id), "recipient_count": len(approvers)})
        return result


class SalesOrderRequestService:
    def create_request(
        self,
        session: Session,
        actor: AuthedUser,
        dto: SalesOrderRequestCreate,
    ) -> SalesOrderRequestRead:
        ensure_authorized(
            actor,
            [PermissionKey.ADMIN, PermissionKey.SALES_ORDER_REQUEST_CREATE, PermissionKey.PO_REQUEST_CREATE],
        )
        estimate_number = dto.estimate_number.strip()
        po_number = dto.po_number.strip()
        if not estimate_number or not po_number:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="estimate_number and po_number are required",
            )
        project = _requestable_project(session, actor, dto.project_id)

        request_id = uuid.uuid4()
        now = datetime.now(timezone.utc)
        request_no = _request_no("SOR", request_id, now)
        estimate_amount = _round_currency(dto.estimate_amount)
        po_amount = _round_currency(dto.po_amount)
        approvers = _find_approvers(
            session,
            actor,
            [PermissionKey.ADMIN, PermissionKey.SALES_ORDER_REQUEST_APPROVE, PermissionKey.PO_REQUEST_APPROVE],
        )

        so_request = CRMSalesOrderRequest(
            id=request_id,
            request_no=request_no,
            project_id=project.id,
            project_name=project.name,
            customer_id=project.customer_id,
            customer_name=project.customer_name,
            requested_by=actor.id,
            requested_by_name=actor.full_name,
            estimate_number=estimate_number,
            estimate_amount=estimate_amount,
            po_number=po_number,
            po_amount=po_amount,
            po_date=dto.po_date,
            created_at=now,
            updated_at=now,
        )
        session.add(so_request)
        session.commit()
        session.refresh(so_request)
        result = SalesOrderRequestRead.model_validate(so_request)

        record_activity_safe(
            session,
            "project",
            project.id,
            f"Sales Order Req {request_no} submitted for approval (PO {po_amount:,.2f}).",
            actor_id=actor.id,
        )
        emit_safe(
            session,
            NotificationEventInput(
                type="sales_order_request.submitted",
                title="New Sales Order Req",
                body=f"{_actor_name(actor)} submitted {request_no} for {result.project_name or 'a project'}.",
                actor_id=actor.id,
                recipients=approvers,
                entity_type="salesOrderRequest",
                entity_id=str(result.id),
                meta={
                    "request_no": request_no,
                    "project_id": str(project.id),
                    "estimate_number": estimate_number,
                    "estimate_amount": float(estimate_amount),
                    "po_number": po_number,
                    "po_amount": float(po_amount),
                    "po_date": dto.po_date.isoformat(),
                },
            ),
        )
        logger.info(
            "crm.sales_order_request_submitted",
            extra={"entity_id": str(result.id), "recipient_count": len(approvers)},
        )
        return result


lead_service = LeadService()
task_service = TaskService()
project_service = ProjectService()
activity_query_service = ActivityQueryService()
po_request_service = PurchaseOrderRequestService()
so_request_service = SalesOrderRequestService()
