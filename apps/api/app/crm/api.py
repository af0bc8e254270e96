from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.errors import error_response
from app.core.auth import get_authed_user
from app.core.database import get_db
from app.crm.conversion import lead_conversion_service
from app.crm.schemas import (
    ActivityRead,
    LeadConversionRead,
    LeadConvertRequest,
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
from app.crm.service import (
    activity_query_service,
    lead_service,
    po_request_service,
    project_service,
    so_request_service,
    task_service,
)
from app.platform.security.context import AuthedUser

leads_router = APIRouter(prefix="/api/crm/leads", tags=["crm.leads"])
tasks_router = APIRouter(prefix="/api/crm/tasks", tags=["crm.tasks"])
projects_router = APIRouter(prefix="/api/crm/projects", tags=["crm.projects"])
activities_router = APIRouter(prefix="/api/crm", tags=["crm.activities"])
po_requests_router = APIRouter(prefix="/api/accounts/po-requests", tags=["accounts.po_requests"])
so_requests_router = APIRouter(prefix="/api/sales-order/sales-order-requests", tags=["sales_order.requests"])


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


@leads_router.post("", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: AuthedUser = Depends(get_authed_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.create_lead(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_create_failed")


@leads_router.get("/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthedUser = Depends(get_authed_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.get_lead(db, user, lead_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_get_failed")


@leads_router.post("/{lead_id}/convert", response_model=LeadConversionRead)
def convert_lead(
    request: Request,
    response: Response,
    lead_id: uuid.UUID,
    dto: LeadConvertRequest,
    db: Session = Depends(get_db),
    user: AuthedUser = Depends(get_authed_user),
) -> LeadConversionRead | JSONResponse:
    try:
        result = lead_conversion_service.convert(db, user, lead_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_convert_failed")
    response.status_code = status.HTTP_201_CREATED if result.created else status.HTTP_200_OK
    return LeadConversionRead(customer=result.customer, created=result.created)


@tasks_router.post("", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(
    request: Request,
    dto: TaskCreate,
    db: Session = Depends(get_db),
    user: AuthedUser = Depends(get_authed_user),
) -> TaskRead | JSONResponse:
    try:
        return task_service.create_task(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_task_create_failed")


@tasks_router.get("/{task_id}", response_model=TaskRead)
def get_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthedUser = Depends(get_authed_user),
) -> TaskRead | JSONResponse:
    try:
        return task_service.get_task(db, user, task_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_task_get_failed")


@tasks_router.patch("/{task_id}", response_model=TaskRead)
def update_task(
    request: Request,
    task_id: uuid.UUID,
    dto: TaskUpdate,
    db: Session = Depends(get_db),
    user: AuthedUser = Depends(get_authed_user),
) -> TaskRead | JSONResponse:
    try:
        return task_service.update_task(db, user, task_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_task_update_failed")


@projects_router.post("", response_model=ProjectRead, status_code=status.HTTP_201_CREATED)
def create_project(
    request: Request,
    dto: ProjectCreate,
    db: Session = Depends(get_db),
    user: AuthedUser = Depends(get_authed_user),
) -> ProjectRead | JSONResponse:
    try:
        return project_service.create_project(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_project_create_failed")


@projects_router.patch("/{project_id}", response_model=ProjectRead)
def update_project(
    request: Request,
    project_id: uuid.UUID,
    dto: ProjectUpdate,
    db: Session = Depends(get_db),
    user: AuthedUser = Depends(get_authed_user),
) -> ProjectRead | JSONResponse:
    try:
        return project_service.update_project(db, user, project_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_project_update_failed")


@activities_router.get("/{entity_type}/{entity_id}/activities", response_model=list[ActivityRead])
def list_activities(
    request: Request,
    entity_type: str,
    entity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthedUser = Depends(get_authed_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        return activity_query_service.list_for_entity(db, user, entity_type, entity_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_activity_list_failed")


@po_requests_router.post("", response_model=PORequestRead, status_code=status.HTTP_201_CREATED)
def create_po_request(
    request: Request,
    dto: PORequestCreate,
    db: Session = Depends(get_db),
    user: AuthedUser = Depends(get_authed_user),
) -> PORequestRead | JSONResponse:
    try:
        return po_request_service.create_request(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "po_request_create_failed")


@so_requests_router.post("", response_model=SalesOrderRequestRead, status_code=status.HTTP_201_CREATED)
def create_sales_order_request(
    request: Request,
    dto: SalesOrderRequestCreate,
    db: Session = Depends(get_db),
    user: AuthedUser = Depends(get_authed_user),
) -> SalesOrderRequestRead | JSONResponse:
    try:
        return so_request_service.create_request(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "sales_order_request_create_failed")
