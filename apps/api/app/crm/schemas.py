from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

TaskStatus = Literal["todo", "in-progress", "review", "done"]
TaskPriority = Literal["low", "medium", "high", "urgent"]
ProjectStatus = Literal["not-started", "in-progress", "on-hold", "completed", "canceled"]
LeadStatus = Literal["new", "contacted", "qualified", "proposal", "negotiation", "won", "lost"]


class LeadCreate(BaseModel):
    name: str = Field(min_length=1)
    company: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    source: str | None = None
    status: LeadStatus = "new"
    owner_id: str | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    company: str | None
    email: str | None
    phone: str | None
    source: str | None
    status: str
    owner_id: str | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class LeadConvertRequest(BaseModel):
    company_name: str | None = None
    contact_person: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    source: str | None = None
    status: str = "active"
    assigned_to: str | None = None


class CustomerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_name: str
    contact_person: str | None
    email: str | None
    phone: str | None
    source: str | None
    status: str
    assigned_to: str | None
    lead_id: UUID | None
    created_by: str | None
    created_at: datetime


class LeadConversionRead(BaseModel):
    customer: CustomerRead
    created: bool


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1)
    customer_id: UUID | None = None
    customer_name: str = ""
    assigned_to: str | None = None
    status: ProjectStatus = "not-started"
    value: Decimal = Field(default=Decimal("0"), ge=0)
    start_date: date | None = None
    due_date: date | None = None
    description: str = ""


class ProjectUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    customer_id: UUID | None = None
    customer_name: str | None = None
    assigned_to: str | None = None
    status: ProjectStatus | None = None
    value: Decimal | None = Field(default=None, ge=0)
    start_date: date | None = None
    due_date: date | None = None
    description: str | None = None


class ProjectRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: UUID
    name: str
    customer_id: UUID | None
    customer_name: str
    assigned_to: str | None
    status: str
    value: Decimal
    start_date: date | None
    due_date: date | None
    description: str
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class TaskCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    status: TaskStatus = "todo"
    priority: TaskPriority = "medium"
    due_date: date | None = None
    assigned_to: str | None = None
    assigned_users: list[str] = Field(default_factory=list)
    project_id: UUID | None = None
    lead_id: UUID | None = None
    reference_model_number: str | None = None


class TaskUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    due_date: date | None = None
    assigned_to: str | None = None
    assigned_users: list[str] | None = None
    reference_model_number: str | None = None
    estimate_number: str | None = None
    estimate_amount: Decimal | None = None


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: UUID
    title: str
    description: str
    status: str
    priority: str
    due_date: date | None
    assigned_to: str | None
    assigned_users: list[str]
    project_id: UUID | None
    lead_id: UUID | None
    reference_model_number: str | None
    estimate_number: str | None
    estimate_amount: Decimal | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_type: str
    entity_id: UUID
    type: str
    note: str
    created_by: str | None
    created_at: datetime


class POLineItemCreate(BaseModel):
    description: str = Field(min_length=1)
    qty: float = Field(gt=0)
    unit_price: float = Field(ge=0)
    tax_rate: float = Field(default=0, ge=0)
    notes: str = ""


class PORequestCreate(BaseModel):
    project_id: UUID
    vendor_name: str = Field(min_length=1)
    currency: str | None = None
    line_items: list[POLineItemCreate] = Field(min_length=1)
    notes: str = ""


class PORequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    request_no: str
    project_id: UUID
    project_name: str
    requested_by: str
    vendor_name: str
    currency: str
    line_items: list[dict]
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    notes: str
    status: str
    created_at: datetime


class SalesOrderRequestCreate(BaseModel):
    project_id: UUID
    estimate_number: str = Field(min_length=1, max_length=64)
    estimate_amount: Decimal = Field(gt=0)
    po_number: str = Field(min_length=1, max_length=64)
    po_amount: Decimal = Field(gt=0)
    po_date: date


class SalesOrderRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    request_no: str
    project_id: UUID
    project_name: str
    customer_id: UUID | None
    customer_name: str
    requested_by: str
    requested_by_name: str
    estimate_number: str
    estimate_amount: Decimal
    po_number: str
    po_amount: Decimal
    po_date: date
    status: str
    created_at: datetime
