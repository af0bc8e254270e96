from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class RoleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    description: str | None = None


class RoleUpdate(BaseModel):
    permissions: list[str] | None = None
    description: str | None = None


class RoleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    key: str
    name: str
    description: str | None
    permissions: list[str]
    created_at: datetime


class NavSectionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    label: str
    href: str


class MeRead(BaseModel):
    id: str
    full_name: str
    email: str | None
    role_key: str
    active: bool
    permissions: list[str]
    sections: list[NavSectionRead]
    home_path: str


class SessionExchangeRequest(BaseModel):
    user_id: str = Field(min_length=1)
    secret: str = Field(min_length=1)


class SessionRead(BaseModel):
    token: str
    expires_at: datetime


class DirectoryUserCreate(BaseModel):
    id: str | None = Field(default=None, max_length=128)
    full_name: str = Field(min_length=1, max_length=255)
    email: EmailStr
    role: str = Field(min_length=1, max_length=128)
    active: bool = True


class DirectoryUserUpdate(BaseModel):
    full_name: str | None = Field(default=None, min_length=1, max_length=255)
    email: EmailStr | None = None
    role: str | None = Field(default=None, min_length=1, max_length=128)
    active: bool | None = None


class DirectoryUserRead(BaseModel):
    id: str
    full_name: str
    email: str | None
    role: str
    active: bool
    permissions: list[str]
    created_at: datetime
