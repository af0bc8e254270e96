from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    title: str
    body: str
    actor_id: str | None
    entity_type: str | None
    entity_id: str | None
    meta: dict[str, Any] | None
    created_at: datetime
    read_at: datetime | None

    @property
    def is_unread(self) -> bool:
        return self.read_at is None


class UnreadCountRead(BaseModel):
    unread: int


class MarkAllReadResult(BaseModel):
    updated: int


class PushTokenCreate(BaseModel):
    token: str = Field(min_length=1, max_length=4096)
    platform: str = Field(default="web", pattern="^(web|ios|android)$")


class PushRegistrationRead(BaseModel):
    registered: bool
    reason: str | None = None
