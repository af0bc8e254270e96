from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, WebSocket, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.core.auth import authenticate, extract_session_token
from app.core.database import get_db, session_scope
from app.core.rbac import require_active_user
from app.notifications.live import LiveFeedConnection, connection_manager
from app.notifications.push import push_registration_service
from app.notifications.repository import notification_repository
from app.notifications.schemas import (
    MarkAllReadResult,
    NotificationRead,
    PushRegistrationRead,
    PushTokenCreate,
    UnreadCountRead,
)
from app.platform.security.context import AuthedUser
from app.platform.security.errors import AuthenticationError


router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationRead])
def list_notifications(
    limit: int | None = Query(default=None, ge=1, le=200),
    db: Session = Depends(get_db),
    user: AuthedUser = Depends(require_active_user),
) -> list[NotificationRead]:
    return notification_repository.list_for_user(db, user.id, limit)


@router.get("/unread-count", response_model=UnreadCountRead)
def unread_count(
    db: Session = Depends(get_db),
    user: AuthedUser = Depends(require_active_user),
) -> UnreadCountRead:
    return UnreadCountRead(unread=notification_repository.unread_count(db, user.id))


@router.post("/read-all", response_model=MarkAllReadResult)
def mark_all_read(
    db: Session = Depends(get_db),
    user: AuthedUser = Depends(require_active_user),
) -> MarkAllReadResult:
    return MarkAllReadResult(updated=notification_repository.mark_all_read(db, user.id))


@router.post("/{notification_id}/read", response_model=NotificationRead)
def mark_read(
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthedUser = Depends(require_active_user),
) -> NotificationRead:
    return notification_repository.mark_read(db, notification_id, user.id)


@router.post("/push-tokens", response_model=PushRegistrationRead, status_code=status.HTTP_202_ACCEPTED)
def register_push_token(
    dto: PushTokenCreate,
    db: Session = Depends(get_db),
    user: AuthedUser = Depends(require_active_user),
) -> PushRegistrationRead:
    result = push_registration_service.register_safe(db, user.id, dto.token, dto.platform)
    return PushRegistrationRead(registered=result.registered, reason=result.reason)


@router.websocket("/live")
async def notifications_live(websocket: WebSocket) -> None:
    session_factory = websocket.app.state.session_factory

    def resolve_user() -> AuthedUser:
        with session_scope(session_factory) as session:
            return authenticate(session, extract_session_token(websocket))

    try:
        user = await run_in_threadpool(resolve_user)
    except AuthenticationError:
        await websocket.close(code=4001, reason="Authentication required")
        return
    if not user.active:
        await websocket.close(code=4003, reason="forbidden")
        return

    await connection_manager.connect(websocket, user.id)
    try:
        await LiveFeedConnection(websocket, user.id, session_factory=session_factory).run()
    finally:
        await connection_manager.disconnect(websocket, user.id)
