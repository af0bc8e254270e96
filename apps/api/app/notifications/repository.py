from __future__ import annotations

import logging
import uuid
from collections.abc import Callable

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.database import SessionFactory, session_scope
from app.core.events import NOTIFICATION_CHANGED, InternalEvent, event_bus
from app.notifications.models import Notification, utcnow
from app.notifications.schemas import NotificationRead
from app.platform.security.errors import NotFoundError


logger = logging.getLogger("app.notifications.repository")

SnapshotHandler = Callable[[list[NotificationRead]], None]


def _resolve_limit(limit: int | None) -> int:
    if limit is None or limit <= 0:
        return get_settings().notification_feed_limit
    return limit


class NotificationRepository:
    def list_for_user(self, session: Session, user_id: str, limit: int | None = None) -> list[NotificationRead]:
        rows = session.scalars(
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(_resolve_limit(limit))
        ).all()
        return [NotificationRead.model_validate(row) for row in rows]

    def unread_count(self, session: Session, user_id: str) -> int:
        count = session.scalar(
            select(func.count())
            .select_from(Notification)
            .where(Notification.user_id == user_id, Notification.read_at.is_(None))
        )
        return int(count or 0)

    def mark_read(self, session: Session, notification_id: uuid.UUID, user_id: str) -> NotificationRead:
        row = session.get(Notification, notification_id)
        if row is None or row.user_id != user_id:
            raise NotFoundError("notification")
        if row.read_at is None:
            row.read_at = utcnow()
            session.commit()
            session.refresh(row)
            event_bus.publish(NOTIFICATION_CHANGED, {"user_id": user_id, "notification_id": str(row.id)})
        return NotificationRead.model_validate(row)

    def mark_all_read(self, session: Session, user_id: str) -> int:
        result = session.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.read_at.is_(None))
            .values(read_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        session.commit()
        updated = int(result.rowcount or 0)
        if updated:
            event_bus.publish(NOTIFICATION_CHANGED, {"user_id": user_id, "notification_id": None})
        return updated

    def subscribe_for_user(
        self,
        user_id: str,
        on_change: SnapshotHandler,
        *,
        max_items: int | None = None,
        session_factory: SessionFactory | None = None,
    ) -> Callable[[], None]:
        """Deliver the current capped list now and again after every change for ``user_id``.

        Returns the unsubscribe callable; calling it more than once is harmless.
        """
        limit = _resolve_limit(max_items)

        def load() -> list[NotificationRead]:
            with session_scope(session_factory) as session:
                return self.list_for_user(session, user_id, limit)

        def handler(event: InternalEvent) -> None:
            if event.payload.get("user_id") != user_id:
                return
            try:
                snapshot = load()
            except Exception as exc:
                logger.warning("notification.snapshot_failed", extra={"user_id": user_id, "error": str(exc)})
                return
            on_change(snapshot)

        unsubscribe = event_bus.subscribe(NOTIFICATION_CHANGED, handler)
        try:
            on_change(load())
        except Exception:
            unsubscribe()
            raise
        return unsubscribe


notification_repository = NotificationRepository()
