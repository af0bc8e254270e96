from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.authz.resolver import list_active_user_ids
from app.core.events import NOTIFICATION_CHANGED, event_bus
from app.metrics import observe_fanout
from app.notifications.models import Notification, NotificationEvent, utcnow
from app.notifications.push import PushDeliveryService, push_delivery_service
from app.notifications.recipients import build_recipient_list
from app.otel import traced


logger = logging.getLogger("app.notifications.fanout")


@dataclass(slots=True)
class FanOutReport:
    event_id: uuid.UUID
    created: int = 0
    skipped: int = 0
    recipients: list[str] = field(default_factory=list)


class NotificationFanOutService:
    def __init__(self, push: PushDeliveryService | None = None) -> None:
        self._push = push or push_delivery_service

    def fan_out(self, session: Session, event_id: uuid.UUID) -> FanOutReport:
        event = session.get(NotificationEvent, event_id)
        if event is None:
            logger.warning("notification.fanout_event_missing", extra={"event_id": str(event_id)})
            return FanOutReport(event_id=event_id)

        started = time.perf_counter()
        with traced("notification.fan_out", event_type=event.type, event_id=str(event.id)):
            if event.broadcast:
                recipients = list_active_user_ids(session)
            else:
                recipients = build_recipient_list(None, event.recipients or [])
            report = FanOutReport(event_id=event.id, recipients=recipients)

            already = set(
                session.scalars(select(Notification.user_id).where(Notification.event_id == event.id)).all()
            )
            created: list[Notification] = []
            for user_id in recipients:
                if user_id in already:
                    report.skipped += 1
                    continue
                row = Notification(
                    event_id=event.id,
                    user_id=user_id,
                    type=event.type or "generic",
                    title=event.title or "Notification",
                    body=event.body or "",
                    actor_id=event.actor_id,
                    entity_type=event.entity_type,
                    entity_id=event.entity_id,
                    meta=event.meta,
                    created_at=event.created_at,
                    read_at=None,
                )
                session.add(row)
                created.append(row)
            event.fanned_out_at = utcnow()
            session.commit()
            report.created = len(created)

        observe_fanout(report.created, time.perf_counter() - started)
        logger.info(
            "notification.fanned_out",
            extra={"event_id": str(event.id), "event_type": event.type, "recipient_count": report.created},
        )

        for row in created:
            event_bus.publish(NOTIFICATION_CHANGED, {"user_id": row.user_id, "notification_id": str(row.id)})
        for row in created:
            self._deliver_push(session, row)
        return report

    def _deliver_push(self, session: Session, row: Notification) -> None:
        try:
            self._push.deliver(session, row)
        except Exception as exc:
            session.rollback()
            logger.warning(
                "push.delivery_failed",
                extra={"user_id": row.user_id, "notification_id": str(row.id), "error": str(exc)},
            )


notification_fanout_service = NotificationFanOutService()
