from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from app.core.events import NOTIFICATION_EVENT_CREATED, event_bus
from app.metrics import observe_notification_emit_failure, observe_notification_emitted
from app.notifications.models import NotificationEvent
from app.notifications.recipients import build_recipient_list
from app.otel import traced


logger = logging.getLogger("app.notifications.emitter")


@dataclass(slots=True)
class NotificationEventInput:
    type: str = "generic"
    title: str = "Notification"
    body: str = ""
    actor_id: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    recipients: list[str] = field(default_factory=list)
    broadcast: bool = False
    meta: dict[str, Any] | None = None


@dataclass(slots=True)
class EmitResult:
    ok: bool
    event_id: uuid.UUID | None = None
    skipped: bool = False
    error: str | None = None


def emit(session: Session, event: NotificationEventInput) -> NotificationEvent | None:
    """Persist one notification event and hand it to fan-out.

    Returns ``None`` without writing when the event is targeted but has nobody to
    reach. Broadcast events never carry an explicit recipient list.
    """
    recipients = [] if event.broadcast else build_recipient_list(None, event.recipients)
    if not event.broadcast and not recipients:
        return None

    with traced("notification.emit", event_type=event.type, recipient_count=len(recipients)):
        row = NotificationEvent(
            type=event.type or "generic",
            title=event.title or "Notification",
            body=event.body or "",
            actor_id=event.actor_id,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            recipients=recipients,
            broadcast=event.broadcast,
            meta=dict(event.meta) if event.meta else None,
        )
        session.add(row)
        session.commit()
        session.refresh(row)

    observe_notification_emitted(row.type)
    logger.info(
        "notification.event_emitted",
        extra={
            "event_id": str(row.id),
            "event_type": row.type,
            "entity_type": row.entity_type,
            "entity_id": row.entity_id,
            "recipient_count": len(recipients),
        },
    )
    event_bus.publish(NOTIFICATION_EVENT_CREATED, {"event_id": str(row.id)})
    return row


def emit_safe(session: Session, event: NotificationEventInput) -> EmitResult:
    """Best-effort ``emit``: failures are logged and reported, never raised."""
    try:
        row = emit(session, event)
    except Exception as exc:
        session.rollback()
        observe_notification_emit_failure(event.type)
        logger.warning(
            "notification.emit_failed",
            exc_info=True,
            extra={"event_type": event.type, "entity_id": event.entity_id, "error": str(exc)},
        )
        return EmitResult(ok=False, error=str(exc)[:500])
    if row is None:
        return EmitResult(ok=True, skipped=True)
    return EmitResult(ok=True, event_id=row.id)


def emit_all_safe(session: Session, events: list[NotificationEventInput]) -> list[EmitResult]:
    return [emit_safe(session, event) for event in events]
