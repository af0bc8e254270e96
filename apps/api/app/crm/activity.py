from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.crm.models import CRMActivity
from app.crm.schemas import ActivityRead


logger = logging.getLogger("app.crm.activity")


@dataclass(slots=True)
class ActivityResult:
    ok: bool
    activity_id: uuid.UUID | None = None
    error: str | None = None


def record_activity(
    session: Session,
    entity_type: str,
    entity_id: uuid.UUID,
    note: str,
    *,
    actor_id: str | None,
    type: str = "note",
) -> CRMActivity:
    row = CRMActivity(entity_type=entity_type, entity_id=entity_id, type=type, note=note, created_by=actor_id)
    session.add(row)
    session.commit()
    session.refresh(row)
    return row


def record_activity_safe(
    session: Session,
    entity_type: str,
    entity_id: uuid.UUID,
    note: str,
    *,
    actor_id: str | None,
    type: str = "note",
) -> ActivityResult:
    """Append a timeline line after the business write; failures are logged, not raised."""
    try:
        row = record_activity(session, entity_type, entity_id, note, actor_id=actor_id, type=type)
    except Exception as exc:
        session.rollback()
        logger.warning(
            "crm.activity_failed",
            exc_info=True,
            extra={"entity_type": entity_type, "entity_id": str(entity_id), "error": str(exc)},
        )
        return ActivityResult(ok=False, error=str(exc)[:500])
    return ActivityResult(ok=True, activity_id=row.id)


def list_activities(session: Session, entity_type: str, entity_id: uuid.UUID, limit: int = 100) -> list[ActivityRead]:
    rows = session.scalars(
        select(CRMActivity)
        .where(CRMActivity.entity_type == entity_type, CRMActivity.entity_id == entity_id)
        .order_by(CRMActivity.created_at.desc(), CRMActivity.id.desc())
        .limit(limit)
    ).all()
    return [ActivityRead.model_validate(row) for row in rows]
