import logging
import uuid

from celery import Celery

from app.core.config import get_settings
from app.core.database import session_scope
from app.notifications.fanout import notification_fanout_service

settings = get_settings()
logger = logging.getLogger("app.tasks")

celery_app = Celery("beacon_api", broker=settings.redis_url, backend=settings.redis_url)


@celery_app.task(name="app.tasks.fan_out_notification_event", bind=True, max_retries=3, default_retry_delay=5)
def fan_out_notification_event(self, event_id: str) -> int:  # type: ignore[no-untyped-def]
    try:
        with session_scope() as session:
            report = notification_fanout_service.fan_out(session, uuid.UUID(event_id))
    except Exception as exc:
        logger.warning("notification.fanout_retry", extra={"event_id": event_id, "error": str(exc)})
        raise self.retry(exc=exc)
    return report.created
