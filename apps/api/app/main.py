from contextlib import asynccontextmanager
import logging
import uuid

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.errors import register_error_handlers
from app.api.routes import router as api_router
from app.core.celery_app import fan_out_notification_event
from app.core.config import get_settings
from app.core.database import get_db, session_scope
from app.core.events import NOTIFICATION_EVENT_CREATED, InternalEvent, event_bus
from app.logging import configure_logging
from app.middleware.rate_limit import MutationRateLimitMiddleware
from app.middleware.request_context import RequestContextMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.notifications.fanout import notification_fanout_service
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_type": event.name})


def _on_notification_event_created(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    raw_event_id = event.payload.get("event_id")
    if not isinstance(raw_event_id, str):
        return

    settings = get_settings()
    try:
        if not settings.auto_run_jobs:
            fan_out_notification_event.delay(raw_event_id)
            return
        with session_scope(app.state.session_factory) as session:
            notification_fanout_service.fan_out(session, uuid.UUID(raw_event_id))
    except Exception as exc:
        logger.exception("notification.fanout_failed", extra={"event_id": raw_event_id, "error": str(exc)[:500]})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    # Work outside a request (inline fan-out, live feeds) opens sessions through this factory.
    app.state.session_factory = get_db
    unsubscribers = []
    if not _subscriptions_registered:
        unsubscribers.append(event_bus.subscribe("system.started", _on_system_started))
        unsubscribers.append(event_bus.subscribe(NOTIFICATION_EVENT_CREATED, _on_notification_event_created))
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    try:
        yield
    finally:
        # Fan-out follows the app lifetime; emits outside it stay unhandled.
        for unsubscribe in unsubscribers:
            unsubscribe()
        if unsubscribers:
            _subscriptions_registered = False


app = FastAPI(title="Beacon API", version="0.1.0", lifespan=lifespan)
app.add_middleware(MutationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(RequestContextMiddleware)
register_error_handlers(app)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("beacon-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
