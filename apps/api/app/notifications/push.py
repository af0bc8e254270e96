from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.metrics import observe_push_delivery
from app.notifications.models import Notification, PushToken, utcnow


logger = logging.getLogger("app.notifications.push")

# Transport error codes meaning the token will never work again.
INVALID_TOKEN_ERRORS = frozenset(
    {
        "messaging/invalid-registration-token",
        "messaging/registration-token-not-registered",
        "invalid_token",
        "unregistered",
    }
)


@dataclass(slots=True)
class PushMessage:
    title: str
    body: str
    data: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class PushSendResult:
    token: str
    ok: bool
    error_code: str | None = None


class PushTransport(Protocol):
    def send_multicast(self, tokens: list[str], message: PushMessage) -> list[PushSendResult]: ...


class LoggingPushTransport:
    """Default transport: records the delivery and reports every token as sent."""

    def send_multicast(self, tokens: list[str], message: PushMessage) -> list[PushSendResult]:
        logger.info("push.multicast", extra={"token_count": len(tokens), "event_type": message.data.get("type")})
        return [PushSendResult(token=token, ok=True) for token in tokens]


_transport: PushTransport = LoggingPushTransport()


def set_push_transport(transport: PushTransport) -> None:
    global _transport
    _transport = transport


def get_push_transport() -> PushTransport:
    return _transport


@dataclass(slots=True)
class PushDeliveryReport:
    sent: int = 0
    failed: int = 0
    pruned: int = 0


class PushDeliveryService:
    def deliver(self, session: Session, notification: Notification) -> PushDeliveryReport:
        tokens = list(
            session.scalars(select(PushToken.token).where(PushToken.user_id == notification.user_id)).all()
        )
        report = PushDeliveryReport()
        if not tokens:
            return report

        message = PushMessage(
            title=notification.title,
            body=notification.body,
            data={
                "notification_id": str(notification.id),
                "type": notification.type,
                "entity_type": notification.entity_type or "",
                "entity_id": notification.entity_id or "",
            },
        )
        results = get_push_transport().send_multicast(tokens, message)

        invalid: list[str] = []
        for result in results:
            if result.ok:
                report.sent += 1
                continue
            report.failed += 1
            if result.error_code in INVALID_TOKEN_ERRORS:
                invalid.append(result.token)

        if invalid:
            session.execute(
                delete(PushToken).where(PushToken.user_id == notification.user_id, PushToken.token.in_(invalid))
            )
            session.commit()
            report.pruned = len(invalid)

        observe_push_delivery("sent", report.sent)
        observe_push_delivery("failed", report.failed)
        observe_push_delivery("pruned", report.pruned)
        if report.failed:
            logger.warning(
                "push.delivery_partial",
                extra={
                    "user_id": notification.user_id,
                    "notification_id": str(notification.id),
                    "token_count": len(tokens),
                    "pruned_count": report.pruned,
                },
            )
        return report


@dataclass(slots=True)
class PushRegistrationResult:
    registered: bool
    reason: str | None = None


class PushRegistrationService:
    def register(self, session: Session, user_id: str, token: str, platform: str = "web") -> PushToken:
        row = session.scalar(select(PushToken).where(PushToken.user_id == user_id, PushToken.token == token))
        now = utcnow()
        if row is None:
            row = PushToken(user_id=user_id, token=token, platform=platform, created_at=now, last_seen_at=now)
            session.add(row)
        else:
            row.platform = platform
            row.last_seen_at = now
        session.commit()
        return row

    def register_safe(self, session: Session, user_id: str, token: str, platform: str = "web") -> PushRegistrationResult:
        if not get_settings().push_vapid_key:
            return PushRegistrationResult(registered=False, reason="disabled")
        if not token.strip():
            return PushRegistrationResult(registered=False, reason="empty_token")
        try:
            self.register(session, user_id, token.strip(), platform)
        except Exception as exc:
            session.rollback()
            logger.warning("push.registration_failed", extra={"user_id": user_id, "error": str(exc)})
            return PushRegistrationResult(registered=False, reason="error")
        return PushRegistrationResult(registered=True)


push_delivery_service = PushDeliveryService()
push_registration_service = PushRegistrationService()
