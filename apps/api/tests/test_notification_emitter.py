from __future__ import annotations

import logging
from collections.abc import Generator
from typing import Any

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.core.events import NOTIFICATION_EVENT_CREATED, InternalEvent, event_bus
from app.notifications import emitter
from app.notifications.emitter import NotificationEventInput, emit, emit_all_safe, emit_safe
from app.notifications.models import NotificationEvent


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def published() -> Generator[list[dict[str, Any]], None, None]:
    captured: list[dict[str, Any]] = []

    def handler(event: InternalEvent) -> None:
        captured.append(event.payload)

    unsubscribe = event_bus.subscribe(NOTIFICATION_EVENT_CREATED, handler)
    yield captured
    unsubscribe()


def test_emit_dedupes_recipients_and_publishes(db_session: Session, published: list[dict[str, Any]]) -> None:
    row = emit(
        db_session,
        NotificationEventInput(
            type="task.assigned",
            title="New Task",
            body="Assigned",
            actor_id="u-actor",
            recipients=["u-1", "u-2", "u-1", ""],
            entity_type="task",
            entity_id="t-1",
            meta={"status": "todo"},
        ),
    )

    assert row is not None
    stored = db_session.get(NotificationEvent, row.id)
    assert stored is not None
    assert stored.recipients == ["u-1", "u-2"]
    assert stored.meta == {"status": "todo"}
    assert stored.fanned_out_at is None
    assert published == [{"event_id": str(row.id)}]


def test_targeted_event_without_recipients_is_skipped(db_session: Session, published: list[dict[str, Any]]) -> None:
    result = emit_safe(db_session, NotificationEventInput(type="task.assigned", recipients=[]))

    assert result.ok is True
    assert result.skipped is True
    assert db_session.scalars(select(NotificationEvent)).all() == []
    assert published == []


def test_broadcast_event_drops_explicit_recipients(db_session: Session) -> None:
    row = emit(db_session, NotificationEventInput(type="system.notice", broadcast=True, recipients=["u-1"]))
    assert row is not None
    assert row.broadcast is True
    assert row.recipients == []


def test_defaults_fill_blank_type_and_title(db_session: Session) -> None:
    row = emit(db_session, NotificationEventInput(type="", title="", recipients=["u-1"]))
    assert row is not None
    assert row.type == "generic"
    assert row.title == "Notification"


def test_emit_safe_logs_and_reports_failure(
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.WARNING)

    def broken_commit() -> None:
        raise RuntimeError("store offline")

    monkeypatch.setattr(db_session, "commit", broken_commit)
    result = emit_safe(db_session, NotificationEventInput(type="lead.converted", recipients=["u-1"], entity_id="l-1"))

    assert result.ok is False
    assert result.error == "store offline"
    records = [record for record in caplog.records if record.getMessage() == "notification.emit_failed"]
    assert records
    assert getattr(records[0], "event_type", None) == "lead.converted"


def test_emit_all_safe_keeps_going_after_failure(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    real_emit = emitter.emit
    calls: list[str] = []

    def flaky_emit(session: Session, event: NotificationEventInput) -> NotificationEvent | None:
        calls.append(event.type)
        if event.type == "task.assigned":
            raise RuntimeError("boom")
        return real_emit(session, event)

    monkeypatch.setattr(emitter, "emit", flaky_emit)
    results = emit_all_safe(
        db_session,
        [
            NotificationEventInput(type="task.assigned", recipients=["u-1"]),
            NotificationEventInput(type="task.status_changed", recipients=["u-2"]),
        ],
    )

    assert calls == ["task.assigned", "task.status_changed"]
    assert [result.ok for result in results] == [False, True]
    assert results[1].event_id is not None
