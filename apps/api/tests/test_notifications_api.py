from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from starlette.websockets import WebSocketDisconnect

from app.authz.models import DirectoryUser, Role
from app.core.auth import issue_session_token
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.notifications.models import Notification, PushToken


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
    session.add_all(
        [
            Role(key="sales", name="Sales", permissions=["task_create", "task_assign", "task_view"]),
            DirectoryUser(id="u-boss", full_name="Blair", role="sales"),
            DirectoryUser(id="u-1", full_name="Robin", role="sales"),
            DirectoryUser(id="u-2", full_name="Quinn", role="sales"),
            DirectoryUser(id="u-off", full_name="Kai", role="sales", active=False),
        ]
    )
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("AUTO_RUN_JOBS", "true")
    monkeypatch.setenv("PUSH_VAPID_KEY", "test-vapid-key")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        app.state.session_factory = override_get_db
        yield test_client
    app.dependency_overrides.clear()


def _token(user_id: str) -> str:
    token, _ = issue_session_token(user_id)
    return token


def _headers(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {_token(user_id)}"}


def _assign_task(client: TestClient, title: str, assignees: list[str]) -> dict:
    response = client.post(
        "/api/crm/tasks",
        json={"title": title, "assigned_users": assignees},
        headers=_headers("u-boss"),
    )
    assert response.status_code == 201
    return response.json()


def test_task_assignment_lands_in_assignee_inboxes(client: TestClient) -> None:
    _assign_task(client, "Prepare quote", ["u-1", "u-2", "u-boss"])

    for user_id in ("u-1", "u-2"):
        response = client.get("/api/notifications", headers=_headers(user_id))
        assert response.status_code == 200
        items = response.json()
        assert [item["type"] for item in items] == ["task.assigned"]
        assert items[0]["title"] == "New Task"
        assert items[0]["read_at"] is None

    actor_inbox = client.get("/api/notifications", headers=_headers("u-boss"))
    assert actor_inbox.json() == []


def test_unread_count_and_mark_read(client: TestClient) -> None:
    _assign_task(client, "First", ["u-1"])
    _assign_task(client, "Second", ["u-1"])

    count = client.get("/api/notifications/unread-count", headers=_headers("u-1"))
    assert count.json() == {"unread": 2}

    items = client.get("/api/notifications", headers=_headers("u-1")).json()
    newest = items[0]
    read = client.post(f"/api/notifications/{newest['id']}/read", headers=_headers("u-1"))
    assert read.status_code == 200
    assert read.json()["read_at"] is not None

    again = client.post(f"/api/notifications/{newest['id']}/read", headers=_headers("u-1"))
    assert again.status_code == 200
    assert again.json()["read_at"] == read.json()["read_at"]

    count = client.get("/api/notifications/unread-count", headers=_headers("u-1"))
    assert count.json() == {"unread": 1}


def test_cannot_mark_another_users_notification(client: TestClient) -> None:
    _assign_task(client, "Private", ["u-1"])
    items = client.get("/api/notifications", headers=_headers("u-1")).json()

    response = client.post(f"/api/notifications/{items[0]['id']}/read", headers=_headers("u-2"))
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_mark_all_read(client: TestClient, db_session: Session) -> None:
    _assign_task(client, "First", ["u-1"])
    _assign_task(client, "Second", ["u-1"])

    response = client.post("/api/notifications/read-all", headers=_headers("u-1"))
    assert response.json() == {"updated": 2}
    second = client.post("/api/notifications/read-all", headers=_headers("u-1"))
    assert second.json() == {"updated": 0}

    unread = db_session.scalars(
        select(Notification).where(Notification.user_id == "u-1", Notification.read_at.is_(None))
    ).all()
    assert unread == []


def test_list_limit(client: TestClient) -> None:
    for index in range(3):
        _assign_task(client, f"Task {index}", ["u-1"])
    response = client.get("/api/notifications?limit=2", headers=_headers("u-1"))
    assert len(response.json()) == 2


def test_push_token_registration_is_idempotent(client: TestClient, db_session: Session) -> None:
    for _ in range(2):
        response = client.post(
            "/api/notifications/push-tokens",
            json={"token": "web-token-1", "platform": "web"},
            headers=_headers("u-1"),
        )
        assert response.status_code == 202
        assert response.json() == {"registered": True, "reason": None}

    tokens = db_session.scalars(select(PushToken).where(PushToken.user_id == "u-1")).all()
    assert len(tokens) == 1


def test_push_registration_disabled_without_vapid_key(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.delenv("PUSH_VAPID_KEY")
    get_settings.cache_clear()
    response = client.post(
        "/api/notifications/push-tokens",
        json={"token": "web-token-1"},
        headers=_headers("u-1"),
    )
    assert response.status_code == 202
    assert response.json() == {"registered": False, "reason": "disabled"}


def test_live_feed_sends_snapshot_then_updates(client: TestClient) -> None:
    _assign_task(client, "Backlog", ["u-1"])

    with client.websocket_connect(f"/api/notifications/live?token={_token('u-1')}") as websocket:
        snapshot = websocket.receive_json()
        assert snapshot["type"] == "snapshot"
        assert snapshot["unread"] == 1
        assert [item["title"] for item in snapshot["items"]] == ["New Task"]

        websocket.send_json({"action": "ping"})
        assert websocket.receive_json() == {"type": "pong"}

        websocket.send_json({"action": "mark_all_read"})
        update = websocket.receive_json()
        assert update["type"] == "snapshot"
        assert update["unread"] == 0


def test_live_feed_rejects_missing_session(client: TestClient) -> None:
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/api/notifications/live") as websocket:
            websocket.receive_json()
    assert exc_info.value.code == 4001


def test_live_feed_rejects_inactive_user(client: TestClient) -> None:
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect(f"/api/notifications/live?token={_token('u-off')}") as websocket:
            websocket.receive_json()
    assert exc_info.value.code == 4003


def test_inactive_user_cannot_touch_inbox(client: TestClient) -> None:
    _assign_task(client, "Pending", ["u-off"])
    headers = _headers("u-off")

    listing = client.get("/api/notifications", headers=headers)
    assert listing.status_code == 403
    assert listing.json()["code"] == "forbidden"

    read_all = client.post("/api/notifications/read-all", headers=headers)
    assert read_all.status_code == 403

    push = client.post(
        "/api/notifications/push-tokens",
        json={"token": "web-token-off", "platform": "web"},
        headers=headers,
    )
    assert push.status_code == 403


def test_inactive_user_cannot_mark_single_notification(client: TestClient, db_session: Session) -> None:
    _assign_task(client, "Pending", ["u-off"])
    row = db_session.scalars(select(Notification).where(Notification.user_id == "u-off")).one()

    response = client.post(f"/api/notifications/{row.id}/read", headers=_headers("u-off"))
    assert response.status_code == 403

    db_session.refresh(row)
    assert row.read_at is None
    tokens = db_session.scalars(select(PushToken).where(PushToken.user_id == "u-off")).all()
    assert tokens == []


def test_live_connections_gauge_tracks_open_sockets(client: TestClient) -> None:
    with client.websocket_connect(f"/api/notifications/live?token={_token('u-1')}") as websocket:
        websocket.receive_json()
        assert REGISTRY.get_sample_value("notification_live_connections") == 1.0
    assert REGISTRY.get_sample_value("notification_live_connections") == 0.0


def test_lifespan_installs_default_session_factory() -> None:
    with TestClient(app):
        assert app.state.session_factory is get_db
