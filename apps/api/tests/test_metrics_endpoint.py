from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.authz.models import DirectoryUser, Role
from app.core.auth import issue_session_token
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


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
            Role(key="ops", name="Ops", permissions=["settings"]),
            Role(key="rep", name="Rep", permissions=["task_create", "task_view"]),
            DirectoryUser(id="u-admin", full_name="Ada", role="admin"),
            DirectoryUser(id="u-ops", full_name="Oak", role="ops"),
            DirectoryUser(id="u-rep", full_name="Remy", role="rep"),
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
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
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


def _auth(user_id: str) -> dict[str, str]:
    token, _ = issue_session_token(user_id)
    return {"Authorization": f"Bearer {token}"}


def test_metrics_endpoint_exposes_http_and_notification_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    task = client.post(
        "/api/crm/tasks",
        json={"title": "Prepare quote", "assigned_users": ["u-rep"]},
        headers=_auth("u-admin"),
    )
    assert task.status_code == 201
    denied = client.post("/api/crm/tasks", json={"title": "Nope"}, headers=_auth("u-ops"))
    assert denied.status_code == 403

    metrics = client.get("/metrics", headers=_auth("u-admin"))
    assert metrics.status_code == 200
    body = metrics.text
    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert 'path="/health"' in body
    assert 'notification_events_emitted_total{event_type="task.assigned"}' in body
    assert "notification_fanout_rows_total" in body
    assert 'authz_denials_total{reason="missing_permission"}' in body


def test_metrics_endpoint_allows_settings_permission(client: TestClient) -> None:
    assert client.get("/metrics", headers=_auth("u-ops")).status_code == 200


def test_metrics_endpoint_requires_admin_or_settings(client: TestClient) -> None:
    assert client.get("/metrics").status_code == 401
    assert client.get("/metrics", headers=_auth("u-rep")).status_code == 403


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    assert client.get("/metrics", headers=_auth("u-admin")).status_code == 404
