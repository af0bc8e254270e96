from __future__ import annotations

import logging
import uuid
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
from app.logging import JsonLogFormatter
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
            Role(key="viewer", name="Viewer", permissions=["task_view"]),
            DirectoryUser(id="u-admin", full_name="Ada", role="admin"),
            DirectoryUser(id="u-view", full_name="Vic", role="viewer"),
        ]
    )
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_state() -> Generator[None, None, None]:
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


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


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    path = f"/api/crm/tasks/{uuid.uuid4()}"
    response = client.get(path, headers={**_auth("u-admin"), "X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/tasks/{id}"
        and getattr(record, "status_code", None) == 404
        and getattr(record, "user_id", None) == "u-admin"
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_denied_permission_is_logged(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.post(
        "/api/crm/tasks",
        json={"title": "Call back"},
        headers={**_auth("u-view"), "X-Correlation-Id": "deny-1"},
    )
    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"

    denials = [record for record in caplog.records if record.getMessage() == "authz.denied"]
    assert denials
    assert getattr(denials[-1], "correlation_id", None) == "deny-1"


def test_health_requests_log_at_debug(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    assert client.get("/health").status_code == 200

    assert not [record for record in caplog.records if getattr(record, "path", None) == "/health"]


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "app.request",
            "levelno": logging.INFO,
            "levelname": "INFO",
            "msg": "http.request",
            "path": "/api/me",
            "status_code": 200,
            "secret_token": "nope",
            "correlation_id": "c-1",
        }
    )

    rendered = JsonLogFormatter().format(record)

    assert '"correlation_id": "c-1"' in rendered
    assert '"path": "/api/me"' in rendered
    assert "secret_token" not in rendered
