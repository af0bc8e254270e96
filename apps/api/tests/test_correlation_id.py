from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.authz.models import DirectoryUser
from app.core.auth import issue_session_token
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.middleware.request_context import resolve_correlation_id


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
    session.add(DirectoryUser(id="u-admin", full_name="Ada", role="admin"))
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


def _auth() -> dict[str, str]:
    token, _ = issue_session_token("u-admin")
    return {"Authorization": f"Bearer {token}"}


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/crm/tasks/{uuid.uuid4()}", headers=_auth())
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value
    assert body["code"] == "crm_task_get_failed"


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/crm/tasks/{uuid.uuid4()}", headers={**_auth(), "X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_unauthenticated_envelope_carries_correlation_id(client: TestClient) -> None:
    response = client.get("/api/me", headers={"X-Correlation-Id": "corr-401"})
    assert response.status_code == 401
    assert response.json() == {
        "code": "unauthorized",
        "message": "unauthorized",
        "details": None,
        "correlation_id": "corr-401",
    }


def test_malformed_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "bad id with spaces"})
    assert response.status_code == 200
    replaced = response.headers.get("x-correlation-id")
    assert replaced and replaced != "bad id with spaces"
    uuid.UUID(replaced)


def test_resolve_correlation_id_limits() -> None:
    assert resolve_correlation_id("req:1.2_3-4") == "req:1.2_3-4"
    assert resolve_correlation_id("x" * 129) != "x" * 129
    assert resolve_correlation_id(None)
    assert resolve_correlation_id("") != ""
