from __future__ import annotations

from collections.abc import Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.authz.models import DirectoryUser, Role
from app.core.auth import issue_session_token
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import CRMActivity, CRMProject, CRMSalesOrderRequest
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
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
    session.add_all(
        [
            Role(key="sales-rep", name="Sales Rep", permissions=["sales_order_request_create", "project_view"]),
            Role(key="engineer", name="Engineer", permissions=["po_request_create", "project_view"]),
            Role(key="order-desk", name="Order Desk", permissions=["sales_order_request_approve"]),
            Role(key="finance", name="Finance", permissions=["po_request_approve"]),
            Role(key="viewer", name="Viewer", permissions=["sales_order_request_view"]),
            DirectoryUser(id="u-rep", full_name="Reese", role="sales-rep"),
            DirectoryUser(id="u-eng", full_name="Emery", role="engineer"),
            DirectoryUser(id="u-desk", full_name="Dana", role="order-desk"),
            DirectoryUser(id="u-desk-off", full_name="Drew", role="order-desk", active=False),
            DirectoryUser(id="u-fin", full_name="Finley", role="finance"),
            DirectoryUser(id="u-view", full_name="Vale", role="viewer"),
            DirectoryUser(id="u-admin", full_name="Ada", role="admin"),
        ]
    )
    session.add(CRMProject(name="Depot refit", customer_name="Acme", assigned_to="u-rep", created_by="u-admin"))
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
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


def _headers(user_id: str) -> dict[str, str]:
    token, _ = issue_session_token(user_id)
    return {"Authorization": f"Bearer {token}"}


def _project_id(db_session: Session) -> str:
    return str(db_session.scalars(select(CRMProject.id)).one())


def _payload(project_id: str) -> dict:
    return {
        "project_id": project_id,
        "estimate_number": " EST-204 ",
        "estimate_amount": 12500.456,
        "po_number": "PO-7781",
        "po_amount": 12000,
        "po_date": "2026-09-30",
    }


def _submit(client: TestClient, db_session: Session, user_id: str = "u-rep", **overrides: object) -> httpx.Response:
    payload = _payload(_project_id(db_session))
    payload.update(overrides)
    return client.post("/api/sales-order/sales-order-requests", json=payload, headers=_headers(user_id))


def test_submission_stores_request_with_project_snapshot(client: TestClient, db_session: Session) -> None:
    response = _submit(client, db_session)

    assert response.status_code == 201
    body = response.json()
    assert body["request_no"].startswith("SOR-")
    assert len(body["request_no"]) == len("SOR-20260101-ABCDEF")
    assert body["project_name"] == "Depot refit"
    assert body["customer_name"] == "Acme"
    assert body["requested_by"] == "u-rep"
    assert body["requested_by_name"] == "Reese"
    assert body["estimate_number"] == "EST-204"
    assert float(body["estimate_amount"]) == 12500.46
    assert float(body["po_amount"]) == 12000.0
    assert body["po_date"] == "2026-09-30"
    assert body["status"] == "pending_approval"

    stored = db_session.scalars(select(CRMSalesOrderRequest)).one()
    assert stored.request_no == body["request_no"]


def test_submission_notifies_active_approvers_except_requester(client: TestClient, db_session: Session) -> None:
    response = _submit(client, db_session)

    events = db_session.scalars(
        select(NotificationEvent).where(NotificationEvent.type == "sales_order_request.submitted")
    ).all()
    assert len(events) == 1
    event = events[0]
    assert event.recipients == ["u-admin", "u-desk", "u-fin"]
    assert event.title == "New Sales Order Req"
    assert event.body == f"Reese submitted {response.json()['request_no']} for Depot refit."
    assert event.entity_type == "salesOrderRequest"
    assert event.meta["po_number"] == "PO-7781"


def test_approver_submitting_is_left_out_of_recipients(client: TestClient, db_session: Session) -> None:
    response = _submit(client, db_session, "u-admin")
    assert response.status_code == 201

    event = db_session.scalars(
        select(NotificationEvent).where(NotificationEvent.type == "sales_order_request.submitted")
    ).one()
    assert event.recipients == ["u-desk", "u-fin"]


def test_submission_logs_on_project_timeline(client: TestClient, db_session: Session) -> None:
    request_no = _submit(client, db_session).json()["request_no"]

    notes = db_session.scalars(select(CRMActivity.note).where(CRMActivity.entity_type == "project")).all()
    assert notes == [f"Sales Order Req {request_no} submitted for approval (PO 12,000.00)."]


def test_po_request_creators_may_also_submit(client: TestClient, db_session: Session) -> None:
    project = db_session.scalars(select(CRMProject)).one()
    project.assigned_to = "u-eng"
    db_session.commit()

    response = _submit(client, db_session, "u-eng")
    assert response.status_code == 201


def test_submitter_needs_create_permission(client: TestClient, db_session: Session) -> None:
    response = _submit(client, db_session, "u-view")
    assert response.status_code == 403
    assert db_session.scalars(select(CRMSalesOrderRequest)).all() == []


def test_submitter_must_own_project_without_view_all(client: TestClient, db_session: Session) -> None:
    response = _submit(client, db_session, "u-eng")
    assert response.status_code == 403


def test_non_positive_amounts_are_rejected(client: TestClient, db_session: Session) -> None:
    assert _submit(client, db_session, po_amount=0).status_code == 422
    assert _submit(client, db_session, estimate_amount=-5).status_code == 422


def test_blank_po_number_is_rejected(client: TestClient, db_session: Session) -> None:
    response = _submit(client, db_session, po_number="   ")
    assert response.status_code == 422
    assert response.json()["code"] == "sales_order_request_create_failed"


def test_unknown_project_is_not_found(client: TestClient, db_session: Session) -> None:
    response = _submit(client, db_session, project_id="00000000-0000-0000-0000-000000000000")
    assert response.status_code == 404
