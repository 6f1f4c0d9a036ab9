from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from iris_crm import audit, events
from iris_crm.core.config import get_settings
from iris_crm.core.database import Base, get_db
from iris_crm.crm.api import get_current_user
from iris_crm.crm.models import CRMLead, CRMNotification, CRMUser
from iris_crm.crm.service import ActorUser
from iris_crm.main import app


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


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> ActorUser:
        return ActorUser(
            user_id="lead-manager",
            permissions={"crm.leads.assign", "crm.notifications.read"},
            correlation_id="corr-assign",
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def users(db_session: Session) -> dict[str, CRMUser]:
    user_a = CRMUser(name="Alex Able", email="alex@iris.io")
    user_b = CRMUser(name="Bailey Baker", email="bailey@iris.io")
    db_session.add_all([user_a, user_b])
    db_session.commit()
    return {"a": user_a, "b": user_b}


def _seed_lead(db_session: Session, index: int, assigned_user_id: uuid.UUID | None) -> CRMLead:
    lead = CRMLead(
        company_name=f"Company {index}",
        person_name=f"Person {index}",
        email=f"person{index}@example.com",
        assigned_user_id=assigned_user_id,
    )
    db_session.add(lead)
    db_session.commit()
    return lead


def test_bulk_assign_notifies_every_changed_assignee(
    client: TestClient,
    db_session: Session,
    users: dict[str, CRMUser],
) -> None:
    leads = [
        _seed_lead(db_session, 1, users["a"].id),
        _seed_lead(db_session, 2, users["a"].id),
        _seed_lead(db_session, 3, None),
    ]
    target_id = users["b"].id

    response = client.post(
        "/api/crm/leads/bulk-assign",
        json={"leadIds": [str(lead.id) for lead in leads], "assignedUserId": str(target_id)},
    )

    assert response.status_code == 200
    body = response.json()
    assert len(body["assignedLeads"]) == 3
    assert body["assignedUser"] == {"id": str(target_id), "name": "Bailey Baker", "email": "bailey@iris.io"}
    assert body["notificationCount"] == 3
    assert all(item["assigned_user_id"] == str(target_id) for item in body["assignedLeads"])

    notifications = db_session.scalars(select(CRMNotification).where(CRMNotification.user_id == target_id)).all()
    assert len(notifications) == 3
    assert {notification.lead_id for notification in notifications} == {lead.id for lead in leads}
    assert notifications[0].message.startswith("You have been assigned a new lead: ")


def test_bulk_assign_skips_notification_when_assignee_unchanged(
    client: TestClient,
    db_session: Session,
    users: dict[str, CRMUser],
) -> None:
    already_b = _seed_lead(db_session, 1, users["b"].id)
    from_a = _seed_lead(db_session, 2, users["a"].id)

    response = client.post(
        "/api/crm/leads/bulk-assign",
        json={"leadIds": [str(already_b.id), str(from_a.id)], "assignedUserId": str(users["b"].id)},
    )

    assert response.status_code == 200
    assert len(response.json()["assignedLeads"]) == 2
    assert response.json()["notificationCount"] == 1

    listed = client.get("/api/crm/notifications", params={"user_id": str(users["b"].id)})
    assert listed.status_code == 200
    assert [item["lead_id"] for item in listed.json()] == [str(from_a.id)]


def test_bulk_assign_validation(client: TestClient, db_session: Session, users: dict[str, CRMUser]) -> None:
    lead = _seed_lead(db_session, 1, None)

    empty = client.post("/api/crm/leads/bulk-assign", json={"leadIds": [], "assignedUserId": str(users["b"].id)})
    assert empty.status_code == 400
    assert empty.json()["code"] == "bad_request"

    missing_user = client.post("/api/crm/leads/bulk-assign", json={"leadIds": [str(lead.id)]})
    assert missing_user.status_code == 400
    assert missing_user.json()["message"] == "Assigned user ID is required"

    unknown_user = client.post(
        "/api/crm/leads/bulk-assign",
        json={"leadIds": [str(lead.id)], "assignedUserId": str(uuid.uuid4())},
    )
    assert unknown_user.status_code == 400
    assert unknown_user.json()["code"] == "invalid_user"
    assert unknown_user.json()["message"] == "Invalid user ID"

    db_session.expire_all()
    assert db_session.get(CRMLead, lead.id).assigned_user_id is None
    assert db_session.scalars(select(CRMNotification)).all() == []


def test_notifications_require_user_id(client: TestClient) -> None:
    response = client.get("/api/crm/notifications")

    assert response.status_code == 400
    assert response.json()["message"] == "User ID is required"


def test_bulk_assign_commit_failure_rolls_back_every_lead(
    client: TestClient,
    db_session: Session,
    users: dict[str, CRMUser],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    leads = [_seed_lead(db_session, 1, users["a"].id), _seed_lead(db_session, 2, None)]
    lead_ids = [lead.id for lead in leads]

    def fail_commit() -> None:
        raise OperationalError("COMMIT", {}, Exception("database is locked"))

    monkeypatch.setattr(db_session, "commit", fail_commit)

    response = client.post(
        "/api/crm/leads/bulk-assign",
        json={"leadIds": [str(lead_id) for lead_id in lead_ids], "assignedUserId": str(users["b"].id)},
    )

    assert response.status_code == 500
    assert response.json()["code"] == "internal_error"
    stored = {lead.id: lead.assigned_user_id for lead in db_session.scalars(select(CRMLead)).all()}
    assert stored == {lead_ids[0]: users["a"].id, lead_ids[1]: None}
    assert db_session.scalar(select(func.count()).select_from(CRMNotification)) == 0
    assert audit.audit_entries == []
