from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from iris_crm import audit, events
from iris_crm.core.config import get_settings
from iris_crm.core.database import Base, get_db
from iris_crm.crm.api import get_current_user as crm_get_current_user
from iris_crm.crm.service import ActorUser
from iris_crm.main import app


ALL_PERMISSIONS = {
    "crm.accounts.read",
    "crm.accounts.write",
    "crm.leads.create",
    "crm.leads.read",
    "crm.leads.update",
    "crm.leads.convert",
}


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

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_lead(client: TestClient, correlation_id: str, status: str = "New") -> dict:
    response = client.post(
        "/api/crm/leads",
        json={
            "company_name": "Corr Lead Co",
            "person_name": "Casey Corr",
            "email": "casey@corr.io",
            "status": status,
        },
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/crm/leads/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/crm/accounts/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_oversized_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "x" * 129})
    assert response.status_code == 200
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    assert header_value != "x" * 129


def test_status_change_audit_and_event_use_request_correlation_id(client: TestClient) -> None:
    lead = _create_lead(client, "corr-lead-1")

    response = client.patch(
        f"/api/crm/leads/{lead['id']}/status",
        json={"status": "Qualified"},
        headers={"X-Correlation-Id": "corr-status-1"},
    )
    assert response.status_code == 200

    status_audits = [entry for entry in audit.audit_entries if entry.get("action") == "status_change"]
    assert status_audits
    assert status_audits[-1]["correlation_id"] == "corr-status-1"

    status_events = [item for item in events.published_events if item.get("event_type") == "crm.lead.status_changed"]
    assert status_events
    assert status_events[-1].get("correlation_id") == "corr-status-1"


def test_conversion_audit_and_event_use_request_correlation_id(client: TestClient) -> None:
    lead = _create_lead(client, "corr-lead-2", status="Negotiation")

    response = client.post(
        f"/api/crm/leads/{lead['id']}/convert",
        json={"notes": "signed"},
        headers={"X-Correlation-Id": "corr-convert-1"},
    )
    assert response.status_code == 200

    account_audits = [entry for entry in audit.audit_entries if entry.get("entity_type") == "crm.account"]
    assert account_audits
    assert all(entry["correlation_id"] == "corr-convert-1" for entry in account_audits)

    converted_events = [item for item in events.published_events if item.get("event_type") == "crm.lead.converted"]
    assert converted_events
    assert converted_events[-1].get("correlation_id") == "corr-convert-1"
