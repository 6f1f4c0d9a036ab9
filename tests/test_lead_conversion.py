from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timezone

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from iris_crm import audit, events
from iris_crm.core.config import get_settings
from iris_crm.core.database import Base, get_db
from iris_crm.crm.api import get_current_user
from iris_crm.crm.models import CRMAccount, CRMLead
from iris_crm.crm.service import ActorUser
from iris_crm.main import app


ALL_PERMISSIONS = {
    "crm.leads.create",
    "crm.leads.read",
    "crm.leads.update",
    "crm.leads.convert",
    "crm.accounts.read",
    "crm.accounts.write",
    "crm.accounts.delete",
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
            user_id="rep-1",
            permissions=set(ALL_PERMISSIONS),
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_lead(client: TestClient, status: str = "Negotiation", email: str = "dana@initech.io") -> dict:
    response = client.post(
        "/api/crm/leads",
        json={
            "company_name": "Initech",
            "person_name": "Dana Lee",
            "email": email,
            "phone": "+44 20 7946 0000",
            "linkedin_profile_url": "https://linkedin.example/dana",
            "country": "UK",
            "status": status,
        },
    )
    assert response.status_code == 201
    return response.json()


def _count_accounts_for(db_session: Session, lead_id: str) -> int:
    return db_session.scalar(
        select(func.count()).select_from(CRMAccount).where(CRMAccount.converted_from_lead_id == uuid.UUID(lead_id))
    ) or 0


def test_convert_creates_account_and_flips_lead(client: TestClient, db_session: Session) -> None:
    lead = _create_lead(client)

    response = client.post(f"/api/crm/leads/{lead['id']}/convert", json={"notes": "Signed MSA"})

    assert response.status_code == 200
    body = response.json()
    assert body["created"] is True
    assert body["lead"]["previous_status"] == "Negotiation"
    assert body["lead"]["new_status"] == "Converted"
    assert body["account"]["name"] == "Initech"
    assert body["account"]["type"] == "Client"
    assert body["account"]["status"] == "Active"
    assert body["account"]["contact_person_name"] == "Dana Lee"
    assert body["account"]["contact_email"] == "dana@initech.io"

    account = db_session.scalar(select(CRMAccount).where(CRMAccount.id == uuid.UUID(body["account"]["id"])))
    assert account is not None
    assert account.converted_from_lead_id == uuid.UUID(lead["id"])
    assert account.description == (
        "Account converted from lead: Dana Lee - Initech. "
        "LinkedIn: https://linkedin.example/dana. Country: UK."
    )

    stored = db_session.scalar(select(CRMLead).where(CRMLead.id == uuid.UUID(lead["id"])))
    assert stored is not None
    assert stored.status == "Converted"
    assert stored.converted_at is not None
    assert stored.notes == "Signed MSA"
    assert any(event["event_type"] == "crm.lead.converted" for event in events.published_events)


def test_convert_without_body(client: TestClient) -> None:
    lead = _create_lead(client, status="Proposal Sent")

    response = client.post(f"/api/crm/leads/{lead['id']}/convert")

    assert response.status_code == 200
    assert response.json()["lead"]["new_status"] == "Converted"


def test_convert_twice_keeps_single_account(client: TestClient, db_session: Session) -> None:
    lead = _create_lead(client)

    first = client.post(f"/api/crm/leads/{lead['id']}/convert", json={})
    second = client.post(f"/api/crm/leads/{lead['id']}/convert", json={})

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["created"] is False
    assert second.json()["lead"]["previous_status"] == "Converted"
    assert second.json()["lead"]["new_status"] == "Converted"
    assert second.json()["account"]["id"] == first.json()["account"]["id"]
    assert _count_accounts_for(db_session, lead["id"]) == 1


def test_reconversion_fills_only_empty_contact_fields(client: TestClient) -> None:
    lead = _create_lead(client)
    converted = client.post(f"/api/crm/leads/{lead['id']}/convert", json={}).json()
    account_id = converted["account"]["id"]

    patched = client.patch(
        f"/api/crm/accounts/{account_id}",
        json={"contact_email": "owner@initech.io", "contact_phone": None, "status": "Inactive"},
    )
    assert patched.status_code == 200

    refreshed = client.post(f"/api/crm/leads/{lead['id']}/convert", json={})

    assert refreshed.status_code == 200
    account = refreshed.json()["account"]
    assert account["contact_email"] == "owner@initech.io"
    assert account["contact_phone"] == "+44 20 7946 0000"
    assert account["status"] == "Active"


@pytest.mark.parametrize("status", ["Lost", "Unqualified", "New", "Qualified"])
def test_ineligible_lead_is_not_convertible(client: TestClient, db_session: Session, status: str) -> None:
    lead = _create_lead(client, status=status)

    response = client.post(f"/api/crm/leads/{lead['id']}/convert", json={})

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "not_convertible"
    assert body["message"] == "Lead cannot be converted"
    assert body["details"]["current_status"] == status
    assert _count_accounts_for(db_session, lead["id"]) == 0


def test_converted_lead_without_account_is_not_convertible(client: TestClient) -> None:
    lead = _create_lead(client, status="Converted")

    response = client.post(f"/api/crm/leads/{lead['id']}/convert", json={})

    assert response.status_code == 400
    assert response.json()["code"] == "not_convertible"


def test_relaxed_conversion_accepts_open_statuses(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LEAD_CONVERSION_STRICT", "false")
    get_settings.cache_clear()
    lead = _create_lead(client, status="Qualified")
    lost = _create_lead(client, status="Lost", email="lost@initech.io")

    assert client.post(f"/api/crm/leads/{lead['id']}/convert", json={}).status_code == 200
    assert client.post(f"/api/crm/leads/{lost['id']}/convert", json={}).status_code == 400


def test_convert_conflicts_with_unrelated_account_name(client: TestClient) -> None:
    existing = client.post("/api/crm/accounts", json={"name": "Initech", "type": "Channel Partner"})
    assert existing.status_code == 201
    lead = _create_lead(client)

    response = client.post(f"/api/crm/leads/{lead['id']}/convert", json={})

    assert response.status_code == 409
    assert client.get(f"/api/crm/leads/{lead['id']}").json()["status"] == "Negotiation"


def test_convert_unknown_lead_is_not_found(client: TestClient) -> None:
    response = client.post(f"/api/crm/leads/{uuid.uuid4()}/convert", json={})

    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_reversal_round_trip(client: TestClient, db_session: Session) -> None:
    lead = _create_lead(client)
    converted = client.post(f"/api/crm/leads/{lead['id']}/convert", json={}).json()
    account_id = converted["account"]["id"]

    response = client.post(f"/api/crm/accounts/{account_id}/revert-to-lead")

    assert response.status_code == 200
    assert response.json() == {
        "account": {"id": account_id, "status": "Inactive"},
        "lead": {"id": lead["id"], "status": "New"},
    }
    stored = db_session.scalar(select(CRMLead).where(CRMLead.id == uuid.UUID(lead["id"])))
    assert stored is not None
    assert stored.status == "New"
    assert stored.deleted_at is None

    overrides = [entry for entry in audit.entries_for("crm.lead", lead["id"]) if entry["action"] == "status_override"]
    assert overrides
    assert overrides[-1]["before"] == {"status": "Converted"}
    assert overrides[-1]["after"] == {"status": "New", "reason": "conversion_reversed"}


def test_reversal_of_direct_account_is_rejected(client: TestClient) -> None:
    account = client.post("/api/crm/accounts", json={"name": "Direct Co", "type": "Client"}).json()

    response = client.post(f"/api/crm/accounts/{account['id']}/revert-to-lead")

    assert response.status_code == 400
    assert response.json()["code"] == "not_reversible"
    assert response.json()["message"] == "This account was not converted from a lead."
    assert client.get(f"/api/crm/accounts/{account['id']}").json()["status"] == "Active"


def test_reversal_of_unknown_account_is_not_found(client: TestClient) -> None:
    response = client.post(f"/api/crm/accounts/{uuid.uuid4()}/revert-to-lead")

    assert response.status_code == 404


def _fail_commit() -> None:
    raise OperationalError("COMMIT", {}, Exception("database is locked"))


def test_reversal_ignores_soft_deleted_lead(client: TestClient, db_session: Session) -> None:
    lead = _create_lead(client)
    account_id = client.post(f"/api/crm/leads/{lead['id']}/convert", json={}).json()["account"]["id"]
    stored = db_session.scalar(select(CRMLead).where(CRMLead.id == uuid.UUID(lead["id"])))
    assert stored is not None
    stored.deleted_at = datetime.now(timezone.utc)
    db_session.commit()
    assert client.get(f"/api/crm/leads/{lead['id']}").status_code == 404

    response = client.post(f"/api/crm/accounts/{account_id}/revert-to-lead")

    assert response.status_code == 404
    assert response.json()["message"] == "Originating lead not found"
    db_session.refresh(stored)
    assert stored.status == "Converted"
    assert client.get(f"/api/crm/accounts/{account_id}").json()["status"] == "Active"
    assert not [entry for entry in audit.audit_entries if entry["action"] == "status_override"]


def test_conversion_commit_failure_leaves_nothing_behind(
    client: TestClient,
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    lead = _create_lead(client)
    audit.audit_entries.clear()
    events.published_events.clear()
    monkeypatch.setattr(db_session, "commit", _fail_commit)

    response = client.post(f"/api/crm/leads/{lead['id']}/convert", json={"notes": "signed"})

    assert response.status_code == 500
    assert response.json()["code"] == "internal_error"
    assert _count_accounts_for(db_session, lead["id"]) == 0
    assert db_session.scalar(select(func.count()).select_from(CRMAccount)) == 0
    stored = db_session.scalar(select(CRMLead).where(CRMLead.id == uuid.UUID(lead["id"])))
    assert stored is not None
    assert stored.status == "Negotiation"
    assert stored.converted_at is None
    assert audit.audit_entries == []
    assert events.published_events == []


def test_reversal_commit_failure_leaves_records_unchanged(
    client: TestClient,
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    lead = _create_lead(client)
    account_id = client.post(f"/api/crm/leads/{lead['id']}/convert", json={}).json()["account"]["id"]
    audit.audit_entries.clear()
    monkeypatch.setattr(db_session, "commit", _fail_commit)

    response = client.post(f"/api/crm/accounts/{account_id}/revert-to-lead")

    assert response.status_code == 500
    assert response.json()["code"] == "internal_error"
    account = db_session.scalar(select(CRMAccount).where(CRMAccount.id == uuid.UUID(account_id)))
    assert account is not None
    assert account.status == "Active"
    stored = db_session.scalar(select(CRMLead).where(CRMLead.id == uuid.UUID(lead["id"])))
    assert stored is not None
    assert stored.status == "Converted"
    assert audit.audit_entries == []
