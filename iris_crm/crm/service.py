from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace
from sqlalchemy import Select, and_, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from iris_crm import audit, events
from iris_crm.core.config import get_settings
from iris_crm.crm.errors import (
    BadRequestError,
    ConflictError,
    InternalError,
    InvalidTransitionError,
    InvalidUserError,
    NotConvertibleError,
    NotFoundError,
    NotReversibleError,
)
from iris_crm.crm.models import (
    CRMAccount,
    CRMCommunicationUpdate,
    CRMLead,
    CRMNotification,
    CRMOpportunity,
    CRMUser,
)
from iris_crm.crm.schemas import (
    AccountCreate,
    AccountRead,
    AccountUpdate,
    AssignedUserRead,
    BulkAssignRead,
    BulkAssignRequest,
    CommunicationUpdateCreate,
    CommunicationUpdateRead,
    ConversionReversalRead,
    ConvertedAccountRead,
    EntityStatusRead,
    LeadConversionRead,
    LeadConvertRequest,
    LeadCreate,
    LeadRead,
    LeadStatusChangeRead,
    LeadStatusUpdateRequest,
    LeadUpdate,
    NotificationRead,
    OpportunityCreate,
    OpportunityRead,
    OpportunityStatusUpdateRequest,
    UserCreate,
    UserRead,
)
from iris_crm.crm.transitions import (
    ASSIGNABLE_STATUSES,
    CONVERTED_STATUS,
    NEW,
    QUALIFIED,
    can_convert,
    is_converted,
    validate_status_transition,
)
from iris_crm.metrics import (
    observe_conversion_reversal,
    observe_lead_assignments,
    observe_lead_conversion,
    observe_lead_status_transition,
)


logger = logging.getLogger("iris.crm")
tracer = trace.get_tracer("iris.crm")

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
OPPORTUNITY_STATUSES = ("Scope Of Work", "Proposal", "Negotiation", "Win", "Loss")
OPEN_OPPORTUNITY_STATUS = "Open"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    is_admin: bool = False
    correlation_id: str | None = None

    @property
    def user_uuid(self) -> uuid.UUID | None:
        try:
            return uuid.UUID(self.user_id)
        except ValueError:
            return None


def clean_email(raw: str | None) -> str:
    value = (raw or "").strip()
    if value.lower().startswith("mailto:"):
        value = value[len("mailto:"):].strip()
    return value


def _require_text(value: str | None, label: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise BadRequestError(f"{label} is required", {"field": label})
    return cleaned


def _validate_email(value: str) -> str:
    if not EMAIL_RE.match(value):
        raise BadRequestError("Invalid email format", {"email": value})
    return value


def _commit(session: Session, operation: str) -> None:
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("crm.persistence_failed", extra={"outcome": operation, "error": str(exc)})
        raise InternalError(f"Failed to {operation}", {"operation": operation}) from exc


def override_lead_status(actor_user: ActorUser, lead: CRMLead, status: str, *, now: datetime) -> str:
    """Administrative status reset that deliberately skips the transition table.

    Only conversion reversal and account deletion use this path. The caller
    commits and then calls ``record_status_override`` so the bypass is audited.
    """
    previous_status = lead.status
    lead.status = status
    lead.updated_at = now
    lead.updated_by = actor_user.user_id
    return previous_status


def record_status_override(
    actor_user: ActorUser,
    lead_id: uuid.UUID,
    previous_status: str,
    new_status: str,
    reason: str,
) -> None:
    audit.record(
        actor_user_id=actor_user.user_id,
        entity_type=LeadService.entity_type,
        entity_id=str(lead_id),
        action="status_override",
        before={"status": previous_status},
        after={"status": new_status, "reason": reason},
        correlation_id=actor_user.correlation_id,
    )
    logger.warning(
        "lead.status_overridden",
        extra={"lead_id": str(lead_id), "previous_status": previous_status, "new_status": new_status, "outcome": reason},
    )


class UserService:
    entity_type = "crm.user"

    def create_user(self, session: Session, actor_user: ActorUser, dto: UserCreate) -> UserRead:
        email = str(dto.email).lower()
        existing = session.scalar(select(CRMUser.id).where(func.lower(CRMUser.email) == email))
        if existing is not None:
            raise ConflictError("A user with this email already exists", {"email": email})

        user = CRMUser(name=dto.name.strip(), email=email, role=dto.role, is_active=dto.is_active)
        session.add(user)
        _commit(session, "create user")
        result = UserRead.model_validate(user)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(user.id),
            action="create",
            before=None,
            after=result.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        return result

    def list_users(self, session: Session, include_inactive: bool = False) -> list[UserRead]:
        stmt = select(CRMUser)
        if not include_inactive:
            stmt = stmt.where(CRMUser.is_active.is_(True))
        users = session.scalars(stmt.order_by(CRMUser.name.asc())).all()
        return [UserRead.model_validate(user) for user in users]

    def get_user(self, session: Session, user_id: uuid.UUID) -> UserRead:
        user = session.get(CRMUser, user_id)
        if user is None:
            raise NotFoundError("User not found", {"user_id": str(user_id)})
        return UserRead.model_validate(user)


class NotificationService:
    def list_notifications(self, session: Session, user_id: uuid.UUID | None, unread_only: bool = False) -> list[NotificationRead]:
        if user_id is None:
            raise BadRequestError("User ID is required")
        stmt = select(CRMNotification).where(CRMNotification.user_id == user_id)
        if unread_only:
            stmt = stmt.where(CRMNotification.is_read.is_(False))
        rows = session.scalars(stmt.order_by(CRMNotification.created_at.desc())).all()
        return [NotificationRead.model_validate(row) for row in rows]


class LeadService:
    entity_type = "crm.lead"

    def create_lead(self, session: Session, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        company_name = _require_text(dto.company_name, "company_name")
        person_name = _require_text(dto.person_name, "person_name")
        email = _validate_email(_require_text(clean_email(dto.email), "email"))
        if dto.status not in ASSIGNABLE_STATUSES:
            raise BadRequestError("Invalid status", {"valid_statuses": list(ASSIGNABLE_STATUSES)})
        self._ensure_email_available(session, email)
        if dto.assigned_user_id is not None and session.get(CRMUser, dto.assigned_user_id) is None:
            raise InvalidUserError("Invalid user ID", {"assigned_user_id": str(dto.assigned_user_id)})

        lead = CRMLead(
            company_name=company_name,
            person_name=person_name,
            email=email,
            phone=dto.phone,
            linkedin_profile_url=dto.linkedin_profile_url,
            country=dto.country,
            status=dto.status,
            notes=dto.notes,
            assigned_user_id=dto.assigned_user_id,
            created_by_user_id=actor_user.user_id,
        )
        session.add(lead)
        _commit(session, "create lead")
        result = LeadRead.model_validate(lead)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead.id),
            action="create",
            before=None,
            after=result.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.lead.created",
                actor_user.user_id,
                {"lead_id": str(lead.id), "status": lead.status},
            )
        )
        return result

    def list_leads(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        page: int,
        limit: int,
    ) -> dict[str, Any]:
        stmt: Select[tuple[CRMLead]] = select(CRMLead).where(CRMLead.deleted_at.is_(None))
        if not actor_user.is_admin and "crm.leads.read_all" not in actor_user.permissions:
            visibility = [CRMLead.created_by_user_id == actor_user.user_id]
            if actor_user.user_uuid is not None:
                visibility.append(CRMLead.assigned_user_id == actor_user.user_uuid)
            stmt = stmt.where(or_(*visibility))

        if filters.get("status"):
            stmt = stmt.where(CRMLead.status == filters["status"])
        if filters.get("assigned_user_id"):
            stmt = stmt.where(CRMLead.assigned_user_id == filters["assigned_user_id"])
        if filters.get("q"):
            pattern = f"%{filters['q']}%"
            stmt = stmt.where(
                or_(
                    CRMLead.company_name.ilike(pattern),
                    CRMLead.person_name.ilike(pattern),
                    CRMLead.email.ilike(pattern),
                )
            )

        total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        offset = (page - 1) * limit
        leads = session.scalars(stmt.order_by(CRMLead.created_at.desc()).offset(offset).limit(limit)).all()
        return {
            "data": [LeadRead.model_validate(lead) for lead in leads],
            "total": total,
            "page": page,
            "limit": limit,
            "hasMore": offset + len(leads) < total,
        }

    def get_lead(self, session: Session, lead_id: uuid.UUID) -> LeadRead:
        return LeadRead.model_validate(self._get_live_lead(session, lead_id))

    def update_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        lead = self._get_live_lead(session, lead_id)
        payload = dto.model_dump(exclude_unset=True)
        if not payload:
            return LeadRead.model_validate(lead)

        before = LeadRead.model_validate(lead).model_dump(mode="json")
        for key in ("company_name", "person_name"):
            if key in payload:
                payload[key] = _require_text(payload[key], key)
        if "email" in payload:
            email = _validate_email(_require_text(clean_email(payload["email"]), "email"))
            self._ensure_email_available(session, email, exclude_lead_id=lead.id)
            payload["email"] = email
        if payload.get("assigned_user_id") is not None and session.get(CRMUser, payload["assigned_user_id"]) is None:
            raise InvalidUserError("Invalid user ID", {"assigned_user_id": str(payload["assigned_user_id"])})

        requested_status = payload.pop("status", None)
        previous_status = lead.status
        now = utcnow()
        if requested_status is not None:
            self._apply_transition(lead, requested_status, now=now)

        for key, value in payload.items():
            setattr(lead, key, value)
        lead.updated_at = now
        lead.updated_by = actor_user.user_id
        _commit(session, "update lead")
        result = LeadRead.model_validate(lead)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead.id),
            action="update",
            before=before,
            after=result.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        if result.status != previous_status:
            self._announce_status_change(actor_user, lead.id, previous_status, result.status)
        events.publish(
            events.build_envelope(
                "crm.lead.updated",
                actor_user.user_id,
                {"lead_id": str(lead.id), "status": result.status},
            )
        )
        return result

    def delete_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> None:
        lead = self._get_live_lead(session, lead_id)
        before = LeadRead.model_validate(lead).model_dump(mode="json")
        lead.deleted_at = utcnow()
        _commit(session, "delete lead")
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        events.publish(events.build_envelope("crm.lead.deleted", actor_user.user_id, {"lead_id": str(lead_id)}))

    def update_status(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadStatusUpdateRequest,
    ) -> LeadStatusChangeRead:
        requested_status = (dto.status or "").strip()
        if not requested_status:
            raise BadRequestError("Status is required")
        if requested_status not in ASSIGNABLE_STATUSES:
            raise BadRequestError("Invalid status", {"valid_statuses": list(ASSIGNABLE_STATUSES)})

        lead = self._get_live_lead(session, lead_id)
        previous_status = lead.status
        now = utcnow()
        self._apply_transition(lead, requested_status, now=now)
        if dto.notes and dto.notes.strip():
            lead.notes = dto.notes.strip()
        lead.updated_by = dto.updated_by or actor_user.user_id
        _commit(session, "update lead status")

        result = LeadStatusChangeRead(
            id=lead.id,
            company_name=lead.company_name,
            person_name=lead.person_name,
            previous_status=previous_status,
            new_status=lead.status,
            updated_at=lead.updated_at,
        )
        self._announce_status_change(actor_user, lead.id, previous_status, result.new_status)
        return result

    def convert_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadConvertRequest,
    ) -> LeadConversionRead:
        settings = get_settings()
        with tracer.start_as_current_span("crm.lead.convert") as span:
            span.set_attribute("lead_id", str(lead_id))
            if actor_user.correlation_id:
                span.set_attribute("correlation_id", actor_user.correlation_id)

            lead = self._get_live_lead(session, lead_id)
            previous_status = lead.status
            account = self._find_converted_account(session, lead.id)

            # An already-converted lead with a live account only refreshes that account.
            refresh_only = is_converted(lead.status) and account is not None
            if not refresh_only and not can_convert(lead.status, strict=settings.lead_conversion_strict):
                observe_lead_conversion("rejected")
                span.set_attribute("outcome", "rejected")
                raise NotConvertibleError(lead.status)

            now = utcnow()
            created = account is None
            account_before: dict[str, Any] | None = None
            if account is None:
                self._ensure_account_name_available(session, lead.company_name)
                account = CRMAccount(
                    name=lead.company_name,
                    type="Client",
                    status="Active",
                    description=self._conversion_description(lead),
                    contact_person_name=lead.person_name,
                    contact_email=lead.email,
                    contact_phone=lead.phone,
                    converted_from_lead_id=lead.id,
                    created_by_user_id=actor_user.user_id,
                )
                session.add(account)
            else:
                account_before = ConvertedAccountRead.model_validate(account).model_dump(mode="json")
                account.status = "Active"
                if not account.contact_email:
                    account.contact_email = lead.email
                if not account.contact_phone:
                    account.contact_phone = lead.phone
                if not account.contact_person_name:
                    account.contact_person_name = lead.person_name
                account.updated_at = now

            if not refresh_only:
                lead.status = CONVERTED_STATUS
            if lead.converted_at is None:
                lead.converted_at = now
            if dto.notes and dto.notes.strip():
                lead.notes = dto.notes.strip()
            lead.updated_at = now
            lead.updated_by = actor_user.user_id

            try:
                _commit(session, "convert lead")
            except InternalError:
                observe_lead_conversion("failed")
                span.set_attribute("outcome", "failed")
                raise

            outcome = "created" if created else "refreshed"
            span.set_attribute("outcome", outcome)
            span.set_attribute("account_id", str(account.id))

        account_read = ConvertedAccountRead.model_validate(account)
        result = LeadConversionRead(
            lead=LeadStatusChangeRead(
                id=lead.id,
                company_name=lead.company_name,
                person_name=lead.person_name,
                previous_status=previous_status,
                new_status=lead.status,
                updated_at=lead.updated_at,
            ),
            account=account_read,
            created=created,
        )

        observe_lead_conversion(outcome)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead.id),
            action="convert",
            before={"status": previous_status},
            after={"status": lead.status, "account_id": str(account.id)},
            correlation_id=actor_user.correlation_id,
        )
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=AccountService.entity_type,
            entity_id=str(account.id),
            action="create" if created else "update",
            before=account_before,
            after=account_read.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.lead.converted",
                actor_user.user_id,
                {"lead_id": str(lead.id), "account_id": str(account.id), "created": created},
            )
        )
        logger.info(
            "lead.converted",
            extra={
                "lead_id": str(lead.id),
                "account_id": str(account.id),
                "previous_status": previous_status,
                "new_status": lead.status,
                "outcome": outcome,
            },
        )
        return result

    def bulk_assign(self, session: Session, actor_user: ActorUser, dto: BulkAssignRequest) -> BulkAssignRead:
        if not dto.lead_ids:
            raise BadRequestError("Lead IDs array is required and must not be empty")
        if dto.assigned_user_id is None:
            raise BadRequestError("Assigned user ID is required")

        user = session.get(CRMUser, dto.assigned_user_id)
        if user is None:
            raise InvalidUserError("Invalid user ID", {"assigned_user_id": str(dto.assigned_user_id)})

        lead_ids = list(dict.fromkeys(dto.lead_ids))
        leads = session.scalars(
            select(CRMLead).where(and_(CRMLead.id.in_(lead_ids), CRMLead.deleted_at.is_(None)))
        ).all()
        previous_assignees = {lead.id: lead.assigned_user_id for lead in leads}
        matched_ids = list(previous_assignees)

        if matched_ids:
            session.execute(
                update(CRMLead)
                .where(CRMLead.id.in_(matched_ids))
                .values(assigned_user_id=user.id, updated_at=utcnow(), updated_by=actor_user.user_id)
                .execution_options(synchronize_session="fetch")
            )

        notifications = [
            CRMNotification(
                user_id=user.id,
                lead_id=lead.id,
                message=f"You have been assigned a new lead: {lead.company_name} ({lead.id})",
            )
            for lead in leads
            if previous_assignees[lead.id] != user.id
        ]
        session.add_all(notifications)
        _commit(session, "assign leads")

        assigned_leads = session.scalars(select(CRMLead).where(CRMLead.id.in_(matched_ids))).all() if matched_ids else []
        result = BulkAssignRead(
            assigned_leads=[LeadRead.model_validate(lead) for lead in assigned_leads],
            assigned_user=AssignedUserRead.model_validate(user),
            notification_count=len(notifications),
        )

        observe_lead_assignments(len(matched_ids))
        for lead_id in matched_ids:
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(lead_id),
                action="assign",
                before={"assigned_user_id": str(previous_assignees[lead_id]) if previous_assignees[lead_id] else None},
                after={"assigned_user_id": str(user.id)},
                correlation_id=actor_user.correlation_id,
            )
        events.publish(
            events.build_envelope(
                "crm.lead.assigned",
                actor_user.user_id,
                {"lead_ids": [str(lead_id) for lead_id in matched_ids], "assigned_user_id": str(user.id)},
            )
        )
        logger.info(
            "lead.bulk_assigned",
            extra={"user_id": str(user.id), "lead_count": len(matched_ids), "notification_count": len(notifications)},
        )
        return result

    def _apply_transition(self, lead: CRMLead, requested_status: str, *, now: datetime) -> None:
        check = validate_status_transition(lead.status, requested_status)
        if not check.valid:
            observe_lead_status_transition(requested_status, "rejected")
            raise InvalidTransitionError(
                check.current_status,
                check.requested_status,
                check.allowed_statuses,
                check.reason or "",
            )
        lead.status = requested_status
        lead.updated_at = now
        if is_converted(requested_status) and lead.converted_at is None:
            lead.converted_at = now

    def _announce_status_change(
        self,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        previous_status: str,
        new_status: str,
    ) -> None:
        observe_lead_status_transition(new_status, "applied")
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead_id),
            action="status_change",
            before={"status": previous_status},
            after={"status": new_status},
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.lead.status_changed",
                actor_user.user_id,
                {"lead_id": str(lead_id), "previous_status": previous_status, "new_status": new_status},
            )
        )
        logger.info(
            "lead.status_changed",
            extra={"lead_id": str(lead_id), "previous_status": previous_status, "new_status": new_status},
        )

    def _get_live_lead(self, session: Session, lead_id: uuid.UUID) -> CRMLead:
        lead = session.scalar(select(CRMLead).where(and_(CRMLead.id == lead_id, CRMLead.deleted_at.is_(None))))
        if lead is None:
            raise NotFoundError("Lead not found", {"lead_id": str(lead_id)})
        return lead

    def _ensure_email_available(
        self,
        session: Session,
        email: str,
        exclude_lead_id: uuid.UUID | None = None,
    ) -> None:
        stmt = select(CRMLead.id).where(and_(func.lower(CRMLead.email) == email.lower(), CRMLead.deleted_at.is_(None)))
        if exclude_lead_id is not None:
            stmt = stmt.where(CRMLead.id != exclude_lead_id)
        if session.scalar(stmt.limit(1)) is not None:
            raise ConflictError("A lead with this email already exists", {"email": email})

    def _find_converted_account(self, session: Session, lead_id: uuid.UUID) -> CRMAccount | None:
        return session.scalar(
            select(CRMAccount)
            .where(and_(CRMAccount.converted_from_lead_id == lead_id, CRMAccount.deleted_at.is_(None)))
            .order_by(CRMAccount.created_at.asc())
            .limit(1)
        )

    def _ensure_account_name_available(self, session: Session, name: str) -> None:
        existing = session.scalar(
            select(CRMAccount.id).where(and_(CRMAccount.name == name, CRMAccount.deleted_at.is_(None))).limit(1)
        )
        if existing is not None:
            raise ConflictError("An account with this name already exists", {"name": name})

    @staticmethod
    def _conversion_description(lead: CRMLead) -> str:
        return (
            f"Account converted from lead: {lead.person_name} - {lead.company_name}. "
            f"LinkedIn: {lead.linkedin_profile_url or 'N/A'}. "
            f"Country: {lead.country or 'N/A'}."
        )


class AccountService:
    entity_type = "crm.account"

    def create_account(self, session: Session, actor_user: ActorUser, dto: AccountCreate) -> AccountRead:
        name = _require_text(dto.name, "name")
        self._ensure_name_available(session, name)

        account = CRMAccount(
            name=name,
            type=dto.type,
            status=dto.status,
            description=dto.description,
            contact_person_name=dto.contact_person_name,
            contact_email=str(dto.contact_email) if dto.contact_email is not None else None,
            contact_phone=dto.contact_phone,
            industry=dto.industry,
            created_by_user_id=actor_user.user_id,
        )
        session.add(account)
        _commit(session, "create account")
        result = AccountRead.model_validate(account)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(account.id),
            action="create",
            before=None,
            after=result.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope("crm.account.created", actor_user.user_id, {"account_id": str(account.id)})
        )
        return result

    def list_accounts(
        self,
        session: Session,
        filters: dict[str, Any],
        page: int,
        limit: int,
    ) -> dict[str, Any]:
        stmt: Select[tuple[CRMAccount]] = select(CRMAccount).where(CRMAccount.deleted_at.is_(None))
        if filters.get("status"):
            stmt = stmt.where(CRMAccount.status == filters["status"])
        if filters.get("type"):
            stmt = stmt.where(CRMAccount.type == filters["type"])
        if filters.get("q"):
            stmt = stmt.where(CRMAccount.name.ilike(f"%{filters['q']}%"))

        total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        offset = (page - 1) * limit
        accounts = session.scalars(stmt.order_by(CRMAccount.created_at.desc()).offset(offset).limit(limit)).all()
        return {
            "data": [AccountRead.model_validate(account) for account in accounts],
            "total": total,
            "page": page,
            "limit": limit,
            "hasMore": offset + len(accounts) < total,
        }

    def get_account(self, session: Session, account_id: uuid.UUID) -> AccountRead:
        return AccountRead.model_validate(self._get_live_account(session, account_id))

    def update_account(
        self,
        session: Session,
        actor_user: ActorUser,
        account_id: uuid.UUID,
        dto: AccountUpdate,
    ) -> AccountRead:
        account = self._get_live_account(session, account_id)
        payload = dto.model_dump(exclude_unset=True)
        if not payload:
            return AccountRead.model_validate(account)

        before = AccountRead.model_validate(account).model_dump(mode="json")
        if "name" in payload:
            payload["name"] = _require_text(payload["name"], "name")
            self._ensure_name_available(session, payload["name"], exclude_account_id=account.id)
        for key in ("type", "status"):
            if key in payload and payload[key] is None:
                raise BadRequestError(f"{key} cannot be empty", {"field": key})
        if payload.get("contact_email") is not None:
            payload["contact_email"] = str(payload["contact_email"])

        for key, value in payload.items():
            setattr(account, key, value)
        account.updated_at = utcnow()
        _commit(session, "update account")
        result = AccountRead.model_validate(account)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(account.id),
            action="update",
            before=before,
            after=result.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope("crm.account.updated", actor_user.user_id, {"account_id": str(account.id)})
        )
        return result

    def delete_account(self, session: Session, actor_user: ActorUser, account_id: uuid.UUID) -> None:
        account = self._get_live_account(session, account_id)
        before = AccountRead.model_validate(account).model_dump(mode="json")
        now = utcnow()

        reset_lead: tuple[uuid.UUID, str] | None = None
        if account.converted_from_lead_id is not None:
            lead = session.scalar(
                select(CRMLead).where(
                    and_(CRMLead.id == account.converted_from_lead_id, CRMLead.deleted_at.is_(None))
                )
            )
            if lead is not None:
                reset_lead = (lead.id, override_lead_status(actor_user, lead, QUALIFIED, now=now))

        account.deleted_at = now
        account.updated_at = now
        _commit(session, "delete account")

        if reset_lead is not None:
            record_status_override(actor_user, reset_lead[0], reset_lead[1], QUALIFIED, "account_deleted")
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(account_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope("crm.account.deleted", actor_user.user_id, {"account_id": str(account_id)})
        )

    def revert_to_lead(self, session: Session, actor_user: ActorUser, account_id: uuid.UUID) -> ConversionReversalRead:
        with tracer.start_as_current_span("crm.account.revert_to_lead") as span:
            span.set_attribute("account_id", str(account_id))
            account = self._get_live_account(session, account_id)
            if account.converted_from_lead_id is None:
                observe_conversion_reversal("rejected")
                raise NotReversibleError(
                    "This account was not converted from a lead.",
                    {"account_id": str(account_id)},
                )

            lead = session.scalar(
                select(CRMLead).where(
                    and_(CRMLead.id == account.converted_from_lead_id, CRMLead.deleted_at.is_(None))
                )
            )
            if lead is None:
                observe_conversion_reversal("rejected")
                raise NotFoundError("Originating lead not found", {"lead_id": str(account.converted_from_lead_id)})

            now = utcnow()
            previous_account_status = account.status
            account.status = "Inactive"
            account.updated_at = now
            previous_lead_status = override_lead_status(actor_user, lead, NEW, now=now)

            try:
                _commit(session, "revert account to lead")
            except InternalError:
                observe_conversion_reversal("failed")
                raise
            span.set_attribute("lead_id", str(lead.id))

        observe_conversion_reversal("reverted")
        record_status_override(actor_user, lead.id, previous_lead_status, NEW, "conversion_reversed")
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(account.id),
            action="revert_to_lead",
            before={"status": previous_account_status},
            after={"status": account.status, "lead_id": str(lead.id)},
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.account.reverted_to_lead",
                actor_user.user_id,
                {"account_id": str(account.id), "lead_id": str(lead.id)},
            )
        )
        return ConversionReversalRead(
            account=EntityStatusRead(id=account.id, status=account.status),
            lead=EntityStatusRead(id=lead.id, status=lead.status),
        )

    def _get_live_account(self, session: Session, account_id: uuid.UUID) -> CRMAccount:
        account = session.scalar(
            select(CRMAccount).where(and_(CRMAccount.id == account_id, CRMAccount.deleted_at.is_(None)))
        )
        if account is None:
            raise NotFoundError("Account not found", {"account_id": str(account_id)})
        return account

    def _ensure_name_available(
        self,
        session: Session,
        name: str,
        exclude_account_id: uuid.UUID | None = None,
    ) -> None:
        stmt = select(CRMAccount.id).where(and_(CRMAccount.name == name, CRMAccount.deleted_at.is_(None)))
        if exclude_account_id is not None:
            stmt = stmt.where(CRMAccount.id != exclude_account_id)
        if session.scalar(stmt.limit(1)) is not None:
            raise ConflictError("An account with this name already exists", {"name": name})


def _get_live_account_or_none(session: Session, account_id: uuid.UUID) -> CRMAccount | None:
    return session.scalar(select(CRMAccount).where(and_(CRMAccount.id == account_id, CRMAccount.deleted_at.is_(None))))


def _get_live_lead_or_none(session: Session, lead_id: uuid.UUID) -> CRMLead | None:
    return session.scalar(select(CRMLead).where(and_(CRMLead.id == lead_id, CRMLead.deleted_at.is_(None))))


class OpportunityService:
    entity_type = "crm.opportunity"

    def create_opportunity(self, session: Session, actor_user: ActorUser, dto: OpportunityCreate) -> OpportunityRead:
        name = (dto.name or "").strip()
        if (
            not name
            or not dto.amount
            or dto.expected_close_date is None
            or (dto.associated_account_id is None and dto.associated_lead_id is None)
        ):
            raise BadRequestError(
                "Missing required fields: name, amount, expected_close_date, and at least one of "
                "associated_account_id or associated_lead_id"
            )
        if dto.status != OPEN_OPPORTUNITY_STATUS and dto.status not in OPPORTUNITY_STATUSES:
            raise BadRequestError(
                "Invalid status provided.",
                {"valid_statuses": [OPEN_OPPORTUNITY_STATUS, *OPPORTUNITY_STATUSES]},
            )
        if dto.associated_account_id is not None and _get_live_account_or_none(session, dto.associated_account_id) is None:
            raise NotFoundError("Account not found", {"account_id": str(dto.associated_account_id)})
        if dto.associated_lead_id is not None and _get_live_lead_or_none(session, dto.associated_lead_id) is None:
            raise NotFoundError("Lead not found", {"lead_id": str(dto.associated_lead_id)})

        opportunity = CRMOpportunity(
            name=name,
            associated_account_id=dto.associated_account_id,
            associated_lead_id=dto.associated_lead_id,
            description=dto.description,
            amount=dto.amount,
            status=dto.status,
            probability=dto.probability,
            expected_close_date=dto.expected_close_date,
            created_by_user_id=actor_user.user_id,
        )
        session.add(opportunity)
        _commit(session, "create opportunity")
        result = OpportunityRead.model_validate(opportunity)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(opportunity.id),
            action="create",
            before=None,
            after=result.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.opportunity.created",
                actor_user.user_id,
                {"opportunity_id": str(opportunity.id), "status": opportunity.status},
            )
        )
        return result

    def list_opportunities(self, session: Session, account_id: uuid.UUID | None = None) -> list[OpportunityRead]:
        stmt = select(CRMOpportunity)
        if account_id is not None:
            stmt = stmt.where(CRMOpportunity.associated_account_id == account_id)
        rows = session.scalars(stmt.order_by(CRMOpportunity.created_at.desc())).all()
        return [OpportunityRead.model_validate(row) for row in rows]

    def get_opportunity(self, session: Session, opportunity_id: uuid.UUID) -> OpportunityRead:
        return OpportunityRead.model_validate(self._get_opportunity(session, opportunity_id))

    def update_status(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: OpportunityStatusUpdateRequest,
    ) -> OpportunityRead:
        requested_status = (dto.status or "").strip()
        if not requested_status:
            raise BadRequestError("Status is required")
        if requested_status not in OPPORTUNITY_STATUSES:
            raise BadRequestError("Invalid status provided.", {"valid_statuses": list(OPPORTUNITY_STATUSES)})

        opportunity = self._get_opportunity(session, opportunity_id)
        previous_status = opportunity.status
        opportunity.status = requested_status
        opportunity.updated_at = utcnow()
        _commit(session, "update opportunity status")
        result = OpportunityRead.model_validate(opportunity)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(opportunity.id),
            action="status_change",
            before={"status": previous_status},
            after={"status": result.status},
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.opportunity.status_changed",
                actor_user.user_id,
                {"opportunity_id": str(opportunity.id), "previous_status": previous_status, "new_status": result.status},
            )
        )
        logger.info(
            "opportunity.status_changed",
            extra={"opportunity_id": str(opportunity.id), "previous_status": previous_status, "new_status": result.status},
        )
        return result

    def _get_opportunity(self, session: Session, opportunity_id: uuid.UUID) -> CRMOpportunity:
        opportunity = session.get(CRMOpportunity, opportunity_id)
        if opportunity is None:
            raise NotFoundError(f"Opportunity with ID {opportunity_id} not found.", {"opportunity_id": str(opportunity_id)})
        return opportunity


class CommunicationUpdateService:
    entity_type = "crm.update"

    def create_update(
        self,
        session: Session,
        actor_user: ActorUser,
        dto: CommunicationUpdateCreate,
    ) -> CommunicationUpdateRead:
        content = (dto.content or "").strip()
        if dto.type is None or not content:
            raise BadRequestError("Type and content are required")
        if dto.account_id is None and dto.opportunity_id is None and dto.lead_id is None:
            raise BadRequestError("At least one entity (account, opportunity, or lead) must be selected")

        account_id = dto.account_id
        if dto.opportunity_id is not None:
            opportunity = session.get(CRMOpportunity, dto.opportunity_id)
            if opportunity is None:
                raise NotFoundError("Opportunity not found", {"opportunity_id": str(dto.opportunity_id)})
            # an opportunity update is filed under its account too
            if account_id is None:
                account_id = opportunity.associated_account_id
        if account_id is not None and _get_live_account_or_none(session, account_id) is None:
            raise NotFoundError("Account not found", {"account_id": str(account_id)})
        if dto.lead_id is not None and _get_live_lead_or_none(session, dto.lead_id) is None:
            raise NotFoundError("Lead not found", {"lead_id": str(dto.lead_id)})

        update_row = CRMCommunicationUpdate(
            account_id=account_id,
            opportunity_id=dto.opportunity_id,
            lead_id=dto.lead_id,
            type=dto.type,
            content=content,
            date=dto.date or utcnow(),
            updated_by_user_id=dto.updated_by_user_id or actor_user.user_id,
        )
        session.add(update_row)
        _commit(session, "create update")
        result = CommunicationUpdateRead.model_validate(update_row)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(update_row.id),
            action="create",
            before=None,
            after=result.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.update.created",
                actor_user.user_id,
                {
                    "update_id": str(update_row.id),
                    "account_id": str(account_id) if account_id else None,
                    "opportunity_id": str(dto.opportunity_id) if dto.opportunity_id else None,
                    "lead_id": str(dto.lead_id) if dto.lead_id else None,
                    "type": update_row.type,
                },
            )
        )
        return result

    def list_updates(
        self,
        session: Session,
        filters: dict[str, Any],
        limit: int | None = None,
    ) -> list[CommunicationUpdateRead]:
        stmt = select(CRMCommunicationUpdate)
        for key in ("account_id", "opportunity_id", "lead_id"):
            if filters.get(key) is not None:
                stmt = stmt.where(getattr(CRMCommunicationUpdate, key) == filters[key])
        stmt = stmt.order_by(CRMCommunicationUpdate.date.desc(), CRMCommunicationUpdate.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return [CommunicationUpdateRead.model_validate(row) for row in session.scalars(stmt).all()]
