from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from iris_crm.context import get_correlation_id
from iris_crm.core.auth import AuthUser, get_current_user as get_auth_user
from iris_crm.core.config import get_settings
from iris_crm.core.database import get_db
from iris_crm.crm.errors import CRMError
from iris_crm.crm.schemas import (
    AccountCreate,
    AccountRead,
    AccountUpdate,
    BulkAssignRead,
    BulkAssignRequest,
    CommunicationUpdateCreate,
    CommunicationUpdateRead,
    ConversionReversalRead,
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
    Page,
    UserCreate,
    UserRead,
)
from iris_crm.crm.service import (
    AccountService,
    ActorUser,
    CommunicationUpdateService,
    LeadService,
    NotificationService,
    OpportunityService,
    UserService,
)

leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
accounts_router = APIRouter(prefix="/api/crm", tags=["crm.accounts"])
users_router = APIRouter(prefix="/api/crm", tags=["crm.users"])
notifications_router = APIRouter(prefix="/api/crm", tags=["crm.notifications"])
opportunities_router = APIRouter(prefix="/api/crm", tags=["crm.opportunities"])
updates_router = APIRouter(prefix="/api/crm", tags=["crm.updates"])
lead_service = LeadService()
account_service = AccountService()
user_service = UserService()
notification_service = NotificationService()
opportunity_service = OpportunityService()
update_service = CommunicationUpdateService()

ADMIN_ROLES = {"admin", "system.admin"}


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(code=code, message=message, details=details, correlation_id=correlation_id)
    return JSONResponse(status_code=status_code, content=asdict(payload))


def handle_error(request: Request, exc: Exception, fallback_code: str) -> JSONResponse:
    if isinstance(exc, CRMError):
        return error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )
    if isinstance(exc, HTTPException):
        return error_response(
            request,
            status_code=exc.status_code,
            code=fallback_code,
            message=str(exc.detail),
            details=exc.detail,
        )
    raise exc


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    normalized_roles = {str(role).lower() for role in auth_user.roles}
    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles),
        is_admin=bool(normalized_roles & ADMIN_ROLES),
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if user.is_admin:
        return
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def _page_limit(limit: int) -> int:
    return min(limit, get_settings().leads_page_size_max)


@leads_router.get("/leads", response_model=Page[LeadRead])
def list_leads(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    assigned_user_id: uuid.UUID | None = Query(default=None),
    q: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.list_leads(
            db,
            user,
            filters={"status": status_filter, "assigned_user_id": assigned_user_id, "q": q},
            page=page,
            limit=_page_limit(limit),
        )
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_lead_list_failed")


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.create")
        return lead_service.create_lead(db, user, dto)
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_lead_create_failed")


@leads_router.post("/leads/bulk-assign", response_model=BulkAssignRead)
def bulk_assign_leads(
    request: Request,
    dto: BulkAssignRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BulkAssignRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.assign")
        return lead_service.bulk_assign(db, user, dto)
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_lead_bulk_assign_failed")


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.get_lead(db, lead_id)
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_lead_get_failed")


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def patch_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.update")
        return lead_service.update_lead(db, user, lead_id, dto)
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_lead_update_failed")


@leads_router.delete("/leads/{lead_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.leads.delete")
        lead_service.delete_lead(db, user, lead_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_lead_delete_failed")


@leads_router.patch("/leads/{lead_id}/status", response_model=LeadStatusChangeRead)
def update_lead_status(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadStatusUpdateRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadStatusChangeRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.update")
        return lead_service.update_status(db, user, lead_id, dto)
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_lead_status_failed")


@leads_router.post("/leads/{lead_id}/convert", response_model=LeadConversionRead)
def convert_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadConvertRequest | None = None,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadConversionRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.convert")
        return lead_service.convert_lead(db, user, lead_id, dto or LeadConvertRequest())
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_lead_convert_failed")


@accounts_router.get("/accounts", response_model=Page[AccountRead])
def list_accounts(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    type_filter: str | None = Query(default=None, alias="type"),
    q: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        require_permission(user, "crm.accounts.read")
        return account_service.list_accounts(
            db,
            filters={"status": status_filter, "type": type_filter, "q": q},
            page=page,
            limit=_page_limit(limit),
        )
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_account_list_failed")


@accounts_router.post("/accounts", response_model=AccountRead, status_code=status.HTTP_201_CREATED)
def create_account(
    request: Request,
    dto: AccountCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AccountRead | JSONResponse:
    try:
        require_permission(user, "crm.accounts.write")
        return account_service.create_account(db, user, dto)
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_account_create_failed")


@accounts_router.get("/accounts/{account_id}", response_model=AccountRead)
def get_account(
    request: Request,
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AccountRead | JSONResponse:
    try:
        require_permission(user, "crm.accounts.read")
        return account_service.get_account(db, account_id)
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_account_get_failed")


@accounts_router.patch("/accounts/{account_id}", response_model=AccountRead)
def patch_account(
    request: Request,
    account_id: uuid.UUID,
    dto: AccountUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AccountRead | JSONResponse:
    try:
        require_permission(user, "crm.accounts.write")
        return account_service.update_account(db, user, account_id, dto)
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_account_update_failed")


@accounts_router.delete("/accounts/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_account(
    request: Request,
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.accounts.delete")
        account_service.delete_account(db, user, account_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_account_delete_failed")


@accounts_router.post("/accounts/{account_id}/revert-to-lead", response_model=ConversionReversalRead)
def revert_account_to_lead(
    request: Request,
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ConversionReversalRead | JSONResponse:
    try:
        require_permission(user, "crm.accounts.write")
        return account_service.revert_to_lead(db, user, account_id)
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_account_revert_failed")


@users_router.get("/users", response_model=list[UserRead])
def list_users(
    request: Request,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[UserRead] | JSONResponse:
    try:
        require_permission(user, "crm.users.read")
        return user_service.list_users(db, include_inactive=include_inactive)
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_user_list_failed")


@users_router.post("/users", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    request: Request,
    dto: UserCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    try:
        require_permission(user, "crm.users.manage")
        return user_service.create_user(db, user, dto)
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_user_create_failed")


@users_router.get("/users/{user_id}", response_model=UserRead)
def get_user(
    request: Request,
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    try:
        require_permission(user, "crm.users.read")
        return user_service.get_user(db, user_id)
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_user_get_failed")


@notifications_router.get("/notifications", response_model=list[NotificationRead])
def list_notifications(
    request: Request,
    user_id: uuid.UUID | None = Query(default=None),
    unread_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[NotificationRead] | JSONResponse:
    try:
        require_permission(user, "crm.notifications.read")
        return notification_service.list_notifications(db, user_id, unread_only=unread_only)
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_notification_list_failed")


@opportunities_router.get("/opportunities", response_model=list[OpportunityRead])
def list_opportunities(
    request: Request,
    account_id: uuid.UUID | None = Query(default=None),
    associated_account_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[OpportunityRead] | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.list_opportunities(db, account_id or associated_account_id)
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_opportunity_list_failed")


@opportunities_router.post("/opportunities", response_model=OpportunityRead, status_code=status.HTTP_201_CREATED)
def create_opportunity(
    request: Request,
    dto: OpportunityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.write")
        return opportunity_service.create_opportunity(db, user, dto)
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_opportunity_create_failed")


@opportunities_router.get("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.get_opportunity(db, opportunity_id)
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_opportunity_get_failed")


@opportunities_router.patch("/opportunities/{opportunity_id}/status", response_model=OpportunityRead)
def update_opportunity_status(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityStatusUpdateRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.write")
        return opportunity_service.update_status(db, user, opportunity_id, dto)
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_opportunity_status_failed")


@updates_router.get("/updates", response_model=list[CommunicationUpdateRead])
def list_updates(
    request: Request,
    account_id: uuid.UUID | None = Query(default=None),
    opportunity_id: uuid.UUID | None = Query(default=None),
    lead_id: uuid.UUID | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[CommunicationUpdateRead] | JSONResponse:
    try:
        require_permission(user, "crm.updates.read")
        return update_service.list_updates(
            db,
            filters={"account_id": account_id, "opportunity_id": opportunity_id, "lead_id": lead_id},
            limit=limit,
        )
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_update_list_failed")


@updates_router.post("/updates", response_model=CommunicationUpdateRead, status_code=status.HTTP_201_CREATED)
def create_update(
    request: Request,
    dto: CommunicationUpdateCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CommunicationUpdateRead | JSONResponse:
    try:
        require_permission(user, "crm.updates.write")
        return update_service.create_update(db, user, dto)
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_update_create_failed")
