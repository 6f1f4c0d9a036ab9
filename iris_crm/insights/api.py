from __future__ import annotations

import uuid
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from iris_crm.core.database import get_db
from iris_crm.crm.api import get_current_user, handle_error, require_permission
from iris_crm.crm.errors import CRMError
from iris_crm.crm.service import AccountService, ActorUser, CommunicationUpdateService
from iris_crm.insights.advice import ActivityLog, AdviceService
from iris_crm.insights.health import score_relationship_health
from iris_crm.insights.schemas import AdviceRead, AdviceRequest, RelationshipHealthRead, RelationshipHealthRequest

insights_router = APIRouter(prefix="/api/crm/insights", tags=["crm.insights"])
advice_service = AdviceService()
account_service = AccountService()
update_service = CommunicationUpdateService()

ACCOUNT_ADVICE_LOG_LIMIT = 10


@insights_router.post("/relationship-health", response_model=RelationshipHealthRead)
def relationship_health(
    request: Request,
    dto: RelationshipHealthRequest,
    user: ActorUser = Depends(get_current_user),
) -> RelationshipHealthRead | JSONResponse:
    try:
        require_permission(user, "crm.insights.read")
        return RelationshipHealthRead(**asdict(score_relationship_health(dto.history)))
    except HTTPException as exc:
        return handle_error(request, exc, "crm_insights_health_failed")


@insights_router.post("/advice", response_model=AdviceRead)
def advice(
    request: Request,
    dto: AdviceRequest,
    user: ActorUser = Depends(get_current_user),
) -> AdviceRead | JSONResponse:
    try:
        require_permission(user, "crm.insights.read")
        logs = [ActivityLog(content=item.content, date=item.date, type=item.type) for item in dto.logs]
        result = advice_service.get_advice(logs, dto.account_name)
        return AdviceRead(advice=result.advice, source=result.source)
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_insights_advice_failed")


@insights_router.post("/accounts/{account_id}/advice", response_model=AdviceRead)
def account_advice(
    request: Request,
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AdviceRead | JSONResponse:
    try:
        require_permission(user, "crm.insights.read")
        account = account_service.get_account(db, account_id)
        updates = update_service.list_updates(db, filters={"account_id": account_id}, limit=ACCOUNT_ADVICE_LOG_LIMIT)
        logs = [ActivityLog(content=item.content, date=item.date.isoformat(), type=item.type) for item in updates]
        result = advice_service.get_advice(logs, account.name)
        return AdviceRead(advice=result.advice, source=result.source)
    except (CRMError, HTTPException) as exc:
        return handle_error(request, exc, "crm_insights_advice_failed")
