from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.automation.engine import AutomationEngine
from app.automation.enums import EntityType, HistoryChangeType, Trigger
from app.automation.errors import (
    AssigneeNotFoundError,
    AutomationError,
    DealNotFoundError,
    InvalidAssigneeError,
    InvalidRuleError,
    LeadNotFoundError,
    RuleNotFoundError,
    StageNotFoundError,
)
from app.automation.schemas import (
    ActiveEntity,
    Actor,
    AssignRequest,
    AutomationRuleCreate,
    AutomationRuleRead,
    AutomationRuleUpdate,
    ChangeStatistics,
    ChangeStatusRequest,
    DealRead,
    HistoryEntryRead,
    HistoryFilter,
    HistoryPage,
    LoseRequest,
    MoveToStageRequest,
    RuleToggleRequest,
    StageMovementStats,
    TickResponse,
    WinRequest,
)
from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user
from app.core.database import get_db

rules_router = APIRouter(prefix="/api/automation", tags=["automation.rules"])
deals_router = APIRouter(prefix="/api/automation", tags=["automation.deals"])
history_router = APIRouter(prefix="/api/automation", tags=["automation.history"])

_ERROR_STATUS: dict[type[AutomationError], int] = {
    DealNotFoundError: status.HTTP_404_NOT_FOUND,
    LeadNotFoundError: status.HTTP_404_NOT_FOUND,
    StageNotFoundError: status.HTTP_404_NOT_FOUND,
    RuleNotFoundError: status.HTTP_404_NOT_FOUND,
    AssigneeNotFoundError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidAssigneeError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidRuleError: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


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
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failure(request: Request, exc: Exception, fallback_code: str) -> JSONResponse:
    if isinstance(exc, AutomationError):
        return error_response(
            request,
            status_code=_ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST),
            code=exc.code,
            message=str(exc),
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


def require_permission(user: AuthUser, permission: str) -> None:
    if permission not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def _actor(user: AuthUser) -> Actor:
    return Actor(id=user.sub, name=user.sub)


@rules_router.get("/rules", response_model=list[AutomationRuleRead])
def list_rules(
    request: Request,
    trigger: Trigger | None = Query(default=None),
    is_active: bool | None = Query(default=None),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[AutomationRuleRead] | JSONResponse:
    try:
        require_permission(user, "automation.rules.read")
        return AutomationEngine(db).list_rules(trigger=trigger.value if trigger else None, is_active=is_active)
    except (HTTPException, AutomationError) as exc:
        return _failure(request, exc, "automation_rule_list_failed")


@rules_router.post("/rules", response_model=AutomationRuleRead, status_code=status.HTTP_201_CREATED)
def create_rule(
    request: Request,
    dto: AutomationRuleCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> AutomationRuleRead | JSONResponse:
    try:
        require_permission(user, "automation.rules.manage")
        return AutomationEngine(db).create_rule(dto, _actor(user))
    except (HTTPException, AutomationError) as exc:
        return _failure(request, exc, "automation_rule_create_failed")


@rules_router.get("/rules/{rule_id}", response_model=AutomationRuleRead)
def get_rule(
    request: Request,
    rule_id: int,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> AutomationRuleRead | JSONResponse:
    try:
        require_permission(user, "automation.rules.read")
        return AutomationEngine(db).get_rule(rule_id)
    except (HTTPException, AutomationError) as exc:
        return _failure(request, exc, "automation_rule_get_failed")


@rules_router.patch("/rules/{rule_id}", response_model=AutomationRuleRead)
def update_rule(
    request: Request,
    rule_id: int,
    dto: AutomationRuleUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> AutomationRuleRead | JSONResponse:
    try:
        require_permission(user, "automation.rules.manage")
        return AutomationEngine(db).update_rule(rule_id, dto, _actor(user))
    except (HTTPException, AutomationError) as exc:
        return _failure(request, exc, "automation_rule_update_failed")


@rules_router.delete("/rules/{rule_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_rule(
    request: Request,
    rule_id: int,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> dict[str, str] | JSONResponse:
    try:
        require_permission(user, "automation.rules.manage")
        AutomationEngine(db).delete_rule(rule_id, _actor(user))
        return {"status": "deleted"}
    except (HTTPException, AutomationError) as exc:
        return _failure(request, exc, "automation_rule_delete_failed")


@rules_router.post("/rules/{rule_id}/toggle", response_model=AutomationRuleRead)
def toggle_rule(
    request: Request,
    rule_id: int,
    dto: RuleToggleRequest | None = None,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> AutomationRuleRead | JSONResponse:
    try:
        require_permission(user, "automation.rules.manage")
        is_active = dto.is_active if dto is not None else None
        return AutomationEngine(db).toggle_rule(rule_id, _actor(user), is_active=is_active)
    except (HTTPException, AutomationError) as exc:
        return _failure(request, exc, "automation_rule_toggle_failed")


@rules_router.post("/tick", response_model=TickResponse)
def run_tick(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> TickResponse | JSONResponse:
    try:
        require_permission(user, "automation.rules.manage")
        return TickResponse(rules_matched=AutomationEngine(db).run_time_based_tick())
    except HTTPException as exc:
        return _failure(request, exc, "automation_tick_failed")


@deals_router.get("/deals/{deal_id}", response_model=DealRead)
def get_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return AutomationEngine(db).get_deal(deal_id)
    except (HTTPException, AutomationError) as exc:
        return _failure(request, exc, "deal_get_failed")


@deals_router.post("/deals/{deal_id}/move-stage", response_model=DealRead)
def move_deal_to_stage(
    request: Request,
    deal_id: uuid.UUID,
    dto: MoveToStageRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return AutomationEngine(db).move_to_stage(deal_id, dto.stage_id, force=dto.force, actor=_actor(user))
    except (HTTPException, AutomationError) as exc:
        return _failure(request, exc, "deal_move_stage_failed")


@deals_router.post("/deals/{deal_id}/status", response_model=DealRead)
def change_deal_status(
    request: Request,
    deal_id: uuid.UUID,
    dto: ChangeStatusRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return AutomationEngine(db).change_status(deal_id, dto.status, stage_id=dto.stage_id, actor=_actor(user))
    except (HTTPException, AutomationError) as exc:
        return _failure(request, exc, "deal_change_status_failed")


@deals_router.post("/deals/{deal_id}/win", response_model=DealRead)
def win_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: WinRequest | None = None,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        actual_amount = dto.actual_amount if dto is not None else None
        return AutomationEngine(db).win(deal_id, actual_amount, actor=_actor(user))
    except (HTTPException, AutomationError) as exc:
        return _failure(request, exc, "deal_win_failed")


@deals_router.post("/deals/{deal_id}/lose", response_model=DealRead)
def lose_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: LoseRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return AutomationEngine(db).lose(deal_id, dto.reason, actor=_actor(user))
    except (HTTPException, AutomationError) as exc:
        return _failure(request, exc, "deal_lose_failed")


@deals_router.post("/deals/{deal_id}/assign", response_model=DealRead)
def assign_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: AssignRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return AutomationEngine(db).assign_deal(deal_id, dto.user_id, actor=_actor(user))
    except (HTTPException, AutomationError) as exc:
        return _failure(request, exc, "deal_assign_failed")


def history_filter(
    change_type: list[HistoryChangeType] | None = Query(default=None),
    actor_id: list[str] | None = Query(default=None),
    field_name: list[str] | None = Query(default=None),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> HistoryFilter:
    return HistoryFilter(
        change_types=change_type or [],
        actor_ids=actor_id or [],
        field_names=field_name or [],
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )


@history_router.get("/deals/{deal_id}/history", response_model=HistoryPage)
def deal_history(
    request: Request,
    deal_id: uuid.UUID,
    filters: HistoryFilter = Depends(history_filter),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> HistoryPage | JSONResponse:
    try:
        require_permission(user, "crm.history.read")
        return AutomationEngine(db).entity_history(EntityType.DEAL, deal_id, filters)
    except HTTPException as exc:
        return _failure(request, exc, "deal_history_failed")


@history_router.get("/leads/{lead_id}/history", response_model=HistoryPage)
def lead_history(
    request: Request,
    lead_id: uuid.UUID,
    filters: HistoryFilter = Depends(history_filter),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> HistoryPage | JSONResponse:
    try:
        require_permission(user, "crm.history.read")
        return AutomationEngine(db).entity_history(EntityType.LEAD, lead_id, filters)
    except HTTPException as exc:
        return _failure(request, exc, "lead_history_failed")


@history_router.get("/deals/{deal_id}/history/statistics", response_model=ChangeStatistics)
def deal_change_statistics(
    request: Request,
    deal_id: uuid.UUID,
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ChangeStatistics | JSONResponse:
    try:
        require_permission(user, "crm.history.read")
        return AutomationEngine(db).change_statistics(EntityType.DEAL, deal_id, date_from, date_to)
    except HTTPException as exc:
        return _failure(request, exc, "deal_history_statistics_failed")


@history_router.get("/history/stage-movements", response_model=StageMovementStats)
def stage_movements(
    request: Request,
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> StageMovementStats | JSONResponse:
    try:
        require_permission(user, "crm.history.read")
        return AutomationEngine(db).stage_movement_stats(date_from, date_to)
    except HTTPException as exc:
        return _failure(request, exc, "history_stage_movements_failed")


@history_router.get("/history/most-active", response_model=list[ActiveEntity])
def most_active_entities(
    request: Request,
    limit: int = Query(default=10, ge=1, le=100),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[ActiveEntity] | JSONResponse:
    try:
        require_permission(user, "crm.history.read")
        return AutomationEngine(db).most_active(limit)
    except HTTPException as exc:
        return _failure(request, exc, "history_most_active_failed")


@history_router.get("/history/recent", response_model=list[HistoryEntryRead])
def recent_changes(
    request: Request,
    limit: int = Query(default=20, ge=1, le=200),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[HistoryEntryRead] | JSONResponse:
    try:
        require_permission(user, "crm.history.read")
        return AutomationEngine(db).recent_changes(limit)
    except HTTPException as exc:
        return _failure(request, exc, "history_recent_failed")


@history_router.post("/history/cleanup", response_model=dict[str, int])
def cleanup_history(
    request: Request,
    days: int | None = Query(default=None, ge=0),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> dict[str, int] | JSONResponse:
    try:
        require_permission(user, "crm.history.manage")
        return {"deleted": AutomationEngine(db).cleanup_history(days)}
    except HTTPException as exc:
        return _failure(request, exc, "history_cleanup_failed")
