from __future__ import annotations

import uuid
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from app.automation.actions import ActionExecutor
from app.automation.conditions import ConditionEvaluator
from app.automation.deals import DealLifecycleService
from app.automation.dispatcher import TriggerDispatcher
from app.automation.enums import DealStatus, EntityType, HistoryChangeType
from app.automation.errors import DealNotFoundError, LeadNotFoundError
from app.automation.history import HistoryRecorder
from app.automation.repositories import (
    SqlActivityGateway,
    SqlAssignmentGateway,
    SqlDealGateway,
    SqlHistoryRepository,
    SqlLeadGateway,
    SqlNotificationGateway,
    SqlRuleRepository,
    SqlStageRepository,
    SqlUserDirectory,
)
from app.automation.rules import RuleService
from app.automation.schemas import (
    SYSTEM_ACTOR,
    Actor,
    ActiveEntity,
    AutomationRuleCreate,
    AutomationRuleRead,
    AutomationRuleUpdate,
    ChangeStatistics,
    DealRead,
    FieldChange,
    HistoryEntryRead,
    HistoryFilter,
    HistoryPage,
    StageMovementStats,
)
from app.core.config import get_settings

_LEAD_FIELD_CHANGE_TYPES: dict[str, HistoryChangeType] = {
    "status": HistoryChangeType.STATUS_CHANGED,
    "assigned_to": HistoryChangeType.ASSIGNED,
    "notes": HistoryChangeType.NOTE_ADDED,
    "next_follow_up_at": HistoryChangeType.DATE_CHANGED,
}


class AutomationEngine:
    """Wires the automation core onto one SQLAlchemy session.

    Public methods are the entry points for the CRUD layer and the HTTP API.
    Each one commits on success and rolls back when it raises. Actions, rule
    statistics and history writes run in savepoints, so their failures never
    undo the primary change.
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self.history = HistoryRecorder(SqlHistoryRepository(session), savepoint=session.begin_nested)
        self.rule_repository = SqlRuleRepository(session)
        self.rules = RuleService(self.rule_repository)
        self.leads = SqlLeadGateway(session, self.history)
        self.executor = ActionExecutor(
            leads=self.leads,
            activities=SqlActivityGateway(session),
            notifications=SqlNotificationGateway(session),
            savepoint=session.begin_nested,
        )
        self.dispatcher = TriggerDispatcher(
            self.rule_repository,
            ConditionEvaluator(),
            self.executor,
            savepoint=session.begin_nested,
        )
        self.deals = DealLifecycleService(
            deals=SqlDealGateway(session),
            stages=SqlStageRepository(session),
            assignments=SqlAssignmentGateway(session),
            users=SqlUserDirectory(session),
            history=self.history,
            dispatcher=self.dispatcher,
        )
        self.executor.deals = self.deals

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        try:
            yield
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def on_entity_created(self, entity_type: EntityType, entity_id: uuid.UUID, actor: Actor = SYSTEM_ACTOR) -> None:
        with self._transaction():
            if entity_type == EntityType.DEAL:
                self.deals.record_created(entity_id, actor=actor)
                return
            lead = self._load_lead(entity_id)
            self.history.safe_record(
                EntityType.LEAD,
                str(lead.id),
                HistoryChangeType.CREATED,
                actor,
                description=f"Lead created: {lead.name}",
            )
            self.dispatcher.on_entity_created(EntityType.LEAD, lead, actor)

    def on_entity_updated(
        self,
        entity_type: EntityType,
        entity_id: uuid.UUID,
        changes: Sequence[FieldChange],
        actor: Actor = SYSTEM_ACTOR,
    ) -> None:
        with self._transaction():
            if entity_type == EntityType.DEAL:
                self.deals.record_changes(entity_id, changes, actor=actor)
                return
            lead = self._load_lead(entity_id)
            effective = [change for change in changes if change.old_value != change.new_value]
            for change in effective:
                self.history.safe_record(
                    EntityType.LEAD,
                    str(lead.id),
                    _LEAD_FIELD_CHANGE_TYPES.get(change.field, HistoryChangeType.UPDATED),
                    actor,
                    field_name=change.field,
                    old_value=change.old_value,
                    new_value=change.new_value,
                )
            self.dispatcher.on_entity_updated(EntityType.LEAD, lead, effective, actor)

    def run_time_based_tick(self) -> int:
        with self._transaction():
            return self.dispatcher.run_time_based()

    def move_to_stage(
        self,
        deal_id: uuid.UUID,
        stage_id: uuid.UUID,
        *,
        force: bool = False,
        actor: Actor = SYSTEM_ACTOR,
    ) -> DealRead:
        with self._transaction():
            deal = self.deals.move_to_stage(deal_id, stage_id, force=force, actor=actor)
        return DealRead.model_validate(deal)

    def change_status(
        self,
        deal_id: uuid.UUID,
        status: DealStatus,
        *,
        stage_id: uuid.UUID | None = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> DealRead:
        with self._transaction():
            deal = self.deals.change_status(deal_id, status, stage_id=stage_id, actor=actor)
        return DealRead.model_validate(deal)

    def win(self, deal_id: uuid.UUID, actual_amount: Decimal | None = None, *, actor: Actor = SYSTEM_ACTOR) -> DealRead:
        with self._transaction():
            deal = self.deals.win(deal_id, actual_amount, actor=actor)
        return DealRead.model_validate(deal)

    def lose(self, deal_id: uuid.UUID, reason: str, *, actor: Actor = SYSTEM_ACTOR) -> DealRead:
        with self._transaction():
            deal = self.deals.lose(deal_id, reason, actor=actor)
        return DealRead.model_validate(deal)

    def assign_deal(self, deal_id: uuid.UUID, assignee: int | str, *, actor: Actor = SYSTEM_ACTOR) -> DealRead:
        with self._transaction():
            deal = self.deals.assign_deal(deal_id, assignee, actor=actor, reason="manual")
        return DealRead.model_validate(deal)

    def get_deal(self, deal_id: uuid.UUID) -> DealRead:
        deal = self.deals.deals.get_by_id(deal_id)
        if deal is None:
            raise DealNotFoundError(deal_id)
        return DealRead.model_validate(deal)

    def create_rule(self, dto: AutomationRuleCreate, actor: Actor = SYSTEM_ACTOR) -> AutomationRuleRead:
        with self._transaction():
            return self.rules.create_rule(dto, actor)

    def list_rules(self, *, trigger: str | None = None, is_active: bool | None = None) -> list[AutomationRuleRead]:
        return self.rules.list_rules(trigger=trigger, is_active=is_active)

    def get_rule(self, rule_id: int) -> AutomationRuleRead:
        return self.rules.get_rule(rule_id)

    def update_rule(self, rule_id: int, dto: AutomationRuleUpdate, actor: Actor = SYSTEM_ACTOR) -> AutomationRuleRead:
        with self._transaction():
            return self.rules.update_rule(rule_id, dto, actor)

    def delete_rule(self, rule_id: int, actor: Actor = SYSTEM_ACTOR) -> None:
        with self._transaction():
            self.rules.delete_rule(rule_id, actor)

    def toggle_rule(self, rule_id: int, actor: Actor = SYSTEM_ACTOR, is_active: bool | None = None) -> AutomationRuleRead:
        with self._transaction():
            return self.rules.toggle_rule(rule_id, actor, is_active=is_active)

    def entity_history(
        self,
        entity_type: EntityType,
        entity_id: uuid.UUID,
        filters: HistoryFilter | None = None,
    ) -> HistoryPage:
        return self.history.list_for_entity(entity_type, str(entity_id), filters)

    def change_statistics(
        self,
        entity_type: EntityType,
        entity_id: uuid.UUID,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> ChangeStatistics:
        return self.history.change_statistics(entity_type, str(entity_id), date_from, date_to)

    def stage_movement_stats(self, date_from: datetime | None = None, date_to: datetime | None = None) -> StageMovementStats:
        return self.history.stage_movement_stats(date_from, date_to)

    def most_active(self, limit: int = 10) -> list[ActiveEntity]:
        return self.history.most_active(limit)

    def recent_changes(self, limit: int = 20) -> list[HistoryEntryRead]:
        return self.history.recent_changes(limit)

    def cleanup_history(self, days: int | None = None) -> int:
        retention_days = days if days is not None else get_settings().history_retention_days
        with self._transaction():
            return self.history.delete_older_than(retention_days)

    def _load_lead(self, lead_id: uuid.UUID):  # type: ignore[no-untyped-def]
        lead = self.leads.get_by_id(lead_id)
        if lead is None:
            raise LeadNotFoundError(lead_id)
        return lead


def run_time_based_tick(session_factory: Callable[[], Session]) -> int:
    session = session_factory()
    try:
        return AutomationEngine(session).run_time_based_tick()
    finally:
        session.close()


def cleanup_history(session_factory: Callable[[], Session], days: int | None = None) -> int:
    session = session_factory()
    try:
        return AutomationEngine(session).cleanup_history(days)
    finally:
        session.close()
