from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager, nullcontext
from datetime import timedelta
from typing import Any, assert_never

from pydantic import ValidationError

from app.automation.enums import EntityType
from app.automation.ports import ActivityGateway, DealLifecycle, LeadGateway, NotificationGateway
from app.automation.schemas import (
    SYSTEM_ACTOR,
    ActionClause,
    AddTagsAction,
    AssignToUserAction,
    AutomationContext,
    ChangeStageAction,
    ChangeStatusAction,
    CreateTaskAction,
    LogActivityAction,
    RemoveTagsAction,
    SendNotificationAction,
    SetReminderAction,
    UpdateAmountAction,
    UpdateProbabilityAction,
    UpdateScoreAction,
    action_clause_adapter,
)
from app.metrics import observe_action

logger = logging.getLogger("app.automation.actions")

_DEAL_ONLY = frozenset({EntityType.DEAL})
_LEAD_ONLY = frozenset({EntityType.LEAD})
_ANY_ENTITY = frozenset({EntityType.DEAL, EntityType.LEAD})

ACTION_APPLICABILITY: dict[type[Any], frozenset[EntityType]] = {
    ChangeStageAction: _DEAL_ONLY,
    UpdateAmountAction: _DEAL_ONLY,
    UpdateProbabilityAction: _DEAL_ONLY,
    UpdateScoreAction: _LEAD_ONLY,
    AddTagsAction: _LEAD_ONLY,
    RemoveTagsAction: _LEAD_ONLY,
    ChangeStatusAction: _ANY_ENTITY,
    AssignToUserAction: _ANY_ENTITY,
    SendNotificationAction: _ANY_ENTITY,
    CreateTaskAction: _ANY_ENTITY,
    SetReminderAction: _ANY_ENTITY,
    LogActivityAction: _ANY_ENTITY,
}

# Actions that still make sense on a time-based tick with no entity.
ENTITYLESS_ACTIONS: frozenset[type[Any]] = frozenset({SendNotificationAction})


class ActionExecutor:
    """Runs a rule's actions in order, each in its own savepoint so a failure only undoes that action."""

    def __init__(
        self,
        leads: LeadGateway,
        activities: ActivityGateway,
        notifications: NotificationGateway,
        deals: DealLifecycle | None = None,
        savepoint: Callable[[], AbstractContextManager[Any]] = nullcontext,
    ) -> None:
        self.leads = leads
        self.activities = activities
        self.notifications = notifications
        self.deals = deals
        self.savepoint = savepoint

    def execute(self, clauses: Sequence[dict[str, Any]], context: AutomationContext) -> int:
        executed = 0
        for raw in clauses:
            action = self._parse(raw, context)
            if action is None:
                continue
            if not self._is_applicable(action, context):
                continue
            try:
                with self.savepoint():
                    self._dispatch(action, context)
            except Exception as exc:
                observe_action(action.type, "failed")
                logger.exception(
                    "automation_action_failed",
                    extra={
                        "rule_id": context.rule_id,
                        "action_type": action.type,
                        "entity_type": context.entity_type,
                        "entity_id": context.entity_id,
                        "error": str(exc),
                    },
                )
                continue
            observe_action(action.type, "succeeded")
            executed += 1
        return executed

    def _parse(self, raw: dict[str, Any], context: AutomationContext) -> ActionClause | None:
        try:
            return action_clause_adapter.validate_python(raw)
        except ValidationError as exc:
            observe_action(str(raw.get("type") if isinstance(raw, dict) else "unknown"), "invalid")
            logger.warning(
                "automation_action_invalid",
                extra={
                    "rule_id": context.rule_id,
                    "action_type": raw.get("type") if isinstance(raw, dict) else None,
                    "entity_id": context.entity_id,
                    "error": str(exc),
                },
            )
            return None

    def _is_applicable(self, action: ActionClause, context: AutomationContext) -> bool:
        if context.entity is None or context.entity_type is None:
            if type(action) in ENTITYLESS_ACTIONS:
                return True
            reason = "no_entity"
        elif context.entity_type in ACTION_APPLICABILITY[type(action)]:
            return True
        else:
            reason = "inapplicable_entity_type"
        observe_action(action.type, "skipped")
        logger.warning(
            "automation_action_skipped",
            extra={
                "rule_id": context.rule_id,
                "action_type": action.type,
                "entity_type": context.entity_type,
                "entity_id": context.entity_id,
                "reason": reason,
            },
        )
        return False

    def _dispatch(self, action: ActionClause, context: AutomationContext) -> None:
        if isinstance(action, ChangeStageAction):
            self._deals().move_to_stage(
                self._entity_uuid(context),
                action.config.stage_id,
                force=action.config.force_probability,
                actor=SYSTEM_ACTOR,
            )
        elif isinstance(action, ChangeStatusAction):
            if context.entity_type == EntityType.DEAL:
                self._deals().change_status(self._entity_uuid(context), action.config.status, actor=SYSTEM_ACTOR)
            else:
                self.leads.change_status(self._entity_uuid(context), action.config.status, SYSTEM_ACTOR)
        elif isinstance(action, AssignToUserAction):
            if context.entity_type == EntityType.DEAL:
                self._deals().assign_deal(
                    self._entity_uuid(context),
                    action.config.user_id,
                    actor=SYSTEM_ACTOR,
                    reason=action.config.reason or "automation",
                )
            else:
                user_id = self._deals().resolve_assignee(action.config.user_id)
                self.leads.assign_lead(self._entity_uuid(context), user_id, SYSTEM_ACTOR)
        elif isinstance(action, UpdateAmountAction):
            self._deals().update_deal(self._entity_uuid(context), {"amount": action.config.amount}, actor=SYSTEM_ACTOR)
        elif isinstance(action, UpdateProbabilityAction):
            self._deals().update_deal(
                self._entity_uuid(context),
                {"probability": action.config.probability},
                actor=SYSTEM_ACTOR,
            )
        elif isinstance(action, UpdateScoreAction):
            self.leads.score_lead(self._entity_uuid(context), action.config.score, SYSTEM_ACTOR)
        elif isinstance(action, AddTagsAction):
            self.leads.add_tags(self._entity_uuid(context), action.config.tags, SYSTEM_ACTOR)
        elif isinstance(action, RemoveTagsAction):
            self.leads.remove_tags(self._entity_uuid(context), action.config.tags, SYSTEM_ACTOR)
        elif isinstance(action, SendNotificationAction):
            self.notifications.notify(
                title=action.config.title,
                message=action.config.message,
                recipient_user_id=action.config.recipient_user_id,
                channels=action.config.channels,
                priority=action.config.priority,
                payload={
                    "rule_id": context.rule_id,
                    "trigger": context.trigger.value,
                    "entity_type": context.entity_type.value if context.entity_type else None,
                    "entity_id": context.entity_id,
                },
                entity_type=context.entity_type.value if context.entity_type else None,
                entity_id=context.entity_id,
            )
        elif isinstance(action, CreateTaskAction):
            self.activities.create_task(
                context.entity_type.value,
                context.entity_id,
                action.config.title,
                action.config.description,
                context.now + timedelta(days=action.config.due_in_days),
                action.config.assigned_to_user_id,
            )
        elif isinstance(action, SetReminderAction):
            remind_at = context.now + timedelta(hours=action.config.remind_in_hours)
            if context.entity_type == EntityType.LEAD:
                self.leads.schedule_follow_up(self._entity_uuid(context), remind_at, action.config.title, SYSTEM_ACTOR)
            else:
                self.activities.set_reminder(
                    context.entity_type.value,
                    context.entity_id,
                    action.config.title,
                    remind_at,
                    action.config.user_id,
                )
        elif isinstance(action, LogActivityAction):
            if context.entity_type == EntityType.LEAD:
                self.leads.add_note(self._entity_uuid(context), action.config.message, SYSTEM_ACTOR)
            else:
                self.activities.log_activity(
                    context.entity_type.value,
                    context.entity_id,
                    action.config.message,
                    action.config.title,
                )
        else:
            assert_never(action)

    def _deals(self) -> DealLifecycle:
        if self.deals is None:
            raise RuntimeError("deal lifecycle is not wired into the action executor")
        return self.deals

    @staticmethod
    def _entity_uuid(context: AutomationContext) -> uuid.UUID:
        return uuid.UUID(str(context.entity.id))
