from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager, nullcontext
from dataclasses import replace
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from app.automation.actions import ActionExecutor
from app.automation.conditions import ConditionEvaluator
from app.automation.enums import EntityType, Trigger
from app.automation.models import AutomationRule, utcnow
from app.automation.ports import RuleRepository
from app.automation.schemas import SYSTEM_ACTOR, Actor, AutomationContext, FieldChange
from app.context import get_automation_depth, reset_automation_depth, set_automation_depth
from app.core.config import get_settings
from app.metrics import observe_dispatch, observe_guardrail_block, observe_rule_match

logger = logging.getLogger("app.automation.dispatcher")
tracer = trace.get_tracer("app.automation.dispatcher")

CREATED_TRIGGERS: dict[EntityType, Trigger] = {
    EntityType.DEAL: Trigger.DEAL_CREATED,
    EntityType.LEAD: Trigger.LEAD_CREATED,
}

UPDATED_TRIGGERS: dict[EntityType, Trigger] = {
    EntityType.DEAL: Trigger.DEAL_UPDATED,
    EntityType.LEAD: Trigger.LEAD_UPDATED,
}

# Order is stage, amount, status, assignment, score.
FIELD_TRIGGERS: dict[EntityType, tuple[tuple[str, Trigger], ...]] = {
    EntityType.DEAL: (
        ("stage_id", Trigger.DEAL_STAGE_CHANGED),
        ("amount", Trigger.DEAL_AMOUNT_CHANGED),
        ("status", Trigger.DEAL_STATUS_CHANGED),
        ("assigned_to", Trigger.DEAL_ASSIGNED),
    ),
    EntityType.LEAD: (
        ("status", Trigger.LEAD_STATUS_CHANGED),
        ("assigned_to", Trigger.LEAD_ASSIGNED),
        ("score", Trigger.LEAD_SCORE_CHANGED),
    ),
}


def derive_update_triggers(entity_type: EntityType, changes: Sequence[FieldChange]) -> list[Trigger]:
    changed_fields = {change.field for change in changes if change.old_value != change.new_value}
    triggers = [UPDATED_TRIGGERS[entity_type]]
    for field_name, trigger in FIELD_TRIGGERS[entity_type]:
        if field_name in changed_fields:
            triggers.append(trigger)
    return triggers


class TriggerDispatcher:
    """Maps domain events to triggers and runs the matching rules in priority order.

    Dispatch never raises: rule loading, condition evaluation, action execution
    and statistics persistence failures are logged and swallowed so the
    mutation that raised the event is unaffected.
    """

    def __init__(
        self,
        rules: RuleRepository,
        evaluator: ConditionEvaluator,
        executor: ActionExecutor,
        savepoint: Callable[[], AbstractContextManager[Any]] = nullcontext,
    ) -> None:
        self.rules = rules
        self.evaluator = evaluator
        self.executor = executor
        self.savepoint = savepoint

    def dispatch(
        self,
        entity_type: EntityType | None,
        entity: Any,
        trigger: Trigger,
        changes: Sequence[FieldChange] | None = None,
        actor: Actor | None = None,
    ) -> int:
        settings = get_settings()
        context = AutomationContext(
            trigger=trigger,
            entity_type=entity_type,
            entity=entity,
            changes=list(changes or []),
            actor=actor or SYSTEM_ACTOR,
        )

        depth = get_automation_depth()
        if depth >= settings.automation_max_depth:
            observe_guardrail_block("MAX_DEPTH")
            logger.warning(
                "automation_guardrail_blocked",
                extra={
                    "reason": "MAX_DEPTH",
                    "trigger": trigger.value,
                    "entity_type": entity_type,
                    "entity_id": context.entity_id,
                    "depth": depth,
                    "max_depth": settings.automation_max_depth,
                },
            )
            return 0

        token = set_automation_depth(depth + 1)
        started = time.perf_counter()
        outcome = "completed"
        try:
            with tracer.start_as_current_span("automation.dispatch") as span:
                span.set_attribute("automation.trigger", trigger.value)
                span.set_attribute("automation.depth", depth + 1)
                if entity_type is not None:
                    span.set_attribute("automation.entity_type", entity_type.value)
                if context.entity_id is not None:
                    span.set_attribute("automation.entity_id", context.entity_id)

                try:
                    rules = self.rules.find_active_by_trigger(trigger.value)
                except Exception as exc:
                    outcome = "failed"
                    span.record_exception(exc)
                    span.set_status(Status(StatusCode.ERROR, str(exc)[:200]))
                    logger.exception(
                        "automation_rules_load_failed",
                        extra={"trigger": trigger.value, "entity_id": context.entity_id, "error": str(exc)},
                    )
                    return 0

                matched = 0
                for rule in rules:
                    if self._run_rule(rule, context):
                        matched += 1
                span.set_attribute("automation.rules_loaded", len(rules))
                span.set_attribute("automation.rules_matched", matched)
                return matched
        finally:
            reset_automation_depth(token)
            observe_dispatch(trigger.value, outcome, time.perf_counter() - started)

    def on_entity_created(self, entity_type: EntityType, entity: Any, actor: Actor | None = None) -> int:
        return self.dispatch(entity_type, entity, CREATED_TRIGGERS[entity_type], actor=actor)

    def on_entity_updated(
        self,
        entity_type: EntityType,
        entity: Any,
        changes: Sequence[FieldChange],
        actor: Actor | None = None,
    ) -> int:
        matched = 0
        for trigger in derive_update_triggers(entity_type, changes):
            matched += self.dispatch(entity_type, entity, trigger, changes=changes, actor=actor)
        return matched

    def run_time_based(self) -> int:
        return self.dispatch(None, None, Trigger.TIME_BASED)

    def _run_rule(self, rule: AutomationRule, base_context: AutomationContext) -> bool:
        context = replace(base_context, rule_id=rule.id)
        try:
            matched = self.evaluator.matches(rule.conditions or [], context.entity_type, context.entity, context.now)
        except Exception as exc:
            logger.exception(
                "automation_rule_evaluation_failed",
                extra={"rule_id": rule.id, "trigger": context.trigger.value, "error": str(exc)},
            )
            return False
        if not matched:
            return False

        observe_rule_match(context.trigger.value)
        logger.info(
            "automation_rule_matched",
            extra={
                "rule_id": rule.id,
                "rule_name": rule.name,
                "trigger": context.trigger.value,
                "entity_type": context.entity_type,
                "entity_id": context.entity_id,
            },
        )
        try:
            self.executor.execute(rule.actions or [], context)
        except Exception as exc:
            logger.exception(
                "automation_rule_failed",
                extra={
                    "rule_id": rule.id,
                    "trigger": context.trigger.value,
                    "entity_id": context.entity_id,
                    "error": str(exc),
                },
            )
        self._bump_statistics(rule, context)
        return True

    def _bump_statistics(self, rule: AutomationRule, context: AutomationContext) -> None:
        try:
            with self.savepoint():
                rule.trigger_count = (rule.trigger_count or 0) + 1
                rule.last_triggered_at = utcnow()
                self.rules.save(rule)
        except Exception as exc:
            logger.exception(
                "automation_rule_stats_failed",
                extra={"rule_id": rule.id, "trigger": context.trigger.value, "error": str(exc)},
            )
