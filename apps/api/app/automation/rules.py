from __future__ import annotations

from app import audit
from app.automation.errors import InvalidRuleError, RuleNotFoundError
from app.automation.models import AutomationRule
from app.automation.ports import RuleRepository
from app.automation.schemas import (
    Actor,
    AutomationRuleCreate,
    AutomationRuleRead,
    AutomationRuleUpdate,
    action_clause_adapter,
    invalid_deal_statuses,
)


class RuleService:
    def __init__(self, rules: RuleRepository) -> None:
        self.rules = rules

    def create_rule(self, dto: AutomationRuleCreate, actor: Actor) -> AutomationRuleRead:
        rule = AutomationRule(
            name=dto.name.strip(),
            description=dto.description,
            trigger=dto.trigger.value,
            conditions=dto.conditions,
            actions=dto.actions,
            is_active=dto.is_active,
            priority=dto.priority,
            trigger_count=0,
            created_by=int(actor.id) if actor.id is not None and actor.id.isdigit() else None,
        )
        self.rules.add(rule)

        after = self._to_read(rule).model_dump(mode="json")
        self._audit(actor, rule, "automation.rule.created", before=None, after=after)
        return self._to_read(rule)

    def list_rules(self, *, trigger: str | None = None, is_active: bool | None = None) -> list[AutomationRuleRead]:
        return [self._to_read(rule) for rule in self.rules.find_all(trigger=trigger, is_active=is_active)]

    def get_rule(self, rule_id: int) -> AutomationRuleRead:
        return self._to_read(self._load(rule_id))

    def update_rule(self, rule_id: int, dto: AutomationRuleUpdate, actor: Actor) -> AutomationRuleRead:
        rule = self._load(rule_id)
        before = self._to_read(rule).model_dump(mode="json")

        changes = dto.model_dump(exclude_unset=True)
        if dto.trigger is not None or dto.actions is not None:
            self._check_deal_statuses(
                dto.trigger.value if dto.trigger is not None else rule.trigger,
                dto.actions if dto.actions is not None else list(rule.actions or []),
            )
        if "name" in changes and dto.name is not None:
            rule.name = dto.name.strip()
        if "description" in changes:
            rule.description = dto.description
        if "trigger" in changes and dto.trigger is not None:
            rule.trigger = dto.trigger.value
        if "conditions" in changes and dto.conditions is not None:
            rule.conditions = dto.conditions
        if "actions" in changes and dto.actions is not None:
            rule.actions = dto.actions
        if "is_active" in changes and dto.is_active is not None:
            rule.is_active = dto.is_active
        if "priority" in changes and dto.priority is not None:
            rule.priority = dto.priority
        self.rules.save(rule)

        after = self._to_read(rule).model_dump(mode="json")
        self._audit(actor, rule, "automation.rule.updated", before=before, after=after)
        return self._to_read(rule)

    def delete_rule(self, rule_id: int, actor: Actor) -> None:
        rule = self._load(rule_id)
        before = self._to_read(rule).model_dump(mode="json")
        self._audit(actor, rule, "automation.rule.deleted", before=before, after=None)
        self.rules.delete(rule)

    def toggle_rule(self, rule_id: int, actor: Actor, is_active: bool | None = None) -> AutomationRuleRead:
        rule = self._load(rule_id)
        before = self._to_read(rule).model_dump(mode="json")
        rule.is_active = (not rule.is_active) if is_active is None else is_active
        self.rules.save(rule)

        after = self._to_read(rule).model_dump(mode="json")
        self._audit(actor, rule, "automation.rule.toggled", before=before, after=after)
        return self._to_read(rule)

    def _check_deal_statuses(self, trigger: str, actions: list[dict]) -> None:
        invalid = invalid_deal_statuses(trigger, [action_clause_adapter.validate_python(raw) for raw in actions])
        if invalid:
            raise InvalidRuleError(f"change_status values are not deal statuses: {', '.join(invalid)}")

    def _load(self, rule_id: int) -> AutomationRule:
        rule = self.rules.get(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule

    def _to_read(self, rule: AutomationRule) -> AutomationRuleRead:
        return AutomationRuleRead.model_validate(rule)

    def _audit(
        self,
        actor: Actor,
        rule: AutomationRule,
        action: str,
        *,
        before: dict | None,
        after: dict | None,
    ) -> None:
        audit.record(
            actor_user_id=actor.id or "system",
            entity_type="automation.rule",
            entity_id=str(rule.id),
            action=action,
            before=before,
            after=after,
        )
