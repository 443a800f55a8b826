from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import get_args

import pytest
from pydantic import ValidationError

from app.automation.actions import ACTION_APPLICABILITY
from app.automation.conditions import FIELD_EXTRACTORS, OPERATORS, ConditionEvaluator
from app.automation.dispatcher import derive_update_triggers
from app.automation.enums import (
    UNSUPPORTED_CONDITION_FIELDS,
    ActionType,
    ConditionField,
    ConditionOperator,
    EntityType,
    Trigger,
)
from app.automation.schemas import AutomationRuleCreate, AutomationRuleUpdate, ConditionClause, FieldChange

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def evaluator() -> ConditionEvaluator:
    return ConditionEvaluator()


def _deal(**overrides: object) -> SimpleNamespace:
    values: dict[str, object] = {
        "id": uuid.uuid4(),
        "stage_id": uuid.uuid4(),
        "status": "open",
        "amount": Decimal("150.00"),
        "probability": 40,
        "custom_fields": {"region": "EMEA", "plan": "enterprise-plus"},
        "created_at": NOW - timedelta(days=2),
        "updated_at": NOW - timedelta(hours=5),
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def _lead(**overrides: object) -> SimpleNamespace:
    values: dict[str, object] = {
        "id": uuid.uuid4(),
        "status": "new",
        "source": None,
        "priority": "high",
        "score": 72,
        "custom_fields": {},
        "created_at": NOW - timedelta(days=10),
        "updated_at": NOW - timedelta(days=4),
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def _clause(**raw: object) -> ConditionClause:
    return ConditionClause.model_validate(raw)


def test_every_condition_field_is_evaluable_or_explicitly_unsupported() -> None:
    supported = set(FIELD_EXTRACTORS)
    assert supported.isdisjoint(UNSUPPORTED_CONDITION_FIELDS)
    assert supported | UNSUPPORTED_CONDITION_FIELDS == set(ConditionField)


def test_every_operator_has_an_implementation() -> None:
    assert set(OPERATORS) == set(ConditionOperator)


def test_every_action_type_has_applicability() -> None:
    declared = {get_args(action_cls.model_fields["type"].annotation)[0] for action_cls in ACTION_APPLICABILITY}
    assert declared == {action_type.value for action_type in ActionType}


def test_empty_conditions_always_match(evaluator: ConditionEvaluator) -> None:
    assert evaluator.matches([], EntityType.DEAL, _deal(), NOW) is True
    assert evaluator.matches([], None, None, NOW) is True


def test_numeric_comparisons_on_deal_amount(evaluator: ConditionEvaluator) -> None:
    deal = _deal()

    assert evaluator.evaluate(
        _clause(field="amount_greater_than", operator="greater_than", value=100), EntityType.DEAL, deal, NOW
    )
    assert not evaluator.evaluate(
        _clause(field="amount_less_than", operator="less_than", value=100), EntityType.DEAL, deal, NOW
    )
    assert evaluator.evaluate(
        _clause(field="amount_between", operator="between", value=100, value2=200), EntityType.DEAL, deal, NOW
    )
    assert evaluator.evaluate(
        _clause(field="amount_greater_than", operator="equals", value="150"), EntityType.DEAL, deal, NOW
    )


def test_stage_equality_compares_identifiers_as_text(evaluator: ConditionEvaluator) -> None:
    deal = _deal()

    assert evaluator.evaluate(
        _clause(field="stage_equals", operator="equals", value=str(deal.stage_id)), EntityType.DEAL, deal, NOW
    )
    assert evaluator.evaluate(
        _clause(field="stage_not_equals", operator="not_equals", value=str(uuid.uuid4())), EntityType.DEAL, deal, NOW
    )


def test_custom_field_conditions_use_key(evaluator: ConditionEvaluator) -> None:
    deal = _deal()

    assert evaluator.evaluate(
        _clause(field="custom_field_equals", operator="equals", key="region", value="EMEA"), EntityType.DEAL, deal, NOW
    )
    assert evaluator.evaluate(
        _clause(field="custom_field_contains", operator="contains", key="plan", value="plus"), EntityType.DEAL, deal, NOW
    )
    assert not evaluator.evaluate(
        _clause(field="custom_field_equals", operator="equals", key="missing", value="x"), EntityType.DEAL, deal, NOW
    )


def test_contains_checks_membership_in_list_values(evaluator: ConditionEvaluator) -> None:
    deal = _deal(custom_fields={"channels": ["email", "phone"]})

    def check(operator: str, value: object, key: str = "channels") -> bool:
        return evaluator.evaluate(
            _clause(field="custom_field_contains", operator=operator, key=key, value=value), EntityType.DEAL, deal, NOW
        )

    assert check("contains", "email")
    assert check("contains", ["email", "phone"])
    assert not check("contains", ["email", "fax"])
    assert not check("contains", "mail")
    assert check("not_contains", "fax")
    assert not check("not_contains", "phone")
    assert not check("contains", "email", key="missing")
    assert check("not_contains", "email", key="missing")


def test_time_conditions_measure_elapsed_time(evaluator: ConditionEvaluator) -> None:
    deal = _deal()

    assert evaluator.evaluate(
        _clause(field="created_within_days", operator="less_than", value=7), EntityType.DEAL, deal, NOW
    )
    assert evaluator.evaluate(
        _clause(field="updated_within_hours", operator="less_than", value=6), EntityType.DEAL, deal, NOW
    )
    assert not evaluator.evaluate(
        _clause(field="no_activity_for_days", operator="greater_than", value=3), EntityType.DEAL, deal, NOW
    )


def test_lead_conditions(evaluator: ConditionEvaluator) -> None:
    lead = _lead()

    assert evaluator.evaluate(
        _clause(field="score_greater_than", operator="greater_than", value=50), EntityType.LEAD, lead, NOW
    )
    assert evaluator.evaluate(
        _clause(field="priority_equals", operator="equals", value="high"), EntityType.LEAD, lead, NOW
    )
    assert evaluator.evaluate(
        _clause(field="source_not_equals", operator="not_equals", value="web"), EntityType.LEAD, lead, NOW
    )
    assert not evaluator.evaluate(
        _clause(field="source_equals", operator="equals", value="web"), EntityType.LEAD, lead, NOW
    )


def test_field_for_other_entity_type_does_not_match(evaluator: ConditionEvaluator) -> None:
    clause = _clause(field="amount_greater_than", operator="greater_than", value=0)

    assert not evaluator.evaluate(clause, EntityType.LEAD, _lead(), NOW)
    assert not evaluator.evaluate(clause, None, None, NOW)


def test_unsupported_field_evaluates_false_with_warning(
    evaluator: ConditionEvaluator,
    caplog: pytest.LogCaptureFixture,
) -> None:
    clause = _clause(field="tags_contain", operator="contains", value=["vip"])

    with caplog.at_level(logging.WARNING, logger="app.automation.conditions"):
        assert evaluator.evaluate(clause, EntityType.LEAD, _lead(), NOW) is False

    assert any(record.getMessage() == "automation_condition_unsupported" for record in caplog.records)


def test_invalid_stored_clause_fails_the_rule(evaluator: ConditionEvaluator) -> None:
    conditions = [
        {"field": "status_equals", "operator": "equals", "value": "open"},
        {"field": "not_a_field", "operator": "equals", "value": 1},
    ]

    assert evaluator.matches(conditions, EntityType.DEAL, _deal(), NOW) is False


def test_all_conditions_must_match(evaluator: ConditionEvaluator) -> None:
    conditions = [
        {"field": "status_equals", "operator": "equals", "value": "open"},
        {"field": "probability_greater_than", "operator": "greater_than", "value": 50},
    ]

    assert evaluator.matches(conditions, EntityType.DEAL, _deal(), NOW) is False
    assert evaluator.matches(conditions, EntityType.DEAL, _deal(probability=80), NOW) is True


def test_between_requires_second_operand() -> None:
    with pytest.raises(ValidationError):
        ConditionClause.model_validate({"field": "amount_between", "operator": "between", "value": 10})


def test_rule_definition_rejects_unsupported_fields() -> None:
    with pytest.raises(ValidationError, match="not yet supported"):
        AutomationRuleCreate(
            name="VIP follow-up",
            trigger=Trigger.LEAD_UPDATED,
            conditions=[{"field": "tags_contain", "operator": "contains", "value": ["vip"]}],
        )


def test_rule_definition_rejects_non_deal_status_for_deal_triggers() -> None:
    actions = [{"type": "change_status", "config": {"status": "qualified"}}]

    with pytest.raises(ValidationError, match="not deal statuses"):
        AutomationRuleCreate(name="Qualify", trigger=Trigger.DEAL_STAGE_CHANGED, actions=actions)
    with pytest.raises(ValidationError, match="not deal statuses"):
        AutomationRuleUpdate(trigger=Trigger.DEAL_UPDATED, actions=actions)

    lead_rule = AutomationRuleCreate(name="Qualify", trigger=Trigger.LEAD_SCORE_CHANGED, actions=actions)
    deal_rule = AutomationRuleCreate(
        name="Close", trigger=Trigger.DEAL_UPDATED, actions=[{"type": "change_status", "config": {"status": "won"}}]
    )

    assert lead_rule.actions[0]["config"] == {"status": "qualified"}
    assert deal_rule.actions[0]["config"] == {"status": "won"}


def test_rule_definition_rejects_unknown_action_type() -> None:
    with pytest.raises(ValidationError):
        AutomationRuleCreate(
            name="Broken",
            trigger=Trigger.DEAL_CREATED,
            actions=[{"type": "send_fax", "config": {}}],
        )


def test_rule_definition_normalizes_operands() -> None:
    dto = AutomationRuleCreate(
        name="Large deals",
        trigger=Trigger.DEAL_CREATED,
        conditions=[{"field": "amount_greater_than", "operator": "greater_than", "value": 1000}],
        actions=[{"type": "log_activity", "config": {"message": "large deal"}}],
    )

    assert dto.conditions == [
        {"field": "amount_greater_than", "operator": "greater_than", "value": {"kind": "number", "value": 1000.0}}
    ]
    assert dto.actions == [{"type": "log_activity", "config": {"message": "large deal", "title": None}}]


def test_update_triggers_follow_fixed_order() -> None:
    changes = [
        FieldChange(field="assigned_to", old_value=None, new_value="7"),
        FieldChange(field="amount", old_value="10", new_value="20"),
        FieldChange(field="stage_id", old_value="a", new_value="b"),
        FieldChange(field="notes", old_value=None, new_value="hello"),
    ]

    assert derive_update_triggers(EntityType.DEAL, changes) == [
        Trigger.DEAL_UPDATED,
        Trigger.DEAL_STAGE_CHANGED,
        Trigger.DEAL_AMOUNT_CHANGED,
        Trigger.DEAL_ASSIGNED,
    ]


def test_update_triggers_ignore_unchanged_fields() -> None:
    changes = [FieldChange(field="score", old_value=10, new_value=10)]

    assert derive_update_triggers(EntityType.LEAD, changes) == [Trigger.LEAD_UPDATED]
