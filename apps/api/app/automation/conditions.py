from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import ValidationError

from app.automation.enums import ConditionField, ConditionOperator, EntityType
from app.automation.models import as_utc
from app.automation.schemas import ConditionClause

logger = logging.getLogger("app.automation.conditions")


class _NoMatch:
    def __repr__(self) -> str:
        return "NO_MATCH"


NO_MATCH: Any = _NoMatch()

_DEAL_ONLY = frozenset({EntityType.DEAL})
_LEAD_ONLY = frozenset({EntityType.LEAD})
_ANY_ENTITY = frozenset({EntityType.DEAL, EntityType.LEAD})


@dataclass(frozen=True)
class FieldExtractor:
    entity_types: frozenset[EntityType]
    extract: Callable[[Any, ConditionClause, datetime], Any]


def _attribute(name: str) -> Callable[[Any, ConditionClause, datetime], Any]:
    return lambda entity, clause, now: getattr(entity, name, None)


def _elapsed(name: str, seconds_per_unit: float) -> Callable[[Any, ConditionClause, datetime], Any]:
    def extract(entity: Any, clause: ConditionClause, now: datetime) -> float | None:
        moment = getattr(entity, name, None)
        if moment is None:
            return None
        return (now - as_utc(moment)).total_seconds() / seconds_per_unit

    return extract


def _custom_field(entity: Any, clause: ConditionClause, now: datetime) -> Any:
    custom_fields = getattr(entity, "custom_fields", None) or {}
    return custom_fields.get(clause.key)


FIELD_EXTRACTORS: dict[ConditionField, FieldExtractor] = {
    ConditionField.STAGE_EQUALS: FieldExtractor(_DEAL_ONLY, _attribute("stage_id")),
    ConditionField.STAGE_NOT_EQUALS: FieldExtractor(_DEAL_ONLY, _attribute("stage_id")),
    ConditionField.STATUS_EQUALS: FieldExtractor(_ANY_ENTITY, _attribute("status")),
    ConditionField.STATUS_NOT_EQUALS: FieldExtractor(_ANY_ENTITY, _attribute("status")),
    ConditionField.AMOUNT_GREATER_THAN: FieldExtractor(_DEAL_ONLY, _attribute("amount")),
    ConditionField.AMOUNT_LESS_THAN: FieldExtractor(_DEAL_ONLY, _attribute("amount")),
    ConditionField.AMOUNT_BETWEEN: FieldExtractor(_DEAL_ONLY, _attribute("amount")),
    ConditionField.PROBABILITY_GREATER_THAN: FieldExtractor(_DEAL_ONLY, _attribute("probability")),
    ConditionField.PROBABILITY_LESS_THAN: FieldExtractor(_DEAL_ONLY, _attribute("probability")),
    ConditionField.SOURCE_EQUALS: FieldExtractor(_LEAD_ONLY, _attribute("source")),
    ConditionField.SOURCE_NOT_EQUALS: FieldExtractor(_LEAD_ONLY, _attribute("source")),
    ConditionField.PRIORITY_EQUALS: FieldExtractor(_LEAD_ONLY, _attribute("priority")),
    ConditionField.PRIORITY_NOT_EQUALS: FieldExtractor(_LEAD_ONLY, _attribute("priority")),
    ConditionField.SCORE_GREATER_THAN: FieldExtractor(_LEAD_ONLY, _attribute("score")),
    ConditionField.SCORE_LESS_THAN: FieldExtractor(_LEAD_ONLY, _attribute("score")),
    ConditionField.CREATED_WITHIN_DAYS: FieldExtractor(_ANY_ENTITY, _elapsed("created_at", 86400.0)),
    ConditionField.UPDATED_WITHIN_HOURS: FieldExtractor(_ANY_ENTITY, _elapsed("updated_at", 3600.0)),
    ConditionField.NO_ACTIVITY_FOR_DAYS: FieldExtractor(_ANY_ENTITY, _elapsed("updated_at", 86400.0)),
    ConditionField.CUSTOM_FIELD_EQUALS: FieldExtractor(_ANY_ENTITY, _custom_field),
    ConditionField.CUSTOM_FIELD_CONTAINS: FieldExtractor(_ANY_ENTITY, _custom_field),
}


def _normalized(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _equals(actual: Any, expected: Any, _: Any) -> bool:
    if actual is None:
        return False
    left = _normalized(actual)
    if isinstance(left, (int, float)) or isinstance(expected, float):
        left_number = _as_number(left)
        right_number = _as_number(expected)
        if left_number is not None and right_number is not None:
            return left_number == right_number
    return str(left) == str(expected) if isinstance(expected, str) else left == expected


def _not_equals(actual: Any, expected: Any, _: Any) -> bool:
    if actual is None:
        return expected is not None
    return not _equals(actual, expected, None)


def _greater_than(actual: Any, expected: Any, _: Any) -> bool:
    left = _as_number(_normalized(actual))
    right = _as_number(expected)
    if left is None or right is None:
        return False
    return left > right


def _less_than(actual: Any, expected: Any, _: Any) -> bool:
    left = _as_number(_normalized(actual))
    right = _as_number(expected)
    if left is None or right is None:
        return False
    return left < right


def _between(actual: Any, lower: Any, upper: Any) -> bool:
    value = _as_number(_normalized(actual))
    low = _as_number(lower)
    high = _as_number(upper)
    if value is None or low is None or high is None:
        return False
    return low <= value <= high


def _contains(actual: Any, expected: Any, _: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, (list, tuple, set)):
        members = {str(_normalized(item)) for item in actual}
        if isinstance(expected, list):
            return all(str(item) in members for item in expected)
        return str(_normalized(expected)) in members
    if isinstance(expected, list):
        return False
    return str(_normalized(expected)) in str(_normalized(actual))


def _not_contains(actual: Any, expected: Any, _: Any) -> bool:
    if actual is None:
        return True
    return not _contains(actual, expected, None)


OPERATORS: dict[ConditionOperator, Callable[[Any, Any, Any], bool]] = {
    ConditionOperator.EQUALS: _equals,
    ConditionOperator.NOT_EQUALS: _not_equals,
    ConditionOperator.GREATER_THAN: _greater_than,
    ConditionOperator.LESS_THAN: _less_than,
    ConditionOperator.BETWEEN: _between,
    ConditionOperator.CONTAINS: _contains,
    ConditionOperator.NOT_CONTAINS: _not_contains,
}


class ConditionEvaluator:
    """Evaluates rule conditions against an entity snapshot. Never raises."""

    def evaluate(
        self,
        clause: ConditionClause,
        entity_type: EntityType | None,
        entity: Any,
        now: datetime,
    ) -> bool:
        extractor = FIELD_EXTRACTORS.get(clause.field)
        if extractor is None:
            logger.warning(
                "automation_condition_unsupported",
                extra={"reason": "unsupported_field", "kind": clause.field.value},
            )
            return False
        operator = OPERATORS.get(clause.operator)
        if operator is None:
            logger.warning(
                "automation_condition_unsupported",
                extra={"reason": "unknown_operator", "kind": clause.operator.value},
            )
            return False

        actual = self._extract(extractor, clause, entity_type, entity, now)
        if actual is NO_MATCH:
            return False
        try:
            return operator(actual, clause.raw_value, clause.raw_value2)
        except Exception as exc:
            logger.warning(
                "automation_condition_failed",
                extra={"reason": clause.operator.value, "kind": clause.field.value, "error": str(exc)},
            )
            return False

    def matches(
        self,
        conditions: Sequence[dict[str, Any] | ConditionClause],
        entity_type: EntityType | None,
        entity: Any,
        now: datetime,
    ) -> bool:
        for raw in conditions:
            clause = self.parse(raw)
            if clause is None:
                return False
            if not self.evaluate(clause, entity_type, entity, now):
                return False
        return True

    def parse(self, raw: dict[str, Any] | ConditionClause) -> ConditionClause | None:
        if isinstance(raw, ConditionClause):
            return raw
        try:
            return ConditionClause.model_validate(raw)
        except ValidationError as exc:
            logger.warning(
                "automation_condition_invalid",
                extra={"reason": "invalid_clause", "error": str(exc)},
            )
            return None

    def _extract(
        self,
        extractor: FieldExtractor,
        clause: ConditionClause,
        entity_type: EntityType | None,
        entity: Any,
        now: datetime,
    ) -> Any:
        if entity is None or entity_type is None or entity_type not in extractor.entity_types:
            return NO_MATCH
        return extractor.extract(entity, clause, now)
