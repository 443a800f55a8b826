from __future__ import annotations

from dataclasses import dataclass, field as dataclass_field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from app.automation.enums import (
    DEAL_TRIGGERS,
    UNSUPPORTED_CONDITION_FIELDS,
    ConditionField,
    ConditionOperator,
    DealStatus,
    EntityType,
    HistoryChangeType,
    Trigger,
)


@dataclass
class Actor:
    id: str | None = None
    name: str | None = None


SYSTEM_ACTOR = Actor()


class FieldChange(BaseModel):
    field: str = Field(min_length=1)
    old_value: Any = None
    new_value: Any = None


@dataclass
class AutomationContext:
    """What a rule sees while it runs. ``entity`` is None for time-based ticks."""

    trigger: Trigger
    entity_type: EntityType | None = None
    entity: Any = None
    changes: list[FieldChange] = dataclass_field(default_factory=list)
    actor: Actor = dataclass_field(default_factory=Actor)
    rule_id: int | None = None
    now: datetime = dataclass_field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def entity_id(self) -> str | None:
        if self.entity is None:
            return None
        return str(self.entity.id)


class NumberOperand(BaseModel):
    kind: Literal["number"] = "number"
    value: float


class TextOperand(BaseModel):
    kind: Literal["text"] = "text"
    value: str


class TextListOperand(BaseModel):
    kind: Literal["text_list"] = "text_list"
    value: list[str]


class BooleanOperand(BaseModel):
    kind: Literal["boolean"] = "boolean"
    value: bool


ConditionOperand = Annotated[
    NumberOperand | TextOperand | TextListOperand | BooleanOperand,
    Field(discriminator="kind"),
]


def wrap_operand(raw: Any) -> Any:
    if raw is None or isinstance(raw, BaseModel):
        return raw
    if isinstance(raw, dict) and "kind" in raw:
        return raw
    if isinstance(raw, bool):
        return {"kind": "boolean", "value": raw}
    if isinstance(raw, (int, float, Decimal)):
        return {"kind": "number", "value": float(raw)}
    if isinstance(raw, (list, tuple, set)):
        return {"kind": "text_list", "value": [str(item) for item in raw]}
    if isinstance(raw, UUID):
        return {"kind": "text", "value": str(raw)}
    return {"kind": "text", "value": raw}


class ConditionClause(BaseModel):
    field: ConditionField
    operator: ConditionOperator
    value: ConditionOperand | None = None
    value2: ConditionOperand | None = None
    key: str | None = None

    @field_validator("value", "value2", mode="before")
    @classmethod
    def wrap_raw_operand(cls, value: Any) -> Any:
        return wrap_operand(value)

    @model_validator(mode="after")
    def validate_operands(self) -> "ConditionClause":
        if self.operator == ConditionOperator.BETWEEN and (self.value is None or self.value2 is None):
            raise ValueError("between requires value and value2")
        if self.field in {ConditionField.CUSTOM_FIELD_EQUALS, ConditionField.CUSTOM_FIELD_CONTAINS} and not self.key:
            raise ValueError(f"{self.field.value} requires key")
        return self

    @property
    def raw_value(self) -> Any:
        return self.value.value if self.value is not None else None

    @property
    def raw_value2(self) -> Any:
        return self.value2.value if self.value2 is not None else None


class ChangeStageConfig(BaseModel):
    stage_id: UUID
    force_probability: bool = False


class ChangeStatusConfig(BaseModel):
    status: str = Field(min_length=1)


class AssignToUserConfig(BaseModel):
    user_id: int | str
    reason: str | None = None


class UpdateAmountConfig(BaseModel):
    amount: Decimal


class UpdateProbabilityConfig(BaseModel):
    probability: int = Field(ge=0, le=100)


class UpdateScoreConfig(BaseModel):
    score: int = Field(ge=0, le=100)


class TagsConfig(BaseModel):
    tags: list[str] = Field(min_length=1)


class SendNotificationConfig(BaseModel):
    title: str = Field(min_length=1)
    message: str | None = None
    recipient_user_id: int | None = None
    channels: list[str] = Field(default_factory=lambda: ["in_app"])
    priority: Literal["low", "normal", "high", "urgent"] = "normal"


class CreateTaskConfig(BaseModel):
    title: str = Field(min_length=1)
    description: str | None = None
    due_in_days: int = Field(default=1, ge=0)
    assigned_to_user_id: int | None = None


class SetReminderConfig(BaseModel):
    title: str = Field(min_length=1)
    remind_in_hours: int = Field(default=24, ge=0)
    user_id: int | None = None


class LogActivityConfig(BaseModel):
    message: str = Field(min_length=1)
    title: str | None = None


class ChangeStageAction(BaseModel):
    type: Literal["change_stage"]
    config: ChangeStageConfig


class ChangeStatusAction(BaseModel):
    type: Literal["change_status"]
    config: ChangeStatusConfig


class AssignToUserAction(BaseModel):
    type: Literal["assign_to_user"]
    config: AssignToUserConfig


class UpdateAmountAction(BaseModel):
    type: Literal["update_amount"]
    config: UpdateAmountConfig


class UpdateProbabilityAction(BaseModel):
    type: Literal["update_probability"]
    config: UpdateProbabilityConfig


class UpdateScoreAction(BaseModel):
    type: Literal["update_score"]
    config: UpdateScoreConfig


class AddTagsAction(BaseModel):
    type: Literal["add_tags"]
    config: TagsConfig


class RemoveTagsAction(BaseModel):
    type: Literal["remove_tags"]
    config: TagsConfig


class SendNotificationAction(BaseModel):
    type: Literal["send_notification"]
    config: SendNotificationConfig


class CreateTaskAction(BaseModel):
    type: Literal["create_task"]
    config: CreateTaskConfig


class SetReminderAction(BaseModel):
    type: Literal["set_reminder"]
    config: SetReminderConfig


class LogActivityAction(BaseModel):
    type: Literal["log_activity"]
    config: LogActivityConfig


ActionClause = Annotated[
    ChangeStageAction
    | ChangeStatusAction
    | AssignToUserAction
    | UpdateAmountAction
    | UpdateProbabilityAction
    | UpdateScoreAction
    | AddTagsAction
    | RemoveTagsAction
    | SendNotificationAction
    | CreateTaskAction
    | SetReminderAction
    | LogActivityAction,
    Field(discriminator="type"),
]

action_clause_adapter = TypeAdapter(ActionClause)
_condition_list_adapter = TypeAdapter(list[ConditionClause])
_action_list_adapter = TypeAdapter(list[ActionClause])


def _reject_unsupported_conditions(conditions: list[ConditionClause]) -> None:
    unsupported = sorted({clause.field.value for clause in conditions if clause.field in UNSUPPORTED_CONDITION_FIELDS})
    if unsupported:
        raise ValueError(f"condition fields not yet supported: {', '.join(unsupported)}")


def invalid_deal_statuses(trigger: str, actions: list[ActionClause]) -> list[str]:
    if trigger not in DEAL_TRIGGERS:
        return []
    allowed = {status.value for status in DealStatus}
    return sorted(
        {
            action.config.status
            for action in actions
            if isinstance(action, ChangeStatusAction) and action.config.status not in allowed
        }
    )


def _reject_invalid_deal_statuses(trigger: str, actions: list[ActionClause]) -> None:
    invalid = invalid_deal_statuses(trigger, actions)
    if invalid:
        raise ValueError(f"change_status values are not deal statuses: {', '.join(invalid)}")


class AutomationRuleCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    trigger: Trigger
    conditions: list[dict[str, Any]] = Field(default_factory=list)
    actions: list[dict[str, Any]] = Field(default_factory=list)
    is_active: bool = True
    priority: int = 0

    @model_validator(mode="after")
    def validate_rule_structure(self) -> "AutomationRuleCreate":
        conditions = _condition_list_adapter.validate_python(self.conditions)
        _reject_unsupported_conditions(conditions)
        actions = _action_list_adapter.validate_python(self.actions)
        _reject_invalid_deal_statuses(self.trigger, actions)
        self.conditions = [clause.model_dump(mode="json", exclude_none=True) for clause in conditions]
        self.actions = [action.model_dump(mode="json") for action in actions]
        return self


class AutomationRuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    trigger: Trigger | None = None
    conditions: list[dict[str, Any]] | None = None
    actions: list[dict[str, Any]] | None = None
    is_active: bool | None = None
    priority: int | None = None

    @model_validator(mode="after")
    def validate_rule_structure(self) -> "AutomationRuleUpdate":
        if self.conditions is not None:
            conditions = _condition_list_adapter.validate_python(self.conditions)
            _reject_unsupported_conditions(conditions)
            self.conditions = [clause.model_dump(mode="json", exclude_none=True) for clause in conditions]
        if self.actions is not None:
            actions = _action_list_adapter.validate_python(self.actions)
            if self.trigger is not None:
                _reject_invalid_deal_statuses(self.trigger, actions)
            self.actions = [action.model_dump(mode="json") for action in actions]
        return self


class AutomationRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str | None
    trigger: str
    conditions: list[dict[str, Any]]
    actions: list[dict[str, Any]]
    is_active: bool
    priority: int
    trigger_count: int
    last_triggered_at: datetime | None
    created_by: int | None
    created_at: datetime
    updated_at: datetime


class RuleToggleRequest(BaseModel):
    is_active: bool | None = None


class HistoryEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_type: str
    entity_id: str
    field_name: str | None
    old_value: str | None
    new_value: str | None
    change_type: str
    actor_id: str | None
    actor_name: str | None
    description: str | None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("metadata_json", "metadata"))
    created_at: datetime


class HistoryPage(BaseModel):
    items: list[HistoryEntryRead]
    total: int
    limit: int
    offset: int


class ChangeStatistics(BaseModel):
    total_changes: int
    changes_by_type: dict[str, int]
    changes_by_actor: dict[str, int]
    changes_by_field: dict[str, int]
    first_change_at: datetime | None
    last_change_at: datetime | None


class StageMovement(BaseModel):
    from_stage: str | None
    to_stage: str | None
    count: int


class StageMovementStats(BaseModel):
    movements: list[StageMovement]
    date_from: datetime | None = None
    date_to: datetime | None = None


class ActiveEntity(BaseModel):
    entity_type: str
    entity_id: str
    changes_count: int


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    stage_id: UUID | None
    status: str
    amount: Decimal | None
    currency_code: str | None
    probability: int | None
    expected_close_date: date | None
    actual_close_date: datetime | None
    notes: str | None
    created_at: datetime
    updated_at: datetime


class MoveToStageRequest(BaseModel):
    stage_id: UUID
    force: bool = False


class ChangeStatusRequest(BaseModel):
    status: DealStatus
    stage_id: UUID | None = None


class WinRequest(BaseModel):
    actual_amount: Decimal | None = None


class LoseRequest(BaseModel):
    reason: str = Field(min_length=1)


class AssignRequest(BaseModel):
    user_id: int | str


class TickResponse(BaseModel):
    rules_matched: int


class HistoryFilter(BaseModel):
    change_types: list[HistoryChangeType] = Field(default_factory=list)
    actor_ids: list[str] = Field(default_factory=list)
    field_names: list[str] = Field(default_factory=list)
    date_from: datetime | None = None
    date_to: datetime | None = None
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)
