from __future__ import annotations

from enum import StrEnum


class EntityType(StrEnum):
    DEAL = "deal"
    LEAD = "lead"


class Trigger(StrEnum):
    DEAL_CREATED = "deal_created"
    DEAL_UPDATED = "deal_updated"
    DEAL_STAGE_CHANGED = "deal_stage_changed"
    DEAL_AMOUNT_CHANGED = "deal_amount_changed"
    DEAL_STATUS_CHANGED = "deal_status_changed"
    DEAL_ASSIGNED = "deal_assigned"
    DEAL_DUE_DATE_APPROACHING = "deal_due_date_approaching"
    DEAL_OVERDUE = "deal_overdue"
    LEAD_CREATED = "lead_created"
    LEAD_UPDATED = "lead_updated"
    LEAD_STATUS_CHANGED = "lead_status_changed"
    LEAD_ASSIGNED = "lead_assigned"
    LEAD_SCORE_CHANGED = "lead_score_changed"
    TIME_BASED = "time_based"


DEAL_TRIGGERS = frozenset(
    {
        Trigger.DEAL_CREATED,
        Trigger.DEAL_UPDATED,
        Trigger.DEAL_STAGE_CHANGED,
        Trigger.DEAL_AMOUNT_CHANGED,
        Trigger.DEAL_STATUS_CHANGED,
        Trigger.DEAL_ASSIGNED,
        Trigger.DEAL_DUE_DATE_APPROACHING,
        Trigger.DEAL_OVERDUE,
    }
)


class ConditionField(StrEnum):
    STAGE_EQUALS = "stage_equals"
    STAGE_NOT_EQUALS = "stage_not_equals"
    STATUS_EQUALS = "status_equals"
    STATUS_NOT_EQUALS = "status_not_equals"
    AMOUNT_GREATER_THAN = "amount_greater_than"
    AMOUNT_LESS_THAN = "amount_less_than"
    AMOUNT_BETWEEN = "amount_between"
    PROBABILITY_GREATER_THAN = "probability_greater_than"
    PROBABILITY_LESS_THAN = "probability_less_than"
    ASSIGNED_TO_EQUALS = "assigned_to_equals"
    ASSIGNED_TO_NOT_EQUALS = "assigned_to_not_equals"
    TAGS_CONTAIN = "tags_contain"
    TAGS_NOT_CONTAIN = "tags_not_contain"
    SOURCE_EQUALS = "source_equals"
    SOURCE_NOT_EQUALS = "source_not_equals"
    PRIORITY_EQUALS = "priority_equals"
    PRIORITY_NOT_EQUALS = "priority_not_equals"
    SCORE_GREATER_THAN = "score_greater_than"
    SCORE_LESS_THAN = "score_less_than"
    CREATED_WITHIN_DAYS = "created_within_days"
    UPDATED_WITHIN_HOURS = "updated_within_hours"
    NO_ACTIVITY_FOR_DAYS = "no_activity_for_days"
    CUSTOM_FIELD_EQUALS = "custom_field_equals"
    CUSTOM_FIELD_CONTAINS = "custom_field_contains"


# Pending integration with the assignment subsystem and lead tag storage.
UNSUPPORTED_CONDITION_FIELDS = frozenset(
    {
        ConditionField.ASSIGNED_TO_EQUALS,
        ConditionField.ASSIGNED_TO_NOT_EQUALS,
        ConditionField.TAGS_CONTAIN,
        ConditionField.TAGS_NOT_CONTAIN,
    }
)


class ConditionOperator(StrEnum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    BETWEEN = "between"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"


class ActionType(StrEnum):
    CHANGE_STAGE = "change_stage"
    CHANGE_STATUS = "change_status"
    ASSIGN_TO_USER = "assign_to_user"
    UPDATE_AMOUNT = "update_amount"
    UPDATE_PROBABILITY = "update_probability"
    UPDATE_SCORE = "update_score"
    ADD_TAGS = "add_tags"
    REMOVE_TAGS = "remove_tags"
    SEND_NOTIFICATION = "send_notification"
    CREATE_TASK = "create_task"
    SET_REMINDER = "set_reminder"
    LOG_ACTIVITY = "log_activity"


class DealStatus(StrEnum):
    OPEN = "open"
    WON = "won"
    LOST = "lost"


class StageKind(StrEnum):
    NORMAL = "normal"
    WON = "won"
    LOST = "lost"


class HistoryChangeType(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    STAGE_MOVED = "stage_moved"
    STATUS_CHANGED = "status_changed"
    ASSIGNED = "assigned"
    AMOUNT_CHANGED = "amount_changed"
    PROBABILITY_CHANGED = "probability_changed"
    WON = "won"
    LOST = "lost"
    NOTE_ADDED = "note_added"
    CONTACT_LINKED = "contact_linked"
    COMPANY_LINKED = "company_linked"
    LEAD_LINKED = "lead_linked"
    DATE_CHANGED = "date_changed"
    REOPENED = "reopened"
    DELETED = "deleted"


class AssignmentStatus(StrEnum):
    ACTIVE = "active"
    REMOVED = "removed"


class ActivityType(StrEnum):
    TASK = "task"
    REMINDER = "reminder"
    LOG = "log"
