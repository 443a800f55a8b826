"""Capability interfaces the automation core depends on.

The engine only talks to storage and to neighbouring CRM subsystems through
these protocols. SQLAlchemy-backed implementations live in
``app.automation.repositories``; tests may substitute in-memory doubles.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import Any, Protocol

from app.automation.models import (
    Activity,
    AppUser,
    Assignment,
    AutomationRule,
    Deal,
    HistoryEntry,
    Lead,
    NotificationIntent,
    PipelineStage,
)
from app.automation.schemas import Actor, HistoryFilter


class DealGateway(Protocol):
    def get_by_id(self, deal_id: uuid.UUID) -> Deal | None: ...

    def update_fields(self, deal_id: uuid.UUID, fields: dict[str, Any]) -> Deal: ...


class LeadGateway(Protocol):
    def get_by_id(self, lead_id: uuid.UUID) -> Lead | None: ...

    def change_status(self, lead_id: uuid.UUID, status: str, actor: Actor) -> Lead: ...

    def assign_lead(self, lead_id: uuid.UUID, user_id: int, actor: Actor) -> Lead: ...

    def score_lead(self, lead_id: uuid.UUID, score: int, actor: Actor) -> Lead: ...

    def add_tags(self, lead_id: uuid.UUID, tags: Sequence[str], actor: Actor) -> Lead: ...

    def remove_tags(self, lead_id: uuid.UUID, tags: Sequence[str], actor: Actor) -> Lead: ...

    def add_note(self, lead_id: uuid.UUID, note: str, actor: Actor) -> Lead: ...

    def schedule_follow_up(self, lead_id: uuid.UUID, follow_up_at: datetime, note: str | None, actor: Actor) -> Lead: ...


class AssignmentGateway(Protocol):
    def create_assignment(
        self,
        entity_type: str,
        entity_id: str,
        user_ids: Sequence[int],
        assigned_by: str | None,
        reason: str | None,
    ) -> list[Assignment]: ...

    def remove_assignment(self, entity_type: str, entity_id: str, user_ids: Sequence[int]) -> int: ...

    def get_current_assignments(self, entity_type: str, entity_id: str) -> list[Assignment]: ...


class DealLifecycle(Protocol):
    def move_to_stage(self, deal_id: uuid.UUID, stage_id: uuid.UUID, *, force: bool = False, actor: Actor) -> Deal: ...

    def change_status(self, deal_id: uuid.UUID, status: str, *, actor: Actor) -> Deal: ...

    def assign_deal(self, deal_id: uuid.UUID, assignee: int | str, *, actor: Actor, reason: str | None = None) -> Deal: ...

    def update_deal(self, deal_id: uuid.UUID, fields: dict[str, Any], *, actor: Actor) -> Deal: ...

    def resolve_assignee(self, assignee: int | str) -> int: ...


class UserDirectory(Protocol):
    def get_by_id(self, user_id: int) -> AppUser | None: ...


class StageRepository(Protocol):
    def find_by_id(self, stage_id: uuid.UUID) -> PipelineStage | None: ...

    def find_by_kind(self, kind: str) -> list[PipelineStage]: ...

    def find_first_normal(self) -> PipelineStage | None: ...


class RuleRepository(Protocol):
    def find_active_by_trigger(self, trigger: str) -> list[AutomationRule]: ...

    def find_all(self, *, trigger: str | None = None, is_active: bool | None = None) -> list[AutomationRule]: ...

    def get(self, rule_id: int) -> AutomationRule | None: ...

    def add(self, rule: AutomationRule) -> AutomationRule: ...

    def save(self, rule: AutomationRule) -> AutomationRule: ...

    def delete(self, rule: AutomationRule) -> None: ...


class HistoryRepository(Protocol):
    def append(self, entry: HistoryEntry) -> HistoryEntry: ...

    def last_created_at(self, entity_type: str, entity_id: str) -> datetime | None: ...

    def query(self, entity_type: str, entity_id: str, filters: HistoryFilter) -> tuple[list[HistoryEntry], int]: ...

    def entries_for(self, entity_type: str, entity_id: str) -> list[HistoryEntry]: ...

    def recent(self, limit: int) -> list[HistoryEntry]: ...

    def stage_movements(
        self, date_from: datetime | None, date_to: datetime | None
    ) -> list[tuple[str | None, str | None, int]]: ...

    def most_active(
        self, limit: int, date_from: datetime | None, date_to: datetime | None
    ) -> list[tuple[str, str, int]]: ...

    def delete_older_than(self, cutoff: datetime) -> int: ...


class ActivityGateway(Protocol):
    def create_task(
        self,
        entity_type: str,
        entity_id: str,
        title: str,
        description: str | None,
        due_at: datetime | None,
        assigned_to_user_id: int | None,
    ) -> Activity: ...

    def set_reminder(
        self,
        entity_type: str,
        entity_id: str,
        title: str,
        remind_at: datetime,
        user_id: int | None,
    ) -> Activity: ...

    def log_activity(self, entity_type: str, entity_id: str, message: str, title: str | None) -> Activity: ...


class NotificationGateway(Protocol):
    def notify(
        self,
        *,
        title: str,
        message: str | None,
        recipient_user_id: int | None,
        channels: Sequence[str],
        priority: str,
        payload: dict[str, Any],
        entity_type: str | None,
        entity_id: str | None,
    ) -> NotificationIntent: ...
