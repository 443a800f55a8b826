from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import Select, and_, delete, func, select
from sqlalchemy.orm import Session

from app.automation.enums import ActivityType, AssignmentStatus, EntityType, HistoryChangeType, StageKind
from app.automation.errors import DealNotFoundError, LeadNotFoundError
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
    utcnow,
)
from app.automation.schemas import Actor, HistoryFilter

if TYPE_CHECKING:
    from app.automation.history import HistoryRecorder


class SqlDealGateway:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_by_id(self, deal_id: uuid.UUID) -> Deal | None:
        return self.session.get(Deal, deal_id)

    def update_fields(self, deal_id: uuid.UUID, fields: dict[str, Any]) -> Deal:
        deal = self.get_by_id(deal_id)
        if deal is None:
            raise DealNotFoundError(deal_id)
        for field_name, value in fields.items():
            setattr(deal, field_name, value)
        self.session.flush()
        return deal


class SqlStageRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def find_by_id(self, stage_id: uuid.UUID) -> PipelineStage | None:
        return self.session.get(PipelineStage, stage_id)

    def find_by_kind(self, kind: str) -> list[PipelineStage]:
        stmt: Select[tuple[PipelineStage]] = select(PipelineStage).where(
            and_(PipelineStage.kind == kind, PipelineStage.is_active.is_(True))
        )
        return list(self.session.scalars(stmt.order_by(PipelineStage.position.asc(), PipelineStage.name.asc())).all())

    def find_first_normal(self) -> PipelineStage | None:
        stages = self.find_by_kind(StageKind.NORMAL.value)
        return stages[0] if stages else None


class SqlRuleRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def find_active_by_trigger(self, trigger: str) -> list[AutomationRule]:
        stmt: Select[tuple[AutomationRule]] = select(AutomationRule).where(
            and_(AutomationRule.trigger == trigger, AutomationRule.is_active.is_(True))
        )
        return list(self.session.scalars(stmt.order_by(AutomationRule.priority.asc(), AutomationRule.id.asc())).all())

    def find_all(self, *, trigger: str | None = None, is_active: bool | None = None) -> list[AutomationRule]:
        stmt: Select[tuple[AutomationRule]] = select(AutomationRule)
        if trigger is not None:
            stmt = stmt.where(AutomationRule.trigger == trigger)
        if is_active is not None:
            stmt = stmt.where(AutomationRule.is_active.is_(is_active))
        return list(self.session.scalars(stmt.order_by(AutomationRule.priority.asc(), AutomationRule.id.asc())).all())

    def get(self, rule_id: int) -> AutomationRule | None:
        return self.session.get(AutomationRule, rule_id)

    def add(self, rule: AutomationRule) -> AutomationRule:
        self.session.add(rule)
        self.session.flush()
        return rule

    def save(self, rule: AutomationRule) -> AutomationRule:
        self.session.add(rule)
        self.session.flush()
        return rule

    def delete(self, rule: AutomationRule) -> None:
        self.session.delete(rule)
        self.session.flush()


class SqlHistoryRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def append(self, entry: HistoryEntry) -> HistoryEntry:
        self.session.add(entry)
        self.session.flush()
        return entry

    def last_created_at(self, entity_type: str, entity_id: str) -> datetime | None:
        return self.session.scalar(
            select(func.max(HistoryEntry.created_at)).where(
                and_(HistoryEntry.entity_type == entity_type, HistoryEntry.entity_id == entity_id)
            )
        )

    def query(self, entity_type: str, entity_id: str, filters: HistoryFilter) -> tuple[list[HistoryEntry], int]:
        stmt: Select[tuple[HistoryEntry]] = select(HistoryEntry).where(
            and_(HistoryEntry.entity_type == entity_type, HistoryEntry.entity_id == entity_id)
        )
        if filters.change_types:
            stmt = stmt.where(HistoryEntry.change_type.in_([item.value for item in filters.change_types]))
        if filters.actor_ids:
            stmt = stmt.where(HistoryEntry.actor_id.in_(filters.actor_ids))
        if filters.field_names:
            stmt = stmt.where(HistoryEntry.field_name.in_(filters.field_names))
        if filters.date_from is not None:
            stmt = stmt.where(HistoryEntry.created_at >= filters.date_from)
        if filters.date_to is not None:
            stmt = stmt.where(HistoryEntry.created_at <= filters.date_to)

        total = self.session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        rows = self.session.scalars(
            stmt.order_by(HistoryEntry.created_at.desc(), HistoryEntry.id.desc()).offset(filters.offset).limit(filters.limit)
        ).all()
        return list(rows), int(total)

    def entries_for(self, entity_type: str, entity_id: str) -> list[HistoryEntry]:
        stmt = (
            select(HistoryEntry)
            .where(and_(HistoryEntry.entity_type == entity_type, HistoryEntry.entity_id == entity_id))
            .order_by(HistoryEntry.created_at.asc(), HistoryEntry.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def recent(self, limit: int) -> list[HistoryEntry]:
        stmt = select(HistoryEntry).order_by(HistoryEntry.created_at.desc(), HistoryEntry.id.desc()).limit(limit)
        return list(self.session.scalars(stmt).all())

    def stage_movements(
        self, date_from: datetime | None, date_to: datetime | None
    ) -> list[tuple[str | None, str | None, int]]:
        stmt = select(HistoryEntry.old_value, HistoryEntry.new_value, func.count()).where(
            HistoryEntry.change_type == HistoryChangeType.STAGE_MOVED.value
        )
        if date_from is not None:
            stmt = stmt.where(HistoryEntry.created_at >= date_from)
        if date_to is not None:
            stmt = stmt.where(HistoryEntry.created_at <= date_to)
        stmt = stmt.group_by(HistoryEntry.old_value, HistoryEntry.new_value).order_by(func.count().desc())
        return [(row[0], row[1], int(row[2])) for row in self.session.execute(stmt).all()]

    def most_active(
        self, limit: int, date_from: datetime | None, date_to: datetime | None
    ) -> list[tuple[str, str, int]]:
        changes_count = func.count().label("changes_count")
        stmt = select(HistoryEntry.entity_type, HistoryEntry.entity_id, changes_count)
        if date_from is not None:
            stmt = stmt.where(HistoryEntry.created_at >= date_from)
        if date_to is not None:
            stmt = stmt.where(HistoryEntry.created_at <= date_to)
        stmt = stmt.group_by(HistoryEntry.entity_type, HistoryEntry.entity_id).order_by(changes_count.desc()).limit(limit)
        return [(row[0], row[1], int(row[2])) for row in self.session.execute(stmt).all()]

    def delete_older_than(self, cutoff: datetime) -> int:
        result = self.session.execute(delete(HistoryEntry).where(HistoryEntry.created_at < cutoff))
        self.session.flush()
        return int(result.rowcount or 0)


class SqlUserDirectory:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_by_id(self, user_id: int) -> AppUser | None:
        return self.session.get(AppUser, user_id)


class SqlAssignmentGateway:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create_assignment(
        self,
        entity_type: str,
        entity_id: str,
        user_ids: Sequence[int],
        assigned_by: str | None,
        reason: str | None,
    ) -> list[Assignment]:
        created: list[Assignment] = []
        for user_id in user_ids:
            assignment = Assignment(
                entity_type=entity_type,
                entity_id=entity_id,
                user_id=user_id,
                assigned_by=assigned_by,
                reason=reason,
                status=AssignmentStatus.ACTIVE.value,
            )
            self.session.add(assignment)
            created.append(assignment)
        self.session.flush()
        return created

    def remove_assignment(self, entity_type: str, entity_id: str, user_ids: Sequence[int]) -> int:
        removed = 0
        for assignment in self.get_current_assignments(entity_type, entity_id):
            if assignment.user_id not in user_ids:
                continue
            assignment.status = AssignmentStatus.REMOVED.value
            assignment.removed_at = utcnow()
            removed += 1
        self.session.flush()
        return removed

    def get_current_assignments(self, entity_type: str, entity_id: str) -> list[Assignment]:
        stmt = (
            select(Assignment)
            .where(
                and_(
                    Assignment.entity_type == entity_type,
                    Assignment.entity_id == entity_id,
                    Assignment.status == AssignmentStatus.ACTIVE.value,
                )
            )
            .order_by(Assignment.assigned_at.asc(), Assignment.id.asc())
        )
        return list(self.session.scalars(stmt).all())


class SqlActivityGateway:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create_task(
        self,
        entity_type: str,
        entity_id: str,
        title: str,
        description: str | None,
        due_at: datetime | None,
        assigned_to_user_id: int | None,
    ) -> Activity:
        return self._add(
            Activity(
                entity_type=entity_type,
                entity_id=entity_id,
                activity_type=ActivityType.TASK.value,
                title=title,
                description=description,
                due_at=due_at,
                assigned_to_user_id=assigned_to_user_id,
            )
        )

    def set_reminder(
        self,
        entity_type: str,
        entity_id: str,
        title: str,
        remind_at: datetime,
        user_id: int | None,
    ) -> Activity:
        return self._add(
            Activity(
                entity_type=entity_type,
                entity_id=entity_id,
                activity_type=ActivityType.REMINDER.value,
                title=title,
                due_at=remind_at,
                assigned_to_user_id=user_id,
            )
        )

    def log_activity(self, entity_type: str, entity_id: str, message: str, title: str | None) -> Activity:
        return self._add(
            Activity(
                entity_type=entity_type,
                entity_id=entity_id,
                activity_type=ActivityType.LOG.value,
                title=title or "Automation log",
                description=message,
            )
        )

    def _add(self, activity: Activity) -> Activity:
        self.session.add(activity)
        self.session.flush()
        return activity


class SqlNotificationGateway:
    def __init__(self, session: Session) -> None:
        self.session = session

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
    ) -> NotificationIntent:
        intent = NotificationIntent(
            title=title,
            message=message,
            recipient_user_id=recipient_user_id,
            channels=list(channels),
            priority=priority,
            payload=payload,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        self.session.add(intent)
        self.session.flush()
        return intent


class SqlLeadGateway:
    """Lead mutations used by automation; each change is written to history."""

    def __init__(self, session: Session, history: HistoryRecorder) -> None:
        self.session = session
        self.history = history

    def get_by_id(self, lead_id: uuid.UUID) -> Lead | None:
        return self.session.get(Lead, lead_id)

    def change_status(self, lead_id: uuid.UUID, status: str, actor: Actor) -> Lead:
        lead = self._load(lead_id)
        if lead.status == status:
            return lead
        old_status = lead.status
        lead.status = status
        self.session.flush()
        self.history.safe_record(
            EntityType.LEAD,
            str(lead.id),
            HistoryChangeType.STATUS_CHANGED,
            actor,
            field_name="status",
            old_value=old_status,
            new_value=status,
            description=f"Status changed from {old_status} to {status}",
        )
        return lead

    def assign_lead(self, lead_id: uuid.UUID, user_id: int, actor: Actor) -> Lead:
        lead = self._load(lead_id)
        assignments = SqlAssignmentGateway(self.session)
        current = [item.user_id for item in assignments.get_current_assignments(EntityType.LEAD.value, str(lead.id))]
        if current == [user_id]:
            return lead
        if current:
            assignments.remove_assignment(EntityType.LEAD.value, str(lead.id), current)
        assignments.create_assignment(EntityType.LEAD.value, str(lead.id), [user_id], actor.id, "automation")
        self.history.safe_record(
            EntityType.LEAD,
            str(lead.id),
            HistoryChangeType.ASSIGNED,
            actor,
            field_name="assigned_to",
            old_value=",".join(str(item) for item in current) or None,
            new_value=str(user_id),
            description=f"Lead assigned to user {user_id}",
        )
        return lead

    def score_lead(self, lead_id: uuid.UUID, score: int, actor: Actor) -> Lead:
        lead = self._load(lead_id)
        if lead.score == score:
            return lead
        old_score = lead.score
        lead.score = score
        self.session.flush()
        self.history.safe_record(
            EntityType.LEAD,
            str(lead.id),
            HistoryChangeType.UPDATED,
            actor,
            field_name="score",
            old_value=old_score,
            new_value=score,
            description=f"Score changed from {old_score} to {score}",
        )
        return lead

    def add_tags(self, lead_id: uuid.UUID, tags: Sequence[str], actor: Actor) -> Lead:
        lead = self._load(lead_id)
        current = list(lead.tags or [])
        merged = current + [tag for tag in dict.fromkeys(tags) if tag not in current]
        return self._set_tags(lead, current, merged, actor)

    def remove_tags(self, lead_id: uuid.UUID, tags: Sequence[str], actor: Actor) -> Lead:
        lead = self._load(lead_id)
        current = list(lead.tags or [])
        remaining = [tag for tag in current if tag not in set(tags)]
        return self._set_tags(lead, current, remaining, actor)

    def add_note(self, lead_id: uuid.UUID, note: str, actor: Actor) -> Lead:
        lead = self._load(lead_id)
        old_notes = lead.notes
        lead.notes = f"{old_notes}\n{note}" if old_notes else note
        self.session.flush()
        self.history.safe_record(
            EntityType.LEAD,
            str(lead.id),
            HistoryChangeType.NOTE_ADDED,
            actor,
            field_name="notes",
            old_value=old_notes,
            new_value=lead.notes,
            description="Note added",
        )
        return lead

    def schedule_follow_up(self, lead_id: uuid.UUID, follow_up_at: datetime, note: str | None, actor: Actor) -> Lead:
        lead = self._load(lead_id)
        old_value = lead.next_follow_up_at
        lead.next_follow_up_at = follow_up_at
        if note:
            lead.notes = f"{lead.notes}\n{note}" if lead.notes else note
        self.session.flush()
        self.history.safe_record(
            EntityType.LEAD,
            str(lead.id),
            HistoryChangeType.DATE_CHANGED,
            actor,
            field_name="next_follow_up_at",
            old_value=old_value,
            new_value=follow_up_at,
            description="Follow-up scheduled",
        )
        return lead

    def _set_tags(self, lead: Lead, current: list[str], updated: list[str], actor: Actor) -> Lead:
        if updated == current:
            return lead
        lead.tags = updated
        self.session.flush()
        self.history.safe_record(
            EntityType.LEAD,
            str(lead.id),
            HistoryChangeType.UPDATED,
            actor,
            field_name="tags",
            old_value=",".join(current),
            new_value=",".join(updated),
            description="Tags updated",
        )
        return lead

    def _load(self, lead_id: uuid.UUID) -> Lead:
        lead = self.get_by_id(lead_id)
        if lead is None:
            raise LeadNotFoundError(lead_id)
        return lead
