"""Deal stage/status state machine.

Every entry point funnels field writes through ``_apply_mutation`` so that a
status change that resolves to a stage move, and a stage move that derives a
status, produce one history entry per changed field and one dispatch per
public call.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from decimal import Decimal
from typing import Any

from app.automation.dispatcher import TriggerDispatcher
from app.automation.enums import DealStatus, EntityType, HistoryChangeType, StageKind
from app.automation.errors import AssigneeNotFoundError, DealNotFoundError, InvalidAssigneeError, StageNotFoundError
from app.automation.history import HistoryRecorder
from app.automation.models import Deal, PipelineStage, utcnow
from app.automation.ports import AssignmentGateway, DealGateway, StageRepository, UserDirectory
from app.automation.schemas import SYSTEM_ACTOR, Actor, FieldChange

logger = logging.getLogger("app.automation.deals")

_FIELD_CHANGE_TYPES: dict[str, HistoryChangeType] = {
    "stage_id": HistoryChangeType.STAGE_MOVED,
    "amount": HistoryChangeType.AMOUNT_CHANGED,
    "probability": HistoryChangeType.PROBABILITY_CHANGED,
    "expected_close_date": HistoryChangeType.DATE_CHANGED,
    "actual_close_date": HistoryChangeType.DATE_CHANGED,
    "notes": HistoryChangeType.NOTE_ADDED,
    "assigned_to": HistoryChangeType.ASSIGNED,
}

_STATUS_BY_KIND: dict[StageKind, DealStatus | None] = {
    StageKind.NORMAL: None,
    StageKind.WON: DealStatus.WON,
    StageKind.LOST: DealStatus.LOST,
}

_CLOSED_STATUSES = {DealStatus.WON, DealStatus.LOST}


def _status_change_type(old_value: Any, new_value: Any) -> HistoryChangeType:
    if new_value == DealStatus.WON:
        return HistoryChangeType.WON
    if new_value == DealStatus.LOST:
        return HistoryChangeType.LOST
    if new_value == DealStatus.OPEN and old_value in _CLOSED_STATUSES:
        return HistoryChangeType.REOPENED
    return HistoryChangeType.STATUS_CHANGED


class DealLifecycleService:
    def __init__(
        self,
        deals: DealGateway,
        stages: StageRepository,
        assignments: AssignmentGateway,
        users: UserDirectory,
        history: HistoryRecorder,
        dispatcher: TriggerDispatcher,
    ) -> None:
        self.deals = deals
        self.stages = stages
        self.assignments = assignments
        self.users = users
        self.history = history
        self.dispatcher = dispatcher

    def move_to_stage(
        self,
        deal_id: uuid.UUID,
        stage_id: uuid.UUID,
        *,
        force: bool = False,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Deal:
        deal = self._load_deal(deal_id)
        stage = self._load_stage(stage_id)
        changes = self._transition_to_stage(deal, stage, actor, force=force)
        self._dispatch_changes(deal, changes, actor)
        return deal

    def change_status(
        self,
        deal_id: uuid.UUID,
        status: DealStatus | str,
        *,
        stage_id: uuid.UUID | None = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Deal:
        target = DealStatus(status)
        deal = self._load_deal(deal_id)
        changes = self._status_changes(deal, target, stage_id, actor)
        self._dispatch_changes(deal, changes, actor)
        return deal

    def win(
        self,
        deal_id: uuid.UUID,
        actual_amount: Decimal | None = None,
        *,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Deal:
        deal = self._load_deal(deal_id)
        changes: list[FieldChange] = []
        if actual_amount is not None:
            changes += self._apply_mutation(deal, {"amount": actual_amount}, actor)
        changes += self._close(deal, DealStatus.WON, actor, description="Deal marked as won")
        self._dispatch_changes(deal, changes, actor)
        return deal

    def lose(
        self,
        deal_id: uuid.UUID,
        reason: str,
        *,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Deal:
        deal = self._load_deal(deal_id)
        loss_note = f"Loss reason: {reason}"
        notes = f"{deal.notes}\n{loss_note}" if deal.notes else loss_note
        changes = self._apply_mutation(deal, {"notes": notes}, actor)
        changes += self._close(deal, DealStatus.LOST, actor, description=f"Deal marked as lost: {reason}")
        self._dispatch_changes(deal, changes, actor)
        return deal

    def assign_deal(
        self,
        deal_id: uuid.UUID,
        assignee: int | str,
        *,
        actor: Actor = SYSTEM_ACTOR,
        reason: str | None = None,
    ) -> Deal:
        user_id = self.resolve_assignee(assignee)
        deal = self._load_deal(deal_id)
        entity_id = str(deal.id)

        current = [item.user_id for item in self.assignments.get_current_assignments(EntityType.DEAL.value, entity_id)]
        if current == [user_id]:
            return deal

        if current:
            try:
                self.assignments.remove_assignment(EntityType.DEAL.value, entity_id, current)
            except Exception as exc:
                logger.exception(
                    "deal_assignment_removal_failed",
                    extra={"entity_type": EntityType.DEAL.value, "entity_id": entity_id, "error": str(exc)},
                )
        self.assignments.create_assignment(EntityType.DEAL.value, entity_id, [user_id], actor.id, reason)

        change = FieldChange(
            field="assigned_to",
            old_value=",".join(str(item) for item in current) or None,
            new_value=str(user_id),
        )
        self._record_change(deal, change, actor, description=f"Deal assigned to user {user_id}")
        self._dispatch_changes(deal, [change], actor)
        return deal

    def update_deal(self, deal_id: uuid.UUID, fields: dict[str, Any], *, actor: Actor = SYSTEM_ACTOR) -> Deal:
        """Generic update path. Stage and status writes go through the state machine."""
        deal = self._load_deal(deal_id)
        plain_fields = dict(fields)
        stage_id = plain_fields.pop("stage_id", None)
        status = plain_fields.pop("status", None)

        changes = self._apply_mutation(deal, plain_fields, actor) if plain_fields else []
        if stage_id is not None and stage_id != deal.stage_id:
            stage = self._load_stage(stage_id)
            override = DealStatus(status) if status is not None else None
            changes += self._transition_to_stage(deal, stage, actor, force=False, status_override=override)
        elif status is not None:
            changes += self._status_changes(deal, DealStatus(status), None, actor)
        self._dispatch_changes(deal, changes, actor)
        return deal

    def record_created(self, deal_id: uuid.UUID, *, actor: Actor = SYSTEM_ACTOR) -> Deal:
        deal = self._load_deal(deal_id)
        self.history.safe_record(
            EntityType.DEAL,
            str(deal.id),
            HistoryChangeType.CREATED,
            actor,
            description=f"Deal created: {deal.title}",
        )
        if deal.probability is None and deal.stage_id is not None:
            stage = self.stages.find_by_id(deal.stage_id)
            if stage is not None and stage.default_probability is not None:
                self._apply_mutation(deal, {"probability": stage.default_probability}, actor)
        self.dispatcher.on_entity_created(EntityType.DEAL, deal, actor)
        return deal

    def record_changes(self, deal_id: uuid.UUID, changes: Sequence[FieldChange], *, actor: Actor = SYSTEM_ACTOR) -> Deal:
        """History and automation for changes the caller has already persisted."""
        deal = self._load_deal(deal_id)
        effective = [change for change in changes if change.old_value != change.new_value]
        for change in effective:
            self._record_change(deal, change, actor)
        self._dispatch_changes(deal, effective, actor)
        return deal

    def resolve_assignee(self, assignee: int | str) -> int:
        if isinstance(assignee, bool):
            raise InvalidAssigneeError(assignee)
        if isinstance(assignee, int):
            user_id = assignee
        elif isinstance(assignee, str) and assignee.strip().isdigit():
            user_id = int(assignee.strip())
        else:
            raise InvalidAssigneeError(assignee)

        user = self.users.get_by_id(user_id)
        if user is None or not user.is_active:
            raise AssigneeNotFoundError(user_id)
        return user_id

    def resolve_stage_for_kind(self, kind: StageKind) -> PipelineStage | None:
        stages = self.stages.find_by_kind(kind.value)
        if len(stages) > 1:
            logger.warning(
                "stage_kind_ambiguous",
                extra={"kind": kind.value, "stage_id": str(stages[0].id), "reason": f"{len(stages)} active stages"},
            )
        return stages[0] if stages else None

    def _status_changes(
        self,
        deal: Deal,
        status: DealStatus,
        stage_id: uuid.UUID | None,
        actor: Actor,
    ) -> list[FieldChange]:
        if stage_id is not None:
            stage = self._load_stage(stage_id)
            return self._transition_to_stage(deal, stage, actor, force=False, status_override=status)
        if status in _CLOSED_STATUSES:
            stage = self.resolve_stage_for_kind(StageKind(status.value))
            if stage is not None:
                return self._transition_to_stage(deal, stage, actor, force=False)
            return self._apply_mutation(deal, self._status_fields(deal, status), actor)
        return self._reopen(deal, actor)

    def _close(self, deal: Deal, status: DealStatus, actor: Actor, *, description: str) -> list[FieldChange]:
        changes = self._status_changes(deal, status, None, actor)
        if not any(change.field == "status" for change in changes):
            change_type = HistoryChangeType.WON if status == DealStatus.WON else HistoryChangeType.LOST
            self.history.safe_record(
                EntityType.DEAL,
                str(deal.id),
                change_type,
                actor,
                field_name="status",
                old_value=deal.status,
                new_value=status,
                description=description,
            )
        return changes

    def _reopen(self, deal: Deal, actor: Actor) -> list[FieldChange]:
        fields: dict[str, Any] = {}
        current_stage = self.stages.find_by_id(deal.stage_id) if deal.stage_id is not None else None
        if current_stage is not None and current_stage.kind != StageKind.NORMAL:
            normal_stage = self.stages.find_first_normal()
            if normal_stage is not None:
                fields["stage_id"] = normal_stage.id
        fields.update(self._status_fields(deal, DealStatus.OPEN))
        return self._apply_mutation(deal, fields, actor)

    def _transition_to_stage(
        self,
        deal: Deal,
        stage: PipelineStage,
        actor: Actor,
        *,
        force: bool,
        status_override: DealStatus | None = None,
    ) -> list[FieldChange]:
        fields: dict[str, Any] = {"stage_id": stage.id}
        status = status_override or _STATUS_BY_KIND.get(StageKind(stage.kind))
        if status is not None:
            fields.update(self._status_fields(deal, status))
        changes = self._apply_mutation(deal, fields, actor)

        if (deal.probability is None or force) and stage.default_probability is not None:
            changes += self._apply_mutation(deal, {"probability": stage.default_probability}, actor)
        return changes

    def _status_fields(self, deal: Deal, status: DealStatus) -> dict[str, Any]:
        fields: dict[str, Any] = {"status": status.value}
        if status in _CLOSED_STATUSES:
            if deal.status != status.value or deal.actual_close_date is None:
                fields["actual_close_date"] = utcnow()
        else:
            fields["actual_close_date"] = None
        return fields

    def _apply_mutation(self, deal: Deal, fields: dict[str, Any], actor: Actor) -> list[FieldChange]:
        changes = [
            FieldChange(field=name, old_value=getattr(deal, name), new_value=value)
            for name, value in fields.items()
            if getattr(deal, name) != value
        ]
        if not changes:
            return []
        self.deals.update_fields(deal.id, {change.field: change.new_value for change in changes})
        for change in changes:
            self._record_change(deal, change, actor)
        return changes

    def _record_change(self, deal: Deal, change: FieldChange, actor: Actor, *, description: str | None = None) -> None:
        if change.field == "status":
            change_type = _status_change_type(change.old_value, change.new_value)
        else:
            change_type = _FIELD_CHANGE_TYPES.get(change.field, HistoryChangeType.UPDATED)

        metadata: dict[str, Any] = {}
        if change_type == HistoryChangeType.STAGE_MOVED:
            metadata = {
                "from_stage_name": self._stage_name(change.old_value),
                "to_stage_name": self._stage_name(change.new_value),
            }
            description = description or f"Stage changed from {metadata['from_stage_name']} to {metadata['to_stage_name']}"

        self.history.safe_record(
            EntityType.DEAL,
            str(deal.id),
            change_type,
            actor,
            field_name=change.field,
            old_value=change.old_value,
            new_value=change.new_value,
            description=description or f"{change.field} changed from {change.old_value} to {change.new_value}",
            metadata=metadata,
        )

    def _dispatch_changes(self, deal: Deal, changes: Sequence[FieldChange], actor: Actor) -> None:
        if changes:
            self.dispatcher.on_entity_updated(EntityType.DEAL, deal, changes, actor)

    def _stage_name(self, stage_id: Any) -> str | None:
        if stage_id is None:
            return None
        try:
            key = stage_id if isinstance(stage_id, uuid.UUID) else uuid.UUID(str(stage_id))
        except ValueError:
            return str(stage_id)
        stage = self.stages.find_by_id(key)
        return stage.name if stage is not None else str(stage_id)

    def _load_deal(self, deal_id: uuid.UUID) -> Deal:
        deal = self.deals.get_by_id(deal_id)
        if deal is None:
            raise DealNotFoundError(deal_id)
        return deal

    def _load_stage(self, stage_id: uuid.UUID) -> PipelineStage:
        stage = self.stages.find_by_id(stage_id)
        if stage is None:
            raise StageNotFoundError(stage_id)
        return stage
