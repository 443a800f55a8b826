"""Append-only change history for deals and leads.

Entries are never updated. The only destructive operation is the retention
cleanup (``delete_older_than``), which is a maintenance entry point.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections import Counter
from collections.abc import Callable
from contextlib import AbstractContextManager, nullcontext
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any

from app.automation.enums import HistoryChangeType
from app.automation.models import HistoryEntry, as_utc, utcnow
from app.automation.ports import HistoryRepository
from app.automation.schemas import (
    ActiveEntity,
    Actor,
    ChangeStatistics,
    FieldChange,
    HistoryEntryRead,
    HistoryFilter,
    HistoryPage,
    StageMovement,
    StageMovementStats,
)
from app.metrics import observe_history_write_failure

logger = logging.getLogger("app.automation.history")


def stringify_value(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (list, dict)):
        return json.dumps(value, default=str, sort_keys=True)
    return str(value)


class HistoryRecorder:
    def __init__(
        self,
        repository: HistoryRepository,
        savepoint: Callable[[], AbstractContextManager[Any]] = nullcontext,
    ) -> None:
        self.repository = repository
        self.savepoint = savepoint

    def record(
        self,
        entity_type: str,
        entity_id: str,
        change_type: HistoryChangeType,
        actor: Actor,
        *,
        field_name: str | None = None,
        old_value: Any = None,
        new_value: Any = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> HistoryEntry:
        created_at = utcnow()
        last_created_at = self.repository.last_created_at(str(entity_type), entity_id)
        if last_created_at is not None and as_utc(last_created_at) > created_at:
            created_at = as_utc(last_created_at)

        entry = HistoryEntry(
            entity_type=str(entity_type),
            entity_id=entity_id,
            field_name=field_name,
            old_value=stringify_value(old_value),
            new_value=stringify_value(new_value),
            change_type=change_type.value,
            actor_id=actor.id,
            actor_name=actor.name,
            description=description,
            metadata_json=dict(metadata or {}),
            created_at=created_at,
        )
        return self.repository.append(entry)

    def safe_record(
        self,
        entity_type: str,
        entity_id: str,
        change_type: HistoryChangeType,
        actor: Actor,
        **kwargs: Any,
    ) -> HistoryEntry | None:
        """Record an entry in its own savepoint, logging instead of raising when the write fails."""
        try:
            with self.savepoint():
                return self.record(entity_type, entity_id, change_type, actor, **kwargs)
        except Exception as exc:
            observe_history_write_failure(change_type.value)
            logger.exception(
                "history_record_failed",
                extra={
                    "entity_type": str(entity_type),
                    "entity_id": entity_id,
                    "reason": change_type.value,
                    "error": str(exc),
                },
            )
            return None

    def list_for_entity(self, entity_type: str, entity_id: str, filters: HistoryFilter | None = None) -> HistoryPage:
        resolved = filters or HistoryFilter()
        rows, total = self.repository.query(str(entity_type), entity_id, resolved)
        return HistoryPage(
            items=[HistoryEntryRead.model_validate(row) for row in rows],
            total=total,
            limit=resolved.limit,
            offset=resolved.offset,
        )

    def entries_for(self, entity_type: str, entity_id: str) -> list[HistoryEntry]:
        return self.repository.entries_for(str(entity_type), entity_id)

    def recent_changes(self, limit: int = 20) -> list[HistoryEntryRead]:
        return [HistoryEntryRead.model_validate(row) for row in self.repository.recent(limit)]

    def change_statistics(
        self,
        entity_type: str,
        entity_id: str,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> ChangeStatistics:
        entries = [
            entry
            for entry in self.entries_for(entity_type, entity_id)
            if (date_from is None or as_utc(entry.created_at) >= as_utc(date_from))
            and (date_to is None or as_utc(entry.created_at) <= as_utc(date_to))
        ]
        return ChangeStatistics(
            total_changes=len(entries),
            changes_by_type=dict(Counter(entry.change_type for entry in entries)),
            changes_by_actor=dict(Counter(entry.actor_id or "system" for entry in entries)),
            changes_by_field=dict(Counter(entry.field_name for entry in entries if entry.field_name)),
            first_change_at=entries[0].created_at if entries else None,
            last_change_at=entries[-1].created_at if entries else None,
        )

    def stage_movement_stats(
        self,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> StageMovementStats:
        movements = [
            StageMovement(from_stage=from_stage, to_stage=to_stage, count=count)
            for from_stage, to_stage, count in self.repository.stage_movements(date_from, date_to)
        ]
        return StageMovementStats(movements=movements, date_from=date_from, date_to=date_to)

    def most_active(
        self,
        limit: int = 10,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> list[ActiveEntity]:
        return [
            ActiveEntity(entity_type=entity_type, entity_id=entity_id, changes_count=count)
            for entity_type, entity_id, count in self.repository.most_active(limit, date_from, date_to)
        ]

    def compare_states(
        self,
        entity_type: str,
        entity_id: str,
        date_from: datetime,
        date_to: datetime,
    ) -> dict[str, FieldChange]:
        # Net change per field across the window: first old value, last new value.
        changes: dict[str, FieldChange] = {}
        for entry in self.entries_for(entity_type, entity_id):
            created_at = as_utc(entry.created_at)
            if created_at < as_utc(date_from) or created_at > as_utc(date_to) or not entry.field_name:
                continue
            existing = changes.get(entry.field_name)
            if existing is None:
                changes[entry.field_name] = FieldChange(
                    field=entry.field_name,
                    old_value=entry.old_value,
                    new_value=entry.new_value,
                )
            else:
                existing.new_value = entry.new_value
        return {name: change for name, change in changes.items() if change.old_value != change.new_value}

    def delete_older_than(self, days: int) -> int:
        if days < 0:
            raise ValueError("days must be non-negative")
        cutoff = utcnow() - timedelta(days=days)
        deleted = self.repository.delete_older_than(cutoff)
        logger.info("history_retention_cleanup", extra={"deleted": deleted})
        return deleted
