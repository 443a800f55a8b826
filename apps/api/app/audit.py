from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id


@dataclass
class AuditEntry:
    actor_user_id: str
    entity_type: str
    entity_id: str
    action: str
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    correlation_id: str | None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


audit_entries: list[AuditEntry] = []


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> AuditEntry:
    entry = AuditEntry(
        actor_user_id=actor_user_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        before=before,
        after=after,
        correlation_id=correlation_id or get_correlation_id(),
    )
    audit_entries.append(entry)
    return entry


def entries_for(entity_type: str, entity_id: str | None = None) -> list[dict[str, Any]]:
    return [
        asdict(entry)
        for entry in audit_entries
        if entry.entity_type == entity_type and (entity_id is None or entry.entity_id == entity_id)
    ]


def clear() -> None:
    audit_entries.clear()
