from __future__ import annotations

from typing import Any

from app.context import get_automation_depth, get_correlation_id
from app.core.events import event_bus

published_events: list[dict[str, Any]] = []


def publish(envelope: dict[str, Any]) -> None:
    """Publish a domain event envelope on the in-process bus.

    The envelope carries the caller's correlation id and, when raised from
    inside an automation run, the current automation depth under ``meta``.
    """
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    existing_meta = envelope.get("meta")
    meta: dict[str, Any] = existing_meta.copy() if isinstance(existing_meta, dict) else {}
    automation_depth = get_automation_depth()
    if automation_depth and "automation_depth" not in meta:
        meta["automation_depth"] = automation_depth
    if meta:
        envelope["meta"] = meta

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)
