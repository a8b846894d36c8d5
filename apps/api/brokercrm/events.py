from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from brokercrm.context import get_correlation_id
from brokercrm.core.events import event_bus

published_events: list[dict[str, Any]] = []


def event_name(entity_type: str, action: str) -> str:
    return f"crm.{entity_type}.{action}"


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()
    envelope.setdefault("occurred_at", datetime.now(timezone.utc).isoformat())

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)


def publish_record_event(
    entity_type: str,
    action: str,
    record_id: str,
    actor: str,
    version: int | None,
) -> None:
    publish(
        {
            "event_type": event_name(entity_type, action),
            "entity_type": entity_type,
            "entity_id": record_id,
            "actor": actor,
            "version": version,
        }
    )
