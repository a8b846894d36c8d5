from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from brokercrm.context import get_correlation_id

audit_entries: list[dict[str, Any]] = []

_REDACTED_FIELDS = frozenset({"passwordHash", "password"})


def _redact(snapshot: dict[str, Any] | None) -> dict[str, Any] | None:
    if snapshot is None:
        return None
    return {key: value for key, value in snapshot.items() if key not in _REDACTED_FIELDS}


def record(
    actor: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> None:
    resolved_correlation_id = correlation_id or get_correlation_id()
    audit_entries.append(
        {
            "id": str(uuid.uuid4()),
            "actor": actor,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action": action,
            "before": _redact(before),
            "after": _redact(after),
            "correlation_id": resolved_correlation_id,
            "occurred_at": datetime.now(timezone.utc).isoformat(),
        }
    )
