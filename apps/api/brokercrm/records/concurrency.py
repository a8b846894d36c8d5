"""Optimistic concurrency guard.

A conflict is an ordinary business outcome: the caller gets the server's
current record back and decides whether to merge, overwrite or give up.
Nothing here retries.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from brokercrm.records.versioning import current_version

CONFLICT_MESSAGE = "{entity} has been modified by another user"
FILE_CONFLICT_MESSAGE = "Data file has been modified by another user"


@dataclass(frozen=True)
class ConflictDetails:
    entity_type: str
    message: str
    client_version: int | None
    server_version: int | None
    server_data: dict[str, Any] | None
    last_modified_at: str | None = None
    last_modified_by: str | None = None
    reason: str = "version"
    extra: dict[str, Any] = field(default_factory=dict)


def build_conflict(
    entity_type: str,
    stored: Mapping[str, Any] | None,
    client_version: int | None,
    *,
    reason: str = "version",
    message: str | None = None,
    extra: dict[str, Any] | None = None,
) -> ConflictDetails:
    return ConflictDetails(
        entity_type=entity_type,
        message=message or CONFLICT_MESSAGE.format(entity=entity_type),
        client_version=client_version,
        server_version=current_version(stored) if stored is not None else None,
        server_data=dict(stored) if stored is not None else None,
        last_modified_at=stored.get("lastModifiedAt") if stored is not None else None,
        last_modified_by=stored.get("modifiedBy") if stored is not None else None,
        reason=reason,
        extra=extra or {},
    )


def check_version(
    entity_type: str,
    stored: Mapping[str, Any],
    client_version: int | None,
    *,
    required: bool = False,
) -> ConflictDetails | None:
    """Return ``None`` when the write may proceed, otherwise the conflict.

    ``required`` is set for deletes: a caller deleting a versioned record
    without naming the version it saw is treated as a possible concurrent
    modification. A client echoing a legacy record's ``0`` names the
    unversioned state, so it matches a stored ``0`` or missing version.
    """
    stored_version = current_version(stored)
    if client_version is None:
        if stored_version is None or not required:
            return None
        return build_conflict(entity_type, stored, None)
    if stored_version != (client_version or None):
        return build_conflict(entity_type, stored, client_version)
    return None


def conflict_payload(details: ConflictDetails, correlation_id: str | None = None) -> dict[str, Any]:
    conflict_data: dict[str, Any] = {
        "serverVersion": details.server_version,
        "clientVersion": details.client_version,
        "serverData": details.server_data,
        "entityType": details.entity_type,
        "lastModifiedAt": details.last_modified_at,
        "lastModifiedBy": details.last_modified_by,
    }
    conflict_data.update(details.extra)
    return {
        "error": "CONFLICT",
        "message": details.message,
        "conflictData": conflict_data,
        "correlation_id": correlation_id,
    }
