"""Version counter and audit stamping shared by every stored record.

A record carries ``version`` plus four audit fields. ``version`` is owned by
the server: the new value is always derived from what is currently stored,
never from what a client claims to have seen.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

SYSTEM_ACTOR = "System"

AUDIT_FIELDS = ("version", "createdBy", "createdAt", "modifiedBy", "lastModifiedAt")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


Clock = Callable[[], datetime]


@dataclass(frozen=True)
class Actor:
    display_name: str
    user_id: str | None = None
    email: str | None = None
    role: str | None = None


SYSTEM = Actor(display_name=SYSTEM_ACTOR)


def resolve_actor(identity: Mapping[str, Any] | None) -> Actor:
    """Pick the audit name once per mutation: display name, then email, then ``System``."""
    if not identity:
        return SYSTEM
    name = identity.get("displayName") or identity.get("name") or identity.get("email")
    if not name:
        return SYSTEM
    return Actor(
        display_name=str(name),
        user_id=str(identity["id"]) if identity.get("id") is not None else None,
        email=identity.get("email"),
        role=identity.get("role"),
    )


def current_version(record: Mapping[str, Any]) -> int | None:
    """Stored version, with legacy ``0``/missing normalised to ``None``."""
    value = record.get("version")
    if value in (None, 0, "", False):
        return None
    return int(value)


def _timestamp(clock: Clock) -> str:
    return clock().isoformat()


def stamp_for_create(record: dict[str, Any], actor: Actor, clock: Clock = utcnow) -> dict[str, Any]:
    stamped = dict(record)
    now = _timestamp(clock)
    stamped["version"] = 1
    stamped["createdBy"] = actor.display_name
    stamped["createdAt"] = now
    stamped["modifiedBy"] = actor.display_name
    stamped["lastModifiedAt"] = now
    return stamped


def stamp_for_update(
    stored: Mapping[str, Any],
    changes: Mapping[str, Any],
    actor: Actor,
    clock: Clock = utcnow,
) -> dict[str, Any]:
    """Merge ``changes`` over ``stored`` and advance the version by exactly one.

    Server-owned fields in ``changes`` are dropped so a client can neither pick
    the next version nor rewrite who created the record.
    """
    merged = dict(stored)
    for key, value in changes.items():
        if key in AUDIT_FIELDS or key == "id":
            continue
        merged[key] = value

    merged["id"] = stored.get("id")
    merged["version"] = (current_version(stored) or 0) + 1
    merged["modifiedBy"] = actor.display_name
    merged["lastModifiedAt"] = _timestamp(clock)
    if "createdAt" not in stored:
        # legacy rows predate audit stamping
        merged["createdAt"] = merged["lastModifiedAt"]
        merged["createdBy"] = actor.display_name
    return merged
