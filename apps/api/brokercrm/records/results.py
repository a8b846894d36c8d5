from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from brokercrm.records.concurrency import ConflictDetails


@dataclass(frozen=True)
class Ok:
    record: dict[str, Any]
    created: bool = False


@dataclass(frozen=True)
class Conflict:
    details: ConflictDetails


@dataclass(frozen=True)
class NotFound:
    entity_type: str
    record_id: str


@dataclass(frozen=True)
class Invalid:
    reason: str
    errors: list[dict[str, Any]] = field(default_factory=list)


MutationResult = Union[Ok, Conflict, NotFound, Invalid]
