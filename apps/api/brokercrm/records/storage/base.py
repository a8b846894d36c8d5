from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

RecordBuilder = Callable[[list[dict[str, Any]]], dict[str, Any]]


class BackendError(Exception):
    """The storage technology failed; surfaced as a server error, never retried here."""

    def __init__(self, backend: str, message: str) -> None:
        super().__init__(f"{backend}: {message}")
        self.backend = backend
        self.message = message


class StaleSnapshotError(Exception):
    """The collection changed since the client captured its snapshot timestamp."""

    def __init__(self, collection: str, expected: str, actual: str | None) -> None:
        super().__init__(f"{collection} modified since {expected}")
        self.collection = collection
        self.expected = expected
        self.actual = actual


class RecordStore(ABC):
    name: str

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def find_one(self, collection: str, record_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    async def find(self, collection: str, match: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    async def insert_new(
        self,
        collection: str,
        build: RecordBuilder,
        precondition: str | None = None,
    ) -> dict[str, Any]:
        """Persist the record returned by ``build(existing_records)``."""
        raise NotImplementedError

    @abstractmethod
    async def append(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        """Store a record that already carries its id, without reading the collection."""
        raise NotImplementedError

    @abstractmethod
    async def replace_if_version(
        self,
        collection: str,
        record_id: str,
        expected_version: int | None,
        record: dict[str, Any],
        precondition: str | None = None,
    ) -> dict[str, Any] | None:
        """Write ``record`` only if the stored version still equals ``expected_version``.

        Returns the stored record, or ``None`` when no record matched.
        """
        raise NotImplementedError

    @abstractmethod
    async def delete_if_version(
        self,
        collection: str,
        record_id: str,
        expected_version: int | None,
        precondition: str | None = None,
    ) -> int:
        raise NotImplementedError

    async def snapshot_token(self, collection: str) -> str | None:
        return None


def matches(record: dict[str, Any], match: dict[str, Any] | None) -> bool:
    if not match:
        return True
    return all(record.get(key) == value for key, value in match.items())
