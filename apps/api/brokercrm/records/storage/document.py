"""MongoDB collection store.

Conditional writes put the expected version into the filter of the single
document operation itself, so of several writers racing on one record at most
one matches. A zero-match result is reported to the caller as-is; the service
layer turns it into a conflict.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from brokercrm.records.storage.base import BackendError, RecordBuilder, RecordStore

logger = logging.getLogger("brokercrm.storage.document")

_NO_ID = {"_id": 0}


def version_filter(record_id: str, expected_version: int | None) -> dict[str, Any]:
    if expected_version is None:
        # legacy documents carry no version or 0
        return {"id": record_id, "version": {"$in": [None, 0]}}
    return {"id": record_id, "version": expected_version}


class DocumentBackend(RecordStore):
    name = "mongo"

    def __init__(
        self,
        mongo_url: str | None = None,
        db_name: str = "gkf",
        collection_names: Mapping[str, str] | None = None,
        *,
        database: Any = None,
        id_allocation_attempts: int = 5,
    ) -> None:
        self.mongo_url = mongo_url
        self.db_name = db_name
        self.collection_names = dict(collection_names or {})
        self.id_allocation_attempts = max(1, id_allocation_attempts)
        self._client: AsyncIOMotorClient | None = None
        self._database = database
        self._indexed: set[str] = set()

    @property
    def database(self) -> Any:
        if self._database is None:
            if self.mongo_url is None:
                raise BackendError(self.name, "no MongoDB URL configured")
            self._client = AsyncIOMotorClient(self.mongo_url)
            self._database = self._client[self.db_name]
            logger.info("storage.mongo_connected", extra={"backend": self.name})
        return self._database

    def collection(self, name: str) -> Any:
        return self.database[self.collection_names.get(name, name)]

    async def connect(self) -> None:
        for name in self.collection_names:
            await self._ensure_id_index(name)

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
            self._database = None
            self._indexed.clear()

    async def _ensure_id_index(self, name: str) -> None:
        if name in self._indexed:
            return
        try:
            await self.collection(name).create_index([("id", ASCENDING)], unique=True, sparse=True)
        except PyMongoError as exc:
            raise BackendError(self.name, f"cannot index {name}: {exc}") from exc
        self._indexed.add(name)

    async def find_one(self, collection: str, record_id: str) -> dict[str, Any] | None:
        try:
            return await self.collection(collection).find_one({"id": record_id}, _NO_ID)
        except PyMongoError as exc:
            raise BackendError(self.name, str(exc)) from exc

    async def find(self, collection: str, match: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        try:
            cursor = self.collection(collection).find(match or {}, _NO_ID)
            return await cursor.to_list(length=None)
        except PyMongoError as exc:
            raise BackendError(self.name, str(exc)) from exc

    async def insert_new(
        self,
        collection: str,
        build: RecordBuilder,
        precondition: str | None = None,
    ) -> dict[str, Any]:
        for attempt in range(1, self.id_allocation_attempts + 1):
            existing = await self.find(collection)
            record = build(existing)
            try:
                await self.collection(collection).insert_one(dict(record))
            except DuplicateKeyError:
                logger.info(
                    "storage.id_collision",
                    extra={"collection": collection, "entity_id": record.get("id"), "attempt": attempt},
                )
                continue
            except PyMongoError as exc:
                raise BackendError(self.name, str(exc)) from exc
            return record
        raise BackendError(self.name, f"could not allocate a unique id in {collection}")

    async def append(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        try:
            await self.collection(collection).insert_one(dict(record))
        except PyMongoError as exc:
            raise BackendError(self.name, str(exc)) from exc
        return record

    async def replace_if_version(
        self,
        collection: str,
        record_id: str,
        expected_version: int | None,
        record: dict[str, Any],
        precondition: str | None = None,
    ) -> dict[str, Any] | None:
        document = {key: value for key, value in record.items() if key != "_id"}
        try:
            return await self.collection(collection).find_one_and_update(
                version_filter(record_id, expected_version),
                {"$set": document},
                projection=_NO_ID,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as exc:
            raise BackendError(self.name, str(exc)) from exc

    async def delete_if_version(
        self,
        collection: str,
        record_id: str,
        expected_version: int | None,
        precondition: str | None = None,
    ) -> int:
        try:
            result = await self.collection(collection).delete_one(version_filter(record_id, expected_version))
        except PyMongoError as exc:
            raise BackendError(self.name, str(exc)) from exc
        return int(result.deleted_count)
