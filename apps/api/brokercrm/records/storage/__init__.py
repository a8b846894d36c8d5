from __future__ import annotations

from brokercrm.core.config import Settings
from brokercrm.records.entities import AUTH_AUDIT_COLLECTION, ENTITY_DEFINITIONS
from brokercrm.records.storage.base import BackendError, RecordStore, StaleSnapshotError
from brokercrm.records.storage.document import DocumentBackend
from brokercrm.records.storage.file import FileBackend


def document_collection_names() -> dict[str, str]:
    names = {definition.file_collection: definition.document_collection for definition in ENTITY_DEFINITIONS.values()}
    names[AUTH_AUDIT_COLLECTION] = AUTH_AUDIT_COLLECTION
    return names


def build_store(settings: Settings) -> RecordStore:
    backend = settings.storage_backend.lower()
    if backend in {"mongo", "mongodb", "document"}:
        return DocumentBackend(
            mongo_url=settings.mongo_url,
            db_name=settings.mongo_db,
            collection_names=document_collection_names(),
            id_allocation_attempts=settings.id_allocation_attempts,
        )
    if backend == "file":
        return FileBackend(settings.data_dir, lock_timeout=settings.file_lock_timeout_seconds)
    raise ValueError(f"unknown storage backend: {settings.storage_backend}")


__all__ = [
    "BackendError",
    "DocumentBackend",
    "FileBackend",
    "RecordStore",
    "StaleSnapshotError",
    "build_store",
    "document_collection_names",
]
