from __future__ import annotations

import asyncio
import copy
import uuid
from collections.abc import Generator
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest
from fastapi.testclient import TestClient
from pymongo.errors import DuplicateKeyError

from brokercrm.core.auth import create_access_token
from brokercrm.core.config import get_settings
from brokercrm.main import app
from brokercrm.middleware.rate_limit import reset_rate_limiter
from brokercrm.records.service import build_services
from brokercrm.records.storage import DocumentBackend, FileBackend, document_collection_names

FIXED_NOW = datetime(2025, 3, 14, 9, 30, tzinfo=timezone.utc)

ADMIN = {"id": "user001", "email": "admin@gkf.example", "name": "Alice Admin", "role": "admin"}
BROKER = {"id": "user002", "email": "broker@gkf.example", "name": "Bob Broker", "role": "user"}


def fixed_clock() -> datetime:
    return FIXED_NOW


def _matches(document: dict[str, Any], query: dict[str, Any]) -> bool:
    for key, condition in query.items():
        value = document.get(key)
        if isinstance(condition, dict) and "$in" in condition:
            if value not in condition["$in"]:
                return False
        elif value != condition:
            return False
    return True


def _project(document: dict[str, Any]) -> dict[str, Any]:
    return {key: copy.deepcopy(value) for key, value in document.items() if key != "_id"}


class FakeCursor:
    def __init__(self, documents: list[dict[str, Any]]) -> None:
        self._documents = documents

    async def to_list(self, length: int | None = None) -> list[dict[str, Any]]:
        await asyncio.sleep(0)
        return self._documents if length is None else self._documents[:length]


class FakeCollection:
    """Single-document operations are atomic; every call yields to the loop first."""

    def __init__(self) -> None:
        self.documents: list[dict[str, Any]] = []
        self.unique_fields: set[str] = set()

    async def create_index(self, keys: list[tuple[str, int]], unique: bool = False, sparse: bool = False) -> str:
        if unique:
            self.unique_fields.update(name for name, _ in keys)
        return "_".join(f"{name}_{direction}" for name, direction in keys)

    async def find_one(self, query: dict[str, Any], projection: Any = None) -> dict[str, Any] | None:
        await asyncio.sleep(0)
        for document in self.documents:
            if _matches(document, query):
                return _project(document)
        return None

    def find(self, query: dict[str, Any] | None = None, projection: Any = None) -> FakeCursor:
        return FakeCursor([_project(document) for document in self.documents if _matches(document, query or {})])

    async def insert_one(self, document: dict[str, Any]) -> SimpleNamespace:
        await asyncio.sleep(0)
        for field in self.unique_fields:
            if field in document and any(existing.get(field) == document[field] for existing in self.documents):
                raise DuplicateKeyError(f"E11000 duplicate key error {field}: {document[field]}")
        stored = copy.deepcopy(document)
        stored["_id"] = uuid.uuid4().hex
        self.documents.append(stored)
        return SimpleNamespace(inserted_id=stored["_id"])

    async def find_one_and_update(
        self,
        query: dict[str, Any],
        update: dict[str, Any],
        projection: Any = None,
        return_document: Any = None,
    ) -> dict[str, Any] | None:
        await asyncio.sleep(0)
        for document in self.documents:
            if _matches(document, query):
                document.update(copy.deepcopy(update["$set"]))
                return _project(document)
        return None

    async def delete_one(self, query: dict[str, Any]) -> SimpleNamespace:
        await asyncio.sleep(0)
        for index, document in enumerate(self.documents):
            if _matches(document, query):
                del self.documents[index]
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)


class FakeDatabase:
    def __init__(self) -> None:
        self.collections: dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        return self.collections.setdefault(name, FakeCollection())


@pytest.fixture()
def file_store(tmp_path: Path) -> FileBackend:
    store = FileBackend(tmp_path / "data", lock_timeout=2.0)
    asyncio.run(store.connect())
    return store


@pytest.fixture()
def fake_database() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture()
def document_store(fake_database: FakeDatabase) -> DocumentBackend:
    store = DocumentBackend(database=fake_database, collection_names=document_collection_names())
    asyncio.run(store.connect())
    return store


@pytest.fixture()
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("AUTH_REQUIRED", "true")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(configure_env: None, file_store: FileBackend) -> Generator[TestClient, None, None]:
    app.state.store = file_store
    app.state.services = build_services(file_store, fixed_clock)
    with TestClient(app) as test_client:
        yield test_client
    app.state.store = None
    app.state.services = None


@pytest.fixture()
def admin_headers(configure_env: None) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(ADMIN)}"}


@pytest.fixture()
def broker_headers(configure_env: None) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(BROKER)}"}
