"""JSON-file collection store.

Each collection is one file holding a JSON list. Every read-modify-write runs
under an advisory ``filelock`` so writers are serialised per collection; the
conditional write then re-checks the record version inside that critical
section. The file modification time doubles as a coarse snapshot token that
clients can echo back as a precondition.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from filelock import FileLock, Timeout

from brokercrm.records.storage.base import (
    BackendError,
    RecordBuilder,
    RecordStore,
    StaleSnapshotError,
    matches,
)
from brokercrm.records.versioning import current_version

logger = logging.getLogger("brokercrm.storage.file")

_NS_PER_US = 1_000


def _format_mtime(mtime_ns: int) -> str:
    seconds, remainder = divmod(mtime_ns, 1_000_000_000)
    stamp = datetime.fromtimestamp(seconds, tz=timezone.utc)
    return stamp.replace(microsecond=remainder // _NS_PER_US).isoformat(timespec="microseconds")


class FileBackend(RecordStore):
    name = "file"

    def __init__(self, data_dir: str | Path, lock_timeout: float = 5.0) -> None:
        self.data_dir = Path(data_dir)
        self.lock_timeout = lock_timeout

    async def connect(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, collection: str) -> Path:
        return self.data_dir / f"{collection}.json"

    def _lock(self, collection: str) -> FileLock:
        return FileLock(str(self.path_for(collection)) + ".lock", timeout=self.lock_timeout)

    def read_all(self, collection: str) -> list[dict[str, Any]]:
        path = self.path_for(collection)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise BackendError(self.name, f"cannot read {path.name}: {exc}") from exc
        if not content.strip():
            return []
        try:
            records = json.loads(content)
        except json.JSONDecodeError as exc:
            raise BackendError(self.name, f"{path.name} is not valid JSON: {exc}") from exc
        if not isinstance(records, list):
            raise BackendError(self.name, f"{path.name} does not hold a list")
        return records

    def write_all(self, collection: str, records: list[dict[str, Any]]) -> None:
        path = self.path_for(collection)
        previous_ns = self._mtime_ns(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(records, handle, indent=2, default=str)
            os.replace(tmp_name, path)
            self._advance_mtime(path, previous_ns)
        except OSError as exc:
            raise BackendError(self.name, f"cannot write {path.name}: {exc}") from exc

    @staticmethod
    def _mtime_ns(path: Path) -> int | None:
        try:
            return path.stat().st_mtime_ns
        except FileNotFoundError:
            return None

    @staticmethod
    def _advance_mtime(path: Path, previous_ns: int | None) -> None:
        # timestamps are compared at microsecond precision; a write must always move them
        if previous_ns is None:
            return
        current_ns = path.stat().st_mtime_ns
        if current_ns // _NS_PER_US <= previous_ns // _NS_PER_US:
            bumped = (previous_ns // _NS_PER_US + 1) * _NS_PER_US
            os.utime(path, ns=(bumped, bumped))

    def file_timestamp(self, collection: str) -> str | None:
        mtime_ns = self._mtime_ns(self.path_for(collection))
        return _format_mtime(mtime_ns) if mtime_ns is not None else None

    def check_file_timestamp(self, collection: str, expected: str | None) -> str | None:
        """Return the current timestamp, or raise when it differs from ``expected``."""
        actual = self.file_timestamp(collection)
        if expected and actual is not None and actual != expected:
            logger.info("storage.stale_snapshot", extra={"collection": collection})
            raise StaleSnapshotError(collection, expected, actual)
        return actual

    async def _run_locked(self, collection: str, operation, *args):  # type: ignore[no-untyped-def]
        def locked() -> Any:
            try:
                with self._lock(collection):
                    return operation(collection, *args)
            except Timeout as exc:
                raise BackendError(self.name, f"timed out waiting for {collection} lock") from exc

        return await asyncio.to_thread(locked)

    async def find_one(self, collection: str, record_id: str) -> dict[str, Any] | None:
        records = await self._run_locked(collection, self.read_all)
        return next((record for record in records if record.get("id") == record_id), None)

    async def find(self, collection: str, match: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        records = await self._run_locked(collection, self.read_all)
        return [record for record in records if matches(record, match)]

    async def snapshot_token(self, collection: str) -> str | None:
        return await asyncio.to_thread(self.file_timestamp, collection)

    def _insert(self, collection: str, build: RecordBuilder, precondition: str | None) -> dict[str, Any]:
        self.check_file_timestamp(collection, precondition)
        records = self.read_all(collection)
        record = build(records)
        records.append(record)
        self.write_all(collection, records)
        return record

    def _append(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        records = self.read_all(collection)
        records.append(record)
        self.write_all(collection, records)
        return record

    def _replace(
        self,
        collection: str,
        record_id: str,
        expected_version: int | None,
        record: dict[str, Any],
        precondition: str | None,
    ) -> dict[str, Any] | None:
        self.check_file_timestamp(collection, precondition)
        records = self.read_all(collection)
        for index, stored in enumerate(records):
            if stored.get("id") != record_id:
                continue
            if current_version(stored) != expected_version:
                return None
            records[index] = record
            self.write_all(collection, records)
            return record
        return None

    def _delete(
        self,
        collection: str,
        record_id: str,
        expected_version: int | None,
        precondition: str | None,
    ) -> int:
        self.check_file_timestamp(collection, precondition)
        records = self.read_all(collection)
        remaining = [
            stored
            for stored in records
            if not (stored.get("id") == record_id and current_version(stored) == expected_version)
        ]
        deleted = len(records) - len(remaining)
        if deleted:
            self.write_all(collection, remaining)
        return deleted

    async def insert_new(
        self,
        collection: str,
        build: RecordBuilder,
        precondition: str | None = None,
    ) -> dict[str, Any]:
        return await self._run_locked(collection, self._insert, build, precondition)

    async def append(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        return await self._run_locked(collection, self._append, record)

    async def replace_if_version(
        self,
        collection: str,
        record_id: str,
        expected_version: int | None,
        record: dict[str, Any],
        precondition: str | None = None,
    ) -> dict[str, Any] | None:
        return await self._run_locked(collection, self._replace, record_id, expected_version, record, precondition)

    async def delete_if_version(
        self,
        collection: str,
        record_id: str,
        expected_version: int | None,
        precondition: str | None = None,
    ) -> int:
        return await self._run_locked(collection, self._delete, record_id, expected_version, precondition)
