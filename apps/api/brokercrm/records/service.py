"""Versioned create/read/update/delete for every record collection.

Each mutation is a single read, check, conditional-write sequence against the
configured ``RecordStore``. Outcomes are returned as values (``Ok``,
``Conflict``, ``NotFound``, ``Invalid``); only ``BackendError`` is raised.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import replace
from datetime import timedelta
from collections.abc import Mapping
from typing import Any

from opentelemetry.trace import Span
from pydantic import ValidationError

from brokercrm import audit, events
from brokercrm.auth.passwords import hash_password
from brokercrm.metrics import observe_backend_error, observe_conflict, observe_mutation
from brokercrm.otel import mutation_span
from brokercrm.records.concurrency import FILE_CONFLICT_MESSAGE, build_conflict, check_version
from brokercrm.records.entities import EntityDefinition, EntityType, get_definition
from brokercrm.records.ids import next_id, next_product_reference
from brokercrm.records.results import Conflict, Invalid, MutationResult, NotFound, Ok
from brokercrm.records.storage.base import BackendError, RecordStore, StaleSnapshotError
from brokercrm.records.versioning import (
    AUDIT_FIELDS,
    SYSTEM,
    Actor,
    Clock,
    current_version,
    stamp_for_create,
    stamp_for_update,
    utcnow,
)

logger = logging.getLogger("brokercrm.records")

_SERVER_OWNED = frozenset(AUDIT_FIELDS) | {"id"}


def _is_set(value: str | None) -> bool:
    return value is not None and value != "" and value.lower() != "all"


def _contains(record: Mapping[str, Any], fields: tuple[str, ...], term: str) -> bool:
    needle = term.strip().lower()
    return any(needle in str(record.get(name) or "").lower() for name in fields)


def _newest_first(records: list[dict[str, Any]], field: str) -> list[dict[str, Any]]:
    return sorted(records, key=lambda record: str(record.get(field) or ""), reverse=True)


def _validation_errors(exc: ValidationError) -> list[dict[str, Any]]:
    return json.loads(exc.json(include_url=False))


def paginate(items: list[dict[str, Any]], page: int, limit: int) -> dict[str, Any]:
    page = max(page, 1)
    limit = max(limit, 1)
    total = len(items)
    total_pages = math.ceil(total / limit)
    start = (page - 1) * limit
    return {
        "items": items[start : start + limit],
        "pagination": {
            "currentPage": page,
            "totalPages": total_pages,
            "totalItems": total,
            "perPage": limit,
            "hasNextPage": page < total_pages,
            "hasPrevPage": page > 1,
        },
    }


class VersionedRecordService:
    entity_type: EntityType
    default_limit = 50

    def __init__(self, store: RecordStore, clock: Clock = utcnow) -> None:
        self.store = store
        self.clock = clock

    @property
    def definition(self) -> EntityDefinition:
        return get_definition(self.entity_type)

    @property
    def collection(self) -> str:
        return self.definition.file_collection

    # entity hooks

    def prepare_create(
        self,
        document: dict[str, Any],
        actor: Actor,
        existing: list[dict[str, Any]],
    ) -> dict[str, Any]:
        return document

    def prepare_update(self, stored: Mapping[str, Any], changes: dict[str, Any], actor: Actor) -> dict[str, Any]:
        return changes

    def present(self, record: Mapping[str, Any]) -> dict[str, Any]:
        return dict(record)

    def filter_records(self, records: list[dict[str, Any]], filters: Mapping[str, str]) -> list[dict[str, Any]]:
        return records

    async def check_create(self, document: dict[str, Any]) -> Invalid | None:
        return None

    async def check_update(self, record_id: str, changes: dict[str, Any]) -> Invalid | None:
        return None

    # reads

    async def snapshot_token(self) -> str | None:
        return await self.store.snapshot_token(self.collection)

    async def get(self, record_id: str) -> Ok | NotFound:
        record = await self.store.find_one(self.collection, record_id)
        if record is None:
            return NotFound(self.definition.label, record_id)
        return Ok(self.present(record))

    async def list_records(self, filters: Mapping[str, str] | None = None) -> list[dict[str, Any]]:
        filters = filters or {}
        match: dict[str, Any] = {}
        parent_field = self.definition.parent_field
        if parent_field and _is_set(filters.get(parent_field)):
            match[parent_field] = filters[parent_field]
        records = await self.store.find(self.collection, match)
        return [self.present(record) for record in self.filter_records(records, filters)]

    async def search(
        self,
        filters: Mapping[str, str] | None = None,
        page: int = 1,
        limit: int | None = None,
    ) -> dict[str, Any]:
        records = await self.list_records(filters)
        return paginate(records, page, limit or self.default_limit)

    # mutations

    async def create(
        self,
        payload: Mapping[str, Any],
        actor: Actor = SYSTEM,
        *,
        precondition: str | None = None,
    ) -> MutationResult:
        with mutation_span("create", self.entity_type.value, None) as span:
            try:
                model = self.definition.create_schema.model_validate(dict(payload))
            except ValidationError as exc:
                return self._finish(span, "create", None, Invalid("validation_failed", _validation_errors(exc)))

            document = {key: value for key, value in model.to_document().items() if key not in _SERVER_OWNED}
            invalid = await self.check_create(document)
            if invalid is not None:
                return self._finish(span, "create", None, invalid)

            def build(existing: list[dict[str, Any]]) -> dict[str, Any]:
                record = self.prepare_create(dict(document), actor, existing)
                record["id"] = next_id(self.definition.id_spec, existing)
                return stamp_for_create(record, actor, self.clock)

            try:
                record = await self._guard_backend(
                    "create", self.store.insert_new(self.collection, build, precondition)
                )
            except StaleSnapshotError as exc:
                return self._finish(span, "create", None, self._stale_snapshot(exc, None, None))

            self._after_mutation("created", record, actor, before=None, after=record)
            return self._finish(span, "create", record["id"], Ok(self.present(record), created=True))

    async def update(
        self,
        record_id: str,
        payload: Mapping[str, Any],
        actor: Actor = SYSTEM,
        *,
        precondition: str | None = None,
    ) -> MutationResult:
        with mutation_span("update", self.entity_type.value, record_id) as span:
            try:
                model = self.definition.update_schema.model_validate(dict(payload))
            except ValidationError as exc:
                return self._finish(span, "update", record_id, Invalid("validation_failed", _validation_errors(exc)))
            client_version = model.version

            stored = await self._guard_backend("update", self.store.find_one(self.collection, record_id))
            if stored is None:
                return self._finish(span, "update", record_id, NotFound(self.definition.label, record_id))

            details = check_version(self.definition.label, stored, client_version)
            if details is not None:
                return self._finish(span, "update", record_id, Conflict(details))

            changes = self.prepare_update(stored, model.changes(), actor)
            invalid = await self.check_update(record_id, changes)
            if invalid is not None:
                return self._finish(span, "update", record_id, invalid)

            merged = stamp_for_update(stored, changes, actor, self.clock)
            try:
                written = await self._guard_backend(
                    "update",
                    self.store.replace_if_version(
                        self.collection, record_id, current_version(stored), merged, precondition
                    ),
                )
            except StaleSnapshotError as exc:
                return self._finish(span, "update", record_id, self._stale_snapshot(exc, stored, client_version))

            if written is None:
                conflict = await self._lost_race("update", record_id, client_version)
                return self._finish(span, "update", record_id, conflict)

            self._after_mutation("updated", written, actor, before=stored, after=written)
            return self._finish(span, "update", record_id, Ok(self.present(written)))

    async def delete(
        self,
        record_id: str,
        client_version: int | None,
        actor: Actor = SYSTEM,
        *,
        precondition: str | None = None,
    ) -> MutationResult:
        with mutation_span("delete", self.entity_type.value, record_id) as span:
            stored = await self._guard_backend("delete", self.store.find_one(self.collection, record_id))
            if stored is None:
                return self._finish(span, "delete", record_id, NotFound(self.definition.label, record_id))

            details = check_version(self.definition.label, stored, client_version, required=True)
            if details is not None:
                return self._finish(span, "delete", record_id, Conflict(details))

            try:
                deleted = await self._guard_backend(
                    "delete",
                    self.store.delete_if_version(self.collection, record_id, current_version(stored), precondition),
                )
            except StaleSnapshotError as exc:
                return self._finish(span, "delete", record_id, self._stale_snapshot(exc, stored, client_version))

            if not deleted:
                conflict = await self._lost_race("delete", record_id, client_version)
                return self._finish(span, "delete", record_id, conflict)

            self._after_mutation("deleted", stored, actor, before=stored, after=None)
            return self._finish(span, "delete", record_id, Ok(self.present(stored)))

    # plumbing

    async def _guard_backend(self, operation: str, pending):  # type: ignore[no-untyped-def]
        try:
            return await pending
        except BackendError:
            logger.exception(
                "records.backend_error",
                extra={
                    "entity_type": self.entity_type.value,
                    "operation": operation,
                    "outcome": "error",
                    "backend": self.store.name,
                },
            )
            observe_backend_error(self.store.name)
            observe_mutation(self.entity_type.value, operation, "error")
            raise

    def _stale_snapshot(
        self,
        exc: StaleSnapshotError,
        stored: Mapping[str, Any] | None,
        client_version: int | None,
    ) -> Conflict:
        details = build_conflict(
            self.definition.label,
            stored,
            client_version,
            reason="file_timestamp",
            message=FILE_CONFLICT_MESSAGE,
            extra={"expectedFileTimestamp": exc.expected, "actualFileTimestamp": exc.actual},
        )
        return Conflict(details)

    async def _lost_race(self, operation: str, record_id: str, client_version: int | None) -> Conflict:
        # the pre-check passed, so a zero-match write means another writer got there first
        latest = await self._guard_backend(operation, self.store.find_one(self.collection, record_id))
        return Conflict(build_conflict(self.definition.label, latest, client_version, reason="lost_race"))

    def _after_mutation(
        self,
        action: str,
        record: Mapping[str, Any],
        actor: Actor,
        *,
        before: Mapping[str, Any] | None,
        after: Mapping[str, Any] | None,
    ) -> None:
        record_id = str(record.get("id"))
        audit.record(
            actor=actor.display_name,
            entity_type=self.entity_type.value,
            entity_id=record_id,
            action=action,
            before=dict(before) if before is not None else None,
            after=dict(after) if after is not None else None,
        )
        events.publish_record_event(
            self.entity_type.value,
            action,
            record_id,
            actor.display_name,
            current_version(record),
        )

    def _presented(self, conflict: Conflict) -> Conflict:
        # serverData goes back to the client, so it gets the same view as a read
        server_data = conflict.details.server_data
        if server_data is None:
            return conflict
        return Conflict(replace(conflict.details, server_data=self.present(server_data)))

    def _finish(self, span: Span, operation: str, record_id: str | None, result: MutationResult) -> MutationResult:
        extra: dict[str, Any] = {
            "entity_type": self.entity_type.value,
            "entity_id": record_id,
            "operation": operation,
        }
        if isinstance(result, Ok):
            outcome = "ok"
            extra["server_version"] = current_version(result.record)
        elif isinstance(result, Conflict):
            outcome = "conflict"
            result = self._presented(result)
            extra["reason"] = result.details.reason
            extra["client_version"] = result.details.client_version
            extra["server_version"] = result.details.server_version
            observe_conflict(self.entity_type.value, result.details.reason)
        elif isinstance(result, NotFound):
            outcome = "not_found"
        else:
            outcome = "invalid"
            extra["reason"] = result.reason

        extra["outcome"] = outcome
        span.set_attribute("outcome", outcome)
        observe_mutation(self.entity_type.value, operation, outcome)
        logger.info("records.mutation", extra=extra)
        return result


class CustomerService(VersionedRecordService):
    entity_type = EntityType.CUSTOMER
    default_limit = 8
    search_fields = ("firstName", "lastName", "email", "phone", "postcode")

    def prepare_create(
        self,
        document: dict[str, Any],
        actor: Actor,
        existing: list[dict[str, Any]],
    ) -> dict[str, Any]:
        today = self.clock().date()
        document["productReferenceNumber"] = next_product_reference(document.get("category"), existing, today)
        document["submissionDate"] = document.get("submissionDate") or today.isoformat()
        return document

    def filter_records(self, records: list[dict[str, Any]], filters: Mapping[str, str]) -> list[dict[str, Any]]:
        if _is_set(filters.get("search")):
            records = [record for record in records if _contains(record, self.search_fields, filters["search"])]
        for param, field in (
            ("stage", "currentStage"),
            ("lender", "lender"),
            ("mortgageType", "mortgageType"),
            ("category", "category"),
        ):
            if _is_set(filters.get(param)):
                records = [record for record in records if record.get(field) == filters[param]]
        return _newest_first(records, "createdAt")


FORMS_REQUIRED_FIELDS = ("firstName", "lastName", "email", "enquiryType")
FORMS_AUTO_ASSIGNMENT = {
    "Mortgage": "John Smith",
    "Protection": "Emma Davis",
    "Remortgage": "Sarah Johnson",
    "Insurance": "Emma Davis",
}
FORMS_DEFAULT_ADVISER = "John Smith"
FORMS_FOLLOW_UP_DAYS = 2
FORMS_ACTOR = Actor(display_name="Microsoft Forms")


def _text(value: Any) -> str:
    return str(value).strip() if value else ""


def _whole_number(value: Any) -> int:
    try:
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return 0


class EnquiryService(VersionedRecordService):
    entity_type = EntityType.ENQUIRY
    default_limit = 8
    search_fields = ("firstName", "lastName", "email", "phone", "postcode", "notes")

    def prepare_create(
        self,
        document: dict[str, Any],
        actor: Actor,
        existing: list[dict[str, Any]],
    ) -> dict[str, Any]:
        document["status"] = document.get("status") or "new"
        document.setdefault("assignedTo", None)
        document["enquiryDate"] = document.get("enquiryDate") or self.clock().isoformat()
        return document

    def filter_records(self, records: list[dict[str, Any]], filters: Mapping[str, str]) -> list[dict[str, Any]]:
        if _is_set(filters.get("search")):
            records = [record for record in records if _contains(record, self.search_fields, filters["search"])]
        if _is_set(filters.get("status")):
            records = [record for record in records if record.get("status") == filters["status"]]
        if _is_set(filters.get("type")):
            records = [record for record in records if record.get("enquiryType") == filters["type"]]
        assigned_to = filters.get("assignedTo")
        if _is_set(assigned_to):
            if assigned_to == "null":
                records = [record for record in records if not record.get("assignedTo")]
            else:
                records = [record for record in records if record.get("assignedTo") == assigned_to]
        return _newest_first(records, "enquiryDate")

    async def create_from_form(self, form: Mapping[str, Any]) -> MutationResult:
        """Enquiry submitted through the Microsoft Forms / Power Automate webhook.

        Free-form answers are cleaned up, the enquiry is routed to an adviser
        by type and a follow-up is scheduled; it is then created like any
        other enquiry, with the same id allocation and stamping.
        """
        missing = [name for name in FORMS_REQUIRED_FIELDS if not form.get(name)]
        if missing:
            return Invalid("missing_fields", [{"loc": [name], "msg": "Field required"} for name in missing])

        today = self.clock().date()
        enquiry_type = str(form["enquiryType"]).strip()
        payload = {
            "firstName": _text(form["firstName"]),
            "lastName": _text(form["lastName"]),
            "email": _text(form["email"]).lower(),
            "phone": _text(form.get("phone")),
            "postcode": _text(form.get("postcode")).upper(),
            "address": _text(form.get("address")),
            "enquiryDate": today.isoformat(),
            "enquiryType": enquiry_type,
            "loanAmount": _whole_number(form.get("loanAmount")),
            "propertyValue": _whole_number(form.get("propertyValue")),
            "employmentStatus": form.get("employmentStatus") or "employed",
            "annualIncome": _whole_number(form.get("annualIncome")),
            "preferredLender": form.get("preferredLender") or "",
            "mortgageType": form.get("mortgageType") or "Repayment",
            "notes": _text(form.get("notes")) or "Enquiry submitted via Microsoft Forms",
            "status": "open",
            "assignedTo": FORMS_AUTO_ASSIGNMENT.get(enquiry_type, FORMS_DEFAULT_ADVISER),
            "followUpDate": (today + timedelta(days=FORMS_FOLLOW_UP_DAYS)).isoformat(),
            "source": "microsoft-forms",
        }
        return await self.create(payload, FORMS_ACTOR)


class FeeService(VersionedRecordService):
    entity_type = EntityType.FEE

    def prepare_create(
        self,
        document: dict[str, Any],
        actor: Actor,
        existing: list[dict[str, Any]],
    ) -> dict[str, Any]:
        now = self.clock()
        paid = document["status"] == "PAID"
        document["addedDate"] = now.isoformat()
        document["addedBy"] = actor.display_name
        document["paidDate"] = (document.get("paidDate") or now.isoformat()) if paid else None
        if not paid:
            document["paymentMethod"] = None
        if not document.get("reference"):
            document["reference"] = f"{document['type'][:3].upper()}-{int(now.timestamp() * 1000)}"
        return document

    def prepare_update(self, stored: Mapping[str, Any], changes: dict[str, Any], actor: Actor) -> dict[str, Any]:
        status = changes.get("status")
        if status == "PAID":
            changes["paidDate"] = changes.get("paidDate") or stored.get("paidDate") or self.clock().isoformat()
        elif status is not None:
            changes["paidDate"] = None
            changes["paymentMethod"] = None
        return changes

    def filter_records(self, records: list[dict[str, Any]], filters: Mapping[str, str]) -> list[dict[str, Any]]:
        if _is_set(filters.get("status")):
            wanted = filters["status"].upper()
            records = [record for record in records if str(record.get("status") or "").upper() == wanted]
        return _newest_first(records, "addedDate")


class NoteService(VersionedRecordService):
    entity_type = EntityType.NOTE
    default_limit = 10

    def prepare_create(
        self,
        document: dict[str, Any],
        actor: Actor,
        existing: list[dict[str, Any]],
    ) -> dict[str, Any]:
        document["author"] = actor.display_name
        document["timestamp"] = self.clock().isoformat()
        return document

    def filter_records(self, records: list[dict[str, Any]], filters: Mapping[str, str]) -> list[dict[str, Any]]:
        ordered = _newest_first(records, "timestamp")
        if filters.get("sortOrder") == "asc":
            ordered.reverse()
        return ordered


class ProductService(VersionedRecordService):
    entity_type = EntityType.PRODUCT


class StageHistoryService(VersionedRecordService):
    entity_type = EntityType.STAGE_HISTORY

    def prepare_create(
        self,
        document: dict[str, Any],
        actor: Actor,
        existing: list[dict[str, Any]],
    ) -> dict[str, Any]:
        direction = document.pop("direction", None)
        document["user"] = actor.display_name
        document["timestamp"] = self.clock().isoformat()
        if not document.get("notes"):
            document["notes"] = f"Stage moved {direction or 'to'} {document['stage']}"
        return document

    def filter_records(self, records: list[dict[str, Any]], filters: Mapping[str, str]) -> list[dict[str, Any]]:
        return _newest_first(records, "timestamp")

    async def customer_history(self, customer_id: str) -> dict[str, Any]:
        history = await self.list_records({"customerId": customer_id})
        return {
            "customerHistory": history,
            "currentStage": history[0].get("stage") if history else None,
            "totalItems": len(history),
        }


class UserService(VersionedRecordService):
    entity_type = EntityType.USER

    def prepare_create(
        self,
        document: dict[str, Any],
        actor: Actor,
        existing: list[dict[str, Any]],
    ) -> dict[str, Any]:
        document["email"] = str(document["email"]).lower()
        document["passwordHash"] = hash_password(document.pop("password"))
        return document

    def prepare_update(self, stored: Mapping[str, Any], changes: dict[str, Any], actor: Actor) -> dict[str, Any]:
        if changes.get("email"):
            changes["email"] = str(changes["email"]).lower()
        password = changes.pop("password", None)
        if password:
            changes["passwordHash"] = hash_password(password)
        return changes

    async def _email_taken(self, email: str, record_id: str | None = None) -> Invalid | None:
        holders = await self.store.find(self.collection, {"email": email.lower()})
        if any(holder.get("id") != record_id for holder in holders):
            return Invalid("email_taken", [{"loc": ["email"], "msg": "A user with this email already exists"}])
        return None

    async def check_create(self, document: dict[str, Any]) -> Invalid | None:
        return await self._email_taken(str(document["email"]))

    async def check_update(self, record_id: str, changes: dict[str, Any]) -> Invalid | None:
        if not changes.get("email"):
            return None
        return await self._email_taken(str(changes["email"]), record_id)

    def present(self, record: Mapping[str, Any]) -> dict[str, Any]:
        return {key: value for key, value in record.items() if key != "passwordHash"}

    def filter_records(self, records: list[dict[str, Any]], filters: Mapping[str, str]) -> list[dict[str, Any]]:
        if str(filters.get("activeOnly", "")).lower() == "true":
            records = [record for record in records if record.get("active", True)]
        return sorted(records, key=lambda record: str(record.get("name") or "").lower())


SERVICE_CLASSES: dict[EntityType, type[VersionedRecordService]] = {
    service.entity_type: service
    for service in (
        CustomerService,
        EnquiryService,
        FeeService,
        NoteService,
        ProductService,
        StageHistoryService,
        UserService,
    )
}


def build_services(store: RecordStore, clock: Clock = utcnow) -> dict[EntityType, VersionedRecordService]:
    return {entity_type: service_class(store, clock) for entity_type, service_class in SERVICE_CLASSES.items()}
