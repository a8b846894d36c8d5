from __future__ import annotations

import asyncio
from collections.abc import Generator

import pytest

from brokercrm import audit, events
from brokercrm.auth.passwords import verify_password
from brokercrm.records.entities import EntityType
from brokercrm.records.results import Conflict, Invalid, NotFound, Ok
from brokercrm.records.service import (
    CustomerService,
    EnquiryService,
    FeeService,
    NoteService,
    StageHistoryService,
    UserService,
    build_services,
    paginate,
)
from brokercrm.records.storage import FileBackend
from brokercrm.records.versioning import SYSTEM, Actor
from conftest import FIXED_NOW, fixed_clock

ALICE = Actor("Alice Admin", user_id="user001", email="admin@gkf.example", role="admin")


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def customers(file_store: FileBackend) -> CustomerService:
    return CustomerService(file_store, fixed_clock)


def _create_customer(service: CustomerService, **fields: object) -> dict:
    payload = {"firstName": "Ada", "lastName": "Lovelace", "category": "Mortgages", **fields}
    result = asyncio.run(service.create(payload, ALICE))
    assert isinstance(result, Ok)
    return result.record


def test_create_then_read_back_is_version_one(customers: CustomerService) -> None:
    created = _create_customer(customers)

    fetched = asyncio.run(customers.get(created["id"]))

    assert isinstance(fetched, Ok)
    record = fetched.record
    assert record["id"] == "GKF00001"
    assert record["version"] == 1
    assert record["createdBy"] == record["modifiedBy"] == "Alice Admin"
    assert record["createdAt"] == record["lastModifiedAt"] == FIXED_NOW.isoformat()


def test_customer_create_assigns_reference_and_defaults(customers: CustomerService) -> None:
    first = _create_customer(customers, id="GKF99999", productReferenceNumber="MINE", version=42)
    second = _create_customer(customers, category="Protection")

    assert first["id"] == "GKF00001"
    assert first["version"] == 1
    assert first["productReferenceNumber"] == "MTG-2025-001"
    assert first["customerAccountType"] == "Sole"
    assert first["jointHolders"] == []
    assert first["submissionDate"] == "2025-03-14"
    assert second["productReferenceNumber"] == "PRO-2025-001"


def test_unknown_fields_are_kept(customers: CustomerService) -> None:
    record = _create_customer(customers, favouriteColour="teal")
    assert record["favouriteColour"] == "teal"


def test_missing_required_fields_are_invalid_before_storage(customers: CustomerService, file_store: FileBackend) -> None:
    result = asyncio.run(customers.create({"firstName": "Ada"}, ALICE))

    assert isinstance(result, Invalid)
    assert result.reason == "validation_failed"
    assert any(error["loc"] == ["lastName"] for error in result.errors)
    assert not file_store.path_for("customers").exists()


def test_update_with_current_version_increments_by_one(customers: CustomerService) -> None:
    created = _create_customer(customers)

    result = asyncio.run(customers.update(created["id"], {"version": 1, "phone": "07700900123"}, Actor("Bob")))

    assert isinstance(result, Ok)
    assert result.record["version"] == 2
    assert result.record["phone"] == "07700900123"
    assert result.record["modifiedBy"] == "Bob"
    assert result.record["createdBy"] == "Alice Admin"


def test_update_with_stale_version_returns_current_record(customers: CustomerService) -> None:
    created = _create_customer(customers)
    asyncio.run(customers.update(created["id"], {"version": 1, "phone": "1"}, ALICE))

    result = asyncio.run(customers.update(created["id"], {"version": 1, "phone": "2"}, Actor("Bob")))

    assert isinstance(result, Conflict)
    assert result.details.reason == "version"
    assert result.details.client_version == 1
    assert result.details.server_version == 2
    assert result.details.server_data["phone"] == "1"


def test_update_without_version_is_accepted(customers: CustomerService) -> None:
    created = _create_customer(customers)

    result = asyncio.run(customers.update(created["id"], {"lender": "Halifax"}, ALICE))

    assert isinstance(result, Ok)
    assert result.record["version"] == 2


def test_update_unknown_record_is_not_found(customers: CustomerService) -> None:
    result = asyncio.run(customers.update("GKF00077", {"version": 1, "phone": "1"}, ALICE))
    assert result == NotFound("Customer", "GKF00077")


def test_delete_with_stale_version_leaves_record(customers: CustomerService) -> None:
    created = _create_customer(customers)
    asyncio.run(customers.update(created["id"], {"version": 1, "phone": "1"}, ALICE))

    result = asyncio.run(customers.delete(created["id"], 1, ALICE))

    assert isinstance(result, Conflict)
    fetched = asyncio.run(customers.get(created["id"]))
    assert isinstance(fetched, Ok)
    assert fetched.record["version"] == 2


def test_delete_of_versioned_record_needs_a_version(customers: CustomerService) -> None:
    created = _create_customer(customers)

    assert isinstance(asyncio.run(customers.delete(created["id"], None, ALICE)), Conflict)
    assert isinstance(asyncio.run(customers.delete(created["id"], 1, ALICE)), Ok)
    assert isinstance(asyncio.run(customers.get(created["id"])), NotFound)


def test_legacy_record_can_be_updated_and_deleted_without_version(file_store: FileBackend) -> None:
    file_store.write_all("notes", [{"id": "NOTE1", "referenceId": "GKF00001", "note": "legacy"}])
    notes = NoteService(file_store, fixed_clock)

    updated = asyncio.run(notes.update("NOTE1", {"note": "edited"}, ALICE))
    assert isinstance(updated, Ok)
    assert updated.record["version"] == 1

    file_store.write_all("notes", [{"id": "NOTE2", "version": 0}])
    assert isinstance(asyncio.run(notes.delete("NOTE2", None, ALICE)), Ok)


def test_stale_file_snapshot_is_a_conflict(customers: CustomerService) -> None:
    created = _create_customer(customers)
    token = asyncio.run(customers.snapshot_token())
    asyncio.run(customers.update(created["id"], {"version": 1, "phone": "1"}, ALICE, precondition=token))

    result = asyncio.run(customers.update(created["id"], {"version": 2, "phone": "2"}, ALICE, precondition=token))

    assert isinstance(result, Conflict)
    assert result.details.reason == "file_timestamp"
    assert result.details.message == "Data file has been modified by another user"
    assert result.details.extra["expectedFileTimestamp"] == token
    assert result.details.extra["actualFileTimestamp"] != token


def test_mutations_publish_events_and_audit(customers: CustomerService) -> None:
    created = _create_customer(customers)
    asyncio.run(customers.update(created["id"], {"version": 1, "phone": "1"}, ALICE))
    asyncio.run(customers.delete(created["id"], 2, ALICE))

    assert [event["event_type"] for event in events.published_events] == [
        "crm.customer.created",
        "crm.customer.updated",
        "crm.customer.deleted",
    ]
    update_audit = audit.audit_entries[1]
    assert update_audit["action"] == "updated"
    assert update_audit["before"]["version"] == 1
    assert update_audit["after"]["version"] == 2
    assert audit.audit_entries[2]["after"] is None


def test_fee_status_rules(file_store: FileBackend) -> None:
    fees = FeeService(file_store, fixed_clock)

    paid = asyncio.run(
        fees.create(
            {"customerId": "GKF00001", "type": "broker fee", "amount": 499, "status": "paid", "paymentMethod": "card"},
            ALICE,
        )
    )
    unpaid = asyncio.run(
        fees.create(
            {"customerId": "GKF00001", "type": "valuation", "amount": 150, "status": "Unpaid", "paymentMethod": "card"},
            ALICE,
        )
    )
    assert isinstance(paid, Ok) and isinstance(unpaid, Ok)
    assert paid.record["status"] == "PAID"
    assert paid.record["paidDate"] == FIXED_NOW.isoformat()
    assert paid.record["paymentMethod"] == "card"
    assert paid.record["currency"] == "GBP"
    assert paid.record["addedBy"] == "Alice Admin"
    assert paid.record["reference"].startswith("BRO-")
    assert unpaid.record["paidDate"] is None
    assert unpaid.record["paymentMethod"] is None

    settled = asyncio.run(fees.update(unpaid.record["id"], {"version": 1, "status": "PAID"}, ALICE))
    assert isinstance(settled, Ok)
    assert settled.record["paidDate"] == FIXED_NOW.isoformat()

    reopened = asyncio.run(fees.update(unpaid.record["id"], {"version": 2, "status": "na"}, ALICE))
    assert isinstance(reopened, Ok)
    assert reopened.record["status"] == "NA"
    assert reopened.record["paidDate"] is None


def test_fee_rejects_bad_status_and_amount(file_store: FileBackend) -> None:
    fees = FeeService(file_store, fixed_clock)

    result = asyncio.run(fees.create({"customerId": "GKF00001", "type": "x", "amount": 0, "status": "maybe"}))

    assert isinstance(result, Invalid)
    assert {tuple(error["loc"]) for error in result.errors} == {("amount",), ("status",)}


def test_note_and_stage_history_record_the_actor(file_store: FileBackend) -> None:
    notes = NoteService(file_store, fixed_clock)
    history = StageHistoryService(file_store, fixed_clock)

    note = asyncio.run(notes.create({"customerId": "GKF00001", "note": "Called client"}, ALICE))
    entry = asyncio.run(history.create({"customerId": "GKF00001", "stage": "Offer", "direction": "forward"}, SYSTEM))

    assert isinstance(note, Ok) and isinstance(entry, Ok)
    assert note.record["referenceId"] == "GKF00001"
    assert note.record["author"] == "Alice Admin"
    assert entry.record["id"] == "SH1"
    assert entry.record["user"] == "System"
    assert entry.record["notes"] == "Stage moved forward Offer"
    assert "direction" not in entry.record


def test_customer_history_is_newest_first(file_store: FileBackend) -> None:
    file_store.write_all(
        "stageHistory",
        [
            {"id": "SH1", "customerId": "GKF00001", "stage": "Enquiry", "timestamp": "2025-01-01T00:00:00+00:00"},
            {"id": "SH2", "customerId": "GKF00001", "stage": "Offer", "timestamp": "2025-02-01T00:00:00+00:00"},
            {"id": "SH3", "customerId": "GKF00002", "stage": "Completed", "timestamp": "2025-03-01T00:00:00+00:00"},
        ],
    )
    history = StageHistoryService(file_store, fixed_clock)

    summary = asyncio.run(history.customer_history("GKF00001"))

    assert [entry["id"] for entry in summary["customerHistory"]] == ["SH2", "SH1"]
    assert summary["currentStage"] == "Offer"
    assert summary["totalItems"] == 2
    assert asyncio.run(history.customer_history("GKF00009")) == {
        "customerHistory": [],
        "currentStage": None,
        "totalItems": 0,
    }


def test_user_password_is_hashed_and_never_returned(file_store: FileBackend) -> None:
    users = UserService(file_store, fixed_clock)

    created = asyncio.run(
        users.create({"name": "Carol", "email": "Carol@GKF.example", "password": "s3cret-pass", "passwordHash": "x"})
    )

    assert isinstance(created, Ok)
    assert created.record["email"] == "carol@gkf.example"
    assert "passwordHash" not in created.record
    assert "password" not in created.record
    stored = file_store.read_all("users")[0]
    assert verify_password("s3cret-pass", stored["passwordHash"])

    duplicate = asyncio.run(users.create({"name": "C2", "email": "carol@gkf.example", "password": "another-pass"}))
    assert isinstance(duplicate, Invalid)
    assert duplicate.reason == "email_taken"


def test_customer_search_filters_and_paginates(customers: CustomerService) -> None:
    for index in range(10):
        _create_customer(customers, firstName=f"Client{index}", lender="Halifax" if index % 2 else "Nationwide")

    page = asyncio.run(customers.search({"lender": "Halifax", "search": "client"}, page=1))

    assert page["pagination"] == {
        "currentPage": 1,
        "totalPages": 1,
        "totalItems": 5,
        "perPage": 8,
        "hasNextPage": False,
        "hasPrevPage": False,
    }
    everyone = asyncio.run(customers.search({"lender": "all"}, page=2))
    assert everyone["pagination"]["totalItems"] == 10
    assert len(everyone["items"]) == 2
    assert everyone["pagination"]["hasPrevPage"] is True


def test_paginate_empty() -> None:
    assert paginate([], 1, 10)["pagination"]["totalPages"] == 0


def test_build_services_covers_every_entity(file_store: FileBackend) -> None:
    services = build_services(file_store)
    assert set(services) == set(EntityType)
    assert all(service.store is file_store for service in services.values())


def test_legacy_version_zero_is_accepted_when_echoed(file_store: FileBackend) -> None:
    file_store.write_all(
        "customers",
        [{"id": "GKF00001", "firstName": "Ada", "lastName": "Lovelace", "version": 0}],
    )
    customers = CustomerService(file_store, fixed_clock)

    updated = asyncio.run(customers.update("GKF00001", {"version": 0, "phone": "0161"}, ALICE))
    assert isinstance(updated, Ok)
    assert updated.record["version"] == 1

    file_store.write_all("customers", [{"id": "GKF00002", "firstName": "Alan", "lastName": "Turing", "version": 0}])
    assert isinstance(asyncio.run(customers.delete("GKF00002", 0, ALICE)), Ok)
    assert file_store.read_all("customers") == []


def test_echoed_zero_against_a_versioned_record_conflicts(customers: CustomerService) -> None:
    created = _create_customer(customers)

    result = asyncio.run(customers.update(created["id"], {"version": 0, "phone": "0161"}, ALICE))

    assert isinstance(result, Conflict)
    assert result.details.client_version == 0
    assert result.details.server_version == 1


def test_user_conflict_hides_password_hash(file_store: FileBackend) -> None:
    users = UserService(file_store, fixed_clock)
    created = asyncio.run(users.create({"name": "Ann", "email": "ann@x.io", "password": "ann-password"}))
    assert isinstance(created, Ok)

    stale = asyncio.run(users.update(created.record["id"], {"version": 99, "name": "Annie"}, ALICE))
    assert isinstance(stale, Conflict)
    assert stale.details.server_data is not None
    assert stale.details.server_data["email"] == "ann@x.io"
    assert "passwordHash" not in stale.details.server_data

    asyncio.run(users.delete(created.record["id"], 1, ALICE))
    gone = asyncio.run(users.delete(created.record["id"], 1, ALICE))
    assert isinstance(gone, NotFound)


def test_user_cannot_take_another_users_email(file_store: FileBackend) -> None:
    users = UserService(file_store, fixed_clock)
    asyncio.run(users.create({"name": "Ann", "email": "ann@x.io", "password": "ann-password"}))
    bob = asyncio.run(users.create({"name": "Bob", "email": "bob@x.io", "password": "bob-password"}))
    assert isinstance(bob, Ok)

    taken = asyncio.run(users.update(bob.record["id"], {"version": 1, "email": "ANN@x.io"}, ALICE))
    assert isinstance(taken, Invalid)
    assert taken.reason == "email_taken"
    assert [user["id"] for user in file_store.read_all("users") if user["email"] == "ann@x.io"] == ["user001"]

    own = asyncio.run(users.update(bob.record["id"], {"version": 1, "email": "BOB@x.io", "name": "Robert"}, ALICE))
    assert isinstance(own, Ok)
    assert own.record["email"] == "bob@x.io"


def test_form_enquiry_is_cleaned_and_routed_by_type(file_store: FileBackend) -> None:
    enquiries = EnquiryService(file_store, fixed_clock)

    result = asyncio.run(
        enquiries.create_from_form(
            {
                "firstName": " Grace ",
                "lastName": "Hopper",
                "email": " Grace@Example.COM ",
                "postcode": "m1 1ab",
                "enquiryType": "Protection",
                "loanAmount": "250000.75",
                "annualIncome": "not a number",
            }
        )
    )

    assert isinstance(result, Ok)
    record = result.record
    assert record["id"] == "ENQ001"
    assert record["version"] == 1
    assert record["createdBy"] == "Microsoft Forms"
    assert record["firstName"] == "Grace"
    assert record["email"] == "grace@example.com"
    assert record["postcode"] == "M1 1AB"
    assert record["loanAmount"] == 250000
    assert record["annualIncome"] == 0
    assert record["status"] == "open"
    assert record["assignedTo"] == "Emma Davis"
    assert record["enquiryDate"] == "2025-03-14"
    assert record["followUpDate"] == "2025-03-16"
    assert record["source"] == "microsoft-forms"
    assert record["notes"] == "Enquiry submitted via Microsoft Forms"


def test_form_enquiry_of_unknown_type_goes_to_default_adviser(file_store: FileBackend) -> None:
    enquiries = EnquiryService(file_store, fixed_clock)
    form = {"firstName": "Alan", "lastName": "Turing", "email": "alan@example.com", "enquiryType": "Buy to let"}

    result = asyncio.run(enquiries.create_from_form(form))

    assert isinstance(result, Ok)
    assert result.record["assignedTo"] == "John Smith"


def test_form_enquiry_lists_missing_fields(file_store: FileBackend) -> None:
    enquiries = EnquiryService(file_store, fixed_clock)

    result = asyncio.run(enquiries.create_from_form({"firstName": "Grace", "email": ""}))

    assert isinstance(result, Invalid)
    assert result.reason == "missing_fields"
    assert [error["loc"][0] for error in result.errors] == ["lastName", "email", "enquiryType"]
    assert file_store.read_all("enquiries") == []
