from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from brokercrm.records.ids import IdSpec
from brokercrm.records.schemas import (
    CustomerCreate,
    CustomerUpdate,
    EnquiryCreate,
    EnquiryUpdate,
    FeeCreate,
    FeeUpdate,
    NoteCreate,
    NoteUpdate,
    ProductCreate,
    ProductUpdate,
    RecordPayload,
    RecordUpdate,
    StageHistoryCreate,
    StageHistoryUpdate,
    UserCreate,
    UserUpdate,
)


class EntityType(str, Enum):
    CUSTOMER = "customer"
    ENQUIRY = "enquiry"
    FEE = "fee"
    NOTE = "note"
    PRODUCT = "product"
    STAGE_HISTORY = "stage_history"
    USER = "user"


@dataclass(frozen=True)
class EntityDefinition:
    entity_type: EntityType
    label: str
    resource: str
    file_collection: str
    document_collection: str
    id_spec: IdSpec
    create_schema: type[RecordPayload]
    update_schema: type[RecordUpdate]
    parent_field: str | None = None


ENTITY_DEFINITIONS: dict[EntityType, EntityDefinition] = {
    EntityType.CUSTOMER: EntityDefinition(
        entity_type=EntityType.CUSTOMER,
        label="Customer",
        resource="customers",
        file_collection="customers",
        document_collection="customer",
        id_spec=IdSpec("GKF", 5),
        create_schema=CustomerCreate,
        update_schema=CustomerUpdate,
    ),
    EntityType.ENQUIRY: EntityDefinition(
        entity_type=EntityType.ENQUIRY,
        label="Enquiry",
        resource="enquiries",
        file_collection="enquiries",
        document_collection="enquiry",
        id_spec=IdSpec("ENQ", 3),
        create_schema=EnquiryCreate,
        update_schema=EnquiryUpdate,
    ),
    EntityType.FEE: EntityDefinition(
        entity_type=EntityType.FEE,
        label="Fee",
        resource="fees",
        file_collection="fees",
        document_collection="fee",
        id_spec=IdSpec("FEE"),
        create_schema=FeeCreate,
        update_schema=FeeUpdate,
        parent_field="customerId",
    ),
    EntityType.NOTE: EntityDefinition(
        entity_type=EntityType.NOTE,
        label="Note",
        resource="notes",
        file_collection="notes",
        document_collection="note",
        id_spec=IdSpec("NOTE"),
        create_schema=NoteCreate,
        update_schema=NoteUpdate,
        parent_field="referenceId",
    ),
    EntityType.PRODUCT: EntityDefinition(
        entity_type=EntityType.PRODUCT,
        label="Product",
        resource="products",
        file_collection="products",
        document_collection="product",
        id_spec=IdSpec("PRD", 3),
        create_schema=ProductCreate,
        update_schema=ProductUpdate,
        parent_field="customerId",
    ),
    EntityType.STAGE_HISTORY: EntityDefinition(
        entity_type=EntityType.STAGE_HISTORY,
        label="StageHistoryEntry",
        resource="stage-history",
        file_collection="stageHistory",
        document_collection="stageHistory",
        id_spec=IdSpec("SH"),
        create_schema=StageHistoryCreate,
        update_schema=StageHistoryUpdate,
        parent_field="customerId",
    ),
    EntityType.USER: EntityDefinition(
        entity_type=EntityType.USER,
        label="User",
        resource="users",
        file_collection="users",
        document_collection="user",
        id_spec=IdSpec("user", 3),
        create_schema=UserCreate,
        update_schema=UserUpdate,
    ),
}

AUTH_AUDIT_COLLECTION = "authAudit"


def get_definition(entity_type: EntityType) -> EntityDefinition:
    return ENTITY_DEFINITIONS[entity_type]
