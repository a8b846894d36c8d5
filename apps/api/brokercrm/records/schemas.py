from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

FEE_STATUSES = ("PAID", "UNPAID", "NA")


class RecordPayload(BaseModel):
    """Business fields travel camelCase on the wire and at rest; unknown keys are kept."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        str_strip_whitespace=True,
    )

    def to_document(self, *, partial: bool = False) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=partial)


class RecordUpdate(RecordPayload):
    version: int | None = Field(default=None, ge=0)

    def changes(self) -> dict[str, Any]:
        document = self.to_document(partial=True)
        document.pop("version", None)
        return document


def _normalize_fee_status(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip().upper()
    if normalized not in FEE_STATUSES:
        raise ValueError("Status must be PAID, UNPAID, or NA")
    return normalized


class CustomerCreate(RecordPayload):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: str = ""
    phone: str = ""
    postcode: str = ""
    address: str = ""
    date_of_birth: str = ""
    category: str | None = None
    current_stage: str | None = None
    lender: str | None = None
    mortgage_type: str | None = None
    customer_account_type: str = "Sole"
    joint_holders: list[dict[str, Any]] = Field(default_factory=list)
    submission_date: str | None = None


class CustomerUpdate(RecordUpdate):
    first_name: str | None = Field(default=None, min_length=1)
    last_name: str | None = Field(default=None, min_length=1)
    email: str | None = None
    phone: str | None = None
    postcode: str | None = None
    address: str | None = None
    category: str | None = None
    current_stage: str | None = None
    lender: str | None = None
    mortgage_type: str | None = None
    customer_account_type: str | None = None
    joint_holders: list[dict[str, Any]] | None = None


class EnquiryCreate(RecordPayload):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: EmailStr
    enquiry_type: str = Field(min_length=1)
    phone: str = ""
    postcode: str = ""
    address: str = ""
    date_of_birth: str = ""
    customer_account_type: str = "Sole"
    notes: str = ""
    loan_amount: float = 0
    property_value: float = 0
    employment_status: str = "employed"
    annual_income: float = 0
    preferred_lender: str = ""
    mortgage_type: str = "Repayment"


class EnquiryUpdate(RecordUpdate):
    first_name: str | None = Field(default=None, min_length=1)
    last_name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    enquiry_type: str | None = Field(default=None, min_length=1)
    status: str | None = None
    assigned_to: str | None = None
    notes: str | None = None
    loan_amount: float | None = None
    property_value: float | None = None
    annual_income: float | None = None


class FeeCreate(RecordPayload):
    customer_id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    amount: float = Field(gt=0)
    status: str
    currency: str = "GBP"
    due_date: str | None = None
    paid_date: str | None = None
    description: str = ""
    payment_method: str | None = None
    reference: str | None = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, value: str) -> str:
        return _normalize_fee_status(value)  # type: ignore[return-value]


class FeeUpdate(RecordUpdate):
    status: str | None = None
    amount: float | None = Field(default=None, gt=0)
    type: str | None = Field(default=None, min_length=1)
    due_date: str | None = None
    paid_date: str | None = None
    description: str | None = None
    payment_method: str | None = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, value: str | None) -> str | None:
        return _normalize_fee_status(value)


class NoteCreate(RecordPayload):
    reference_id: str = Field(min_length=1)
    note: str = Field(min_length=1)
    stage: str | None = None

    @model_validator(mode="before")
    @classmethod
    def accept_customer_or_enquiry_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("referenceId"):
            target = data.get("customerId") or data.get("enquiryId")
            if target:
                data = {key: value for key, value in data.items() if key not in {"customerId", "enquiryId"}}
                data["referenceId"] = target
        return data


class NoteUpdate(RecordUpdate):
    note: str | None = Field(default=None, min_length=1)
    stage: str | None = None


class ProductCreate(RecordPayload):
    customer_id: str = Field(min_length=1)
    product_type: str = Field(min_length=1)
    provider: str | None = None
    lender: str | None = None
    amount: float | None = None
    start_date: str | None = None
    end_date: str | None = None
    status: str | None = None


class ProductUpdate(RecordUpdate):
    product_type: str | None = Field(default=None, min_length=1)
    provider: str | None = None
    lender: str | None = None
    amount: float | None = None
    start_date: str | None = None
    end_date: str | None = None
    status: str | None = None


class StageHistoryCreate(RecordPayload):
    customer_id: str = Field(min_length=1)
    stage: str = Field(min_length=1)
    notes: str | None = None
    direction: str | None = None


class StageHistoryUpdate(RecordUpdate):
    stage: str | None = Field(default=None, min_length=1)
    notes: str | None = None


class UserCreate(RecordPayload):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore", str_strip_whitespace=True)

    name: str = Field(min_length=1)
    email: EmailStr
    password: str = Field(min_length=8)
    role: str = "user"
    active: bool = True


class UserUpdate(RecordUpdate):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore", str_strip_whitespace=True)

    name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    password: str | None = Field(default=None, min_length=8)
    role: str | None = None
    active: bool | None = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)
