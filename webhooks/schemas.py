from __future__ import annotations

import uuid
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from db.models import DocumentType
from settings.config import settings


def _coerce_amount(v: Any) -> Any:
    # providers send 1234.5, "1234.50" or "$1,234.50"
    if isinstance(v, bool):
        raise ValueError("amount must be a number")
    if isinstance(v, float):
        return str(v)
    if isinstance(v, str):
        cleaned = v.strip().replace(",", "").replace("$", "")
        if cleaned.startswith("(") and cleaned.endswith(")"):
            cleaned = "-" + cleaned[1:-1]
        return cleaned
    return v


def _to_cents(v: Decimal) -> Decimal:
    # stored columns are NUMERIC(18, 2); reconciliation must see the same values
    try:
        return v.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValueError("amount out of range") from exc


Amount = Annotated[Decimal, BeforeValidator(_coerce_amount), Field(allow_inf_nan=False), AfterValidator(_to_cents)]


class StatementSummary(BaseModel):
    account_number: str = Field(min_length=1)
    bank_name: Optional[str] = None
    account_holder: Optional[str] = None
    company: Optional[str] = None
    ein: Optional[str] = None
    start_balance: Amount
    end_balance: Amount
    statement_start_date: Optional[date] = None
    statement_end_date: Optional[date] = None
    total_credits: Optional[Amount] = None
    total_debits: Optional[Amount] = None


class StatementTransaction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transaction_date: date = Field(alias="date")
    amount: Amount
    description: str = ""
    balance: Optional[Amount] = None
    category: Optional[str] = None
    merchant: Optional[str] = None
    is_recurring: Optional[bool] = None

    @field_validator("description", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return "" if v is None else v


class StatementPayload(BaseModel):
    summary: StatementSummary
    transactions: List[StatementTransaction] = Field(default_factory=list)

    @field_validator("transactions")
    @classmethod
    def _bounded(cls, v: List[StatementTransaction]) -> List[StatementTransaction]:
        if len(v) > settings.WEBHOOK_MAX_TRANSACTIONS:
            raise ValueError(f"at most {settings.WEBHOOK_MAX_TRANSACTIONS} transactions per statement")
        return v


class CompanyInfo(BaseModel):
    legal_name: str = Field(min_length=1)
    dba_name: Optional[str] = None
    identifier: Optional[str] = None
    industry: Optional[str] = None
    address: Optional[Dict[str, Any]] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None


class FundingInfo(BaseModel):
    business_structure: Optional[str] = None
    business_start_date: Optional[date] = None
    annual_revenue: Optional[Amount] = None
    amount_requested: Optional[Amount] = None
    loan_purpose: Optional[str] = None


class Owner(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    date_of_birth: Optional[date] = None
    ownership_pct: Optional[Decimal] = Field(default=None, ge=0, le=100)
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Dict[str, Any]] = None

    @field_validator("first_name", "last_name", "email", "phone", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v.strip() if isinstance(v, str) else v


class PrimaryOwner(Owner):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)


class ApplicationPayload(BaseModel):
    company: CompanyInfo
    funding: FundingInfo = Field(default_factory=FundingInfo)
    owner_1: PrimaryOwner
    owner_2: Optional[Owner] = None
    confidence_score: Decimal = Field(ge=0, le=1)
    uncertain_fields: List[str] = Field(default_factory=list)


class CallbackBase(BaseModel):
    file_id: uuid.UUID
    submission_id: uuid.UUID
    tenant_id: uuid.UUID
    job_id: str = Field(min_length=1)
    status: Literal["succeeded", "failed"] = "succeeded"
    error: Optional[str] = None
    partial_success: bool = False
    extraction_errors: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _payload_when_succeeded(self):
        if self.status == "succeeded" and getattr(self, "extraction_payload", None) is None:
            raise ValueError("extraction_payload is required when status is succeeded")
        return self


class BankStatementCallback(CallbackBase):
    document_type: Literal["bank_statement", "month_to_date"]
    extraction_payload: Optional[StatementPayload] = None


class ApplicationCallback(CallbackBase):
    document_type: Literal["application"]
    extraction_payload: Optional[ApplicationPayload] = None


ExtractionCallback = Annotated[
    Union[BankStatementCallback, ApplicationCallback],
    Field(discriminator="document_type"),
]

extraction_callback_adapter: TypeAdapter[Union[BankStatementCallback, ApplicationCallback]] = TypeAdapter(
    ExtractionCallback
)


def parse_extraction_callback(raw: Dict[str, Any]) -> Union[BankStatementCallback, ApplicationCallback]:
    """Raises pydantic.ValidationError for anything that does not match a known document type."""
    return extraction_callback_adapter.validate_python(raw)


class ClassificationCallback(BaseModel):
    file_id: uuid.UUID
    tenant_id: uuid.UUID
    document_type: Optional[DocumentType] = None
    confidence: Optional[float] = Field(default=None, ge=0, le=1)
    job_id: Optional[str] = None
    status: Literal["succeeded", "failed"] = "succeeded"
    error: Optional[str] = None

    @model_validator(mode="after")
    def _label_when_succeeded(self):
        if self.status == "succeeded" and self.document_type is None:
            raise ValueError("document_type is required when status is succeeded")
        return self


class WebhookAccepted(BaseModel):
    status: str = "accepted"
