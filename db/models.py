from __future__ import annotations

import enum
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# BIGSERIAL on Postgres, INTEGER PRIMARY KEY (rowid) on SQLite
BigIntPK = BigInteger().with_variant(Integer, "sqlite")
Money = Numeric(18, 2)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class FileStatus(str, enum.Enum):
    UPLOADED = "uploaded"
    CLASSIFYING = "classifying"
    CLASSIFIED = "classified"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class SubmissionStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    PARTIALLY_FAILED = "partially_failed"


class DocumentType(str, enum.Enum):
    BANK_STATEMENT = "bank_statement"
    APPLICATION = "application"
    MONTH_TO_DATE = "month_to_date"
    OTHER = "other"


class IngestionMethod(str, enum.Enum):
    DASHBOARD = "dashboard"
    API = "api"
    EMAIL = "email"


class DispatchOutcome(str, enum.Enum):
    PENDING = "pending"
    REACHED = "reached"
    REJECTED = "rejected"
    NOT_REACHED = "not_reached"


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class ApiKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    key_prefix: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)
    key_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    org_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    actor: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    resource_type: Mapped[str] = mapped_column(Text, nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class Company(Base):
    __tablename__ = "companies"
    __table_args__ = (
        UniqueConstraint("org_id", "normalized_legal_name", name="ux_companies_org_normalized_name"),
        UniqueConstraint("org_id", "identifier", name="ux_companies_org_identifier"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    legal_name: Mapped[str] = mapped_column(Text, nullable=False)
    normalized_legal_name: Mapped[str] = mapped_column(Text, nullable=False)
    identifier: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    aliases: Mapped[list["CompanyAlias"]] = relationship(back_populates="company", cascade="all, delete-orphan")


class CompanyAlias(Base):
    __tablename__ = "company_aliases"
    __table_args__ = (UniqueConstraint("org_id", "normalized_alias", name="ux_company_aliases_org_normalized"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    org_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    alias_name: Mapped[str] = mapped_column(Text, nullable=False)
    normalized_alias: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    company: Mapped[Company] = relationship(back_populates="aliases")


class Submission(Base):
    __tablename__ = "submissions"
    __table_args__ = (CheckConstraint("files_processed <= files_total", name="ck_submissions_processed_le_total"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    ingestion_method: Mapped[str] = mapped_column(String(16), nullable=False, default=IngestionMethod.DASHBOARD.value)
    status: Mapped[str] = mapped_column(String(24), nullable=False, default=SubmissionStatus.PENDING.value)
    files_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    files_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    company_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("companies.id", ondelete="SET NULL"), nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    files: Mapped[list["File"]] = relationship(back_populates="submission", order_by="File.created_at")


class File(Base):
    __tablename__ = "files"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    submission_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("submissions.id", ondelete="CASCADE"), nullable=False, index=True)
    org_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    filename: Mapped[str] = mapped_column(Text, nullable=False)
    storage_path: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    file_size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(128), nullable=False, default="application/pdf")
    classification_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    classification_confidence: Mapped[Optional[Decimal]] = mapped_column(Numeric(3, 2), nullable=True)
    extraction_job_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=FileStatus.UPLOADED.value, index=True)
    error_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processing_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    status_changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    submission: Mapped[Submission] = relationship(back_populates="files")


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (UniqueConstraint("submission_id", "account_number_hash", name="ux_accounts_submission_number"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    submission_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("submissions.id", ondelete="CASCADE"), nullable=False)
    org_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    company_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("companies.id", ondelete="SET NULL"), nullable=True)
    account_number_masked: Mapped[str] = mapped_column(String(16), nullable=False)
    account_number_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    bank_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    holder_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    latest_balance: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    last_transaction_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class Statement(Base):
    __tablename__ = "statements"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    file_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("files.id", ondelete="CASCADE"), nullable=False, unique=True)
    submission_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("submissions.id", ondelete="CASCADE"), nullable=False, index=True)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    org_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    extraction_job_id: Mapped[str] = mapped_column(Text, nullable=False)
    period_start: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    period_end: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    opening_balance: Mapped[Decimal] = mapped_column(Money, nullable=False)
    closing_balance: Mapped[Decimal] = mapped_column(Money, nullable=False)
    total_credits: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    total_debits: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    credit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    debit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # figures printed on the statement itself, kept apart from the totals derived from transactions
    reported_total_credits: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    reported_total_debits: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    transaction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reconciliation_difference: Mapped[Decimal] = mapped_column(Money, nullable=False)
    is_reconciled: Mapped[bool] = mapped_column(Boolean, nullable=False)
    partial_success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    extraction_errors: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    account: Mapped[Account] = relationship()
    transactions: Mapped[list["Transaction"]] = relationship(
        back_populates="statement", order_by="Transaction.sequence_number", cascade="all, delete-orphan"
    )


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (UniqueConstraint("statement_id", "sequence_number", name="ux_transactions_statement_sequence"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    statement_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("statements.id", ondelete="CASCADE"), nullable=False)
    submission_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    org_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    running_balance: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    transaction_type: Mapped[str] = mapped_column(String(16), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    merchant: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    statement: Mapped[Statement] = relationship(back_populates="transactions")


class Application(Base):
    __tablename__ = "applications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    file_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("files.id", ondelete="CASCADE"), nullable=False, unique=True)
    submission_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("submissions.id", ondelete="CASCADE"), nullable=False, index=True)
    org_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    company_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("companies.id", ondelete="SET NULL"), nullable=True)
    extraction_job_id: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False)

    company_legal_name: Mapped[str] = mapped_column(Text, nullable=False)
    company_dba_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    company_identifier: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    company_industry: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    company_address: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    company_phone: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    company_email: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    company_website: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    business_structure: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    business_start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    annual_revenue: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    amount_requested: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    loan_purpose: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    owner_1_first_name: Mapped[str] = mapped_column(Text, nullable=False)
    owner_1_last_name: Mapped[str] = mapped_column(Text, nullable=False)
    owner_1_date_of_birth: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    owner_1_ownership_pct: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    owner_1_email: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    owner_1_phone: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    owner_1_address: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    owner_2_first_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    owner_2_last_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    owner_2_date_of_birth: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    owner_2_ownership_pct: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    owner_2_email: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    owner_2_phone: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    owner_2_address: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    confidence_score: Mapped[Decimal] = mapped_column(Numeric(3, 2), nullable=False)
    uncertain_fields: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class SubmissionMetrics(Base):
    __tablename__ = "submission_metrics"

    submission_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("submissions.id", ondelete="CASCADE"), primary_key=True)
    date_range_start: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    date_range_end: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    total_deposits: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    deposit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    largest_deposit: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    total_withdrawals: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    withdrawal_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    largest_withdrawal: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    avg_daily_balance: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    min_balance: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    max_balance: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    true_revenue: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    true_revenue_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    negative_balance_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    low_balance_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    nsf_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    nsf_total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    total_mca_debits: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    mca_debit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_transactions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    categorized_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    uncategorized_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    account_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    statement_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    calculated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class DispatchOutbox(Base):
    __tablename__ = "dispatch_outbox"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    file_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("files.id", ondelete="CASCADE"), nullable=False, index=True)
    org_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    target_url: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False, default=DispatchOutcome.PENDING.value, index=True)
    job_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class CallbackReceipt(Base):
    __tablename__ = "callback_receipts"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    file_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    org_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    job_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    document_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
