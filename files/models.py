from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel

from db.models import DocumentType


class FileOut(BaseModel):
    id: uuid.UUID
    submission_id: uuid.UUID
    filename: str
    storage_path: str
    file_size_bytes: int
    mime_type: str
    status: str
    classification_type: Optional[str] = None
    classification_confidence: Optional[Decimal] = None
    extraction_job_id: Optional[str] = None
    error_text: Optional[str] = None
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    created_at: datetime


class EnqueueRequest(BaseModel):
    file_id: Optional[uuid.UUID] = None
    document_type: Optional[DocumentType] = None


class EnqueueResponse(BaseModel):
    status: str = "accepted"
    file_id: uuid.UUID


class TransactionOut(BaseModel):
    sequence_number: int
    transaction_date: date
    description: str
    amount: Decimal
    running_balance: Optional[Decimal] = None
    transaction_type: str
    category: Optional[str] = None
    merchant: Optional[str] = None
    is_recurring: bool


class StatementOut(BaseModel):
    id: uuid.UUID
    file_id: uuid.UUID
    account_number_masked: str
    bank_name: Optional[str] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    opening_balance: Decimal
    closing_balance: Decimal
    total_credits: Decimal
    total_debits: Decimal
    reported_total_credits: Optional[Decimal] = None
    reported_total_debits: Optional[Decimal] = None
    reconciliation_difference: Decimal
    is_reconciled: bool
    transactions: List[TransactionOut]
