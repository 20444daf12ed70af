from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth.tenant import TenantContext
from db.models import Submission, SubmissionMetrics
from db.postgres import get_async_session
from files.file_repo import FileRepo
from settings.deps import get_tenant_context
from settings.errors import NotFoundError


router = APIRouter(prefix="/submissions", tags=["submissions"])


class FileStatusOut(BaseModel):
    file_id: uuid.UUID
    filename: str
    status: str
    classification_type: Optional[str] = None
    error_text: Optional[str] = None
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None


class SubmissionOut(BaseModel):
    id: uuid.UUID
    status: str
    ingestion_method: str
    files_total: int
    files_processed: int
    company_id: Optional[uuid.UUID] = None
    created_at: datetime
    files: List[FileStatusOut] = []


class MetricsOut(BaseModel):
    submission_id: uuid.UUID
    date_range_start: Optional[date] = None
    date_range_end: Optional[date] = None
    total_deposits: Decimal
    deposit_count: int
    largest_deposit: Optional[Decimal] = None
    total_withdrawals: Decimal
    withdrawal_count: int
    largest_withdrawal: Optional[Decimal] = None
    avg_daily_balance: Optional[Decimal] = None
    min_balance: Optional[Decimal] = None
    max_balance: Optional[Decimal] = None
    true_revenue: Decimal
    true_revenue_count: int
    negative_balance_days: int
    low_balance_days: int
    nsf_count: int
    nsf_total_amount: Decimal
    total_mca_debits: Decimal
    mca_debit_count: int
    total_transactions: int
    categorized_count: int
    uncategorized_count: int
    account_count: int
    statement_count: int
    calculated_at: datetime


async def _get_submission(session: AsyncSession, tenant: TenantContext, submission_id: uuid.UUID) -> Submission:
    submission = await session.get(Submission, submission_id)
    # other tenants' submissions are reported exactly like missing ones
    if submission is None or submission.org_id != tenant.tenant_id:
        raise NotFoundError("Submission not found")
    return submission


@router.get("", response_model=List[SubmissionOut])
async def list_submissions(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_async_session),
    tenant: TenantContext = Depends(get_tenant_context),
):
    result = await session.execute(
        select(Submission)
        .where(Submission.org_id == tenant.tenant_id)
        .order_by(Submission.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return [SubmissionOut.model_validate(s, from_attributes=True).model_copy(update={"files": []}) for s in result.scalars()]


@router.get("/{submission_id}", response_model=SubmissionOut)
async def get_submission_status(
    submission_id: uuid.UUID,
    session: AsyncSession = Depends(get_async_session),
    tenant: TenantContext = Depends(get_tenant_context),
):
    submission = await _get_submission(session, tenant, submission_id)
    files = await FileRepo(session).list_for_submission(submission_id)
    return SubmissionOut(
        id=submission.id,
        status=submission.status,
        ingestion_method=submission.ingestion_method,
        files_total=submission.files_total,
        files_processed=submission.files_processed,
        company_id=submission.company_id,
        created_at=submission.created_at,
        files=[
            FileStatusOut(
                file_id=f.id,
                filename=f.filename,
                status=f.status,
                classification_type=f.classification_type,
                error_text=f.error_text,
                processing_started_at=f.processing_started_at,
                processing_completed_at=f.processing_completed_at,
            )
            for f in files
        ],
    )


@router.get("/{submission_id}/metrics", response_model=MetricsOut)
async def get_submission_metrics(
    submission_id: uuid.UUID,
    session: AsyncSession = Depends(get_async_session),
    tenant: TenantContext = Depends(get_tenant_context),
):
    await _get_submission(session, tenant, submission_id)
    metrics = await session.get(SubmissionMetrics, submission_id)
    if metrics is None:
        raise NotFoundError("Metrics not yet calculated")
    return MetricsOut.model_validate(metrics, from_attributes=True)
