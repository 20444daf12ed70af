from __future__ import annotations

import uuid

from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from auth.tenant import TenantContext
from db.models import AuditLog
from db.postgres import get_async_session
from dispatch.dispatcher import deliver_in_new_session
from dispatch.enqueue import EnqueueService, get_enqueue_service
from files.file_repo import FileRepo
from files.models import EnqueueRequest, EnqueueResponse, FileOut, StatementOut, TransactionOut
from files.state_machine import FileStateMachine
from metrics.aggregator import get_state_machine
from settings.deps import get_tenant_context
from settings.errors import NotFoundError, ValidationError


router = APIRouter(prefix="/files", tags=["files"])


@router.post("/enqueue", status_code=status.HTTP_202_ACCEPTED, response_model=EnqueueResponse)
async def enqueue_file(
    payload: EnqueueRequest,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_async_session),
    tenant: TenantContext = Depends(get_tenant_context),
    service: EnqueueService = Depends(get_enqueue_service),
):
    if payload.file_id is None:
        raise ValidationError("file_id is required")
    prepared = await service.enqueue(session, tenant, payload.file_id, payload.document_type)
    # the caller gets its 202 once the status is written; delivery continues after the response
    background_tasks.add_task(deliver_in_new_session, prepared.dispatcher, prepared.outbox_id)
    return EnqueueResponse(file_id=payload.file_id)


@router.get("/{file_id}", response_model=FileOut)
async def get_file(
    file_id: uuid.UUID,
    session: AsyncSession = Depends(get_async_session),
    tenant: TenantContext = Depends(get_tenant_context),
):
    file = await FileRepo(session).get_for_tenant(tenant.tenant_id, file_id)
    if file is None:
        raise NotFoundError("File not found")
    return FileOut.model_validate(file, from_attributes=True)


@router.get("/{file_id}/transactions", response_model=StatementOut)
async def get_statement_transactions(
    file_id: uuid.UUID,
    session: AsyncSession = Depends(get_async_session),
    tenant: TenantContext = Depends(get_tenant_context),
):
    repo = FileRepo(session)
    file = await repo.get_for_tenant(tenant.tenant_id, file_id)
    statement = await repo.get_statement(file_id) if file is not None else None
    if statement is None:
        raise NotFoundError("Statement not found")
    return StatementOut(
        id=statement.id,
        file_id=statement.file_id,
        account_number_masked=statement.account.account_number_masked,
        bank_name=statement.account.bank_name,
        period_start=statement.period_start,
        period_end=statement.period_end,
        opening_balance=statement.opening_balance,
        closing_balance=statement.closing_balance,
        total_credits=statement.total_credits,
        total_debits=statement.total_debits,
        reported_total_credits=statement.reported_total_credits,
        reported_total_debits=statement.reported_total_debits,
        reconciliation_difference=statement.reconciliation_difference,
        is_reconciled=statement.is_reconciled,
        transactions=[TransactionOut.model_validate(t, from_attributes=True) for t in statement.transactions],
    )


@router.post("/{file_id}/reprocess", response_model=FileOut)
async def reprocess_file(
    file_id: uuid.UUID,
    session: AsyncSession = Depends(get_async_session),
    tenant: TenantContext = Depends(get_tenant_context),
    state_machine: FileStateMachine = Depends(get_state_machine),
):
    file = await FileRepo(session).get_for_tenant(tenant.tenant_id, file_id, for_update=True)
    if file is None:
        raise NotFoundError("File not found")
    await state_machine.reset_for_reprocessing(session, file)
    session.add(
        AuditLog(
            org_id=tenant.tenant_id,
            actor=tenant.actor,
            action="file.reprocess",
            resource_type="file",
            resource_id=str(file.id),
            details={"status": file.status},
        )
    )
    await session.commit()
    return FileOut.model_validate(file, from_attributes=True)
