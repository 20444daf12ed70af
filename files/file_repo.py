from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import delete, exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from db.models import Account, Application, File, FileStatus, Statement, Transaction


class FileRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, file_id: uuid.UUID, *, for_update: bool = False) -> Optional[File]:
        stmt = select(File).where(File.id == file_id)
        if for_update:
            # serialises concurrent callbacks / dispatches for the same file
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_for_tenant(self, tenant_id: uuid.UUID, file_id: uuid.UUID, *, for_update: bool = False) -> Optional[File]:
        file = await self.get(file_id, for_update=for_update)
        if file is None or file.org_id != tenant_id:
            return None
        return file

    async def list_for_submission(self, submission_id: uuid.UUID) -> list[File]:
        result = await self._session.execute(
            select(File).where(File.submission_id == submission_id).order_by(File.created_at, File.id)
        )
        return list(result.scalars())

    async def list_stuck(self, started_before: datetime, limit: int = 100) -> list[File]:
        stmt = (
            select(File)
            .where(
                File.status.in_([FileStatus.CLASSIFYING.value, FileStatus.PROCESSING.value]),
                File.status_changed_at < started_before,
            )
            .order_by(File.status_changed_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def get_statement(self, file_id: uuid.UUID) -> Optional[Statement]:
        result = await self._session.execute(
            select(Statement)
            .where(Statement.file_id == file_id)
            .options(selectinload(Statement.transactions), selectinload(Statement.account))
        )
        return result.scalar_one_or_none()

    async def delete_derived(self, file: File) -> None:
        """Remove everything a callback wrote for this file, then re-derive the submission's accounts."""
        statement_ids = select(Statement.id).where(Statement.file_id == file.id)
        await self._session.execute(delete(Transaction).where(Transaction.statement_id.in_(statement_ids)))
        await self._session.execute(delete(Statement).where(Statement.file_id == file.id))
        await self._session.execute(delete(Application).where(Application.file_id == file.id))
        await self.refresh_accounts(file.submission_id)

    async def refresh_accounts(self, submission_id: uuid.UUID) -> None:
        # accounts only exist while a statement references them
        await self._session.execute(
            delete(Account).where(
                Account.submission_id == submission_id,
                ~exists().where(Statement.account_id == Account.id),
            )
        )
        accounts = list(
            (
                await self._session.execute(
                    select(Account).where(Account.submission_id == submission_id).execution_options(populate_existing=True)
                )
            ).scalars()
        )
        for account in accounts:
            last_date = func.coalesce(func.max(Transaction.transaction_date), Statement.period_end)
            rows = (
                await self._session.execute(
                    select(Statement.closing_balance, last_date)
                    .outerjoin(Transaction, Transaction.statement_id == Statement.id)
                    .where(Statement.account_id == account.id)
                    .group_by(Statement.id, Statement.closing_balance, Statement.period_end)
                )
            ).all()
            # same rule as the writer: the balance follows the statement reaching furthest in time
            balance, reached = max(rows, key=lambda r: (r[1] is not None, r[1] or date.min))
            account.latest_balance = balance
            account.last_transaction_date = reached
        await self._session.flush()
