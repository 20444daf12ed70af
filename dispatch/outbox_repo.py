from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import DispatchOutbox, DispatchOutcome


class OutboxRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        file_id: uuid.UUID,
        org_id: uuid.UUID,
        kind: str,
        target_url: str,
        payload: dict[str, Any],
        max_attempts: int,
    ) -> DispatchOutbox:
        row = DispatchOutbox(
            file_id=file_id,
            org_id=org_id,
            kind=kind,
            target_url=target_url,
            payload=payload,
            attempts=0,
            max_attempts=max_attempts,
            outcome=DispatchOutcome.PENDING.value,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, outbox_id: int) -> Optional[DispatchOutbox]:
        result = await self._session.execute(
            select(DispatchOutbox).where(DispatchOutbox.id == outbox_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def pending(self, created_before: datetime, limit: int = 100) -> list[tuple[int, str]]:
        """(id, kind) of undelivered rows older than ``created_before``."""
        result = await self._session.execute(
            select(DispatchOutbox.id, DispatchOutbox.kind)
            .where(DispatchOutbox.outcome == DispatchOutcome.PENDING.value, DispatchOutbox.created_at < created_before)
            .order_by(DispatchOutbox.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return [(row.id, row.kind) for row in result]

    async def list_for_file(self, file_id: uuid.UUID) -> list[DispatchOutbox]:
        result = await self._session.execute(
            select(DispatchOutbox).where(DispatchOutbox.file_id == file_id).order_by(DispatchOutbox.id)
        )
        return list(result.scalars())
