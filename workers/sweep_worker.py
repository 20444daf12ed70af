from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Optional

from db.models import utcnow
from db.postgres import get_session_factory
from files.file_repo import FileRepo
from files.state_machine import FileStateMachine
from metrics.aggregator import get_state_machine
from settings.config import settings

logger = logging.getLogger(__name__)

TIMEOUT_ERROR = "processing timed out"


async def sweep_stuck_files(
    ctx: dict[str, Any],
    batch_size: int = 100,
    state_machine: Optional[FileStateMachine] = None,
) -> dict:
    """
    Administrative timeout: fail files left in classifying/processing longer than
    STUCK_FILE_TIMEOUT_MINUTES. Failing goes through the state machine, so the
    owning submissions are recomputed in the same transaction.
    """
    state_machine = state_machine or get_state_machine()
    cutoff = utcnow() - timedelta(minutes=settings.STUCK_FILE_TIMEOUT_MINUTES)
    session_factory = get_session_factory()

    async with session_factory() as session:
        stuck = await FileRepo(session).list_stuck(cutoff, limit=batch_size)
        for file in stuck:
            await state_machine.fail(session, file, TIMEOUT_ERROR)
            logger.warning("Stuck file failed", extra={"file_id": str(file.id), "submission_id": str(file.submission_id)})
        await session.commit()
    return {"failed": len(stuck)}
