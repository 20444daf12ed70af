from __future__ import annotations

import logging
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from db.models import File, FileStatus, utcnow
from files.file_repo import FileRepo
from settings.errors import ConflictError

logger = logging.getLogger(__name__)

# Called inside the caller's transaction after every status write on a File.
TransitionHandler = Callable[[AsyncSession, File], Awaitable[None]]

TERMINAL_STATES = frozenset({FileStatus.PROCESSED, FileStatus.FAILED})
IN_FLIGHT_STATES = frozenset({FileStatus.CLASSIFYING, FileStatus.CLASSIFIED, FileStatus.PROCESSING})

ALLOWED_TRANSITIONS: dict[FileStatus, frozenset[FileStatus]] = {
    # uploaded -> processing is taken when the document type is already known
    FileStatus.UPLOADED: frozenset({FileStatus.CLASSIFYING, FileStatus.PROCESSING, FileStatus.FAILED}),
    FileStatus.CLASSIFYING: frozenset({FileStatus.CLASSIFIED, FileStatus.FAILED}),
    FileStatus.CLASSIFIED: frozenset({FileStatus.PROCESSING, FileStatus.FAILED}),
    FileStatus.PROCESSING: frozenset({FileStatus.PROCESSED, FileStatus.FAILED}),
    FileStatus.PROCESSED: frozenset(),
    FileStatus.FAILED: frozenset(),
}


def can_transition(current: FileStatus, target: FileStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class FileStateMachine:
    """
    Owns every status write on a File.

    Every transition runs the registered handlers (the submission aggregator) in the
    same transaction, so counters move together with the status.
    The caller commits.
    """

    def __init__(self, handlers: Sequence[TransitionHandler] = ()) -> None:
        self._handlers = list(handlers)

    async def transition(
        self,
        session: AsyncSession,
        file: File,
        target: FileStatus,
        *,
        error_text: Optional[str] = None,
        classification: Optional[str] = None,
        confidence: Optional[float] = None,
    ) -> File:
        current = FileStatus(file.status)
        if not can_transition(current, target):
            raise ConflictError(f"File {file.id} cannot move from {current.value} to {target.value}")

        now = utcnow()
        file.status = target.value
        file.status_changed_at = now
        if target is FileStatus.CLASSIFIED:
            file.classification_type = classification
            file.classification_confidence = Decimal(str(round(confidence, 2))) if confidence is not None else None
        elif target is FileStatus.PROCESSING:
            file.processing_started_at = now
        if target in TERMINAL_STATES:
            file.processing_completed_at = now
        if target is FileStatus.FAILED:
            file.error_text = error_text or "unknown error"
        await session.flush()

        logger.info(
            "File status changed",
            extra={"file_id": str(file.id), "from_status": current.value, "to_status": target.value},
        )
        await self._notify(session, file)
        return file

    async def fail(self, session: AsyncSession, file: File, error_text: str) -> File:
        return await self.transition(session, file, FileStatus.FAILED, error_text=error_text)

    async def reset_for_reprocessing(self, session: AsyncSession, file: File) -> File:
        """
        Administrative override: move a terminal File back so it can be dispatched again.
        Derived records are deleted and the submission counters recomputed.
        """
        current = FileStatus(file.status)
        if current not in TERMINAL_STATES:
            raise ConflictError(f"File {file.id} is {current.value}; only processed or failed files can be reprocessed")

        await FileRepo(session).delete_derived(file)

        target = FileStatus.CLASSIFIED if file.classification_type else FileStatus.UPLOADED
        file.status = target.value
        file.status_changed_at = utcnow()
        file.extraction_job_id = None
        file.error_text = None
        file.processing_started_at = None
        file.processing_completed_at = None
        await session.flush()

        logger.warning(
            "File reset for reprocessing",
            extra={"file_id": str(file.id), "from_status": current.value, "to_status": target.value},
        )
        await self._notify(session, file)
        return file

    async def _notify(self, session: AsyncSession, file: File) -> None:
        for handler in self._handlers:
            await handler(session, file)
