from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from auth.tenant import TenantContext
from db.models import DocumentType, FileStatus
from dispatch.dispatcher import ClassificationDispatcher, Dispatcher, ExtractionDispatcher, resolve_document_type
from files.file_repo import FileRepo
from metrics.aggregator import get_state_machine
from settings.config import settings
from settings.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass
class PreparedDispatch:
    dispatcher: Dispatcher
    outbox_id: int
    file_status: FileStatus


class EnqueueService:
    """Starts the asynchronous pipeline for one uploaded file."""

    def __init__(self, classification: ClassificationDispatcher, extraction: ExtractionDispatcher) -> None:
        self.classification = classification
        self.extraction = extraction

    def choose(self, status: FileStatus, hint: Optional[DocumentType]) -> Dispatcher:
        if status is FileStatus.UPLOADED and hint is None and settings.CLASSIFIER_URL:
            return self.classification
        return self.extraction

    async def enqueue(
        self,
        session: AsyncSession,
        tenant: TenantContext,
        file_id: uuid.UUID,
        document_type: Optional[DocumentType] = None,
    ) -> PreparedDispatch:
        file = await FileRepo(session).get_for_tenant(tenant.tenant_id, file_id, for_update=True)
        if file is None:
            raise NotFoundError("File not found")
        status = FileStatus(file.status)
        if status not in (FileStatus.UPLOADED, FileStatus.CLASSIFIED):
            raise ConflictError(f"File is already {status.value}")

        dispatcher = self.choose(status, document_type)
        doc_type = None if dispatcher is self.classification else resolve_document_type(file, document_type)
        outbox_id = await dispatcher.prepare(session, file, doc_type)
        logger.info(
            "File enqueued",
            extra={"file_id": str(file.id), "kind": dispatcher.kind, "document_type": doc_type.value if doc_type else None},
        )
        return PreparedDispatch(dispatcher=dispatcher, outbox_id=outbox_id, file_status=FileStatus(file.status))


def get_classification_dispatcher() -> ClassificationDispatcher:
    return ClassificationDispatcher(get_state_machine())


def get_extraction_dispatcher() -> ExtractionDispatcher:
    return ExtractionDispatcher(get_state_machine())


def get_enqueue_service() -> EnqueueService:
    return EnqueueService(get_classification_dispatcher(), get_extraction_dispatcher())
