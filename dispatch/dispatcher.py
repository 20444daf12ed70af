from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import DispatchOutbox, DispatchOutcome, DocumentType, File, FileStatus, utcnow
from db.postgres import get_session_factory
from dispatch.clients import ServiceClient, extract_job_id
from dispatch.outbox_repo import OutboxRepo
from files.file_repo import FileRepo
from files.state_machine import FileStateMachine
from settings.config import settings
from settings.errors import ValidationError
from storage.s3_client import S3Client

logger = logging.getLogger(__name__)

CLASSIFICATION = "classification"
EXTRACTION = "extraction"

STATEMENT_TYPES = frozenset({DocumentType.BANK_STATEMENT, DocumentType.MONTH_TO_DATE})


def extraction_target(document_type: DocumentType) -> str:
    if document_type in STATEMENT_TYPES:
        return settings.EXTRACTION_STATEMENT_URL
    if document_type is DocumentType.APPLICATION:
        return settings.EXTRACTION_APPLICATION_URL
    raise ValidationError(f"Unsupported document type: {document_type.value}")


class Dispatcher:
    """
    Sends a file reference to an external service through the dispatch outbox.

    ``prepare`` moves the File and records the outbox row in one commit; ``deliver``
    posts it, waiting only for the service's acknowledgement. Unreachable services are
    retried inline with exponential backoff until the row's budget is spent, then the
    File is failed.
    """

    kind: str = ""
    in_flight_status: FileStatus = FileStatus.PROCESSING

    def __init__(
        self,
        state_machine: FileStateMachine,
        client: Optional[ServiceClient] = None,
        storage: Optional[S3Client] = None,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
    ) -> None:
        self.state_machine = state_machine
        self.client = client or ServiceClient()
        self.storage = storage or S3Client()
        self.max_attempts = max_attempts or settings.DISPATCH_MAX_ATTEMPTS
        self.backoff_seconds = settings.DISPATCH_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds

    def target_url(self, document_type: Optional[DocumentType]) -> str:
        raise NotImplementedError

    def callback_path(self) -> str:
        raise NotImplementedError

    async def file_url(self, file: File) -> str:
        if self.storage.configured:
            return await self.storage.presigned_get(file.storage_path)
        return file.storage_path

    async def build_payload(self, file: File, document_type: Optional[DocumentType]) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "file_id": str(file.id),
            "submission_id": str(file.submission_id),
            "tenant_id": str(file.org_id),
            "file_url": await self.file_url(file),
            "callback_url": f"{settings.PUBLIC_BASE_URL.rstrip('/')}{self.callback_path()}",
        }
        if document_type is not None:
            payload["document_type"] = document_type.value
        return payload

    async def before_transition(self, file: File, document_type: Optional[DocumentType]) -> None:
        pass

    async def prepare(self, session: AsyncSession, file: File, document_type: Optional[DocumentType] = None) -> int:
        target = self.target_url(document_type)
        await self.before_transition(file, document_type)
        await self.state_machine.transition(session, file, self.in_flight_status)
        row = await OutboxRepo(session).record(
            file.id, file.org_id, self.kind, target, await self.build_payload(file, document_type), self.max_attempts
        )
        await session.commit()
        logger.info(
            "Dispatch recorded",
            extra={"file_id": str(file.id), "outbox_id": row.id, "kind": self.kind, "target": target},
        )
        return row.id

    async def dispatch(self, session: AsyncSession, file: File, document_type: Optional[DocumentType] = None) -> DispatchOutcome:
        outbox_id = await self.prepare(session, file, document_type)
        return await self.deliver(session, outbox_id)

    async def deliver(self, session: AsyncSession, outbox_id: int) -> DispatchOutcome:
        row = await OutboxRepo(session).get(outbox_id)
        if row is None:
            raise ValueError(f"Unknown outbox row {outbox_id}")
        if row.outcome != DispatchOutcome.PENDING.value:
            return DispatchOutcome(row.outcome)

        while row.attempts < row.max_attempts:
            row.attempts += 1
            try:
                response = await self.client.post_job(row.target_url, row.payload)
            except httpx.TransportError as exc:
                row.last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "Dispatch attempt did not reach service",
                    extra={"outbox_id": row.id, "file_id": str(row.file_id), "attempt": row.attempts, "error": row.last_error},
                )
            else:
                if response.is_success:
                    return await self._reached(session, row, extract_job_id(response))
                if response.is_client_error:
                    return await self._rejected(session, row, f"HTTP {response.status_code}: {response.text[:500]}")
                row.last_error = f"HTTP {response.status_code}: {response.text[:500]}"
                logger.warning(
                    "Dispatch attempt failed",
                    extra={"outbox_id": row.id, "file_id": str(row.file_id), "attempt": row.attempts, "status": response.status_code},
                )
            await session.commit()
            if row.attempts < row.max_attempts:
                await asyncio.sleep(self.backoff_seconds * (2 ** (row.attempts - 1)))

        row.outcome = DispatchOutcome.NOT_REACHED.value
        row.completed_at = utcnow()
        await self._fail_file(
            session, row, f"{self.kind} service unreachable after {row.attempts} attempts: {row.last_error}"
        )
        await session.commit()
        logger.error("Dispatch budget exhausted", extra={"outbox_id": row.id, "file_id": str(row.file_id)})
        return DispatchOutcome.NOT_REACHED

    async def record_job(self, session: AsyncSession, row: DispatchOutbox, job_id: Optional[str]) -> None:
        pass

    async def _reached(self, session: AsyncSession, row: DispatchOutbox, job_id: Optional[str]) -> DispatchOutcome:
        row.outcome = DispatchOutcome.REACHED.value
        row.job_id = job_id
        row.completed_at = utcnow()
        await self.record_job(session, row, job_id)
        await session.commit()
        logger.info("Dispatch acknowledged", extra={"outbox_id": row.id, "file_id": str(row.file_id), "job_id": job_id})
        return DispatchOutcome.REACHED

    async def _rejected(self, session: AsyncSession, row: DispatchOutbox, error: str) -> DispatchOutcome:
        row.outcome = DispatchOutcome.REJECTED.value
        row.last_error = error
        row.completed_at = utcnow()
        await self._fail_file(session, row, f"{self.kind} service rejected the job: {error}")
        await session.commit()
        logger.error("Dispatch rejected", extra={"outbox_id": row.id, "file_id": str(row.file_id), "error": error})
        return DispatchOutcome.REJECTED

    async def _fail_file(self, session: AsyncSession, row: DispatchOutbox, error_text: str) -> None:
        file = await FileRepo(session).get(row.file_id, for_update=True)
        # a callback may already have moved the file on; only fail it where we left it
        if file is not None and file.status == self.in_flight_status.value:
            await self.state_machine.fail(session, file, error_text)


class ClassificationDispatcher(Dispatcher):
    kind = CLASSIFICATION
    in_flight_status = FileStatus.CLASSIFYING

    def target_url(self, document_type: Optional[DocumentType]) -> str:
        if not settings.CLASSIFIER_URL:
            raise ValidationError("No classifier is configured")
        return settings.CLASSIFIER_URL

    def callback_path(self) -> str:
        return "/webhooks/classification"


class ExtractionDispatcher(Dispatcher):
    kind = EXTRACTION
    in_flight_status = FileStatus.PROCESSING

    def target_url(self, document_type: Optional[DocumentType]) -> str:
        if document_type is None:
            raise ValidationError("Extraction needs a document type")
        return extraction_target(document_type)

    def callback_path(self) -> str:
        return "/webhooks/extraction"

    async def before_transition(self, file: File, document_type: Optional[DocumentType]) -> None:
        if document_type is not None and file.classification_type is None:
            file.classification_type = document_type.value

    async def record_job(self, session: AsyncSession, row: DispatchOutbox, job_id: Optional[str]) -> None:
        if not job_id:
            return
        # the callback can land before the acknowledgement; never overwrite its job id or touch status
        await session.execute(
            update(File)
            .where(File.id == row.file_id, File.extraction_job_id.is_(None))
            .values(extraction_job_id=job_id)
            .execution_options(synchronize_session=False)
        )


async def deliver_in_new_session(dispatcher: Dispatcher, outbox_id: int) -> DispatchOutcome:
    """Background-task entry point: delivery outlives the request that prepared it."""
    session_factory = get_session_factory()
    async with session_factory() as session:
        return await dispatcher.deliver(session, outbox_id)


def resolve_document_type(file: File, hint: Optional[DocumentType]) -> DocumentType:
    if hint is not None:
        return hint
    if file.classification_type:
        return DocumentType(file.classification_type)
    return DocumentType(settings.DEFAULT_DOCUMENT_TYPE)