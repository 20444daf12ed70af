from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from pydantic import ValidationError as PayloadValidationError
from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Application, CallbackReceipt, DocumentType, File, FileStatus, Statement
from db.postgres import get_session_factory, is_transient_db_error, store_errors_as_transient
from dispatch.dispatcher import ExtractionDispatcher
from entities.resolver import EntityResolver
from files.file_repo import FileRepo
from files.state_machine import TERMINAL_STATES, FileStateMachine
from settings.config import settings
from settings.errors import ConflictError, TransientError
from webhooks.application_writer import ApplicationWriter
from webhooks.schemas import (
    ApplicationCallback,
    BankStatementCallback,
    ClassificationCallback,
    parse_extraction_callback,
)
from webhooks.statement_writer import StatementWriter

logger = logging.getLogger(__name__)

ERROR_TEXT_LIMIT = 2000

ExtractionCallback = Union[BankStatementCallback, ApplicationCallback]


class CallbackOutcome(str, enum.Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    CONFLICT = "conflict"
    FAILED = "failed"
    IGNORED = "ignored"


def _uuid_or_none(value: Any) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def _short(text: str) -> str:
    return text[:ERROR_TEXT_LIMIT]


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, TransientError) or (isinstance(exc, DBAPIError) and is_transient_db_error(exc))


class _RetryingProcessor:
    def __init__(self, state_machine: FileStateMachine, max_attempts: Optional[int], backoff_seconds: Optional[float]) -> None:
        self.state_machine = state_machine
        self.max_attempts = max_attempts or settings.CALLBACK_MAX_ATTEMPTS
        self.backoff_seconds = settings.CALLBACK_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds

    async def _with_retries(
        self,
        session: AsyncSession,
        file_id: uuid.UUID,
        tenant_id: uuid.UUID,
        attempt_once: Callable[[], Awaitable[CallbackOutcome]],
        receipt: Callable[[CallbackOutcome, Optional[str]], CallbackReceipt],
    ) -> CallbackOutcome:
        attempt = 0
        while True:
            attempt += 1
            try:
                async with store_errors_as_transient():
                    return await attempt_once()
            except TransientError as exc:
                await session.rollback()
                if attempt >= self.max_attempts:
                    return await self._give_up(session, file_id, tenant_id, exc.message, receipt)
                logger.warning(
                    "Callback attempt failed, retrying",
                    extra={"file_id": str(file_id), "attempt": attempt, "error": exc.message},
                )
                await asyncio.sleep(self.backoff_seconds * (2 ** (attempt - 1)))

    async def _give_up(
        self,
        session: AsyncSession,
        file_id: uuid.UUID,
        tenant_id: uuid.UUID,
        error: str,
        receipt: Callable[[CallbackOutcome, Optional[str]], CallbackReceipt],
    ) -> CallbackOutcome:
        error_text = _short(f"callback processing failed after {self.max_attempts} attempts: {error}")
        file = await FileRepo(session).get_for_tenant(tenant_id, file_id, for_update=True)
        if file is not None and FileStatus(file.status) not in TERMINAL_STATES:
            await self.state_machine.fail(session, file, error_text)
        session.add(receipt(CallbackOutcome.FAILED, error_text))
        await session.commit()
        logger.error("Callback retries exhausted", extra={"file_id": str(file_id), "error": error})
        return CallbackOutcome.FAILED


class CallbackProcessor(_RetryingProcessor):
    """
    Applies extraction results to a File.

    Safe to run more than once per File and in any order relative to the dispatcher:
    the File row is locked and its state re-checked before anything is written.
    """

    def __init__(
        self,
        state_machine: FileStateMachine,
        resolver: EntityResolver,
        statement_writer: Optional[StatementWriter] = None,
        application_writer: Optional[ApplicationWriter] = None,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
    ) -> None:
        super().__init__(state_machine, max_attempts, backoff_seconds)
        self.statement_writer = statement_writer or StatementWriter(resolver)
        self.application_writer = application_writer or ApplicationWriter(resolver)

    async def process_raw(self, session: AsyncSession, raw: Dict[str, Any]) -> CallbackOutcome:
        try:
            callback = parse_extraction_callback(raw)
        except PayloadValidationError as exc:
            return await self._reject_malformed(session, raw, exc)
        return await self.process(session, callback)

    async def process(self, session: AsyncSession, callback: ExtractionCallback) -> CallbackOutcome:
        def receipt(outcome: CallbackOutcome, error: Optional[str] = None) -> CallbackReceipt:
            return CallbackReceipt(
                file_id=callback.file_id,
                org_id=callback.tenant_id,
                job_id=callback.job_id,
                document_type=callback.document_type,
                outcome=outcome.value,
                error=error,
            )

        return await self._with_retries(
            session,
            callback.file_id,
            callback.tenant_id,
            lambda: self._process_once(session, callback, receipt),
            receipt,
        )

    async def _process_once(
        self,
        session: AsyncSession,
        callback: ExtractionCallback,
        receipt: Callable[[CallbackOutcome, Optional[str]], CallbackReceipt],
    ) -> CallbackOutcome:
        log_extra = {"file_id": str(callback.file_id), "job_id": callback.job_id}
        repo = FileRepo(session)
        file = await repo.get(callback.file_id, for_update=True)
        if file is None or file.org_id != callback.tenant_id or file.submission_id != callback.submission_id:
            logger.warning("Callback for unknown file", extra=log_extra)
            session.add(receipt(CallbackOutcome.IGNORED, "file not found"))
            await session.commit()
            return CallbackOutcome.IGNORED

        try:
            outcome = await self._check_state(session, file, callback)
        except ConflictError as exc:
            logger.error("Conflicting callback", extra={**log_extra, "error": exc.message})
            session.add(receipt(CallbackOutcome.CONFLICT, exc.message))
            await session.commit()
            return CallbackOutcome.CONFLICT
        if outcome is not None:
            session.add(receipt(outcome, None))
            await session.commit()
            return outcome

        if callback.status == "failed":
            error_text = _short(callback.error or "extraction service reported a failure")
            await self.state_machine.fail(session, file, error_text)
            session.add(receipt(CallbackOutcome.FAILED, error_text))
            await session.commit()
            logger.info("Extraction reported failure", extra=log_extra)
            return CallbackOutcome.FAILED

        try:
            async with session.begin_nested():
                await self._write(session, file, callback)
                if file.extraction_job_id is None:
                    file.extraction_job_id = callback.job_id
                await self.state_machine.transition(session, file, FileStatus.PROCESSED)
        except Exception as exc:
            if _is_transient(exc):
                raise
            # the savepoint is gone; reload the file before failing it
            error_text = _short(f"{type(exc).__name__}: {getattr(exc, 'message', None) or exc}")
            logger.exception("Writing extraction results failed", extra=log_extra)
            file = await repo.get(callback.file_id, for_update=True)
            await self.state_machine.fail(session, file, error_text)
            session.add(receipt(CallbackOutcome.FAILED, error_text))
            await session.commit()
            return CallbackOutcome.FAILED

        session.add(receipt(CallbackOutcome.PROCESSED, None))
        await session.commit()
        logger.info("Extraction results applied", extra={**log_extra, "document_type": callback.document_type})
        return CallbackOutcome.PROCESSED

    async def _check_state(
        self, session: AsyncSession, file: File, callback: ExtractionCallback
    ) -> Optional[CallbackOutcome]:
        """
        None means the callback should be applied; otherwise the outcome to record.
        """
        status = FileStatus(file.status)
        if status is FileStatus.PROCESSED:
            written_job = await self._written_job_id(session, file.id)
            if written_job == callback.job_id:
                return CallbackOutcome.DUPLICATE
            raise ConflictError(f"File already processed by job {written_job}; refusing results from job {callback.job_id}")
        if status is FileStatus.FAILED:
            return CallbackOutcome.IGNORED
        if status is not FileStatus.PROCESSING:
            raise TransientError(f"File is {status.value}; callback arrived before dispatch completed")
        if file.extraction_job_id and file.extraction_job_id != callback.job_id:
            raise ConflictError(f"File is being processed by job {file.extraction_job_id}, not {callback.job_id}")
        return None

    async def _written_job_id(self, session: AsyncSession, file_id: uuid.UUID) -> Optional[str]:
        for model in (Statement, Application):
            job_id = (
                await session.execute(select(model.extraction_job_id).where(model.file_id == file_id))
            ).scalar_one_or_none()
            if job_id is not None:
                return job_id
        return None

    async def _write(self, session: AsyncSession, file: File, callback: ExtractionCallback) -> None:
        if isinstance(callback, BankStatementCallback):
            await self.statement_writer.write(session, file, callback)
        else:
            await self.application_writer.write(session, file, callback)

    async def _reject_malformed(
        self, session: AsyncSession, raw: Dict[str, Any], exc: PayloadValidationError
    ) -> CallbackOutcome:
        file_id = _uuid_or_none(raw.get("file_id"))
        tenant_id = _uuid_or_none(raw.get("tenant_id"))
        error_text = _short(f"malformed extraction payload: {exc.error_count()} error(s): {exc.errors()[0]['msg']}")
        logger.warning("Malformed callback payload", extra={"file_id": str(file_id), "error": error_text})

        async with store_errors_as_transient():
            if file_id is not None and tenant_id is not None:
                file = await FileRepo(session).get_for_tenant(tenant_id, file_id, for_update=True)
                # not retried; the file waits for a manual re-submission
                if file is not None and FileStatus(file.status) not in TERMINAL_STATES:
                    await self.state_machine.fail(session, file, error_text)
            document_type = raw.get("document_type")
            session.add(
                CallbackReceipt(
                    file_id=file_id,
                    org_id=tenant_id,
                    job_id=str(raw["job_id"])[:200] if raw.get("job_id") is not None else None,
                    document_type=document_type[:32] if isinstance(document_type, str) else None,
                    outcome=CallbackOutcome.FAILED.value,
                    error=error_text,
                )
            )
            await session.commit()
        return CallbackOutcome.FAILED


class ClassificationCallbackProcessor(_RetryingProcessor):
    """
    Records the classifier's label and hands the File to extraction.
    """

    def __init__(
        self,
        state_machine: FileStateMachine,
        extraction: ExtractionDispatcher,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
    ) -> None:
        super().__init__(state_machine, max_attempts, backoff_seconds)
        self.extraction = extraction

    async def process(self, session: AsyncSession, callback: ClassificationCallback) -> CallbackOutcome:
        def receipt(outcome: CallbackOutcome, error: Optional[str] = None) -> CallbackReceipt:
            return CallbackReceipt(
                file_id=callback.file_id,
                org_id=callback.tenant_id,
                job_id=callback.job_id,
                document_type=callback.document_type.value if callback.document_type else None,
                outcome=outcome.value,
                error=error,
            )

        outbox_id: Optional[int] = None

        async def attempt_once() -> CallbackOutcome:
            nonlocal outbox_id
            result, outbox_id = await self._process_once(session, callback, receipt)
            return result

        outcome = await self._with_retries(session, callback.file_id, callback.tenant_id, attempt_once, receipt)
        if outbox_id is not None:
            await self.extraction.deliver(session, outbox_id)
        return outcome

    async def _process_once(
        self,
        session: AsyncSession,
        callback: ClassificationCallback,
        receipt: Callable[[CallbackOutcome, Optional[str]], CallbackReceipt],
    ) -> tuple[CallbackOutcome, Optional[int]]:
        log_extra = {"file_id": str(callback.file_id)}
        file = await FileRepo(session).get_for_tenant(callback.tenant_id, callback.file_id, for_update=True)
        if file is None:
            session.add(receipt(CallbackOutcome.IGNORED, "file not found"))
            await session.commit()
            return CallbackOutcome.IGNORED, None

        status = FileStatus(file.status)
        if status is not FileStatus.CLASSIFYING:
            outcome = CallbackOutcome.IGNORED if status in (FileStatus.FAILED, FileStatus.UPLOADED) else CallbackOutcome.DUPLICATE
            session.add(receipt(outcome, None))
            await session.commit()
            logger.info("Classification callback not applied", extra={**log_extra, "status": status.value})
            return outcome, None

        if callback.status == "failed":
            error_text = _short(callback.error or "classification service reported a failure")
            await self.state_machine.fail(session, file, error_text)
            session.add(receipt(CallbackOutcome.FAILED, error_text))
            await session.commit()
            return CallbackOutcome.FAILED, None

        label = callback.document_type
        await self.state_machine.transition(
            session, file, FileStatus.CLASSIFIED, classification=label.value, confidence=callback.confidence
        )
        if label is DocumentType.OTHER:
            await self.state_machine.fail(session, file, "unsupported document type")
            session.add(receipt(CallbackOutcome.FAILED, "unsupported document type"))
            await session.commit()
            return CallbackOutcome.FAILED, None

        session.add(receipt(CallbackOutcome.PROCESSED, None))
        # prepare commits the classification together with the extraction outbox row
        outbox_id = await self.extraction.prepare(session, file, label)
        logger.info("File classified", extra={**log_extra, "document_type": label.value})
        return CallbackOutcome.PROCESSED, outbox_id


async def process_extraction_in_new_session(processor: CallbackProcessor, raw: Dict[str, Any]) -> CallbackOutcome:
    async with get_session_factory()() as session:
        return await processor.process_raw(session, raw)


async def process_classification_in_new_session(
    processor: ClassificationCallbackProcessor, callback: ClassificationCallback
) -> CallbackOutcome:
    async with get_session_factory()() as session:
        return await processor.process(session, callback)
