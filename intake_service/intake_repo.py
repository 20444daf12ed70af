from __future__ import annotations

import logging
import uuid
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from db.models import AuditLog, File, FileStatus, IngestionMethod, Submission, SubmissionStatus
from intake_service.models import FileDescriptor

logger = logging.getLogger(__name__)


def build_storage_path(tenant_id: uuid.UUID, submission_id: uuid.UUID, file_id: uuid.UUID) -> str:
    return f"{tenant_id}/{submission_id}/{file_id}.pdf"


class IntakeRepo:
    """Writes a submission batch: one Submission row plus a placeholder File per descriptor."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create_submission(
        self,
        tenant_id: uuid.UUID,
        descriptors: Sequence[FileDescriptor],
        ingestion_method: IngestionMethod,
        actor: str | None = None,
    ) -> tuple[Submission, list[File]]:
        submission_id = uuid.uuid4()
        # files_total is set together with the inserts, never patched afterwards
        submission = Submission(
            id=submission_id,
            org_id=tenant_id,
            ingestion_method=ingestion_method.value,
            status=SubmissionStatus.PENDING.value,
            files_total=len(descriptors),
            files_processed=0,
            created_by=actor,
        )
        self._session.add(submission)

        files: list[File] = []
        for descriptor in descriptors:
            file_id = uuid.uuid4()
            files.append(
                File(
                    id=file_id,
                    submission_id=submission_id,
                    org_id=tenant_id,
                    filename=descriptor.name,
                    storage_path=build_storage_path(tenant_id, submission_id, file_id),
                    file_size_bytes=descriptor.size,
                    mime_type=descriptor.mime_type,
                    status=FileStatus.UPLOADED.value,
                )
            )
        self._session.add_all(files)
        self._session.add(
            AuditLog(
                org_id=tenant_id,
                actor=actor,
                action="submission.created",
                resource_type="submission",
                resource_id=str(submission_id),
                details={"file_count": len(files), "ingestion_method": ingestion_method.value},
            )
        )
        await self._session.flush()
        return submission, files
