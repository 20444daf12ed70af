from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from auth.tenant import TenantContext
from db.postgres import store_errors_as_transient
from intake_service.intake_repo import IntakeRepo
from intake_service.models import FileMap, IntakeRequest, IntakeResponse
from settings.config import settings
from settings.errors import ValidationError
from storage.s3_client import S3Client

logger = logging.getLogger(__name__)


class IntakeService:
    def __init__(self, storage: Optional[S3Client] = None):
        self.storage = storage or S3Client()

    def validate(self, request: IntakeRequest) -> None:
        if not request.files:
            raise ValidationError("At least one file is required")
        if len(request.files) > settings.INTAKE_MAX_FILES:
            raise ValidationError(f"At most {settings.INTAKE_MAX_FILES} files may be submitted at once")
        allowed = {m.lower() for m in settings.INTAKE_ALLOWED_MIME_TYPES}
        for index, descriptor in enumerate(request.files):
            if not descriptor.name:
                raise ValidationError(f"File {index} has no name")
            if descriptor.mime_type not in allowed:
                raise ValidationError(f"File '{descriptor.name}' has disallowed type '{descriptor.mime_type}'")
            if descriptor.size <= 0:
                raise ValidationError(f"File '{descriptor.name}' is empty")
            if descriptor.size > settings.INTAKE_MAX_FILE_BYTES:
                raise ValidationError(f"File '{descriptor.name}' exceeds {settings.INTAKE_MAX_FILE_BYTES} bytes")

    async def create_submission(self, session: AsyncSession, tenant: TenantContext, request: IntakeRequest) -> IntakeResponse:
        self.validate(request)
        method = request.ingestion_method or tenant.ingestion_method
        try:
            async with store_errors_as_transient():
                submission, files = await IntakeRepo(session).create_submission(
                    tenant.tenant_id, request.files, method, actor=tenant.actor
                )
                await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            logger.exception("Submission intake failed", extra={"tenant_id": str(tenant.tenant_id)})
            raise

        file_maps = []
        for f in files:
            upload_url = None
            if self.storage.configured:
                upload_url = await self.storage.presigned_put(f.storage_path, f.mime_type)
            file_maps.append(FileMap(file_id=f.id, filename=f.filename, storage_path=f.storage_path, upload_url=upload_url))

        logger.info(
            "Submission created",
            extra={"submission_id": str(submission.id), "tenant_id": str(tenant.tenant_id), "file_count": len(files)},
        )
        return IntakeResponse(submission_id=submission.id, file_maps=file_maps, created_at=submission.created_at)
