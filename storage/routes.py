from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from auth.tenant import TenantContext
from db.postgres import get_async_session
from files.file_repo import FileRepo
from settings.config import settings
from settings.deps import get_tenant_context
from settings.errors import NotFoundError, PipelineError
from storage.s3_client import S3Client, get_s3_client


router = APIRouter(prefix="/storage", tags=["storage"])


@router.get("/files/{file_id}/download-url")
async def original_pdf_url(
    file_id: uuid.UUID,
    session: AsyncSession = Depends(get_async_session),
    tenant: TenantContext = Depends(get_tenant_context),
    storage: S3Client = Depends(get_s3_client),
):
    file = await FileRepo(session).get_for_tenant(tenant.tenant_id, file_id)
    if file is None:
        raise NotFoundError("File not found")
    if not storage.configured:
        raise PipelineError("S3 bucket not configured", status_code=503)
    url = await storage.presigned_get(file.storage_path)
    return {"url": url, "expires_in": settings.DOWNLOAD_URL_EXPIRES_SECONDS}
