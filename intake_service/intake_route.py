from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from auth.tenant import TenantContext
from db.postgres import get_async_session
from intake_service.intake_service import IntakeService
from intake_service.models import IntakeRequest, IntakeResponse
from settings.deps import get_tenant_context


router = APIRouter(prefix="/submissions", tags=["intake"])


def get_intake_service() -> IntakeService:
    return IntakeService()


@router.post("", status_code=status.HTTP_201_CREATED, response_model=IntakeResponse)
async def create_submission(
    payload: IntakeRequest,
    session: AsyncSession = Depends(get_async_session),
    tenant: TenantContext = Depends(get_tenant_context),
    service: IntakeService = Depends(get_intake_service),
):
    return await service.create_submission(session, tenant, payload)
