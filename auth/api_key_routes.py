from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from auth.api_keys import ApiKeyRepo
from auth.schemas import ApiKeyCreate, ApiKeyIssued, ApiKeyRead
from auth.tenant import TenantContext
from db.postgres import get_async_session
from settings.deps import get_tenant_context
from settings.errors import NotFoundError, ValidationError


router = APIRouter(prefix="/auth/api-keys", tags=["auth"])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=ApiKeyIssued)
async def issue_api_key(
    payload: ApiKeyCreate,
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_async_session),
):
    if not payload.name.strip():
        raise ValidationError("API key name must not be empty")
    key, raw_key = await ApiKeyRepo(session).issue(tenant.tenant_id, payload.name.strip())
    await session.commit()
    return ApiKeyIssued(
        id=key.id, name=key.name, key_prefix=key.key_prefix, created_at=key.created_at, api_key=raw_key
    )


@router.get("", response_model=list[ApiKeyRead])
async def list_api_keys(
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_async_session),
):
    keys = await ApiKeyRepo(session).list_for_org(tenant.tenant_id)
    return [ApiKeyRead.model_validate(k, from_attributes=True) for k in keys]


@router.delete("/{key_id}", response_model=ApiKeyRead)
async def revoke_api_key(
    key_id: uuid.UUID,
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_async_session),
):
    key = await ApiKeyRepo(session).revoke(tenant.tenant_id, key_id)
    if key is None:
        raise NotFoundError("API key not found")
    await session.commit()
    return ApiKeyRead.model_validate(key, from_attributes=True)
