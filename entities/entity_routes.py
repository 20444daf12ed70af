from __future__ import annotations

import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from auth.tenant import TenantContext
from db.postgres import get_async_session
from entities.company_repo import CompanyRepo
from entities.normalize import normalize_name
from settings.config import settings
from settings.deps import get_tenant_context
from settings.errors import ConflictError, NotFoundError, ValidationError


router = APIRouter(prefix="/companies", tags=["companies"])


class AliasOut(BaseModel):
    id: uuid.UUID
    alias_name: str
    normalized_alias: str


class CompanyOut(BaseModel):
    id: uuid.UUID
    legal_name: str
    normalized_legal_name: str
    identifier: Optional[str] = None
    created_at: datetime
    aliases: List[AliasOut] = []


class AliasIn(BaseModel):
    alias_name: str


@router.get("", response_model=List[CompanyOut])
async def list_companies(
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_async_session),
):
    companies = await CompanyRepo(session).list(tenant.tenant_id, limit=limit, offset=offset)
    return [CompanyOut.model_validate(c, from_attributes=True) for c in companies]


@router.get("/{company_id}", response_model=CompanyOut)
async def get_company(
    company_id: uuid.UUID,
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_async_session),
):
    company = await CompanyRepo(session).get(tenant.tenant_id, company_id)
    if company is None:
        raise NotFoundError("Company not found")
    return CompanyOut.model_validate(company, from_attributes=True)


@router.post("/{company_id}/aliases", status_code=status.HTTP_201_CREATED, response_model=AliasOut)
async def add_alias(
    company_id: uuid.UUID,
    payload: AliasIn,
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_async_session),
):
    repo = CompanyRepo(session)
    company = await repo.get(tenant.tenant_id, company_id)
    if company is None:
        raise NotFoundError("Company not found")
    normalized = normalize_name(payload.alias_name, strip_legal_suffixes=settings.ENTITY_STRIP_LEGAL_SUFFIXES)
    if not normalized:
        raise ValidationError("Alias is empty after normalization")

    existing = await repo.find_alias(tenant.tenant_id, normalized)
    if existing is not None:
        if existing.company_id != company.id:
            raise ConflictError("Alias already belongs to another company")
        return AliasOut.model_validate(existing, from_attributes=True)

    alias = await repo.add_alias(company, payload.alias_name.strip(), normalized)
    await session.commit()
    return AliasOut.model_validate(alias, from_attributes=True)
