from __future__ import annotations

import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from db.models import Company, CompanyAlias


class CompanyRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, org_id: uuid.UUID, company_id: uuid.UUID) -> Optional[Company]:
        result = await self._session.execute(
            select(Company)
            .where(Company.id == company_id, Company.org_id == org_id)
            .options(selectinload(Company.aliases))
        )
        return result.scalar_one_or_none()

    async def list(self, org_id: uuid.UUID, limit: int = 100, offset: int = 0) -> list[Company]:
        result = await self._session.execute(
            select(Company)
            .where(Company.org_id == org_id)
            .order_by(Company.normalized_legal_name)
            .limit(limit)
            .offset(offset)
            .options(selectinload(Company.aliases))
        )
        return list(result.scalars())

    async def find_by_identifier(self, org_id: uuid.UUID, identifier: str) -> Optional[Company]:
        result = await self._session.execute(
            select(Company).where(Company.org_id == org_id, Company.identifier == identifier)
        )
        return result.scalar_one_or_none()

    async def find_by_normalized_name(self, org_id: uuid.UUID, normalized: str) -> Optional[Company]:
        result = await self._session.execute(
            select(Company).where(Company.org_id == org_id, Company.normalized_legal_name == normalized)
        )
        return result.scalar_one_or_none()

    async def find_by_alias(self, org_id: uuid.UUID, normalized: str) -> Optional[Company]:
        result = await self._session.execute(
            select(Company)
            .join(CompanyAlias, CompanyAlias.company_id == Company.id)
            .where(CompanyAlias.org_id == org_id, CompanyAlias.normalized_alias == normalized)
        )
        return result.scalar_one_or_none()

    async def find_alias(self, org_id: uuid.UUID, normalized: str) -> Optional[CompanyAlias]:
        result = await self._session.execute(
            select(CompanyAlias).where(CompanyAlias.org_id == org_id, CompanyAlias.normalized_alias == normalized)
        )
        return result.scalar_one_or_none()

    async def create(
        self, org_id: uuid.UUID, legal_name: str, normalized: str, identifier: Optional[str] = None
    ) -> Company:
        company = Company(org_id=org_id, legal_name=legal_name, normalized_legal_name=normalized, identifier=identifier)
        self._session.add(company)
        await self._session.flush()
        self._session.add(
            CompanyAlias(company_id=company.id, org_id=org_id, alias_name=legal_name, normalized_alias=normalized)
        )
        await self._session.flush()
        return company

    async def add_alias(self, company: Company, alias_name: str, normalized: str) -> CompanyAlias:
        alias = CompanyAlias(company_id=company.id, org_id=company.org_id, alias_name=alias_name, normalized_alias=normalized)
        self._session.add(alias)
        await self._session.flush()
        return alias
