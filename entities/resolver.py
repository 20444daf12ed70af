from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from entities.company_repo import CompanyRepo
from entities.normalize import normalize_identifier, normalize_name
from settings.config import settings
from settings.errors import ValidationError

logger = logging.getLogger(__name__)


class MatchType(str, enum.Enum):
    IDENTIFIER = "identifier"
    NORMALIZED_NAME = "normalized_name"
    ALIAS = "alias"
    CREATED = "created"


@dataclass(frozen=True)
class ResolvedEntity:
    entity_id: uuid.UUID
    match: MatchType


@runtime_checkable
class EntityResolver(Protocol):
    """Maps an extracted company identity to the canonical business entity for a tenant."""

    async def resolve(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        legal_name: str,
        identifier: Optional[str] = None,
    ) -> ResolvedEntity:
        ...


class DeterministicEntityResolver:
    """
    Identifier, then normalised legal name, then alias, then create.

    The first hit wins; entities are never merged or deleted here.
    """

    def __init__(self, strip_legal_suffixes: Optional[bool] = None) -> None:
        self.strip_legal_suffixes = (
            settings.ENTITY_STRIP_LEGAL_SUFFIXES if strip_legal_suffixes is None else strip_legal_suffixes
        )

    def normalize(self, legal_name: str) -> str:
        return normalize_name(legal_name, strip_legal_suffixes=self.strip_legal_suffixes)

    async def resolve(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        legal_name: str,
        identifier: Optional[str] = None,
    ) -> ResolvedEntity:
        normalized = self.normalize(legal_name)
        if not normalized:
            raise ValidationError("Company legal name is empty after normalization")
        ident = normalize_identifier(identifier)

        resolved = await self._lookup(session, tenant_id, normalized, ident)
        if resolved is None:
            resolved = await self._create(session, tenant_id, legal_name.strip(), normalized, ident)

        logger.info(
            "Entity resolved",
            extra={"tenant_id": str(tenant_id), "entity_id": str(resolved.entity_id), "match": resolved.match.value},
        )
        return resolved

    async def _lookup(
        self, session: AsyncSession, tenant_id: uuid.UUID, normalized: str, ident: Optional[str]
    ) -> Optional[ResolvedEntity]:
        repo = CompanyRepo(session)
        if ident:
            company = await repo.find_by_identifier(tenant_id, ident)
            if company is not None:
                return ResolvedEntity(company.id, MatchType.IDENTIFIER)

        company = await repo.find_by_normalized_name(tenant_id, normalized)
        match = MatchType.NORMALIZED_NAME
        if company is None:
            company = await repo.find_by_alias(tenant_id, normalized)
            match = MatchType.ALIAS
        if company is None:
            return None

        if ident and company.identifier is None:
            # record the identifier so the next extraction matches on step one
            company.identifier = ident
            await session.flush()
        return ResolvedEntity(company.id, match)

    async def _create(
        self, session: AsyncSession, tenant_id: uuid.UUID, legal_name: str, normalized: str, ident: Optional[str]
    ) -> ResolvedEntity:
        try:
            async with session.begin_nested():
                company = await CompanyRepo(session).create(tenant_id, legal_name, normalized, ident)
            return ResolvedEntity(company.id, MatchType.CREATED)
        except IntegrityError:
            # a concurrent extraction created the same entity first
            resolved = await self._lookup(session, tenant_id, normalized, ident)
            if resolved is None:
                raise
            return resolved


def get_entity_resolver() -> EntityResolver:
    return DeterministicEntityResolver()
