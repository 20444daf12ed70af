from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import status
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import IngestionMethod
from settings.errors import AuthorizationError
from .api_keys import ApiKeyRepo
from .tables import UserTable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantContext:
    tenant_id: uuid.UUID
    user_id: Optional[uuid.UUID] = None
    api_key_id: Optional[uuid.UUID] = None
    ingestion_method: IngestionMethod = IngestionMethod.DASHBOARD

    @property
    def actor(self) -> str:
        if self.user_id is not None:
            return f"user:{self.user_id}"
        return f"api_key:{self.api_key_id}"


async def resolve_tenant(
    session: AsyncSession,
    user: Optional[UserTable] = None,
    api_key: Optional[str] = None,
) -> TenantContext:
    """
    Map the caller's credentials to the organization it acts for.

    An API key wins over a session user. No credential at all is a 401; a valid user
    that is not attached to any organization is a 403.
    """
    if api_key:
        key = await ApiKeyRepo(session).authenticate(api_key)
        if key is None:
            logger.warning("Rejected API key", extra={"key_prefix": api_key[:12]})
            raise AuthorizationError("Invalid or revoked API key")
        await session.commit()
        return TenantContext(tenant_id=key.org_id, api_key_id=key.id, ingestion_method=IngestionMethod.API)

    if user is None:
        raise AuthorizationError("Missing credentials")
    if user.org_id is None:
        raise AuthorizationError("No organization is associated with this user", status_code=status.HTTP_403_FORBIDDEN)
    return TenantContext(tenant_id=user.org_id, user_id=user.id)
