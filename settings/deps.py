from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from auth.auth import get_optional_active_user
from auth.tables import UserTable
from auth.tenant import TenantContext, resolve_tenant
from db.postgres import get_async_session


async def get_tenant_context(
	x_api_key: Optional[str] = Header(default=None),
	user: Optional[UserTable] = Depends(get_optional_active_user),
	session: AsyncSession = Depends(get_async_session),
) -> TenantContext:
	"""
	Resolve the tenant for the request from an `X-API-Key` header or the bearer-token user.
	Every tenant-scoped route depends on this; tests override it directly.
	"""
	return await resolve_tenant(session, user=user, api_key=x_api_key)
