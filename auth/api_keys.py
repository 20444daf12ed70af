from __future__ import annotations

import hashlib
import hmac
import secrets
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ApiKey, utcnow

KEY_PREFIX_LENGTH = 12


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key() -> str:
    return f"dpk_{secrets.token_urlsafe(32)}"


class ApiKeyRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def issue(self, org_id: uuid.UUID, name: str) -> tuple[ApiKey, str]:
        raw_key = generate_api_key()
        key = ApiKey(org_id=org_id, name=name, key_prefix=raw_key[:KEY_PREFIX_LENGTH], key_hash=hash_api_key(raw_key))
        self._session.add(key)
        await self._session.flush()
        return key, raw_key

    async def list_for_org(self, org_id: uuid.UUID) -> list[ApiKey]:
        result = await self._session.execute(
            select(ApiKey).where(ApiKey.org_id == org_id).order_by(ApiKey.created_at.desc())
        )
        return list(result.scalars())

    async def authenticate(self, raw_key: str) -> Optional[ApiKey]:
        """
        Return the live key matching ``raw_key`` and stamp ``last_used_at``, or None.
        """
        if len(raw_key) <= KEY_PREFIX_LENGTH:
            return None
        result = await self._session.execute(select(ApiKey).where(ApiKey.key_prefix == raw_key[:KEY_PREFIX_LENGTH]))
        key = result.scalar_one_or_none()
        if key is None or key.revoked_at is not None:
            return None
        if not hmac.compare_digest(key.key_hash, hash_api_key(raw_key)):
            return None
        key.last_used_at = utcnow()
        await self._session.flush()
        return key

    async def revoke(self, org_id: uuid.UUID, key_id: uuid.UUID) -> Optional[ApiKey]:
        key = await self._session.get(ApiKey, key_id)
        if key is None or key.org_id != org_id:
            return None
        if key.revoked_at is None:
            key.revoked_at = utcnow()
            await self._session.flush()
        return key
