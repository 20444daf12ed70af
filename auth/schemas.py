from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from fastapi_users import schemas
from pydantic import BaseModel


class UserRead(schemas.BaseUser[uuid.UUID]):
    org_id: Optional[uuid.UUID] = None


class UserCreate(schemas.BaseUserCreate):
    organization_name: Optional[str] = None

    # not a user column; the user manager turns it into an Organization
    def create_update_dict(self):
        data = super().create_update_dict()
        data.pop("organization_name", None)
        return data

    def create_update_dict_superuser(self):
        data = super().create_update_dict_superuser()
        data.pop("organization_name", None)
        return data


class UserUpdate(schemas.BaseUserUpdate):
    pass


class ApiKeyCreate(BaseModel):
    name: str


class ApiKeyRead(BaseModel):
    id: uuid.UUID
    name: str
    key_prefix: str
    created_at: datetime
    last_used_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None


class ApiKeyIssued(ApiKeyRead):
    # plaintext key, only ever returned once
    api_key: str
