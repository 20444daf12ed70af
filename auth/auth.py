from __future__ import annotations

import uuid
from typing import Optional

from fastapi_users import FastAPIUsers
from fastapi_users.authentication import AuthenticationBackend, BearerTransport, JWTStrategy
from fastapi import Depends

from settings.config import settings
from .tables import UserTable
from .user_manager import get_user_manager


bearer_transport = BearerTransport(tokenUrl="/auth/jwt/login")


def get_jwt_strategy() -> JWTStrategy:
    return JWTStrategy(secret=settings.ENV_SECRET, lifetime_seconds=60 * 60 * 24)


auth_backend = AuthenticationBackend(
    name="jwt",
    transport=bearer_transport,
    get_strategy=get_jwt_strategy,
)


fastapi_users = FastAPIUsers[UserTable, uuid.UUID](
    get_user_manager,
    [auth_backend],
)


_current_active_user = fastapi_users.current_user(active=True)
# API-key callers carry no bearer token, so the session user is optional at the tenant seam
_optional_active_user = fastapi_users.current_user(active=True, optional=True)


async def get_current_active_user(user: UserTable = Depends(_current_active_user)) -> UserTable:
    return user


async def get_optional_active_user(user: Optional[UserTable] = Depends(_optional_active_user)) -> Optional[UserTable]:
    return user
