import uuid
from typing import Optional
import logging

from fastapi import Depends, Request
from fastapi_users import BaseUserManager, UUIDIDMixin
from fastapi_users_db_sqlalchemy import SQLAlchemyUserDatabase

from db.models import Organization
from settings.config import settings
from .sqlalchemy_db import get_user_db
from .tables import UserTable

logger = logging.getLogger(__name__)


class UserManager(UUIDIDMixin, BaseUserManager[UserTable, uuid.UUID]):
    reset_password_token_secret = settings.ENV_RESET_PASSWORD_TOKEN_SECRET
    verification_token_secret = settings.ENV_VERIFICATION_TOKEN_SECRET

    async def create(self, user_create, safe: bool = False, request: Optional[Request] = None) -> UserTable:
        organization_name = getattr(user_create, "organization_name", None)
        user = await super().create(user_create, safe=safe, request=request)
        if user.org_id is None:
            # every self-registered user gets an organization of their own
            session = self.user_db.session
            org = Organization(name=organization_name or user.email)
            session.add(org)
            await session.flush()
            user = await self.user_db.update(user, {"org_id": org.id})
        return user

    async def on_after_register(self, user: UserTable, request: Optional[Request] = None):
        logger.info(f"User {user.email} has registered for organization {user.org_id}.")


async def get_user_manager(user_db: SQLAlchemyUserDatabase = Depends(get_user_db)) -> UserManager:
    yield UserManager(user_db)
