from __future__ import annotations

import uuid
from typing import Optional

from fastapi_users_db_sqlalchemy import SQLAlchemyBaseUserTableUUID
from sqlalchemy import ForeignKey, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from db.models import Base as AppBase


class UserTable(SQLAlchemyBaseUserTableUUID, AppBase):
    __tablename__ = "users"

    # tenant the user acts for; NULL until an organization is attached
    org_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="SET NULL"), nullable=True, index=True
    )
