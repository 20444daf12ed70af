from __future__ import annotations

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from db.models import IngestionMethod


class FileDescriptor(BaseModel):
    name: str
    size: int
    mime_type: str

    @field_validator("name", "mime_type", mode="before")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("mime_type")
    @classmethod
    def _lower_mime(cls, v: str) -> str:
        # "application/PDF; charset=binary" -> "application/pdf"
        return v.split(";", 1)[0].strip().lower()


class IntakeRequest(BaseModel):
    files: List[FileDescriptor] = Field(default_factory=list)
    ingestion_method: Optional[IngestionMethod] = None


class FileMap(BaseModel):
    file_id: uuid.UUID
    filename: str
    storage_path: str
    upload_url: Optional[str] = None


class IntakeResponse(BaseModel):
    submission_id: uuid.UUID
    file_maps: List[FileMap]
    created_at: datetime
