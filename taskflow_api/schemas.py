from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

from taskflow_api.models import TaskStatus


class TaskCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)

    class Config:
        str_strip_whitespace = True


class TaskRead(BaseModel):
    id: UUID
    name: str
    description: str
    status: TaskStatus
    progress: int = Field(ge=0, le=100)
    result: Optional[Any] = None
    error: Optional[str] = None
    retries: int = 0
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
        alias_generator = to_camel
        populate_by_name = True

    @field_validator("created_at", "updated_at")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        # SQLite hands back naive datetimes; everything is stored in UTC
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class HealthRead(BaseModel):
    status: str
    timestamp: datetime
