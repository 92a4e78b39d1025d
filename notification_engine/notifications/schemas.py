"""Request bodies for the notification API."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, EmailStr, Field

from .models import ScheduleType, TargetType


class FieldChange(BaseModel):
    field: str = Field(..., min_length=1, max_length=100)
    old_value: Any = None
    new_value: Any = None


class CompletionRequest(BaseModel):
    user_id: int
    workstream_id: int


class UpdateRequest(BaseModel):
    target_id: int
    target_type: TargetType
    changes: list[FieldChange] = Field(default_factory=list, max_length=50)


class ScheduleRequest(BaseModel):
    notification_type: ScheduleType
    target_id: str = Field(..., min_length=1, max_length=36)
    target_type: TargetType
    trigger_time: datetime
    payload: dict[str, Any] = Field(default_factory=dict)


class TestEmailRequest(BaseModel):
    email: EmailStr
