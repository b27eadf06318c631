"""Pydantic v2 schemas for dispute endpoints."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.schemas.task import ReleaseResponse


class DisputeCreate(BaseModel):
    reason: str = Field(..., min_length=1, max_length=5000)


class DisputeResolve(BaseModel):
    outcome: str = Field(..., pattern="^(worker|agent|rereview)$")


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    dispute_id: uuid.UUID
    task_id: uuid.UUID
    reason: str
    filed_by: uuid.UUID
    filed_against: uuid.UUID
    status: str
    created_at: datetime
    resolved_at: datetime | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class DisputeResolutionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    task_id: uuid.UUID
    outcome: str
    task_status: str
    refunded: bool
    release: ReleaseResponse | None

    @field_validator("outcome", "task_status", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)
