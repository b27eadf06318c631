"""Pydantic v2 schemas for task lifecycle endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _enum_value(v: object) -> object:
    return v.value if hasattr(v, "value") else v


class TaskCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=256)
    description: str | None = Field(None, max_length=10_000)
    budget: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    payment_method: str = Field("stripe", pattern="^(stripe|usdc)$")


class TaskAssign(BaseModel):
    human_id: uuid.UUID
    deposit_tx_hash: str | None = Field(None, pattern="^0x[0-9a-fA-F]{64}$")


class RevisionRequest(BaseModel):
    feedback: str | None = Field(None, max_length=5000)


class TaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    task_id: uuid.UUID
    title: str
    description: str | None
    agent_id: uuid.UUID
    human_id: uuid.UUID | None
    status: str
    escrow_status: str | None
    payment_method: str
    budget: Decimal
    escrow_amount: Decimal | None
    revision_count: int
    auth_expires_at: datetime | None
    assigned_at: datetime | None
    work_started_at: datetime | None
    proof_submitted_at: datetime | None
    approved_at: datetime | None
    paid_at: datetime | None
    cancelled_at: datetime | None
    created_at: datetime

    @field_validator("status", "escrow_status", "payment_method", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> object:
        return _enum_value(v)


class ReleaseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    task_id: uuid.UUID
    pending_transaction_id: uuid.UUID
    payout_id: uuid.UUID
    gross_cents: int
    fee_cents: int
    net_cents: int
    payout_method: str
    clears_at: datetime
