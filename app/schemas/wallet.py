"""Pydantic v2 schemas for wallet endpoints."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PendingTransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    pending_tx_id: uuid.UUID
    task_id: uuid.UUID
    amount_cents: int
    status: str
    payout_method: str
    clears_at: datetime
    cleared_at: datetime | None
    withdrawn_at: datetime | None
    created_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return v.value if hasattr(v, "value") else str(v)


class WalletBalanceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: uuid.UUID
    pending_cents: int
    available_cents: int
    withdrawn_cents: int
    total_cents: int
    transactions: list[PendingTransactionResponse]


class WithdrawalCreateRequest(BaseModel):
    # Omit to withdraw the full available balance
    amount_cents: int | None = Field(None, gt=0, le=10_000_000)


class WithdrawalResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    withdrawal_id: uuid.UUID
    requested_cents: int
    amount_withdrawn_cents: int
    payout_method: str
    destination: str
    tx_hash: str | None
    transaction_ids: list[uuid.UUID]
    unreconciled_transaction_ids: list[uuid.UUID]


class WithdrawalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    withdrawal_id: uuid.UUID
    amount_cents: int
    payout_method: str
    destination: str
    tx_hash: str | None
    status: str
    transaction_ids: list[uuid.UUID]
    created_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return v.value if hasattr(v, "value") else str(v)
