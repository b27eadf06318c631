"""Settlement ledger models: clearing-window holdings, payouts, transactions, withdrawals."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Enum, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, JSONType


class PendingTransactionStatus(enum.Enum):
    PENDING = "pending"
    AVAILABLE = "available"
    WITHDRAWN = "withdrawn"


class PayoutStatus(enum.Enum):
    PENDING = "pending"
    AVAILABLE = "available"
    WITHDRAWN = "withdrawn"


class WithdrawalStatus(enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"


def _values(enum_cls: type[enum.Enum]) -> Enum:
    return Enum(enum_cls, values_callable=lambda x: [e.value for e in x])


class PendingTransaction(Base):
    """A worker's entitlement to funds that are not yet withdrawable.

    Created by the release step, promoted pending -> available only by the
    balance promoter sweep, and marked withdrawn by the withdrawal allocator.
    Rows are never deleted.
    """
    __tablename__ = "pending_transactions"
    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_pending_transactions_amount_positive"),
    )

    pending_tx_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    task_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tasks.task_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[PendingTransactionStatus] = mapped_column(
        _values(PendingTransactionStatus),
        nullable=False,
        default=PendingTransactionStatus.PENDING,
        index=True,
    )
    payout_method: Mapped[str] = mapped_column(String(16), nullable=False)
    clears_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    cleared_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    withdrawn_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class Payout(Base):
    """Append-only payout record. Only status and settlement_hash change."""
    __tablename__ = "payouts"

    payout_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    task_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tasks.task_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    human_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fee_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payout_method: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[PayoutStatus] = mapped_column(
        _values(PayoutStatus), nullable=False, default=PayoutStatus.PENDING,
    )
    settlement_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class LedgerTransaction(Base):
    """Append-only money-movement ledger. Never update or delete rows."""
    __tablename__ = "transactions"

    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    task_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tasks.task_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    payer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False
    )
    payee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    gross_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fee_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    net_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class Withdrawal(Base):
    __tablename__ = "withdrawals"

    withdrawal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payout_method: Mapped[str] = mapped_column(String(16), nullable=False)
    destination: Mapped[str] = mapped_column(String(64), nullable=False)
    tx_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[WithdrawalStatus] = mapped_column(
        _values(WithdrawalStatus), nullable=False, default=WithdrawalStatus.COMPLETED,
    )
    transaction_ids: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
