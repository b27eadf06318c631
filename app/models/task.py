"""Task SQLAlchemy model: the aggregate root of the settlement core."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class TaskStatus(enum.Enum):
    OPEN = "open"
    PENDING_ACCEPTANCE = "pending_acceptance"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    DISPUTED = "disputed"
    PAID = "paid"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class EscrowStatus(enum.Enum):
    """Tracked alongside TaskStatus. NULL means no escrow (legacy tasks)."""
    AUTHORIZED = "authorized"
    DEPOSITED = "deposited"
    RELEASED = "released"
    REFUNDED = "refunded"


class PaymentMethod(enum.Enum):
    STRIPE = "stripe"
    USDC = "usdc"


# Valid state transitions.
# open -> pending_acceptance is the card path (worker must accept the offer);
# open -> assigned is the on-chain/legacy path. X -> open from assigned or
# in_progress is a worker withdrawal: the listing reopens instead of dying.
VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.OPEN: {
        TaskStatus.PENDING_ACCEPTANCE, TaskStatus.ASSIGNED,
        TaskStatus.EXPIRED, TaskStatus.CANCELLED,
    },
    TaskStatus.PENDING_ACCEPTANCE: {TaskStatus.ASSIGNED, TaskStatus.OPEN, TaskStatus.CANCELLED},
    TaskStatus.ASSIGNED: {TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED, TaskStatus.OPEN},
    TaskStatus.IN_PROGRESS: {TaskStatus.PENDING_REVIEW, TaskStatus.DISPUTED, TaskStatus.OPEN},
    TaskStatus.PENDING_REVIEW: {TaskStatus.APPROVED, TaskStatus.IN_PROGRESS, TaskStatus.DISPUTED},
    TaskStatus.APPROVED: {TaskStatus.PAID},
    TaskStatus.DISPUTED: {
        TaskStatus.APPROVED, TaskStatus.CANCELLED,
        TaskStatus.PAID, TaskStatus.PENDING_REVIEW,
    },
    TaskStatus.PAID: set(),
    TaskStatus.EXPIRED: set(),
    TaskStatus.CANCELLED: set(),
}

VALID_ESCROW_TRANSITIONS: dict[EscrowStatus | None, set[EscrowStatus]] = {
    None: {EscrowStatus.AUTHORIZED, EscrowStatus.DEPOSITED},
    EscrowStatus.AUTHORIZED: {EscrowStatus.DEPOSITED, EscrowStatus.REFUNDED},
    EscrowStatus.DEPOSITED: {EscrowStatus.RELEASED, EscrowStatus.REFUNDED},
    EscrowStatus.RELEASED: set(),
    EscrowStatus.REFUNDED: set(),
}


def _enum_column(enum_cls: type[enum.Enum]) -> Enum:
    return Enum(enum_cls, values_callable=lambda x: [e.value for e in x])


class Task(Base):
    __tablename__ = "tasks"

    task_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    agent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False
    )
    human_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True
    )
    status: Mapped[TaskStatus] = mapped_column(
        _enum_column(TaskStatus), nullable=False, default=TaskStatus.OPEN, index=True,
    )
    escrow_status: Mapped[EscrowStatus | None] = mapped_column(
        _enum_column(EscrowStatus), nullable=True,
    )
    payment_method: Mapped[PaymentMethod] = mapped_column(
        _enum_column(PaymentMethod), nullable=False, default=PaymentMethod.STRIPE,
    )
    budget: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    escrow_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    revision_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Card authorization hold
    payment_intent_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    auth_authorized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    auth_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True,
    )
    auth_renewal_failed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    # On-chain deposit
    deposit_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)

    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    work_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    proof_submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    escrow_deposited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    escrow_released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    escrow_refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    @property
    def settlement_amount(self) -> Decimal | None:
        """Amount the release step settles: escrow if recorded, else the budget."""
        return self.escrow_amount if self.escrow_amount is not None else self.budget
