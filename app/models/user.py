"""User SQLAlchemy model: task posters (agents) and workers (humans)."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import BigInteger, DateTime, Enum, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class UserType(enum.Enum):
    HUMAN = "human"
    AGENT = "agent"


# Counters that reputation.increment_stat is allowed to touch
REPUTATION_STATS = frozenset({
    "total_tasks_completed",
    "jobs_completed",
    "total_tasks_accepted",
    "total_rejections",
    "total_disputes_filed",
    "total_disputes_lost",
    "total_cancellations",
    "total_tasks_posted",
    "total_paid_cents",
})


class User(Base):
    __tablename__ = "users"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    user_type: Mapped[UserType] = mapped_column(
        Enum(UserType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=UserType.HUMAN,
    )
    display_name: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    # Payout destinations (workers) and card customer (agents)
    wallet_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    stripe_account_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    total_tasks_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    jobs_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tasks_accepted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_rejections: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_disputes_filed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_disputes_lost: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_cancellations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tasks_posted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_paid_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    last_active_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
