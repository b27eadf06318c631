"""Escrow audit log model."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import BigInteger, DateTime, Enum, ForeignKey, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, JSONType


class EscrowAction(enum.Enum):
    AUTHORIZED = "authorized"
    RENEWED = "renewed"
    RENEWAL_FAILED = "renewal_failed"
    DEPOSITED = "deposited"
    CAPTURED = "captured"
    RELEASED = "released"
    REFUNDED = "refunded"
    AUTHORIZATION_LAPSED = "authorization_lapsed"


class EscrowAuditLog(Base):
    """Append-only audit log. Never update or delete rows."""
    __tablename__ = "escrow_audit_log"

    escrow_audit_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    task_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tasks.task_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    action: Mapped[EscrowAction] = mapped_column(
        Enum(EscrowAction, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    actor_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
