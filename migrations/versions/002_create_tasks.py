"""Create tasks table.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_TIMESTAMPS = (
    "auth_authorized_at",
    "auth_expires_at",
    "auth_renewal_failed_at",
    "assigned_at",
    "work_started_at",
    "proof_submitted_at",
    "approved_at",
    "paid_at",
    "cancelled_at",
    "escrow_deposited_at",
    "escrow_released_at",
    "escrow_refunded_at",
)


def upgrade() -> None:
    op.create_table(
        "tasks",
        sa.Column("task_id", sa.Uuid(), primary_key=True),
        sa.Column("title", sa.String(256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("agent_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("human_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "open", "pending_acceptance", "assigned", "in_progress", "pending_review",
                "approved", "disputed", "paid", "expired", "cancelled",
                name="taskstatus",
            ),
            nullable=False,
            server_default="open",
        ),
        sa.Column(
            "escrow_status",
            sa.Enum("authorized", "deposited", "released", "refunded", name="escrowstatus"),
            nullable=True,
        ),
        sa.Column(
            "payment_method",
            sa.Enum("stripe", "usdc", name="paymentmethod"),
            nullable=False,
            server_default="stripe",
        ),
        sa.Column("budget", sa.Numeric(12, 2), nullable=False),
        sa.Column("escrow_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("revision_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payment_intent_id", sa.String(64), nullable=True),
        sa.Column("deposit_tx_hash", sa.String(66), nullable=True),
        *[sa.Column(name, sa.DateTime(timezone=True), nullable=True) for name in _TIMESTAMPS],
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("revision_count >= 0", name="ck_tasks_revision_count_nonnegative"),
    )
    op.create_index("ix_tasks_status", "tasks", ["status"])
    op.create_index("ix_tasks_auth_expires_at", "tasks", ["auth_expires_at"])
    op.create_index("ix_tasks_agent_id", "tasks", ["agent_id"])
    op.create_index("ix_tasks_human_id", "tasks", ["human_id"])


def downgrade() -> None:
    op.drop_table("tasks")
    op.execute("DROP TYPE IF EXISTS taskstatus")
    op.execute("DROP TYPE IF EXISTS escrowstatus")
    op.execute("DROP TYPE IF EXISTS paymentmethod")
