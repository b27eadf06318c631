"""Create pending_transactions, payouts, transactions and withdrawals tables.

Revision ID: 003
Revises: 002
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _user_fk() -> sa.ForeignKey:
    return sa.ForeignKey("users.user_id", ondelete="RESTRICT")


def _task_fk() -> sa.ForeignKey:
    return sa.ForeignKey("tasks.task_id", ondelete="RESTRICT")


def upgrade() -> None:
    op.create_table(
        "pending_transactions",
        sa.Column("pending_tx_id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), _user_fk(), nullable=False),
        sa.Column("task_id", sa.Uuid(), _task_fk(), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "available", "withdrawn", name="pendingtransactionstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("payout_method", sa.String(16), nullable=False),
        sa.Column("clears_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cleared_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("withdrawn_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("amount_cents > 0", name="ck_pending_transactions_amount_positive"),
    )
    op.create_index("ix_pending_transactions_user_id", "pending_transactions", ["user_id"])
    op.create_index("ix_pending_transactions_task_id", "pending_transactions", ["task_id"])
    op.create_index("ix_pending_transactions_status", "pending_transactions", ["status"])
    op.create_index("ix_pending_transactions_clears_at", "pending_transactions", ["clears_at"])

    op.create_table(
        "payouts",
        sa.Column("payout_id", sa.Uuid(), primary_key=True),
        sa.Column("task_id", sa.Uuid(), _task_fk(), nullable=False),
        sa.Column("human_id", sa.Uuid(), _user_fk(), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("fee_cents", sa.BigInteger(), nullable=False),
        sa.Column("payout_method", sa.String(16), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "available", "withdrawn", name="payoutstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("settlement_hash", sa.String(128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_payouts_task_id", "payouts", ["task_id"])

    op.create_table(
        "transactions",
        sa.Column("transaction_id", sa.Uuid(), primary_key=True),
        sa.Column("task_id", sa.Uuid(), _task_fk(), nullable=False),
        sa.Column("payer_id", sa.Uuid(), _user_fk(), nullable=False),
        sa.Column("payee_id", sa.Uuid(), _user_fk(), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("gross_cents", sa.BigInteger(), nullable=False),
        sa.Column("fee_cents", sa.BigInteger(), nullable=False),
        sa.Column("net_cents", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_transactions_task_id", "transactions", ["task_id"])

    op.create_table(
        "withdrawals",
        sa.Column("withdrawal_id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), _user_fk(), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("payout_method", sa.String(16), nullable=False),
        sa.Column("destination", sa.String(64), nullable=False),
        sa.Column("tx_hash", sa.String(128), nullable=True),
        sa.Column(
            "status",
            sa.Enum("completed", "failed", name="withdrawalstatus"),
            nullable=False,
            server_default="completed",
        ),
        sa.Column("transaction_ids", JSONB, nullable=False, server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_withdrawals_user_id", "withdrawals", ["user_id"])


def downgrade() -> None:
    op.drop_table("withdrawals")
    op.drop_table("transactions")
    op.drop_table("payouts")
    op.drop_table("pending_transactions")
    op.execute("DROP TYPE IF EXISTS withdrawalstatus")
    op.execute("DROP TYPE IF EXISTS payoutstatus")
    op.execute("DROP TYPE IF EXISTS pendingtransactionstatus")
