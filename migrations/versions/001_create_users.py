"""Create users table.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_COUNTERS = (
    "total_tasks_completed",
    "jobs_completed",
    "total_tasks_accepted",
    "total_rejections",
    "total_disputes_filed",
    "total_disputes_lost",
    "total_cancellations",
    "total_tasks_posted",
)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.Uuid(), primary_key=True),
        sa.Column("user_type", sa.Enum("human", "agent", name="usertype"), nullable=False, server_default="human"),
        sa.Column("display_name", sa.String(128), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("wallet_address", sa.String(42), nullable=True),
        sa.Column("stripe_account_id", sa.String(64), nullable=True),
        sa.Column("stripe_customer_id", sa.String(64), nullable=True),
        *[sa.Column(name, sa.Integer(), nullable=False, server_default="0") for name in _COUNTERS],
        sa.Column("total_paid_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("last_active_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("users")
    op.execute("DROP TYPE IF EXISTS usertype")
