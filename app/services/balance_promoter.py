"""Clearing-window promotion sweep: pending -> available.

Runs every 15 minutes. A holding record becomes withdrawable once its
clears_at has passed. Each record is promoted in its own transaction, so a
failure on one row never blocks the rest of the batch, and a guarded update
makes overlapping sweeps harmless: the loser matches zero rows and skips.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.payment import PendingTransaction, PendingTransactionStatus, Payout, PayoutStatus
from app.models.task import Task, TaskStatus
from app.services.notifications import Notifier, notify

logger = logging.getLogger(__name__)


@dataclass
class PromotionSummary:
    candidates: int = 0
    promoted: int = 0
    skipped: int = 0
    failed: int = 0
    tasks_paid: int = 0


async def promote_pending_balances(
    session_factory: async_sessionmaker[AsyncSession],
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> PromotionSummary:
    now = now or datetime.now(UTC)
    summary = PromotionSummary()

    async with session_factory() as db:
        result = await db.execute(
            select(PendingTransaction.pending_tx_id)
            .where(
                PendingTransaction.status == PendingTransactionStatus.PENDING,
                PendingTransaction.clears_at < now,
            )
            .order_by(PendingTransaction.clears_at)
        )
        candidate_ids = list(result.scalars().all())

    summary.candidates = len(candidate_ids)
    for pending_tx_id in candidate_ids:
        try:
            async with session_factory() as db:
                promoted = await _promote_one(db, pending_tx_id, now)
        except Exception:
            logger.exception("Failed to promote pending transaction %s", pending_tx_id)
            summary.failed += 1
            continue

        if promoted is None:
            summary.skipped += 1
            continue
        summary.promoted += 1
        if promoted.task_paid:
            summary.tasks_paid += 1
        await notify(
            notifier, promoted.user_id, "payment_available", "Funds available",
            f"${promoted.amount_cents / 100:.2f} is now available to withdraw.",
            "/wallet",
        )

    if candidate_ids:
        logger.info(
            "Balance promoter: %d candidates, %d promoted, %d skipped, %d failed",
            summary.candidates, summary.promoted, summary.skipped, summary.failed,
        )
    return summary


@dataclass(frozen=True)
class _Promoted:
    user_id: uuid.UUID
    amount_cents: int
    task_paid: bool


async def _promote_one(db: AsyncSession, pending_tx_id: uuid.UUID, now: datetime) -> _Promoted | None:
    result = await db.execute(
        update(PendingTransaction)
        .where(
            PendingTransaction.pending_tx_id == pending_tx_id,
            PendingTransaction.status == PendingTransactionStatus.PENDING,
        )
        .values(status=PendingTransactionStatus.AVAILABLE, cleared_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        # Another sweep got there first
        return None

    row = (await db.execute(
        select(PendingTransaction.user_id, PendingTransaction.task_id, PendingTransaction.amount_cents)
        .where(PendingTransaction.pending_tx_id == pending_tx_id)
    )).one()

    await db.execute(
        update(Payout)
        .where(
            Payout.task_id == row.task_id,
            Payout.human_id == row.user_id,
            Payout.status == PayoutStatus.PENDING,
        )
        .values(status=PayoutStatus.AVAILABLE)
        .execution_options(synchronize_session=False)
    )
    paid = await db.execute(
        update(Task)
        .where(Task.task_id == row.task_id, Task.status == TaskStatus.APPROVED)
        .values(status=TaskStatus.PAID, paid_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return _Promoted(row.user_id, row.amount_cents, paid.rowcount == 1)
