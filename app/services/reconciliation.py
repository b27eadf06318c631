"""Consistency checks over the settlement ledger.

The release step writes its rows in one transaction, so these checks should
come back empty. They exist to surface rows written before that guarantee
held, or by manual database edits.
"""

import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.payment import PendingTransaction, Payout
from app.models.task import EscrowStatus, Task

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    payouts_without_pending: list[uuid.UUID] = field(default_factory=list)
    released_tasks_without_payout: list[uuid.UUID] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.payouts_without_pending and not self.released_tasks_without_payout


async def find_payouts_without_pending_transaction(db: AsyncSession) -> list[uuid.UUID]:
    result = await db.execute(
        select(Payout.payout_id)
        .outerjoin(
            PendingTransaction,
            and_(
                PendingTransaction.task_id == Payout.task_id,
                PendingTransaction.user_id == Payout.human_id,
            ),
        )
        .where(PendingTransaction.pending_tx_id.is_(None))
        .order_by(Payout.created_at)
    )
    return list(result.scalars().all())


async def find_released_tasks_without_payout(db: AsyncSession) -> list[uuid.UUID]:
    result = await db.execute(
        select(Task.task_id)
        .outerjoin(Payout, Payout.task_id == Task.task_id)
        .where(Task.escrow_status == EscrowStatus.RELEASED, Payout.payout_id.is_(None))
        .order_by(Task.escrow_released_at)
    )
    return list(result.scalars().all())


async def reconcile_payouts(db: AsyncSession) -> ReconciliationReport:
    report = ReconciliationReport(
        payouts_without_pending=await find_payouts_without_pending_transaction(db),
        released_tasks_without_payout=await find_released_tasks_without_payout(db),
    )
    if report.clean:
        logger.info("Reconciliation clean")
    else:
        logger.warning(
            "Reconciliation found %d payouts without a holding record and "
            "%d released tasks without a payout",
            len(report.payouts_without_pending), len(report.released_tasks_without_payout),
        )
    return report
