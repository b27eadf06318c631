"""Release step of the clearing-window payment pipeline, plus wallet balances.

Approval releases escrow into a pending_transactions row that becomes
withdrawable only after the clearing window (48h by default). The release is
one database transaction: the guarded escrow flip, the holding record, the
payout and ledger rows and the stat bumps commit together or not at all.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.errors import PaymentError, TaskNotFoundError, UserNotFoundError
from app.models.escrow import EscrowAction
from app.models.payment import (
    LedgerTransaction,
    PendingTransaction,
    PendingTransactionStatus,
    Payout,
    PayoutStatus,
)
from app.models.task import EscrowStatus, Task
from app.models.user import User
from app.services.escrow import log_audit
from app.services.fees import calculate_platform_fee
from app.services.notifications import Notifier, notify
from app.services.reputation import increment_stat
from app.services.transfers import is_valid_evm_address

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PayoutDestination:
    method: str  # "usdc" or "stripe"
    address: str


def resolve_payout_destination(user: User) -> PayoutDestination | None:
    """A valid wallet wins; otherwise the worker's Stripe Connect account."""
    if is_valid_evm_address(user.wallet_address):
        return PayoutDestination("usdc", user.wallet_address)
    if user.stripe_account_id:
        return PayoutDestination("stripe", user.stripe_account_id)
    return None


@dataclass(frozen=True)
class ReleaseResult:
    task_id: uuid.UUID
    pending_transaction_id: uuid.UUID
    payout_id: uuid.UUID
    transaction_id: uuid.UUID
    gross_cents: int
    fee_cents: int
    net_cents: int
    payout_method: str
    clears_at: datetime


async def release_in_transaction(
    db: AsyncSession,
    task: Task,
    human_id: uuid.UUID,
    agent_id: uuid.UUID,
    now: datetime | None = None,
) -> ReleaseResult:
    """Write every row of a release into the caller's transaction. Does not commit.

    All preconditions are checked before the first write, so a rejected
    release leaves the session untouched.
    """
    if task.human_id is None or task.human_id != human_id:
        raise PaymentError("Payee is not the task's assigned worker", status_code=422)
    if task.agent_id != agent_id:
        raise PaymentError("Payer is not the task's agent", status_code=422)
    if task.escrow_status == EscrowStatus.RELEASED:
        raise PaymentError("Payment already released for this task")
    if task.escrow_status != EscrowStatus.DEPOSITED:
        current = task.escrow_status.value if task.escrow_status else "none"
        raise PaymentError(f"Escrow must be deposited before release, currently {current}")

    human = await db.get(User, human_id)
    if human is None:
        raise UserNotFoundError("Worker not found")
    destination = resolve_payout_destination(human)
    if destination is None:
        raise PaymentError(
            "Worker has no payout destination on file. Add a wallet address or bank account.",
            status_code=422,
        )

    breakdown = calculate_platform_fee(task.settlement_amount)
    if breakdown.net_cents <= 0:
        raise PaymentError("Nothing to release: net amount is zero", status_code=422)

    now = now or datetime.now(UTC)
    result = await db.execute(
        update(Task)
        .where(Task.task_id == task.task_id, Task.escrow_status == EscrowStatus.DEPOSITED)
        .values(escrow_status=EscrowStatus.RELEASED, escrow_released_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise PaymentError("Payment already released for this task")

    clears_at = now + settings.clearing_window
    pending = PendingTransaction(
        pending_tx_id=uuid.uuid4(),
        user_id=human_id,
        task_id=task.task_id,
        amount_cents=breakdown.net_cents,
        status=PendingTransactionStatus.PENDING,
        payout_method=destination.method,
        clears_at=clears_at,
        notes=f"Payment for task: {task.title}",
        created_at=now,
    )
    payout = Payout(
        payout_id=uuid.uuid4(),
        task_id=task.task_id,
        human_id=human_id,
        amount_cents=breakdown.net_cents,
        fee_cents=breakdown.platform_fee_cents,
        payout_method=destination.method,
        status=PayoutStatus.PENDING,
        created_at=now,
    )
    ledger = LedgerTransaction(
        transaction_id=uuid.uuid4(),
        task_id=task.task_id,
        payer_id=agent_id,
        payee_id=human_id,
        kind="task_payment",
        gross_cents=breakdown.escrow_cents,
        fee_cents=breakdown.platform_fee_cents,
        net_cents=breakdown.net_cents,
        created_at=now,
    )
    db.add_all([pending, payout, ledger])

    await increment_stat(db, human_id, "jobs_completed")
    await increment_stat(db, human_id, "total_tasks_completed")
    await increment_stat(db, agent_id, "total_paid_cents", breakdown.net_cents)
    await db.execute(
        update(User)
        .where(User.user_id.in_([human_id, agent_id]))
        .values(last_active_at=now)
        .execution_options(synchronize_session=False)
    )
    await log_audit(
        db, task.task_id, EscrowAction.RELEASED, breakdown.escrow_cents, agent_id,
        {"fee_cents": breakdown.platform_fee_cents, "net_cents": breakdown.net_cents},
    )
    await db.flush()

    return ReleaseResult(
        task_id=task.task_id,
        pending_transaction_id=pending.pending_tx_id,
        payout_id=payout.payout_id,
        transaction_id=ledger.transaction_id,
        gross_cents=breakdown.escrow_cents,
        fee_cents=breakdown.platform_fee_cents,
        net_cents=breakdown.net_cents,
        payout_method=destination.method,
        clears_at=clears_at,
    )


async def release_payment_to_pending(
    db: AsyncSession,
    task_id: uuid.UUID,
    human_id: uuid.UUID,
    agent_id: uuid.UUID,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> ReleaseResult:
    """Release a task's escrow into the worker's clearing-window balance.

    Retrying after a successful release raises PaymentError; the worker is
    never credited twice.
    """
    task = await db.get(Task, task_id, populate_existing=True)
    if task is None:
        raise TaskNotFoundError()

    try:
        release = await release_in_transaction(db, task, human_id, agent_id, now)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Released task %s: %d cents net (%d fee) to %s, clears %s",
        task_id, release.net_cents, release.fee_cents, human_id, release.clears_at.isoformat(),
    )
    await notify_release(notifier, task, release)
    return release


async def notify_release(notifier: Notifier | None, task: Task, release: ReleaseResult) -> None:
    await notify(
        notifier, task.human_id, "payment_released", "Payment released",
        f"${release.net_cents / 100:.2f} for '{task.title}' will be available to withdraw "
        f"in {settings.clearing_window_hours} hours.",
        "/wallet",
    )


@dataclass
class WalletBalance:
    user_id: uuid.UUID
    pending_cents: int = 0
    available_cents: int = 0
    withdrawn_cents: int = 0
    transactions: list[PendingTransaction] = field(default_factory=list)

    @property
    def total_cents(self) -> int:
        return self.pending_cents + self.available_cents


async def get_wallet_balance(db: AsyncSession, user_id: uuid.UUID) -> WalletBalance:
    result = await db.execute(
        select(PendingTransaction.status, func.coalesce(func.sum(PendingTransaction.amount_cents), 0))
        .where(PendingTransaction.user_id == user_id)
        .group_by(PendingTransaction.status)
    )
    totals = {status: int(amount) for status, amount in result.all()}

    rows = await db.execute(
        select(PendingTransaction)
        .where(PendingTransaction.user_id == user_id)
        .order_by(PendingTransaction.created_at.desc())
    )
    return WalletBalance(
        user_id=user_id,
        pending_cents=totals.get(PendingTransactionStatus.PENDING, 0),
        available_cents=totals.get(PendingTransactionStatus.AVAILABLE, 0),
        withdrawn_cents=totals.get(PendingTransactionStatus.WITHDRAWN, 0),
        transactions=list(rows.scalars().all()),
    )
