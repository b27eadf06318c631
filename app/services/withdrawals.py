"""Withdrawal allocator: FIFO whole-record selection and external transfer.

A withdrawal drains ``available`` holding records oldest-cleared first.
Records are never split: a record is taken whole if it fits in what is left
of the requested amount, otherwise it is skipped and the walk continues with
the next one. The transfer goes out before anything is marked, so a failed
transfer leaves every record untouched.
"""

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol, TypeVar

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import UserNotFoundError, WithdrawalError
from app.models.payment import (
    PendingTransaction,
    PendingTransactionStatus,
    Payout,
    PayoutStatus,
    Withdrawal,
    WithdrawalStatus,
)
from app.models.user import User
from app.services.notifications import Notifier, notify
from app.services.payments import resolve_payout_destination
from app.services.transfers import TransferClient, get_transfer_client

logger = logging.getLogger(__name__)


class _HasAmount(Protocol):
    amount_cents: int


RowT = TypeVar("RowT", bound=_HasAmount)


def select_fifo_transactions(rows: Sequence[RowT], amount_cents: int) -> list[RowT]:
    """Pick whole records, in the given order, whose sum stays within amount_cents.

    ``rows`` must already be ordered oldest-cleared first. A record that does
    not fit is skipped; later (possibly smaller) records are still considered.
    """
    selected: list[RowT] = []
    remaining = amount_cents
    for row in rows:
        if row.amount_cents <= remaining:
            selected.append(row)
            remaining -= row.amount_cents
        if remaining == 0:
            break
    return selected


@dataclass
class WithdrawalResult:
    withdrawal_id: uuid.UUID
    requested_cents: int
    amount_withdrawn_cents: int
    payout_method: str
    destination: str
    tx_hash: str | None
    transaction_ids: list[uuid.UUID] = field(default_factory=list)
    unreconciled_transaction_ids: list[uuid.UUID] = field(default_factory=list)


async def _available_rows(
    db: AsyncSession, user_id: uuid.UUID, payout_method: str,
) -> list[PendingTransaction]:
    """Cleared records earned under the given payout method, oldest first."""
    result = await db.execute(
        select(PendingTransaction)
        .where(
            PendingTransaction.user_id == user_id,
            PendingTransaction.payout_method == payout_method,
            PendingTransaction.status == PendingTransactionStatus.AVAILABLE,
        )
        .order_by(PendingTransaction.cleared_at, PendingTransaction.created_at)
    )
    return list(result.scalars().all())


async def process_withdrawal(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount_cents: int | None = None,
    transfer_client: TransferClient | None = None,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> WithdrawalResult:
    """Withdraw available funds to the user's payout destination.

    ``amount_cents=None`` withdraws the full available balance. Every check
    runs before the transfer; nothing is written unless the transfer succeeds.
    """
    if amount_cents is not None and (
        isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0
    ):
        raise WithdrawalError("Withdrawal amount must be a positive number of cents")

    user = await db.get(User, user_id)
    if user is None:
        raise UserNotFoundError()

    destination = resolve_payout_destination(user)
    if destination is None:
        raise WithdrawalError("No payout destination on file. Add a wallet address or bank account.")
    client = transfer_client or get_transfer_client(destination.method)
    if not client.is_valid_address(destination.address):
        raise WithdrawalError(f"Invalid payout destination: {destination.address}")

    rows = await _available_rows(db, user_id, destination.method)
    available = sum(row.amount_cents for row in rows)
    if available == 0:
        raise WithdrawalError("No available balance to withdraw")

    requested = available if amount_cents is None else amount_cents
    if requested > available:
        raise WithdrawalError(
            f"Insufficient available balance: {available} cents available, {requested} requested"
        )

    selected = select_fifo_transactions(rows, requested)
    if not selected:
        raise WithdrawalError(
            "No single available payment fits within the requested amount. "
            "Request a larger amount or withdraw your full balance."
        )
    total = sum(row.amount_cents for row in selected)
    selected_ids = [row.pending_tx_id for row in selected]

    transfer = await client.send_transfer(destination.address, total)
    if not transfer.success:
        logger.error(
            "Withdrawal transfer for user %s failed (%d cents via %s): %s",
            user_id, total, destination.method, transfer.error,
        )
        raise WithdrawalError(
            f"Transfer failed: {transfer.error}. No funds were moved; please try again.",
            status_code=502,
        )

    now = now or datetime.now(UTC)
    unreconciled: list[uuid.UUID] = []
    for row in selected:
        result = await db.execute(
            update(PendingTransaction)
            .where(
                PendingTransaction.pending_tx_id == row.pending_tx_id,
                PendingTransaction.status == PendingTransactionStatus.AVAILABLE,
            )
            .values(status=PendingTransactionStatus.WITHDRAWN, withdrawn_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(
                "Pending transaction %s was no longer available after transfer %s",
                row.pending_tx_id, transfer.tx_hash,
            )
            unreconciled.append(row.pending_tx_id)

    await db.execute(
        update(Payout)
        .where(
            Payout.human_id == user_id,
            Payout.task_id.in_([row.task_id for row in selected]),
            Payout.status == PayoutStatus.AVAILABLE,
        )
        .values(status=PayoutStatus.WITHDRAWN, settlement_hash=transfer.tx_hash)
        .execution_options(synchronize_session=False)
    )

    withdrawal = Withdrawal(
        withdrawal_id=uuid.uuid4(),
        user_id=user_id,
        amount_cents=total,
        payout_method=destination.method,
        destination=destination.address,
        tx_hash=transfer.tx_hash,
        status=WithdrawalStatus.COMPLETED,
        transaction_ids=[str(i) for i in selected_ids],
        created_at=now,
    )
    db.add(withdrawal)
    try:
        await db.commit()
    except Exception:
        logger.critical(
            "Transfer %s for user %s (%d cents) succeeded but recording it failed",
            transfer.tx_hash, user_id, total,
        )
        raise

    logger.info(
        "Withdrawal %s: %d cents to %s via %s (tx %s)",
        withdrawal.withdrawal_id, total, destination.address, destination.method, transfer.tx_hash,
    )
    await notify(
        notifier, user_id, "withdrawal_completed", "Withdrawal sent",
        f"${total / 100:.2f} was sent to your {destination.method} payout destination.",
        "/wallet",
    )
    return WithdrawalResult(
        withdrawal_id=withdrawal.withdrawal_id,
        requested_cents=requested,
        amount_withdrawn_cents=total,
        payout_method=destination.method,
        destination=destination.address,
        tx_hash=transfer.tx_hash,
        transaction_ids=selected_ids,
        unreconciled_transaction_ids=unreconciled,
    )


async def get_withdrawal_history(
    db: AsyncSession, user_id: uuid.UUID, limit: int = 50
) -> list[Withdrawal]:
    result = await db.execute(
        select(Withdrawal)
        .where(Withdrawal.user_id == user_id)
        .order_by(Withdrawal.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
