"""Escrow business logic: authorize, deposit, capture, refund, hold renewal.

Every escrow write is a guarded UPDATE on the expected prior escrow status,
so two writers racing on the same task cannot both succeed. None of the
single-task operations commit; the caller owns the unit of work. The renewal
sweep opens its own session per task.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.errors import EscrowError, TaskConflictError
from app.models.escrow import EscrowAction, EscrowAuditLog
from app.models.task import (
    VALID_ESCROW_TRANSITIONS,
    EscrowStatus,
    PaymentMethod,
    Task,
    TaskStatus,
)
from app.models.user import User
from app.services.card_processor import CardProcessor, CardProcessorError, get_card_processor
from app.services.fees import to_cents
from app.services.notifications import Notifier, notify
from app.services.task_status import validate_status_transition
from app.services.transfers import TransferClient, get_transfer_client

logger = logging.getLogger(__name__)


def _label(status: EscrowStatus | None) -> str:
    return status.value if status is not None else "none"


def _aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


async def log_audit(
    db: AsyncSession,
    task_id: uuid.UUID,
    action: EscrowAction,
    amount_cents: int,
    actor_user_id: uuid.UUID | None = None,
    metadata: dict | None = None,
) -> None:
    """Append to the immutable audit log."""
    db.add(EscrowAuditLog(
        escrow_audit_id=uuid.uuid4(),
        task_id=task_id,
        action=action,
        actor_user_id=actor_user_id,
        amount_cents=amount_cents,
        metadata_=metadata,
    ))


def _check_escrow_edge(current: EscrowStatus | None, target: EscrowStatus) -> None:
    if target not in VALID_ESCROW_TRANSITIONS.get(current, set()):
        raise EscrowError(
            f"Invalid escrow transition from '{_label(current)}' to '{target.value}'"
        )


async def _guarded_escrow_update(
    db: AsyncSession,
    task_id: uuid.UUID,
    expected: EscrowStatus | None,
    target: EscrowStatus,
    **values,
) -> bool:
    """Move escrow_status expected -> target. False if another writer won."""
    _check_escrow_edge(expected, target)
    stmt = update(Task).where(Task.task_id == task_id)
    if expected is None:
        stmt = stmt.where(Task.escrow_status.is_(None))
    else:
        stmt = stmt.where(Task.escrow_status == expected)
    result = await db.execute(
        stmt.values(escrow_status=target, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def authorize_escrow(
    db: AsyncSession,
    task: Task,
    processor: CardProcessor,
    customer_id: str | None,
    now: datetime | None = None,
) -> str:
    """Place a card hold for the task budget. Returns the payment intent id."""
    _check_escrow_edge(task.escrow_status, EscrowStatus.AUTHORIZED)
    amount_cents = to_cents(task.budget)
    if amount_cents <= 0:
        raise EscrowError("Task budget must be positive", status_code=422)

    try:
        auth = await processor.authorize(
            customer_id, amount_cents, {"task_id": str(task.task_id)}
        )
    except CardProcessorError as e:
        raise EscrowError(f"Card authorization failed: {e}", status_code=402) from e

    now = now or datetime.now(UTC)
    placed = await _guarded_escrow_update(
        db, task.task_id, None, EscrowStatus.AUTHORIZED,
        escrow_amount=task.budget,
        payment_intent_id=auth.payment_intent_id,
        auth_authorized_at=now,
        auth_expires_at=now + settings.auth_hold_lifetime,
        auth_renewal_failed_at=None,
    )
    if not placed:
        try:
            await processor.cancel(auth.payment_intent_id)
        except CardProcessorError:
            logger.exception("Could not void duplicate hold %s", auth.payment_intent_id)
        raise TaskConflictError(f"Escrow already placed for task {task.task_id}")

    await log_audit(
        db, task.task_id, EscrowAction.AUTHORIZED, amount_cents, task.agent_id,
        {"payment_intent_id": auth.payment_intent_id},
    )
    logger.info("Escrow authorized for task %s (%s)", task.task_id, auth.payment_intent_id)
    return auth.payment_intent_id


async def record_deposit(
    db: AsyncSession,
    task: Task,
    tx_hash: str,
    now: datetime | None = None,
) -> None:
    """Record an on-chain USDC deposit for the task budget (none -> deposited)."""
    if not tx_hash:
        raise EscrowError("Deposit transaction hash is required", status_code=422)
    now = now or datetime.now(UTC)
    deposited = await _guarded_escrow_update(
        db, task.task_id, None, EscrowStatus.DEPOSITED,
        escrow_amount=task.budget,
        deposit_tx_hash=tx_hash,
        escrow_deposited_at=now,
    )
    if not deposited:
        raise TaskConflictError(f"Escrow already recorded for task {task.task_id}")
    await log_audit(
        db, task.task_id, EscrowAction.DEPOSITED, to_cents(task.budget), task.agent_id,
        {"tx_hash": tx_hash},
    )


async def capture_escrow(
    db: AsyncSession,
    task: Task,
    processor: CardProcessor,
    now: datetime | None = None,
) -> None:
    """Capture an authorized card hold (authorized -> deposited)."""
    if task.escrow_status != EscrowStatus.AUTHORIZED or not task.payment_intent_id:
        raise EscrowError(
            f"Escrow must be authorized to capture, currently {_label(task.escrow_status)}"
        )
    now = now or datetime.now(UTC)
    captured = await _guarded_escrow_update(
        db, task.task_id, EscrowStatus.AUTHORIZED, EscrowStatus.DEPOSITED,
        escrow_deposited_at=now,
    )
    if not captured:
        raise TaskConflictError(f"Escrow for task {task.task_id} changed concurrently")

    try:
        await processor.capture(task.payment_intent_id)
    except CardProcessorError as e:
        raise EscrowError(f"Card capture failed: {e}", status_code=502) from e

    await log_audit(
        db, task.task_id, EscrowAction.CAPTURED, to_cents(task.settlement_amount), task.agent_id,
        {"payment_intent_id": task.payment_intent_id},
    )


async def refund_escrow(
    db: AsyncSession,
    task: Task,
    processor: CardProcessor | None = None,
    transfer_client: TransferClient | None = None,
    actor_user_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> bool:
    """Return escrowed funds to the agent.

    An authorized hold is voided. A deposited card payment is refunded through
    the processor; a deposited USDC payment is sent back to the agent's
    wallet. Returns False when the task holds no escrow.
    """
    current = task.escrow_status
    if current is None:
        return False
    if current not in (EscrowStatus.AUTHORIZED, EscrowStatus.DEPOSITED):
        raise EscrowError(f"Cannot refund escrow in status {current.value}")

    now = now or datetime.now(UTC)
    refunded = await _guarded_escrow_update(
        db, task.task_id, current, EscrowStatus.REFUNDED, escrow_refunded_at=now,
    )
    if not refunded:
        raise TaskConflictError(f"Escrow for task {task.task_id} changed concurrently")

    amount_cents = to_cents(task.settlement_amount)
    metadata: dict = {"from": current.value}
    processor = processor or get_card_processor()

    if current == EscrowStatus.AUTHORIZED:
        try:
            await processor.cancel(task.payment_intent_id)
        except CardProcessorError as e:
            raise EscrowError(f"Voiding card hold failed: {e}", status_code=502) from e
    elif task.payment_method == PaymentMethod.STRIPE:
        try:
            await processor.refund(task.payment_intent_id)
        except CardProcessorError as e:
            raise EscrowError(f"Card refund failed: {e}", status_code=502) from e
    else:
        agent = await db.get(User, task.agent_id)
        client = transfer_client or get_transfer_client("usdc")
        if agent is None or not client.is_valid_address(agent.wallet_address):
            raise EscrowError("Agent has no valid wallet to refund to", status_code=422)
        result = await client.send_transfer(agent.wallet_address, amount_cents)
        if not result.success:
            raise EscrowError(f"Refund transfer failed: {result.error}", status_code=502)
        metadata["tx_hash"] = result.tx_hash

    await log_audit(db, task.task_id, EscrowAction.REFUNDED, amount_cents, actor_user_id, metadata)
    logger.info("Escrow refunded for task %s (was %s)", task.task_id, current.value)
    return True


@dataclass
class RenewalSummary:
    checked: int = 0
    renewed: int = 0
    failed: int = 0
    lapsed: int = 0
    errors: int = 0


async def renew_expiring_authorizations(
    session_factory: async_sessionmaker[AsyncSession],
    processor: CardProcessor | None = None,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> RenewalSummary:
    """Renew card holds that expire within the safety buffer.

    Each task is handled in its own session; a failure on one task is logged
    and the sweep moves on.
    """
    now = now or datetime.now(UTC)
    processor = processor or get_card_processor()
    summary = RenewalSummary()

    async with session_factory() as db:
        result = await db.execute(
            select(Task.task_id).where(
                Task.escrow_status == EscrowStatus.AUTHORIZED,
                Task.auth_expires_at <= now + settings.auth_hold_safety_buffer,
            ).order_by(Task.auth_expires_at)
        )
        task_ids = list(result.scalars().all())

    for task_id in task_ids:
        summary.checked += 1
        try:
            async with session_factory() as db:
                outcome = await _renew_one(db, task_id, processor, notifier, now)
        except Exception:
            logger.exception("Authorization renewal failed for task %s", task_id)
            summary.errors += 1
            continue
        if outcome == "renewed":
            summary.renewed += 1
        elif outcome == "failed":
            summary.failed += 1
        elif outcome == "lapsed":
            summary.lapsed += 1

    if task_ids:
        logger.info(
            "Auth renewal sweep: %d checked, %d renewed, %d failed, %d lapsed, %d errors",
            summary.checked, summary.renewed, summary.failed, summary.lapsed, summary.errors,
        )
    return summary


async def _renew_one(
    db: AsyncSession,
    task_id: uuid.UUID,
    processor: CardProcessor,
    notifier: Notifier | None,
    now: datetime,
) -> str:
    task = await db.get(Task, task_id)
    if task is None or task.escrow_status != EscrowStatus.AUTHORIZED:
        return "skipped"

    failed_at = _aware(task.auth_renewal_failed_at)
    if failed_at is not None and failed_at + settings.auth_hold_grace_period <= now:
        return await _lapse_authorization(db, task, processor, notifier, now)

    old_intent = task.payment_intent_id
    try:
        auth = await processor.renew(old_intent)
    except CardProcessorError as e:
        if failed_at is not None:
            logger.warning("Renewal for task %s still failing inside grace period: %s", task_id, e)
            return "failed"
        result = await db.execute(
            update(Task)
            .where(Task.task_id == task_id, Task.escrow_status == EscrowStatus.AUTHORIZED)
            .values(auth_renewal_failed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return "skipped"
        await log_audit(
            db, task_id, EscrowAction.RENEWAL_FAILED, to_cents(task.settlement_amount), None,
            {"payment_intent_id": old_intent, "error": str(e)[:500]},
        )
        await db.commit()
        await notify(
            notifier, task.agent_id, "payment_authorization_failed",
            "Card authorization could not be renewed",
            f"We could not renew the hold for '{task.title}'. Update your card within "
            f"{settings.auth_hold_grace_period_hours} hours or the task will be cancelled.",
            f"/tasks/{task_id}",
        )
        return "failed"

    result = await db.execute(
        update(Task)
        .where(
            Task.task_id == task_id,
            Task.escrow_status == EscrowStatus.AUTHORIZED,
            Task.payment_intent_id == old_intent,
        )
        .values(
            payment_intent_id=auth.payment_intent_id,
            auth_authorized_at=now,
            auth_expires_at=now + settings.auth_hold_lifetime,
            auth_renewal_failed_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        # Task was captured or refunded while we renewed
        logger.warning("Task %s changed during renewal; voiding new hold %s", task_id, auth.payment_intent_id)
        await processor.cancel(auth.payment_intent_id)
        return "skipped"
    await log_audit(
        db, task_id, EscrowAction.RENEWED, to_cents(task.settlement_amount), None,
        {"old_payment_intent_id": old_intent, "payment_intent_id": auth.payment_intent_id},
    )
    await db.commit()
    logger.info("Renewed hold for task %s: %s -> %s", task_id, old_intent, auth.payment_intent_id)
    return "renewed"


async def _lapse_authorization(
    db: AsyncSession,
    task: Task,
    processor: CardProcessor,
    notifier: Notifier | None,
    now: datetime,
) -> str:
    refunded = await _guarded_escrow_update(
        db, task.task_id, EscrowStatus.AUTHORIZED, EscrowStatus.REFUNDED,
        escrow_refunded_at=now,
    )
    if not refunded:
        return "skipped"

    cancelled = False
    if validate_status_transition(task.status, TaskStatus.CANCELLED).valid:
        result = await db.execute(
            update(Task)
            .where(Task.task_id == task.task_id, Task.status == task.status)
            .values(status=TaskStatus.CANCELLED, cancelled_at=now)
            .execution_options(synchronize_session=False)
        )
        cancelled = result.rowcount == 1
    else:
        logger.warning(
            "Hold lapsed for task %s in status %s; leaving task status unchanged",
            task.task_id, task.status.value,
        )

    await log_audit(
        db, task.task_id, EscrowAction.AUTHORIZATION_LAPSED, to_cents(task.settlement_amount), None,
        {"payment_intent_id": task.payment_intent_id, "task_cancelled": cancelled},
    )
    await db.commit()

    try:
        await processor.cancel(task.payment_intent_id)
    except CardProcessorError:
        logger.warning("Could not void lapsed hold %s", task.payment_intent_id)

    message = f"The card hold for '{task.title}' could not be renewed"
    message += " and the task was cancelled." if cancelled else "."
    for user_id in (task.agent_id, task.human_id):
        await notify(
            notifier, user_id, "payment_authorization_lapsed",
            "Task payment authorization lapsed", message, f"/tasks/{task.task_id}",
        )
    logger.info("Authorization lapsed for task %s (cancelled=%s)", task.task_id, cancelled)
    return "lapsed"
