"""Task lifecycle: the guarded status update and the caller operations.

``transition_task`` is the only way a task's status changes. It validates
the edge against the transition table, then issues
``UPDATE tasks ... WHERE task_id = ? AND status = <from>``; zero matched rows
means a concurrent writer moved the task first. Operations that touch more
than one table (approve, cancel) commit once at the end, so they either
happen completely or not at all.
"""

import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.errors import (
    EscrowError,
    PaymentError,
    PermissionDeniedError,
    TaskConflictError,
    TaskNotFoundError,
    TransitionError,
    UserNotFoundError,
)
from app.models.task import EscrowStatus, PaymentMethod, Task, TaskStatus
from app.models.user import User, UserType
from app.services.card_processor import CardProcessor, get_card_processor
from app.services.escrow import authorize_escrow, capture_escrow, record_deposit, refund_escrow
from app.services.notifications import Notifier, notify
from app.services.payments import ReleaseResult, notify_release, release_in_transaction
from app.services.reputation import increment_stat
from app.services.task_status import is_cancellable, validate_status_transition
from app.services.transfers import TransferClient

logger = logging.getLogger(__name__)


async def transition_task(
    db: AsyncSession,
    task_id: uuid.UUID,
    from_status: TaskStatus,
    to_status: TaskStatus,
    **values,
) -> None:
    """Guarded status update. Does not commit."""
    check = validate_status_transition(from_status, to_status)
    if not check.valid:
        raise TransitionError(check.error)

    result = await db.execute(
        update(Task)
        .where(Task.task_id == task_id, Task.status == from_status)
        .values(status=to_status, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise TaskConflictError(
            f"Task {task_id} is no longer '{from_status.value}'; it was modified concurrently"
        )


async def get_task(db: AsyncSession, task_id: uuid.UUID) -> Task:
    task = await db.get(Task, task_id, populate_existing=True)
    if task is None:
        raise TaskNotFoundError()
    return task


async def _commit(db: AsyncSession) -> None:
    try:
        await db.commit()
    except Exception:
        await db.rollback()
        raise


def _require_agent(task: Task, agent_id: uuid.UUID) -> None:
    if task.agent_id != agent_id:
        raise PermissionDeniedError("Only the task's agent can do this")


def _require_worker(task: Task, human_id: uuid.UUID) -> None:
    if task.human_id is None or task.human_id != human_id:
        raise PermissionDeniedError("Only the task's assigned worker can do this")


def _escrow_label(task: Task) -> str:
    return task.escrow_status.value if task.escrow_status else "none"


async def create_task(
    db: AsyncSession,
    agent_id: uuid.UUID,
    title: str,
    budget: Decimal,
    description: str | None = None,
    payment_method: PaymentMethod = PaymentMethod.STRIPE,
) -> Task:
    agent = await db.get(User, agent_id)
    if agent is None:
        raise UserNotFoundError("Agent not found")
    if agent.user_type != UserType.AGENT:
        raise PermissionDeniedError("Only agents can post tasks")
    if budget is None or Decimal(str(budget)) <= 0:
        raise PaymentError("Task budget must be positive", status_code=422)

    task = Task(
        task_id=uuid.uuid4(),
        title=title,
        description=description,
        agent_id=agent_id,
        status=TaskStatus.OPEN,
        payment_method=payment_method,
        budget=Decimal(str(budget)),
    )
    db.add(task)
    await increment_stat(db, agent_id, "total_tasks_posted")
    await _commit(db)
    await db.refresh(task)
    logger.info("Task %s created by agent %s (budget %s)", task.task_id, agent_id, task.budget)
    return task


async def assign_task(
    db: AsyncSession,
    task_id: uuid.UUID,
    agent_id: uuid.UUID,
    human_id: uuid.UUID,
    processor: CardProcessor | None = None,
    deposit_tx_hash: str | None = None,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> Task:
    """Hand an open task to a worker.

    Card tasks go to ``pending_acceptance`` behind an authorization hold and
    wait for the worker to accept. USDC tasks record the on-chain deposit
    and go straight to ``assigned``; a USDC task without escrow needs a
    deposit transaction hash.
    """
    task = await get_task(db, task_id)
    _require_agent(task, agent_id)
    if human_id == task.agent_id:
        raise PermissionDeniedError("An agent cannot assign a task to itself")
    human = await db.get(User, human_id)
    if human is None:
        raise UserNotFoundError("Worker not found")
    if human.user_type != UserType.HUMAN:
        raise PermissionDeniedError("Tasks can only be assigned to human workers")
    if (
        task.payment_method == PaymentMethod.USDC
        and task.escrow_status is None
        and not deposit_tx_hash
    ):
        raise EscrowError("A USDC task needs a deposit transaction hash to be assigned", status_code=422)

    now = now or datetime.now(UTC)
    try:
        if task.payment_method == PaymentMethod.STRIPE:
            await transition_task(
                db, task_id, task.status, TaskStatus.PENDING_ACCEPTANCE, human_id=human_id,
            )
            # A declined offer keeps its hold; reuse it for the next worker
            if task.escrow_status is None:
                agent = await db.get(User, agent_id)
                await authorize_escrow(
                    db, task, processor or get_card_processor(), agent.stripe_customer_id, now,
                )
            message = f"You have been offered '{task.title}'. Accept it to start."
            kind = "task_offered"
        else:
            await transition_task(
                db, task_id, task.status, TaskStatus.ASSIGNED, human_id=human_id, assigned_at=now,
            )
            if task.escrow_status is None:
                await record_deposit(db, task, deposit_tx_hash, now)
            await increment_stat(db, human_id, "total_tasks_accepted")
            message = f"You have been assigned '{task.title}'."
            kind = "task_assigned"
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await db.refresh(task)
    await notify(notifier, human_id, kind, "New task", message, f"/tasks/{task_id}")
    return task


async def accept_offer(
    db: AsyncSession,
    task_id: uuid.UUID,
    human_id: uuid.UUID,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> Task:
    task = await get_task(db, task_id)
    _require_worker(task, human_id)
    await transition_task(
        db, task_id, TaskStatus.PENDING_ACCEPTANCE, TaskStatus.ASSIGNED,
        assigned_at=now or datetime.now(UTC),
    )
    await increment_stat(db, human_id, "total_tasks_accepted")
    await _commit(db)
    await db.refresh(task)
    await notify(
        notifier, task.agent_id, "offer_accepted", "Offer accepted",
        f"Your offer for '{task.title}' was accepted.", f"/tasks/{task_id}",
    )
    return task


async def decline_offer(
    db: AsyncSession,
    task_id: uuid.UUID,
    human_id: uuid.UUID,
    notifier: Notifier | None = None,
) -> Task:
    """Worker turns the offer down; the task reopens with its hold intact."""
    task = await get_task(db, task_id)
    _require_worker(task, human_id)
    await transition_task(db, task_id, TaskStatus.PENDING_ACCEPTANCE, TaskStatus.OPEN, human_id=None)
    await _commit(db)
    await db.refresh(task)
    await notify(
        notifier, task.agent_id, "offer_declined", "Offer declined",
        f"Your offer for '{task.title}' was declined. The task is open again.",
        f"/tasks/{task_id}",
    )
    return task


async def start_work(
    db: AsyncSession,
    task_id: uuid.UUID,
    human_id: uuid.UUID,
    processor: CardProcessor | None = None,
    now: datetime | None = None,
) -> Task:
    """Worker starts; an authorized card hold is captured at this point."""
    task = await get_task(db, task_id)
    _require_worker(task, human_id)
    if task.escrow_status not in (EscrowStatus.AUTHORIZED, EscrowStatus.DEPOSITED):
        raise EscrowError(
            f"Work cannot start until escrow is funded, currently {_escrow_label(task)}"
        )
    now = now or datetime.now(UTC)
    captured = False
    try:
        await transition_task(
            db, task_id, TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS, work_started_at=now,
        )
        if task.escrow_status == EscrowStatus.AUTHORIZED:
            await capture_escrow(db, task, processor or get_card_processor(), now)
            captured = True
        await db.commit()
    except Exception:
        if captured:
            logger.critical("Card capture for task %s succeeded but recording it failed", task_id)
        await db.rollback()
        raise
    await db.refresh(task)
    return task


async def submit_proof(
    db: AsyncSession,
    task_id: uuid.UUID,
    human_id: uuid.UUID,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> Task:
    task = await get_task(db, task_id)
    _require_worker(task, human_id)
    await transition_task(
        db, task_id, TaskStatus.IN_PROGRESS, TaskStatus.PENDING_REVIEW,
        proof_submitted_at=now or datetime.now(UTC),
    )
    await _commit(db)
    await db.refresh(task)
    await notify(
        notifier, task.agent_id, "proof_submitted", "Proof submitted",
        f"Proof for '{task.title}' is ready for review.", f"/tasks/{task_id}",
    )
    return task


async def request_revision(
    db: AsyncSession,
    task_id: uuid.UUID,
    agent_id: uuid.UUID,
    feedback: str | None = None,
    notifier: Notifier | None = None,
) -> Task:
    """Send submitted proof back to the worker, at most max_revisions times."""
    task = await get_task(db, task_id)
    _require_agent(task, agent_id)
    if task.revision_count >= settings.max_revisions:
        raise TransitionError(
            f"Revision limit reached ({settings.max_revisions}). "
            "Approve the task or open a dispute."
        )
    await transition_task(
        db, task_id, TaskStatus.PENDING_REVIEW, TaskStatus.IN_PROGRESS,
        revision_count=Task.revision_count + 1,
    )
    await increment_stat(db, task.human_id, "total_rejections")
    await _commit(db)
    await db.refresh(task)
    await notify(
        notifier, task.human_id, "revision_requested", "Revision requested",
        feedback or f"The agent asked for changes to '{task.title}'.", f"/tasks/{task_id}",
    )
    return task


async def approve_task(
    db: AsyncSession,
    task_id: uuid.UUID,
    agent_id: uuid.UUID,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> ReleaseResult:
    """Approve submitted proof and release payment as one unit of work."""
    task = await get_task(db, task_id)
    _require_agent(task, agent_id)
    now = now or datetime.now(UTC)
    try:
        await transition_task(
            db, task_id, TaskStatus.PENDING_REVIEW, TaskStatus.APPROVED, approved_at=now,
        )
        release = await release_in_transaction(db, task, task.human_id, agent_id, now)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    await db.refresh(task)
    logger.info("Task %s approved; %d cents net pending for %s", task_id, release.net_cents, task.human_id)
    await notify_release(notifier, task, release)
    return release


async def cancel_task(
    db: AsyncSession,
    task_id: uuid.UUID,
    agent_id: uuid.UUID,
    processor: CardProcessor | None = None,
    transfer_client: TransferClient | None = None,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> Task:
    """Cancel before work starts, returning any escrow to the agent."""
    task = await get_task(db, task_id)
    _require_agent(task, agent_id)
    if not is_cancellable(task.status):
        raise TransitionError(
            f"Task cannot be cancelled in status '{task.status.value}'. "
            "Once work has started, open a dispute instead."
        )
    now = now or datetime.now(UTC)
    refunded = False
    try:
        await transition_task(db, task_id, task.status, TaskStatus.CANCELLED, cancelled_at=now)
        refunded = await refund_escrow(db, task, processor, transfer_client, agent_id, now)
        await increment_stat(db, agent_id, "total_cancellations")
        await db.commit()
    except Exception:
        if refunded:
            logger.critical("Escrow refund for task %s succeeded but recording it failed", task_id)
        await db.rollback()
        raise
    await db.refresh(task)
    await notify(
        notifier, task.human_id, "task_cancelled", "Task cancelled",
        f"'{task.title}' was cancelled by the agent.", f"/tasks/{task_id}",
    )
    return task


async def withdraw_worker(
    db: AsyncSession,
    task_id: uuid.UUID,
    human_id: uuid.UUID,
    notifier: Notifier | None = None,
) -> Task:
    """Worker steps back; the task reopens and escrow stays in place."""
    task = await get_task(db, task_id)
    _require_worker(task, human_id)
    if task.status not in (TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS):
        raise TransitionError(
            f"Cannot withdraw from a task in status '{task.status.value}'"
        )
    await transition_task(
        db, task_id, task.status, TaskStatus.OPEN,
        human_id=None, assigned_at=None, work_started_at=None,
    )
    await _commit(db)
    await db.refresh(task)
    await notify(
        notifier, task.agent_id, "worker_withdrew", "Worker withdrew",
        f"The worker withdrew from '{task.title}'. It is open for applications again.",
        f"/tasks/{task_id}",
    )
    return task
