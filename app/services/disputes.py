"""Disputes: party assignment, filing and resolution.

``determine_dispute_parties`` and ``build_dispute_record`` are pure: they
decide who a dispute is filed against and build the row, nothing more.
``open_dispute`` and ``resolve_dispute`` are the caller-level procedures that
write the dispute and move the task in one transaction.
"""

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import DisputeError
from app.models.dispute import Dispute, DisputeStatus
from app.models.task import Task, TaskStatus
from app.services.card_processor import CardProcessor
from app.services.escrow import refund_escrow
from app.services.notifications import Notifier, notify
from app.services.payments import ReleaseResult, notify_release, release_in_transaction
from app.services.reputation import increment_stat
from app.services.task_status import is_disputable
from app.services.tasks import get_task, transition_task
from app.services.transfers import TransferClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DisputeParties:
    filed_by: uuid.UUID
    filed_against: uuid.UUID


def determine_dispute_parties(task: Task, filing_user_id: uuid.UUID) -> DisputeParties:
    """The dispute is always filed against the task's other party."""
    if task.human_id is None:
        raise DisputeError("Task has no assigned worker to dispute with")
    if task.agent_id == task.human_id:
        raise DisputeError("Task agent and worker must be different users")
    if filing_user_id == task.agent_id:
        return DisputeParties(filing_user_id, task.human_id)
    if filing_user_id == task.human_id:
        return DisputeParties(filing_user_id, task.agent_id)
    raise DisputeError("Only the task's agent or assigned worker can file a dispute", status_code=403)


def build_dispute_record(task: Task, filing_user_id: uuid.UUID, reason: str) -> Dispute:
    parties = determine_dispute_parties(task, filing_user_id)
    reason = (reason or "").strip()
    if not reason:
        raise DisputeError("A reason is required to file a dispute")
    return Dispute(
        dispute_id=uuid.uuid4(),
        task_id=task.task_id,
        reason=reason,
        filed_by=parties.filed_by,
        filed_against=parties.filed_against,
        status=DisputeStatus.OPEN,
    )


async def open_dispute(
    db: AsyncSession,
    task_id: uuid.UUID,
    filing_user_id: uuid.UUID,
    reason: str,
    notifier: Notifier | None = None,
) -> Dispute:
    task = await get_task(db, task_id)
    if not is_disputable(task.status):
        raise DisputeError(
            f"Task cannot be disputed in status '{task.status.value}'", status_code=409
        )
    dispute = build_dispute_record(task, filing_user_id, reason)

    try:
        db.add(dispute)
        await transition_task(db, task_id, task.status, TaskStatus.DISPUTED)
        await increment_stat(db, filing_user_id, "total_disputes_filed")
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Dispute %s opened on task %s by %s", dispute.dispute_id, task_id, filing_user_id)
    await notify(
        notifier, dispute.filed_against, "dispute_opened", "Dispute opened",
        f"A dispute was opened on '{task.title}': {dispute.reason}", f"/tasks/{task_id}",
    )
    return dispute


class DisputeOutcome(enum.Enum):
    WORKER = "worker"  # worker wins: approve and pay
    AGENT = "agent"  # agent wins: cancel and refund
    REREVIEW = "rereview"  # back to the agent for another review


@dataclass
class DisputeResolution:
    task_id: uuid.UUID
    outcome: DisputeOutcome
    task_status: TaskStatus
    release: ReleaseResult | None = None
    refunded: bool = False


async def resolve_dispute(
    db: AsyncSession,
    task_id: uuid.UUID,
    outcome: DisputeOutcome | str,
    processor: CardProcessor | None = None,
    transfer_client: TransferClient | None = None,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> DisputeResolution:
    try:
        outcome = DisputeOutcome(outcome)
    except ValueError as e:
        raise DisputeError(f"Unknown dispute outcome: {outcome}") from e

    task = await get_task(db, task_id)
    if task.status != TaskStatus.DISPUTED:
        raise DisputeError("Task is not in dispute", status_code=409)

    now = now or datetime.now(UTC)
    resolution = DisputeResolution(task_id, outcome, TaskStatus.DISPUTED)
    try:
        if outcome == DisputeOutcome.WORKER:
            await transition_task(db, task_id, TaskStatus.DISPUTED, TaskStatus.APPROVED, approved_at=now)
            resolution.release = await release_in_transaction(db, task, task.human_id, task.agent_id, now)
            resolution.task_status = TaskStatus.APPROVED
        elif outcome == DisputeOutcome.AGENT:
            await transition_task(db, task_id, TaskStatus.DISPUTED, TaskStatus.CANCELLED, cancelled_at=now)
            resolution.refunded = await refund_escrow(
                db, task, processor, transfer_client, task.agent_id, now,
            )
            await increment_stat(db, task.human_id, "total_disputes_lost")
            resolution.task_status = TaskStatus.CANCELLED
        else:
            await transition_task(db, task_id, TaskStatus.DISPUTED, TaskStatus.PENDING_REVIEW)
            resolution.task_status = TaskStatus.PENDING_REVIEW

        await db.execute(
            update(Dispute)
            .where(Dispute.task_id == task_id, Dispute.status == DisputeStatus.OPEN)
            .values(status=DisputeStatus.RESOLVED, resolved_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception:
        if resolution.refunded:
            logger.critical("Escrow refund for task %s succeeded but recording it failed", task_id)
        await db.rollback()
        raise

    await db.refresh(task)
    logger.info("Dispute on task %s resolved: %s", task_id, outcome.value)
    if resolution.release is not None:
        await notify_release(notifier, task, resolution.release)
    for user_id in (task.agent_id, task.human_id):
        await notify(
            notifier, user_id, "dispute_resolved", "Dispute resolved",
            f"The dispute on '{task.title}' was resolved in favor of: {outcome.value}.",
            f"/tasks/{task_id}",
        )
    return resolution
