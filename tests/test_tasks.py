"""Tests for the task lifecycle service."""

import logging
import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.errors import (
    EscrowError,
    PaymentError,
    PermissionDeniedError,
    TaskConflictError,
    TaskNotFoundError,
    TransitionError,
)
from app.models.payment import PendingTransaction, PendingTransactionStatus
from app.models.task import EscrowStatus, PaymentMethod, TaskStatus
from app.models.user import UserType
from app.services.balance_promoter import promote_pending_balances
from app.services.card_processor import CardProcessorError
from app.services.tasks import (
    accept_offer,
    approve_task,
    assign_task,
    cancel_task,
    create_task,
    decline_offer,
    get_task,
    request_revision,
    start_work,
    submit_proof,
    transition_task,
    withdraw_worker,
)
from tests.conftest import AGENT_WALLET, make_card_processor, make_task, make_transfer_client, make_user


@pytest.mark.asyncio
async def test_card_task_full_lifecycle(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession],
) -> None:
    agent = await make_user(db_session, UserType.AGENT)
    human = await make_user(db_session)
    processor = make_card_processor()
    now = datetime(2026, 7, 1, tzinfo=UTC)

    task = await create_task(db_session, agent.user_id, "Check shelf prices", Decimal("60.00"))
    assert task.status == TaskStatus.OPEN

    task = await assign_task(db_session, task.task_id, agent.user_id, human.user_id, processor, now=now)
    assert task.status == TaskStatus.PENDING_ACCEPTANCE
    assert task.escrow_status == EscrowStatus.AUTHORIZED

    task = await accept_offer(db_session, task.task_id, human.user_id)
    assert task.status == TaskStatus.ASSIGNED

    task = await start_work(db_session, task.task_id, human.user_id, processor)
    assert task.status == TaskStatus.IN_PROGRESS
    assert task.escrow_status == EscrowStatus.DEPOSITED
    processor.capture.assert_awaited_once_with("pi_test_auth")

    task = await submit_proof(db_session, task.task_id, human.user_id)
    task = await request_revision(db_session, task.task_id, agent.user_id, "Need the back aisle too")
    assert task.status == TaskStatus.IN_PROGRESS
    assert task.revision_count == 1
    task = await submit_proof(db_session, task.task_id, human.user_id)

    release = await approve_task(db_session, task.task_id, agent.user_id, now=now)
    assert release.net_cents == 5100
    task = await get_task(db_session, task.task_id)
    assert task.status == TaskStatus.APPROVED
    assert task.escrow_status == EscrowStatus.RELEASED

    await promote_pending_balances(session_factory, now=now + timedelta(hours=48, minutes=1))
    task = await get_task(db_session, task.task_id)
    assert task.status == TaskStatus.PAID

    await db_session.refresh(human)
    await db_session.refresh(agent)
    assert human.total_tasks_accepted == 1
    assert human.total_rejections == 1
    assert human.total_tasks_completed == 1
    assert agent.total_tasks_posted == 1


@pytest.mark.asyncio
async def test_usdc_assignment_records_deposit(db_session: AsyncSession) -> None:
    agent = await make_user(db_session, UserType.AGENT)
    human = await make_user(db_session)
    task = await create_task(
        db_session, agent.user_id, "Deliver parcel", Decimal("25.00"), payment_method=PaymentMethod.USDC,
    )

    task = await assign_task(
        db_session, task.task_id, agent.user_id, human.user_id, deposit_tx_hash="0x" + "9" * 64,
    )

    assert task.status == TaskStatus.ASSIGNED
    assert task.escrow_status == EscrowStatus.DEPOSITED
    assert task.assigned_at is not None


@pytest.mark.asyncio
async def test_usdc_assignment_without_deposit_is_rejected(db_session: AsyncSession) -> None:
    agent = await make_user(db_session, UserType.AGENT)
    human = await make_user(db_session)
    task = await make_task(db_session, agent, payment_method=PaymentMethod.USDC)

    with pytest.raises(EscrowError) as exc:
        await assign_task(db_session, task.task_id, agent.user_id, human.user_id)
    assert exc.value.status_code == 422

    task = await get_task(db_session, task.task_id)
    assert task.status == TaskStatus.OPEN
    assert task.human_id is None
    assert task.escrow_status is None


@pytest.mark.asyncio
async def test_usdc_reassignment_reuses_existing_deposit(db_session: AsyncSession) -> None:
    agent = await make_user(db_session, UserType.AGENT)
    human = await make_user(db_session)
    task = await make_task(
        db_session, agent, escrow_status=EscrowStatus.DEPOSITED, payment_method=PaymentMethod.USDC,
    )

    task = await assign_task(db_session, task.task_id, agent.user_id, human.user_id)

    assert task.status == TaskStatus.ASSIGNED
    assert task.escrow_status == EscrowStatus.DEPOSITED


@pytest.mark.asyncio
async def test_start_work_requires_funded_escrow(db_session: AsyncSession) -> None:
    agent = await make_user(db_session, UserType.AGENT)
    human = await make_user(db_session)
    task = await make_task(db_session, agent, human, TaskStatus.ASSIGNED, payment_method=PaymentMethod.USDC)

    with pytest.raises(EscrowError) as exc:
        await start_work(db_session, task.task_id, human.user_id)
    assert exc.value.status_code == 409

    task = await get_task(db_session, task.task_id)
    assert task.status == TaskStatus.ASSIGNED
    assert task.work_started_at is None


@pytest.mark.asyncio
async def test_create_task_rules(db_session: AsyncSession) -> None:
    agent = await make_user(db_session, UserType.AGENT)
    human = await make_user(db_session)

    with pytest.raises(PermissionDeniedError):
        await create_task(db_session, human.user_id, "x", Decimal("5"))
    with pytest.raises(PaymentError):
        await create_task(db_session, agent.user_id, "x", Decimal("0"))


@pytest.mark.asyncio
async def test_declined_offer_keeps_hold_for_next_worker(db_session: AsyncSession) -> None:
    agent = await make_user(db_session, UserType.AGENT)
    first = await make_user(db_session)
    second = await make_user(db_session)
    task = await make_task(db_session, agent)
    processor = make_card_processor()

    await assign_task(db_session, task.task_id, agent.user_id, first.user_id, processor)
    task = await decline_offer(db_session, task.task_id, first.user_id)
    assert task.status == TaskStatus.OPEN
    assert task.human_id is None
    assert task.escrow_status == EscrowStatus.AUTHORIZED

    task = await assign_task(db_session, task.task_id, agent.user_id, second.user_id, processor)
    assert task.human_id == second.user_id
    processor.authorize.assert_awaited_once()


@pytest.mark.asyncio
async def test_failed_authorization_leaves_task_open(db_session: AsyncSession) -> None:
    agent = await make_user(db_session, UserType.AGENT)
    human = await make_user(db_session)
    task = await make_task(db_session, agent)
    processor = make_card_processor()
    processor.authorize.side_effect = CardProcessorError("card_declined")

    with pytest.raises(EscrowError) as exc:
        await assign_task(db_session, task.task_id, agent.user_id, human.user_id, processor)
    assert exc.value.status_code == 402

    task = await get_task(db_session, task.task_id)
    assert task.status == TaskStatus.OPEN
    assert task.human_id is None


@pytest.mark.asyncio
async def test_only_parties_can_act(db_session: AsyncSession) -> None:
    agent = await make_user(db_session, UserType.AGENT)
    human = await make_user(db_session)
    stranger = await make_user(db_session)
    task = await make_task(db_session, agent, human, TaskStatus.ASSIGNED)

    with pytest.raises(PermissionDeniedError):
        await start_work(db_session, task.task_id, stranger.user_id)
    with pytest.raises(PermissionDeniedError):
        await cancel_task(db_session, task.task_id, human.user_id)
    with pytest.raises(PermissionDeniedError):
        await assign_task(db_session, task.task_id, agent.user_id, agent.user_id)


@pytest.mark.asyncio
async def test_revision_limit(db_session: AsyncSession) -> None:
    agent = await make_user(db_session, UserType.AGENT)
    human = await make_user(db_session)
    task = await make_task(db_session, agent, human, TaskStatus.PENDING_REVIEW, revision_count=2)

    with pytest.raises(TransitionError) as exc:
        await request_revision(db_session, task.task_id, agent.user_id)
    assert "Revision limit" in exc.value.detail


@pytest.mark.asyncio
async def test_cancel_refunds_usdc_escrow(db_session: AsyncSession) -> None:
    agent = await make_user(db_session, UserType.AGENT)
    human = await make_user(db_session)
    task = await make_task(
        db_session, agent, human, TaskStatus.ASSIGNED, EscrowStatus.DEPOSITED,
        payment_method=PaymentMethod.USDC,
    )
    transfer = make_transfer_client()

    task = await cancel_task(db_session, task.task_id, agent.user_id, transfer_client=transfer)

    assert task.status == TaskStatus.CANCELLED
    assert task.escrow_status == EscrowStatus.REFUNDED
    transfer.send_transfer.assert_awaited_once_with(AGENT_WALLET, 10000)
    await db_session.refresh(agent)
    assert agent.total_cancellations == 1


@pytest.mark.asyncio
async def test_failed_refund_rolls_back_cancel(db_session: AsyncSession) -> None:
    agent = await make_user(db_session, UserType.AGENT)
    task = await make_task(
        db_session, agent, status=TaskStatus.OPEN, escrow_status=EscrowStatus.DEPOSITED,
        payment_method=PaymentMethod.USDC,
    )

    with pytest.raises(EscrowError):
        await cancel_task(db_session, task.task_id, agent.user_id, transfer_client=make_transfer_client(False))

    task = await get_task(db_session, task.task_id)
    assert task.status == TaskStatus.OPEN
    assert task.escrow_status == EscrowStatus.DEPOSITED


@pytest.mark.asyncio
async def test_commit_failure_after_refund_is_logged(
    db_session: AsyncSession, caplog: pytest.LogCaptureFixture,
) -> None:
    agent = await make_user(db_session, UserType.AGENT)
    task = await make_task(
        db_session, agent, status=TaskStatus.OPEN, escrow_status=EscrowStatus.DEPOSITED,
        payment_method=PaymentMethod.USDC,
    )
    transfer = make_transfer_client()
    caplog.set_level(logging.CRITICAL, logger="app.services.tasks")

    with patch.object(db_session, "commit", AsyncMock(side_effect=RuntimeError("database unavailable"))):
        with pytest.raises(RuntimeError):
            await cancel_task(db_session, task.task_id, agent.user_id, transfer_client=transfer)

    transfer.send_transfer.assert_awaited_once_with(AGENT_WALLET, 10000)
    critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
    assert len(critical) == 1
    assert str(task.task_id) in critical[0].getMessage()
    task = await get_task(db_session, task.task_id)
    assert task.status == TaskStatus.OPEN
    assert task.escrow_status == EscrowStatus.DEPOSITED


@pytest.mark.asyncio
async def test_commit_failure_after_capture_is_logged(
    db_session: AsyncSession, caplog: pytest.LogCaptureFixture,
) -> None:
    agent = await make_user(db_session, UserType.AGENT)
    human = await make_user(db_session)
    task = await make_task(db_session, agent, human, TaskStatus.ASSIGNED, EscrowStatus.AUTHORIZED)
    processor = make_card_processor()
    caplog.set_level(logging.CRITICAL, logger="app.services.tasks")

    with patch.object(db_session, "commit", AsyncMock(side_effect=RuntimeError("database unavailable"))):
        with pytest.raises(RuntimeError):
            await start_work(db_session, task.task_id, human.user_id, processor)

    processor.capture.assert_awaited_once_with("pi_test_auth")
    assert any(
        r.levelno == logging.CRITICAL and "Card capture" in r.getMessage() for r in caplog.records
    )


@pytest.mark.asyncio
async def test_failed_refund_is_not_logged_critical(
    db_session: AsyncSession, caplog: pytest.LogCaptureFixture,
) -> None:
    agent = await make_user(db_session, UserType.AGENT)
    task = await make_task(
        db_session, agent, status=TaskStatus.OPEN, escrow_status=EscrowStatus.DEPOSITED,
        payment_method=PaymentMethod.USDC,
    )
    caplog.set_level(logging.CRITICAL, logger="app.services.tasks")

    with pytest.raises(EscrowError):
        await cancel_task(db_session, task.task_id, agent.user_id, transfer_client=make_transfer_client(False))

    assert not [r for r in caplog.records if r.levelno == logging.CRITICAL]


@pytest.mark.asyncio
async def test_cannot_cancel_after_work_starts(db_session: AsyncSession) -> None:
    agent = await make_user(db_session, UserType.AGENT)
    human = await make_user(db_session)
    task = await make_task(db_session, agent, human, TaskStatus.IN_PROGRESS, EscrowStatus.DEPOSITED)

    with pytest.raises(TransitionError):
        await cancel_task(db_session, task.task_id, agent.user_id)


@pytest.mark.asyncio
async def test_withdraw_worker_reopens_task(db_session: AsyncSession) -> None:
    agent = await make_user(db_session, UserType.AGENT)
    human = await make_user(db_session)
    task = await make_task(
        db_session, agent, human, TaskStatus.IN_PROGRESS, EscrowStatus.DEPOSITED,
        work_started_at=datetime.now(UTC),
    )

    task = await withdraw_worker(db_session, task.task_id, human.user_id)

    assert task.status == TaskStatus.OPEN
    assert task.human_id is None
    assert task.work_started_at is None
    assert task.escrow_status == EscrowStatus.DEPOSITED


@pytest.mark.asyncio
async def test_approve_failure_rolls_back_transition(db_session: AsyncSession) -> None:
    agent = await make_user(db_session, UserType.AGENT)
    human = await make_user(db_session, wallet_address=None)
    task = await make_task(db_session, agent, human, TaskStatus.PENDING_REVIEW, EscrowStatus.DEPOSITED)

    with pytest.raises(PaymentError):
        await approve_task(db_session, task.task_id, agent.user_id)

    task = await get_task(db_session, task.task_id)
    assert task.status == TaskStatus.PENDING_REVIEW
    assert (await db_session.execute(select(PendingTransaction))).first() is None


@pytest.mark.asyncio
async def test_transition_rejects_illegal_edge(db_session: AsyncSession) -> None:
    agent = await make_user(db_session, UserType.AGENT)
    task = await make_task(db_session, agent, status=TaskStatus.OPEN)

    with pytest.raises(TransitionError):
        await transition_task(db_session, task.task_id, TaskStatus.OPEN, TaskStatus.PAID)


@pytest.mark.asyncio
async def test_transition_detects_concurrent_writer(db_session: AsyncSession) -> None:
    agent = await make_user(db_session, UserType.AGENT)
    task = await make_task(db_session, agent, status=TaskStatus.OPEN)
    await transition_task(db_session, task.task_id, TaskStatus.OPEN, TaskStatus.CANCELLED)
    await db_session.commit()

    with pytest.raises(TaskConflictError):
        await transition_task(db_session, task.task_id, TaskStatus.OPEN, TaskStatus.CANCELLED)


@pytest.mark.asyncio
async def test_get_unknown_task(db_session: AsyncSession) -> None:
    with pytest.raises(TaskNotFoundError):
        await get_task(db_session, uuid.uuid4())


@pytest.mark.asyncio
async def test_released_holding_is_pending(db_session: AsyncSession) -> None:
    agent = await make_user(db_session, UserType.AGENT)
    human = await make_user(db_session)
    task = await make_task(db_session, agent, human, TaskStatus.PENDING_REVIEW, EscrowStatus.DEPOSITED)

    await approve_task(db_session, task.task_id, agent.user_id)

    row = (await db_session.execute(select(PendingTransaction))).scalar_one()
    assert row.status == PendingTransactionStatus.PENDING
