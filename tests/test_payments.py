"""Tests for releasing escrow into the clearing window (app/services/payments.py)."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.errors import PaymentError
from app.models.escrow import EscrowAction, EscrowAuditLog
from app.models.payment import (
    LedgerTransaction,
    PendingTransaction,
    PendingTransactionStatus,
    Payout,
    PayoutStatus,
)
from app.models.task import EscrowStatus, TaskStatus
from app.models.user import User, UserType
from app.services.payments import (
    get_wallet_balance,
    release_payment_to_pending,
    resolve_payout_destination,
)
from tests.conftest import WORKER_WALLET, make_holding, make_task, make_user

NOW = datetime(2026, 4, 1, 9, 30, tzinfo=UTC)


async def _count(db: AsyncSession, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


async def _approved_task(db: AsyncSession, budget: str = "100.00", **human_overrides):
    agent = await make_user(db, UserType.AGENT)
    human = await make_user(db, **human_overrides)
    task = await make_task(db, agent, human, TaskStatus.APPROVED, EscrowStatus.DEPOSITED, budget=budget)
    return agent, human, task


def test_destination_prefers_wallet() -> None:
    user = User(wallet_address=WORKER_WALLET, stripe_account_id="acct_1")
    assert resolve_payout_destination(user).method == "usdc"

    user = User(wallet_address="not-a-wallet", stripe_account_id="acct_1")
    destination = resolve_payout_destination(user)
    assert destination.method == "stripe"
    assert destination.address == "acct_1"

    assert resolve_payout_destination(User(wallet_address=None)) is None


@pytest.mark.asyncio
async def test_release_creates_pending_holding(db_session: AsyncSession) -> None:
    agent, human, task = await _approved_task(db_session)

    release = await release_payment_to_pending(db_session, task.task_id, human.user_id, agent.user_id, now=NOW)

    assert release.gross_cents == 10000
    assert release.fee_cents == 1500
    assert release.net_cents == 8500
    assert release.payout_method == "usdc"
    assert release.clears_at == NOW + timedelta(hours=48)

    pending = (await db_session.execute(select(PendingTransaction))).scalar_one()
    assert pending.status == PendingTransactionStatus.PENDING
    assert pending.amount_cents == 8500
    assert pending.user_id == human.user_id
    assert pending.clears_at.replace(tzinfo=UTC) == NOW + timedelta(hours=48)

    payout = (await db_session.execute(select(Payout))).scalar_one()
    assert payout.status == PayoutStatus.PENDING
    assert payout.amount_cents == 8500
    assert payout.fee_cents == 1500

    ledger = (await db_session.execute(select(LedgerTransaction))).scalar_one()
    assert (ledger.gross_cents, ledger.fee_cents, ledger.net_cents) == (10000, 1500, 8500)
    assert ledger.payer_id == agent.user_id

    await db_session.refresh(task)
    await db_session.refresh(human)
    await db_session.refresh(agent)
    assert task.escrow_status == EscrowStatus.RELEASED
    assert human.jobs_completed == 1
    assert human.total_tasks_completed == 1
    assert agent.total_paid_cents == 8500
    assert human.last_active_at is not None

    actions = (await db_session.execute(select(EscrowAuditLog.action))).scalars().all()
    assert actions == [EscrowAction.RELEASED]


@pytest.mark.asyncio
async def test_fee_plus_net_equals_escrow(db_session: AsyncSession) -> None:
    agent, human, task = await _approved_task(db_session, budget="33.33")

    release = await release_payment_to_pending(db_session, task.task_id, human.user_id, agent.user_id)

    assert release.fee_cents == 500  # 499.95 rounds half up
    assert release.fee_cents + release.net_cents == release.gross_cents == 3333


@pytest.mark.asyncio
async def test_second_release_is_rejected_without_new_rows(db_session: AsyncSession) -> None:
    agent, human, task = await _approved_task(db_session)
    await release_payment_to_pending(db_session, task.task_id, human.user_id, agent.user_id)

    with pytest.raises(PaymentError) as exc:
        await release_payment_to_pending(db_session, task.task_id, human.user_id, agent.user_id)

    assert exc.value.status_code == 409
    assert exc.value.detail == "Payment already released for this task"
    assert await _count(db_session, PendingTransaction) == 1
    assert await _count(db_session, Payout) == 1
    await db_session.refresh(human)
    assert human.jobs_completed == 1


@pytest.mark.asyncio
async def test_release_requires_deposited_escrow(db_session: AsyncSession) -> None:
    agent = await make_user(db_session, UserType.AGENT)
    human = await make_user(db_session)
    task = await make_task(db_session, agent, human, TaskStatus.APPROVED, EscrowStatus.AUTHORIZED)

    with pytest.raises(PaymentError) as exc:
        await release_payment_to_pending(db_session, task.task_id, human.user_id, agent.user_id)
    assert "deposited" in exc.value.detail
    assert await _count(db_session, PendingTransaction) == 0


@pytest.mark.asyncio
async def test_release_without_destination_writes_nothing(db_session: AsyncSession) -> None:
    agent, human, task = await _approved_task(db_session, wallet_address=None)

    with pytest.raises(PaymentError) as exc:
        await release_payment_to_pending(db_session, task.task_id, human.user_id, agent.user_id)

    assert exc.value.status_code == 422
    await db_session.refresh(task)
    assert task.escrow_status == EscrowStatus.DEPOSITED
    assert await _count(db_session, PendingTransaction) == 0


@pytest.mark.asyncio
async def test_release_with_zero_net_rejected(db_session: AsyncSession) -> None:
    object.__setattr__(settings, "platform_fee_percent", Decimal("100"))
    agent, human, task = await _approved_task(db_session)

    with pytest.raises(PaymentError) as exc:
        await release_payment_to_pending(db_session, task.task_id, human.user_id, agent.user_id)
    assert exc.value.status_code == 422
    assert await _count(db_session, Payout) == 0


@pytest.mark.asyncio
async def test_release_to_non_assignee_rejected(db_session: AsyncSession) -> None:
    agent, _, task = await _approved_task(db_session)
    stranger = await make_user(db_session)

    with pytest.raises(PaymentError):
        await release_payment_to_pending(db_session, task.task_id, stranger.user_id, agent.user_id)
    await db_session.refresh(task)
    assert task.escrow_status == EscrowStatus.DEPOSITED


@pytest.mark.asyncio
async def test_wallet_balance_groups_by_status(db_session: AsyncSession) -> None:
    agent = await make_user(db_session, UserType.AGENT)
    human = await make_user(db_session)
    tasks = [await make_task(db_session, agent, human, TaskStatus.PAID) for _ in range(4)]
    await make_holding(db_session, human, tasks[0], 1000, PendingTransactionStatus.PENDING)
    await make_holding(db_session, human, tasks[1], 2000)
    await make_holding(db_session, human, tasks[2], 500)
    await make_holding(db_session, human, tasks[3], 700, PendingTransactionStatus.WITHDRAWN)

    balance = await get_wallet_balance(db_session, human.user_id)

    assert balance.pending_cents == 1000
    assert balance.available_cents == 2500
    assert balance.withdrawn_cents == 700
    assert balance.total_cents == 3500
    assert len(balance.transactions) == 4


@pytest.mark.asyncio
async def test_wallet_balance_empty(db_session: AsyncSession) -> None:
    human = await make_user(db_session)
    balance = await get_wallet_balance(db_session, human.user_id)
    assert balance.total_cents == 0
    assert balance.transactions == []
