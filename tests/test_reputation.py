"""Tests for reputation stats (app/services/reputation.py)."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user import UserType
from app.services.reputation import (
    compute_agent_reliability,
    compute_success_rate,
    enrich_with_reputation,
    get_reputation_summary,
    increment_stat,
)
from tests.conftest import make_user


def test_success_rate_none_without_history() -> None:
    assert compute_success_rate({"total_tasks_completed": 0, "total_disputes_lost": 0}) is None


def test_success_rate_rounds_half_up() -> None:
    # 7 / 8 = 87.5 -> 88
    assert compute_success_rate({"total_tasks_completed": 7, "total_disputes_lost": 1}) == 88
    # 1 / 3 = 33.33 -> 33
    assert compute_success_rate({"total_tasks_completed": 1, "total_disputes_lost": 2}) == 33


def test_success_rate_ignores_revisions() -> None:
    user = {"total_tasks_completed": 3, "total_disputes_lost": 0, "total_rejections": 10}
    assert compute_success_rate(user) == 100


def test_success_rate_treats_missing_fields_as_zero() -> None:
    assert compute_success_rate({"total_disputes_lost": 2}) == 0


def test_agent_reliability_threshold() -> None:
    assert compute_agent_reliability({"total_tasks_posted": 4, "total_cancellations": 0}) is None
    assert compute_agent_reliability({"total_tasks_posted": 5, "total_cancellations": 1}) == 80
    # 1 - 1/8 = 87.5 -> 88
    assert compute_agent_reliability({"total_tasks_posted": 8, "total_cancellations": 1}) == 88


def test_enrich_with_reputation() -> None:
    users = [{"id": 1, "total_tasks_completed": 1}, {"id": 2}]
    enriched = enrich_with_reputation(users)
    assert enriched[0]["success_rate"] == 100
    assert enriched[1]["success_rate"] is None
    assert enrich_with_reputation(None) == []


@pytest.mark.asyncio
async def test_increment_stat_is_atomic_add(db_session: AsyncSession) -> None:
    user = await make_user(db_session)
    await increment_stat(db_session, user.user_id, "total_rejections")
    await increment_stat(db_session, user.user_id, "total_rejections", 2)
    await db_session.commit()
    await db_session.refresh(user)
    assert user.total_rejections == 3


@pytest.mark.asyncio
async def test_increment_stat_rejects_unknown_stat(db_session: AsyncSession) -> None:
    user = await make_user(db_session)
    with pytest.raises(ValueError):
        await increment_stat(db_session, user.user_id, "display_name")


@pytest.mark.asyncio
async def test_reputation_summary(db_session: AsyncSession) -> None:
    agent = await make_user(
        db_session, UserType.AGENT, total_tasks_posted=10, total_cancellations=2,
    )
    summary = await get_reputation_summary(db_session, agent.user_id)
    assert summary["user_type"] == "agent"
    assert summary["agent_reliability"] == 80
    assert summary["success_rate"] is None

    worker = await make_user(db_session, total_tasks_completed=3, total_disputes_lost=1)
    summary = await get_reputation_summary(db_session, worker.user_id)
    assert summary["success_rate"] == 75
    assert summary["agent_reliability"] is None
