"""Reputation stats for workers and posters.

Rates are derived on read from the counters on the users row; nothing in the
settlement core writes a rate. Counters are bumped through increment_stat,
which issues an atomic ``col = col + n`` update.
"""

import logging
import uuid
from collections.abc import Iterable, Mapping
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user import REPUTATION_STATS, User, UserType

logger = logging.getLogger(__name__)

# Posters with fewer tasks than this get no reliability score
MIN_POSTED_FOR_RELIABILITY = 5


def _field(user: Mapping[str, Any] | Any, name: str) -> int:
    if isinstance(user, Mapping):
        value = user.get(name)
    else:
        value = getattr(user, name, None)
    return int(value or 0)


def _percent(numerator: Decimal) -> int:
    return int((numerator * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_success_rate(user: Mapping[str, Any] | Any) -> int | None:
    """Worker success rate as a 0-100 percentage, or None with no history.

    completed / (completed + disputes_lost). total_rejections is deliberately
    not part of the denominator: a revision request is normal workflow, so a
    worker who was asked for revisions but was ultimately paid keeps 100%.
    """
    completed = _field(user, "total_tasks_completed")
    disputes_lost = _field(user, "total_disputes_lost")
    denominator = completed + disputes_lost
    if denominator == 0:
        return None
    return _percent(Decimal(completed) / Decimal(denominator))


def compute_agent_reliability(user: Mapping[str, Any] | Any) -> int | None:
    """Poster reliability (inverse cancellation rate), None below 5 posted tasks."""
    posted = _field(user, "total_tasks_posted")
    if posted < MIN_POSTED_FOR_RELIABILITY:
        return None
    cancellations = _field(user, "total_cancellations")
    return _percent(1 - Decimal(cancellations) / Decimal(posted))


def enrich_with_reputation(users: Iterable[Mapping[str, Any]] | None) -> list[dict[str, Any]]:
    """Attach success_rate to each user dict."""
    return [{**user, "success_rate": compute_success_rate(user)} for user in users or []]


async def increment_stat(
    db: AsyncSession, user_id: uuid.UUID, stat_name: str, increment_by: int = 1
) -> None:
    """Atomically bump a counter. Does not commit.

    Stat bumps ride in the caller's transaction, so a failure here rolls back
    the whole unit along with the write that caused it.
    """
    if stat_name not in REPUTATION_STATS:
        raise ValueError(f"Unknown reputation stat: {stat_name}")

    column = getattr(User, stat_name)
    result = await db.execute(
        update(User)
        .where(User.user_id == user_id)
        .values({stat_name: column + increment_by})
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.warning("increment_stat: user %s not found (stat %s)", user_id, stat_name)


async def get_reputation_summary(db: AsyncSession, user_id: uuid.UUID) -> dict[str, Any] | None:
    result = await db.execute(select(User).where(User.user_id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        return None

    return {
        "user_id": user.user_id,
        "user_type": user.user_type.value,
        "total_tasks_completed": user.total_tasks_completed,
        "total_tasks_accepted": user.total_tasks_accepted,
        "total_rejections": user.total_rejections,
        "total_disputes_filed": user.total_disputes_filed,
        "total_disputes_lost": user.total_disputes_lost,
        "total_cancellations": user.total_cancellations,
        "total_tasks_posted": user.total_tasks_posted,
        "jobs_completed": user.jobs_completed,
        "success_rate": compute_success_rate(user),
        "agent_reliability": (
            compute_agent_reliability(user) if user.user_type == UserType.AGENT else None
        ),
    }
