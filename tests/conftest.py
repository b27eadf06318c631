"""Test configuration and fixtures.

Each test gets its own SQLite database file (via aiosqlite) with the full
schema created from the models, so tests can commit freely and background
sweeps can open their own sessions. Set TEST_DATABASE_URL to run against
Postgres instead; tables are then dropped and recreated per test.
"""

import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

import app.models.dispute  # noqa: F401 — ensure models are registered
import app.models.escrow  # noqa: F401
import app.models.notification  # noqa: F401
import app.models.payment  # noqa: F401
from app.config import settings
from app.database import Base, get_db
from app.main import app
from app.models.payment import PendingTransaction, PendingTransactionStatus, Payout, PayoutStatus
from app.models.task import EscrowStatus, PaymentMethod, Task, TaskStatus
from app.models.user import User, UserType
from app.redis import get_redis
from app.services.card_processor import Authorization
from app.services.notifications import DatabaseNotifier, get_notifier
from app.services.transfers import TransferResult

WORKER_WALLET = "0x" + "ab" * 20
AGENT_WALLET = "0x" + "cd" * 20


@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    object.__setattr__(settings, "card_processor_backend", "log")
    object.__setattr__(settings, "transfer_backend", "log")
    object.__setattr__(settings, "scheduler_enabled", False)
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    url = settings.test_database_url or f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"
    engine = create_async_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Redis stand-in whose token bucket always allows the request."""
    redis = AsyncMock()
    redis.eval.return_value = [1, 99, 0]
    return redis


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    mock_redis: AsyncMock,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with overridden DB, Redis and notifier dependencies."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    async def override_get_redis() -> AsyncGenerator[AsyncMock, None]:
        yield mock_redis

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_notifier] = lambda: DatabaseNotifier(session_factory)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------------------------

def make_card_processor() -> AsyncMock:
    """Card processor mock that succeeds on every call."""
    processor = AsyncMock()
    processor.authorize.return_value = Authorization("pi_test_auth", 0)
    processor.renew.return_value = Authorization("pi_test_renewed", 0)
    return processor


def make_transfer_client(success: bool = True, tx_hash: str = "0xfeed") -> AsyncMock:
    client = AsyncMock()
    client.method = "usdc"
    client.is_valid_address = lambda destination: bool(destination)
    if success:
        client.send_transfer.return_value = TransferResult(True, tx_hash=tx_hash)
    else:
        client.send_transfer.return_value = TransferResult(False, error="RPC unavailable")
    return client


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def auth_headers(user: User | uuid.UUID) -> dict[str, str]:
    user_id = user.user_id if isinstance(user, User) else user
    return {"X-User-Id": str(user_id)}


async def make_user(
    db: AsyncSession,
    user_type: UserType = UserType.HUMAN,
    **overrides: Any,
) -> User:
    data: dict[str, Any] = {
        "user_id": uuid.uuid4(),
        "user_type": user_type,
        "display_name": "Test Agent" if user_type == UserType.AGENT else "Test Worker",
    }
    if user_type == UserType.HUMAN:
        data["wallet_address"] = WORKER_WALLET
    else:
        data["wallet_address"] = AGENT_WALLET
        data["stripe_customer_id"] = "cus_test"
    data.update(overrides)
    user = User(**data)
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


async def make_task(
    db: AsyncSession,
    agent: User,
    human: User | None = None,
    status: TaskStatus = TaskStatus.OPEN,
    escrow_status: EscrowStatus | None = None,
    budget: str = "100.00",
    **overrides: Any,
) -> Task:
    data: dict[str, Any] = {
        "task_id": uuid.uuid4(),
        "title": "Photograph storefront",
        "agent_id": agent.user_id,
        "human_id": human.user_id if human else None,
        "status": status,
        "escrow_status": escrow_status,
        "payment_method": PaymentMethod.STRIPE,
        "budget": Decimal(budget),
        "payment_intent_id": "pi_test_auth" if escrow_status is not None else None,
    }
    if escrow_status is not None:
        data["escrow_amount"] = Decimal(budget)
    data.update(overrides)
    task = Task(**data)
    db.add(task)
    await db.commit()
    await db.refresh(task)
    return task


async def make_holding(
    db: AsyncSession,
    user: User,
    task: Task,
    amount_cents: int,
    status: PendingTransactionStatus = PendingTransactionStatus.AVAILABLE,
    clears_at: datetime | None = None,
    cleared_at: datetime | None = None,
    payout_method: str = "usdc",
) -> PendingTransaction:
    """Insert a clearing-window record plus its matching payout."""
    now = datetime.now(UTC)
    row = PendingTransaction(
        pending_tx_id=uuid.uuid4(),
        user_id=user.user_id,
        task_id=task.task_id,
        amount_cents=amount_cents,
        status=status,
        payout_method=payout_method,
        clears_at=clears_at or now,
        cleared_at=cleared_at if cleared_at is not None else (
            now if status == PendingTransactionStatus.AVAILABLE else None
        ),
    )
    payout_status = {
        PendingTransactionStatus.PENDING: PayoutStatus.PENDING,
        PendingTransactionStatus.AVAILABLE: PayoutStatus.AVAILABLE,
        PendingTransactionStatus.WITHDRAWN: PayoutStatus.WITHDRAWN,
    }[status]
    db.add(row)
    db.add(Payout(
        payout_id=uuid.uuid4(),
        task_id=task.task_id,
        human_id=user.user_id,
        amount_cents=amount_cents,
        fee_cents=0,
        payout_method=payout_method,
        status=payout_status,
    ))
    await db.commit()
    await db.refresh(row)
    return row
