"""Recurring background sweeps.

The balance promoter and the authorization renewal sweep run as asyncio
tasks owned by a SweepScheduler, which the application lifespan starts and
stops. Each sweep ticks once immediately on start and then every interval.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings

logger = logging.getLogger(__name__)


class PeriodicSweep:
    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], Awaitable[Any]],
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self._func = func
        self._task: asyncio.Task | None = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"sweep:{self.name}")
        logger.info("Started sweep %s (every %ss)", self.name, self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Stopped sweep %s", self.name)

    async def run_once(self) -> None:
        """Run one tick; a failing tick is logged, never raised."""
        try:
            await self._func()
        except Exception:
            logger.exception("Sweep %s tick failed", self.name)
        finally:
            self.ticks += 1

    async def _run(self) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval_seconds)


class SweepScheduler:
    def __init__(self, sweeps: list[PeriodicSweep] | None = None) -> None:
        self.sweeps: list[PeriodicSweep] = list(sweeps or [])

    def add(self, sweep: PeriodicSweep) -> None:
        self.sweeps.append(sweep)

    def start(self) -> None:
        for sweep in self.sweeps:
            sweep.start()

    async def stop(self) -> None:
        for sweep in self.sweeps:
            await sweep.stop()


def build_default_scheduler(
    session_factory: async_sessionmaker[AsyncSession],
) -> SweepScheduler:
    """The production sweeps: balance promotion and card-hold renewal."""
    from app.services.balance_promoter import promote_pending_balances
    from app.services.card_processor import get_card_processor
    from app.services.escrow import renew_expiring_authorizations
    from app.services.notifications import DatabaseNotifier

    notifier = DatabaseNotifier(session_factory)
    processor = get_card_processor()

    async def promote() -> None:
        await promote_pending_balances(session_factory, notifier)

    async def renew() -> None:
        await renew_expiring_authorizations(session_factory, processor, notifier)

    return SweepScheduler([
        PeriodicSweep("balance_promoter", settings.balance_promoter_interval_seconds, promote),
        PeriodicSweep("auth_renewal", settings.auth_hold_renewal_interval_seconds, renew),
    ])
