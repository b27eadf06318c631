"""Tests for the background sweep scheduler."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from app.services.scheduler import PeriodicSweep, SweepScheduler, build_default_scheduler


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError):
        PeriodicSweep("bad", 0, AsyncMock())


@pytest.mark.asyncio
async def test_run_once_swallows_tick_failure() -> None:
    func = AsyncMock(side_effect=RuntimeError("db down"))
    sweep = PeriodicSweep("flaky", 60, func)

    await sweep.run_once()
    await sweep.run_once()

    assert func.await_count == 2
    assert sweep.ticks == 2


@pytest.mark.asyncio
async def test_start_ticks_immediately_and_stop_cancels() -> None:
    ticked = asyncio.Event()

    async def tick() -> None:
        ticked.set()

    sweep = PeriodicSweep("promoter", 3600, tick)
    sweep.start()
    assert sweep.running

    await asyncio.wait_for(ticked.wait(), timeout=1)
    await sweep.stop()

    assert not sweep.running
    assert sweep.ticks == 1


@pytest.mark.asyncio
async def test_loop_keeps_running_after_failure() -> None:
    calls = 0
    done = asyncio.Event()

    async def tick() -> None:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("first tick fails")
        done.set()

    sweep = PeriodicSweep("renewal", 0.01, tick)
    sweep.start()
    await asyncio.wait_for(done.wait(), timeout=1)
    await sweep.stop()

    assert calls >= 2


@pytest.mark.asyncio
async def test_start_twice_keeps_single_task() -> None:
    sweep = PeriodicSweep("once", 3600, AsyncMock())
    sweep.start()
    task = sweep._task
    sweep.start()
    assert sweep._task is task
    await sweep.stop()


@pytest.mark.asyncio
async def test_default_scheduler_runs_both_sweeps(session_factory, monkeypatch) -> None:
    promote = AsyncMock()
    renew = AsyncMock()
    monkeypatch.setattr("app.services.balance_promoter.promote_pending_balances", promote)
    monkeypatch.setattr("app.services.escrow.renew_expiring_authorizations", renew)

    scheduler = build_default_scheduler(session_factory)
    assert [s.name for s in scheduler.sweeps] == ["balance_promoter", "auth_renewal"]

    for sweep in scheduler.sweeps:
        await sweep.run_once()
    assert promote.await_args.args[0] is session_factory
    assert renew.await_args.args[0] is session_factory

    scheduler.start()
    assert all(s.running for s in scheduler.sweeps)
    await scheduler.stop()
    assert not any(s.running for s in scheduler.sweeps)


@pytest.mark.asyncio
async def test_stop_without_start_is_harmless() -> None:
    scheduler = SweepScheduler()
    scheduler.add(PeriodicSweep("idle", 10, AsyncMock()))
    await scheduler.stop()
