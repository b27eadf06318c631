#!/usr/bin/env python3
"""
Payout reconciliation report.

Lists payouts that have no clearing-window holding record and tasks whose
escrow was released without a payout. Exits non-zero when anything is found,
so it can run from cron and alert on failure.

Run:
  DATABASE_URL=postgresql+asyncpg://... python scripts/reconcile_payouts.py
"""

import asyncio
import logging
import sys

from app.database import async_session_factory, engine
from app.services.reconciliation import reconcile_payouts

# ─── Colors ───
BOLD = "\033[1m"
GREEN = "\033[92m"
RED = "\033[91m"
RESET = "\033[0m"


async def run() -> int:
    async with async_session_factory() as db:
        report = await reconcile_payouts(db)
    await engine.dispose()

    if report.clean:
        print(f"{GREEN}{BOLD}✓ Ledger reconciled{RESET}: every payout has a holding record")
        return 0

    if report.payouts_without_pending:
        print(f"{RED}{BOLD}Payouts without a pending transaction ({len(report.payouts_without_pending)}){RESET}")
        for payout_id in report.payouts_without_pending:
            print(f"  {payout_id}")
    if report.released_tasks_without_payout:
        print(f"{RED}{BOLD}Released tasks without a payout ({len(report.released_tasks_without_payout)}){RESET}")
        for task_id in report.released_tasks_without_payout:
            print(f"  {task_id}")
    return 1


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()
