"""Management CLI for background operations.

Usage:
    python -m app.cli process-sync-queue     # Run the sync worker until nothing is due
    python -m app.cli retrigger-failed       # Requeue every failed phase-change job
    python -m app.cli advance-recipe-days    # Run the daily recipe cadence now
"""

import asyncio
import sys

from app.database import async_session
from app.services.regulatory_sync import SyncWorker, retrigger_failed_jobs
from app.services.scheduler import run_daily_recipe_advance
from app.utils.cache import close_redis


async def process_sync_queue():
    """Drain due phase-change jobs."""
    summary = await SyncWorker().run_until_idle()
    if not summary:
        print("No due jobs.")
        return
    for status, count in sorted(summary.items()):
        print(f"  {status}: {count}")


async def retrigger_failed():
    async with async_session() as db:
        try:
            count = await retrigger_failed_jobs(db)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    print(f"{count} job(s) re-triggered")


async def advance_recipe_days():
    summary = await run_daily_recipe_advance()
    for key, count in summary.items():
        print(f"  {key}: {count}")


async def _run(command):
    try:
        await command()
    finally:
        await close_redis()


COMMANDS = {
    "process-sync-queue": process_sync_queue,
    "retrigger-failed": retrigger_failed,
    "advance-recipe-days": advance_recipe_days,
}


if __name__ == "__main__":
    cmd = sys.argv[1] if len(sys.argv) > 1 else ""
    if cmd in COMMANDS:
        asyncio.run(_run(COMMANDS[cmd]))
    else:
        print(f"Usage: python -m app.cli [{'|'.join(COMMANDS)}]")
        sys.exit(1)
