"""Background tasks — regulatory sync worker and daily recipe-day cadence.

Uses FastAPI's lifespan context to start/stop asyncio background loops.
No external dependencies (no Celery, no APScheduler):

  - the sync worker polls for due phase-change jobs every
    ``SYNC_POLL_INTERVAL_SECONDS``
  - the recipe loop fires once per day at ``RECIPE_ADVANCE_HOUR`` (UTC)
    and advances every active recipe activation

Usage:
    from app.services.scheduler import lifespan
    app = FastAPI(lifespan=lifespan, ...)

For multi-instance deployments run a single worker process instead
(``SYNC_WORKER_ENABLED=false`` on the API nodes, ``python -m app.cli``
on a schedule).
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

from fastapi import FastAPI

from app.config import settings
from app.database import async_session
from app.services.recipe_activation import advance_recipe_days
from app.services.regulatory_sync import SyncWorker
from app.utils.cache import close_redis

logger = logging.getLogger("canopytrack.scheduler")


async def run_daily_recipe_advance() -> dict:
    """Advance every active recipe activation to today."""
    logger.info("Starting daily recipe advance")
    async with async_session() as db:
        try:
            summary = await advance_recipe_days(db)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    logger.info(
        "Recipe advance complete: %d checked, %d stage changes, %d completed",
        summary["checked"], summary["stage"], summary["completed"],
    )
    return summary


def _seconds_until(hour: int, now: datetime | None = None) -> float:
    now = now or datetime.now(timezone.utc)
    next_run = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if next_run <= now:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


async def _recipe_loop() -> None:
    """Sleep loop that fires the recipe advance once per day."""
    while True:
        wait_seconds = _seconds_until(settings.recipe_advance_hour)
        logger.info("Next recipe advance in %.0f seconds", wait_seconds)
        await asyncio.sleep(wait_seconds)

        try:
            await run_daily_recipe_advance()
        except Exception:
            logger.exception("Unhandled error in daily recipe advance")

        # Small buffer to avoid running twice in the same minute
        await asyncio.sleep(60)


async def _ensure_tables():
    """Create any missing tables (fresh databases, local runs)."""
    from app.database import Base, engine
    import app.models  # noqa: F401  register every table on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Ensured database tables")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: start the background loops on startup, cancel on shutdown."""
    if settings.create_tables_on_startup:
        await _ensure_tables()

    tasks = [asyncio.create_task(_recipe_loop())]
    if settings.sync_worker_enabled:
        tasks.append(asyncio.create_task(SyncWorker().run_forever()))
    logger.info("Background tasks started (%d)", len(tasks))
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        await close_redis()
        logger.info("Background tasks stopped")
