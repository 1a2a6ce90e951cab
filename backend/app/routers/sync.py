"""Regulatory sync router — inspect and retrigger phase-change jobs.

Endpoints:
    GET   /api/sync/jobs                       List jobs (filter by batch/status)
    GET   /api/sync/jobs/{job_id}              One job
    POST  /api/sync/jobs/{job_id}/retrigger    Requeue a failed job
    POST  /api/sync/retrigger-failed           Requeue every failed job
    POST  /api/sync/run                        Run one worker pass now
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.deps import get_actor_id
from app.middleware.exceptions import NotFoundError
from app.models.sync_job import PhaseChangeJob
from app.schemas.sync import PhaseChangeJobOut, RetriggerAllOut, SyncRunOut
from app.services import regulatory_sync
from app.utils.cache import invalidate_batch_cache

router = APIRouter()


@router.get("/jobs", response_model=list[PhaseChangeJobOut])
async def list_jobs(
    batch_id: str | None = Query(None),
    status_filter: str | None = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    return await regulatory_sync.list_jobs(db, batch_id, status_filter, limit)


@router.get("/jobs/{job_id}", response_model=PhaseChangeJobOut)
async def get_job(job_id: str, db: AsyncSession = Depends(get_db)):
    job = await db.get(PhaseChangeJob, job_id)
    if not job:
        raise NotFoundError("Sync job", job_id)
    return job


@router.post("/jobs/{job_id}/retrigger", response_model=PhaseChangeJobOut)
async def retrigger_job(
    job_id: str,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor_id),
):
    """Reset attempts on a failed job so the worker picks it up again."""
    job = await regulatory_sync.retrigger_job(db, job_id, actor)
    await invalidate_batch_cache(job.batch_id)
    return job


@router.post("/retrigger-failed", response_model=RetriggerAllOut)
async def retrigger_failed(
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor_id),
):
    count = await regulatory_sync.retrigger_failed_jobs(db, actor)
    return RetriggerAllOut(retriggered=count)


@router.post("/run", response_model=SyncRunOut)
async def run_sync_pass():
    """Claim and execute due jobs once, outside the background loop.

    The worker opens its own sessions, so this endpoint has no request
    transaction.
    """
    results = await regulatory_sync.SyncWorker().run_once()
    return SyncRunOut(results=results)
