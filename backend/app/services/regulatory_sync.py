"""Regulatory sync coordinator — delivers growth-phase changes to the regulator.

Stage transitions enqueue a PhaseChangeJob in their own transaction and
return immediately.  The SyncWorker picks jobs up later:

  1. Stale claims (``in_progress`` past their lease) are charged a failed
     attempt, so a job that keeps crashing still ends ``failed``.
  2. Due ``pending`` jobs are claimed with a conditional UPDATE, at most one
     per batch and never for a batch that already has a job in flight,
     oldest first.
  3. Each claimed job is checked for supersession (a newer job for the same
     batch exists) and otherwise sent through the RegulatoryClient.
  4. Success marks job and batch ``synced``.  Failure of any kind reschedules with
     exponential backoff until ``max_attempts``, then marks both ``failed``.

Operators re-trigger failed jobs through ``retrigger_job`` (HTTP or CLI).
"""

import asyncio
import logging
from datetime import datetime, timedelta

from sqlalchemy import and_, exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from app.config import settings
from app.database import async_session
from app.middleware.exceptions import ExternalSyncFailure, NotFoundError, ValidationError
from app.models.batch import Batch, SyncStatus
from app.models.batch_history import EventType
from app.models.sync_job import JobStatus, PhaseChangeJob, RegulatoryPhase
from app.services.regulatory_client import PhaseChangeReport, RegulatoryClient
from app.utils.cache import invalidate_batch_cache
from app.utils.events import log_event

logger = logging.getLogger("canopytrack.sync")


def backoff_delay(attempts: int) -> timedelta:
    """Delay before the next try after ``attempts`` failed attempts."""
    seconds = settings.regulatory_backoff_base_seconds * 2 ** max(attempts - 1, 0)
    return timedelta(seconds=min(seconds, settings.regulatory_backoff_cap_seconds))


# ── Enqueue ────────────────────────────────────────────────────


async def enqueue_phase_change(
    db: AsyncSession,
    batch: Batch,
    from_phase: RegulatoryPhase,
    to_phase: RegulatoryPhase,
    occurred_at: datetime | None = None,
    actor: str | None = None,
) -> PhaseChangeJob:
    """Add a job for ``batch`` to the current transaction.

    Older pending or failed jobs for the batch are marked superseded; the
    regulator only needs the latest phase.
    """
    now = datetime.utcnow()
    await db.execute(
        update(PhaseChangeJob)
        .where(
            PhaseChangeJob.batch_id == batch.id,
            PhaseChangeJob.status.in_([JobStatus.PENDING.value, JobStatus.FAILED.value]),
        )
        .values(status=JobStatus.SUPERSEDED.value, completed_at=now)
        .execution_options(synchronize_session=False)
    )

    job = PhaseChangeJob(
        batch_id=batch.id,
        external_batch_id=batch.external_batch_id,
        from_phase=from_phase.value,
        to_phase=to_phase.value,
        occurred_at=occurred_at or now,
        status=JobStatus.PENDING.value,
        attempts=0,
        max_attempts=settings.regulatory_max_attempts,
        next_attempt_at=now,
    )
    db.add(job)
    await db.flush()

    batch.sync_status = SyncStatus.PENDING.value
    log_event(
        db, batch.id, EventType.SYNC_ENQUEUED, actor,
        data={"job_id": job.id, "from_phase": job.from_phase, "to_phase": job.to_phase},
    )
    return job


# ── Claiming ───────────────────────────────────────────────────


async def requeue_stale_claims(db: AsyncSession, now: datetime | None = None) -> int:
    """Charge an attempt to every ``in_progress`` job whose lease expired.

    The job goes back to ``pending`` with backoff, or to ``failed`` once
    its attempts are used up, exactly like a failed send.
    """
    now = now or datetime.utcnow()
    result = await db.execute(
        select(PhaseChangeJob)
        .where(
            PhaseChangeJob.status == JobStatus.IN_PROGRESS.value,
            PhaseChangeJob.next_attempt_at <= now,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    stale = list(result.scalars().all())
    for job in stale:
        await mark_attempt_failed(
            db, job, "Claim lease expired before an outcome was recorded", now
        )
    if stale:
        logger.warning("Requeued %d stale sync claims", len(stale))
    return len(stale)


async def claim_due_jobs(
    db: AsyncSession,
    limit: int,
    now: datetime | None = None,
) -> list[str]:
    """Claim up to ``limit`` due jobs, one per batch, oldest first.

    Each claim is a conditional UPDATE on ``status = 'pending'`` so two
    workers never take the same job.
    """
    now = now or datetime.utcnow()
    in_flight = aliased(PhaseChangeJob)
    candidates = (
        await db.execute(
            select(PhaseChangeJob.id, PhaseChangeJob.batch_id)
            .where(
                PhaseChangeJob.status == JobStatus.PENDING.value,
                PhaseChangeJob.next_attempt_at <= now,
                ~exists().where(
                    and_(
                        in_flight.batch_id == PhaseChangeJob.batch_id,
                        in_flight.status == JobStatus.IN_PROGRESS.value,
                    )
                ),
            )
            .order_by(PhaseChangeJob.occurred_at, PhaseChangeJob.created_at)
        )
    ).all()

    lease_until = now + timedelta(seconds=settings.sync_claim_lease_seconds)
    claimed: list[str] = []
    seen_batches: set[str] = set()
    for job_id, batch_id in candidates:
        if len(claimed) >= limit:
            break
        if batch_id in seen_batches:
            continue
        seen_batches.add(batch_id)

        result = await db.execute(
            update(PhaseChangeJob)
            .where(
                PhaseChangeJob.id == job_id,
                PhaseChangeJob.status == JobStatus.PENDING.value,
            )
            .values(status=JobStatus.IN_PROGRESS.value, next_attempt_at=lease_until)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed.append(job_id)
    return claimed


# ── Outcome bookkeeping ────────────────────────────────────────


async def _has_newer_job(db: AsyncSession, job: PhaseChangeJob) -> bool:
    result = await db.execute(
        select(PhaseChangeJob.id)
        .where(
            PhaseChangeJob.batch_id == job.batch_id,
            PhaseChangeJob.id != job.id,
            PhaseChangeJob.status != JobStatus.SUPERSEDED.value,
            PhaseChangeJob.created_at > job.created_at,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def _set_batch_sync(db: AsyncSession, batch_id: str, **values) -> None:
    # Plain UPDATE: worker bookkeeping must not collide with the version
    # counter that guards user-driven batch mutations.
    await db.execute(
        update(Batch)
        .where(Batch.id == batch_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


async def mark_synced(db: AsyncSession, job: PhaseChangeJob, confirmation_id: str) -> None:
    now = datetime.utcnow()
    job.status = JobStatus.SYNCED.value
    job.confirmation_id = confirmation_id
    job.last_error = None
    job.completed_at = now

    values = {"last_sync_confirmation_id": confirmation_id}
    if not await _has_newer_job(db, job):
        values["sync_status"] = SyncStatus.SYNCED.value
    await _set_batch_sync(db, job.batch_id, **values)

    log_event(
        db, job.batch_id, EventType.SYNC_CONFIRMED, None,
        data={"job_id": job.id, "to_phase": job.to_phase, "confirmation_id": confirmation_id},
    )


async def mark_attempt_failed(
    db: AsyncSession,
    job: PhaseChangeJob,
    error: str,
    now: datetime | None = None,
) -> None:
    now = now or datetime.utcnow()
    job.attempts += 1
    job.last_error = error

    if job.attempts >= job.max_attempts:
        job.status = JobStatus.FAILED.value
        job.completed_at = now
        if not await _has_newer_job(db, job):
            await _set_batch_sync(db, job.batch_id, sync_status=SyncStatus.FAILED.value)
        log_event(
            db, job.batch_id, EventType.SYNC_FAILED, None,
            notes=error,
            data={"job_id": job.id, "attempts": job.attempts},
        )
        logger.error(
            "Phase change job %s failed permanently after %d attempts: %s",
            job.id, job.attempts, error,
        )
    else:
        job.status = JobStatus.PENDING.value
        job.next_attempt_at = now + backoff_delay(job.attempts)
        logger.warning(
            "Phase change job %s attempt %d/%d failed, retry at %s: %s",
            job.id, job.attempts, job.max_attempts,
            job.next_attempt_at.isoformat(), error,
        )


# ── Operator actions ───────────────────────────────────────────


async def retrigger_job(db: AsyncSession, job_id: str, actor: str | None = None) -> PhaseChangeJob:
    """Reset a failed job so the worker sends it on its next pass."""
    job = await db.get(PhaseChangeJob, job_id)
    if not job:
        raise NotFoundError("Sync job", job_id)
    if job.status != JobStatus.FAILED.value:
        raise ValidationError(
            f"Only failed jobs can be re-triggered (job is {job.status})",
            error_code="JOB_NOT_FAILED",
        )

    job.status = JobStatus.PENDING.value
    job.attempts = 0
    job.last_error = None
    job.completed_at = None
    job.next_attempt_at = datetime.utcnow()
    await _set_batch_sync(db, job.batch_id, sync_status=SyncStatus.PENDING.value)
    log_event(
        db, job.batch_id, EventType.SYNC_ENQUEUED, actor,
        notes="Re-triggered by operator",
        data={"job_id": job.id, "retrigger": True},
    )
    await db.flush()
    return job


async def retrigger_failed_jobs(db: AsyncSession, actor: str | None = None) -> int:
    """Re-trigger every failed job.  Returns the count."""
    result = await db.execute(
        select(PhaseChangeJob.id).where(PhaseChangeJob.status == JobStatus.FAILED.value)
    )
    job_ids = [row[0] for row in result.all()]
    batch_ids = set()
    for job_id in job_ids:
        job = await retrigger_job(db, job_id, actor)
        batch_ids.add(job.batch_id)

    for batch_id in batch_ids:
        await invalidate_batch_cache(batch_id)
    return len(job_ids)


async def list_jobs(
    db: AsyncSession,
    batch_id: str | None = None,
    status: str | None = None,
    limit: int = 100,
) -> list[PhaseChangeJob]:
    stmt = select(PhaseChangeJob).order_by(PhaseChangeJob.created_at.desc()).limit(limit)
    if batch_id:
        stmt = stmt.where(PhaseChangeJob.batch_id == batch_id)
    if status:
        stmt = stmt.where(PhaseChangeJob.status == status)
    result = await db.execute(stmt)
    return list(result.scalars().all())


# ── Worker ─────────────────────────────────────────────────────


class SyncWorker:
    """Claims due jobs and executes them concurrently, one per batch.

    Usage:
        worker = SyncWorker()
        summary = await worker.run_once()     # one pass (CLI, tests)
        await worker.run_forever()            # lifespan background task
    """

    def __init__(
        self,
        session_factory: async_sessionmaker | None = None,
        client: RegulatoryClient | None = None,
        concurrency: int | None = None,
        poll_interval: float | None = None,
    ):
        self.session_factory = session_factory or async_session
        self.client = client or RegulatoryClient()
        self.concurrency = concurrency or settings.sync_worker_concurrency
        self.poll_interval = (
            poll_interval if poll_interval is not None
            else settings.sync_poll_interval_seconds
        )

    async def _claim(self) -> list[str]:
        async with self.session_factory() as db:
            try:
                await requeue_stale_claims(db)
                job_ids = await claim_due_jobs(db, self.concurrency)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return job_ids

    async def _execute(self, job_id: str) -> str:
        """Run one claimed job.  Returns the resulting job status."""
        async with self.session_factory() as db:
            job = await db.get(PhaseChangeJob, job_id)
            if job is None:
                return "missing"
            if await _has_newer_job(db, job):
                job.status = JobStatus.SUPERSEDED.value
                job.completed_at = datetime.utcnow()
                await db.commit()
                logger.info("Phase change job %s superseded before sending", job_id)
                return job.status

            report = PhaseChangeReport(
                batch_id=job.batch_id,
                external_batch_id=job.external_batch_id,
                from_phase=job.from_phase,
                to_phase=job.to_phase,
                occurred_at=job.occurred_at.isoformat() + "Z",
            )
            # Release the connection while the regulator call is in flight
            await db.commit()

        try:
            confirmation_id = await self.client.report_phase_change(report)
            error = None
        except ExternalSyncFailure as exc:
            confirmation_id = None
            error = exc.message
        except Exception as exc:
            logger.exception("Unexpected error sending phase change job %s", job_id)
            confirmation_id = None
            error = f"Unexpected error: {exc!r}"

        async with self.session_factory() as db:
            job = await db.get(PhaseChangeJob, job_id)
            if error is None:
                await mark_synced(db, job, confirmation_id)
            else:
                await mark_attempt_failed(db, job, error)
            await db.commit()
            status = job.status

        await invalidate_batch_cache(report.batch_id)
        return status

    async def run_once(self) -> dict[str, int]:
        """Claim and execute one round of due jobs.

        Returns a count per resulting job status.
        """
        job_ids = await self._claim()
        if not job_ids:
            return {}

        results = await asyncio.gather(
            *(self._execute(job_id) for job_id in job_ids),
            return_exceptions=True,
        )

        summary: dict[str, int] = {}
        for job_id, outcome in zip(job_ids, results):
            if isinstance(outcome, Exception):
                logger.error(
                    "Phase change job %s crashed; its lease expiry will count as a failed attempt",
                    job_id, exc_info=outcome,
                )
                outcome = "error"
            summary[outcome] = summary.get(outcome, 0) + 1
        logger.info("Sync pass finished: %s", summary)
        return summary

    async def run_until_idle(self, max_rounds: int = 100) -> dict[str, int]:
        """Run passes until nothing is due (bounded).  Used by the CLI."""
        total: dict[str, int] = {}
        for _ in range(max_rounds):
            summary = await self.run_once()
            if not summary:
                break
            for key, count in summary.items():
                total[key] = total.get(key, 0) + count
        return total

    async def run_forever(self) -> None:
        logger.info(
            "Sync worker started (concurrency=%d, poll=%.1fs)",
            self.concurrency, self.poll_interval,
        )
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Unhandled error in sync worker pass")
            await asyncio.sleep(self.poll_interval)
