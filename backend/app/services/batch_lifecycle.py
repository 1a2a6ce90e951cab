"""Batch state machine — creation, stage transitions and plant counts.

Handles:
  - Creating a batch with a generated batch number and its first stage
    history entry
  - Applying a stage transition: precondition checks, history close/open,
    completion, and enqueueing a regulatory phase-change job when the
    growth phase changes
  - Updating the plant count with tag-mismatch warnings

Every mutation loads the batch with ``SELECT … FOR UPDATE``; the version
counter on Batch catches writers that bypass the lock.  Sync jobs are only
enqueued here; delivery happens in the sync worker and never affects the
transition's outcome.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.middleware.exceptions import (
    InvalidTransitionError,
    NoOpTransitionError,
    NotFoundError,
    ValidationError,
)
from app.models.batch import Batch, BatchStatus, DomainType, SyncStatus
from app.models.batch_history import BatchEvent, EventType, StageHistoryEntry
from app.models.site import Site
from app.schemas.batch import BatchCreate
from app.services import stage_graph
from app.services.jurisdiction import JurisdictionPolicy, get_site_policy
from app.services.plant_tags import completion, count_tags, record_mismatch
from app.services.pod_assignment import release_active_assignments
from app.services.recipe_activation import deactivate_active_recipe
from app.services.regulatory_sync import enqueue_phase_change
from app.utils.events import log_event
from app.utils.locks import ensure_operation_allowed, get_batch_locks, lock_batch_row
from app.utils.numbering import generate_batch_number

logger = logging.getLogger(__name__)


@dataclass
class TransitionResult:
    batch: Batch
    sync_enqueued: bool
    sync_job_id: str | None = None
    warnings: list[str] = field(default_factory=list)


# ── Reads ────────────────────────────────────────────────────


async def get_batch(db: AsyncSession, batch_id: str) -> Batch:
    batch = await db.get(Batch, batch_id)
    if not batch:
        raise NotFoundError("Batch", batch_id)
    return batch


async def get_stage_history(db: AsyncSession, batch_id: str) -> list[StageHistoryEntry]:
    await get_batch(db, batch_id)
    result = await db.execute(
        select(StageHistoryEntry)
        .where(StageHistoryEntry.batch_id == batch_id)
        .order_by(StageHistoryEntry.started_at, StageHistoryEntry.id)
    )
    return list(result.scalars().all())


async def get_events(
    db: AsyncSession,
    batch_id: str,
    event_type: str | None = None,
) -> list[BatchEvent]:
    await get_batch(db, batch_id)
    stmt = (
        select(BatchEvent)
        .where(BatchEvent.batch_id == batch_id)
        .order_by(BatchEvent.recorded_at, BatchEvent.id)
    )
    if event_type:
        stmt = stmt.where(BatchEvent.event_type == event_type)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def open_history_entry(db: AsyncSession, batch_id: str) -> StageHistoryEntry | None:
    result = await db.execute(
        select(StageHistoryEntry).where(
            StageHistoryEntry.batch_id == batch_id,
            StageHistoryEntry.ended_at.is_(None),
        )
    )
    return result.scalar_one_or_none()


async def move_stage(
    db: AsyncSession,
    batch: Batch,
    to_stage: str,
    actor: str | None,
    notes: str | None = None,
    now: datetime | None = None,
) -> None:
    """Close the open history entry and open one for ``to_stage``."""
    now = now or datetime.utcnow()
    current = await open_history_entry(db, batch.id)
    if current is not None:
        current.ended_at = now
    db.add(StageHistoryEntry(
        batch_id=batch.id,
        stage=to_stage,
        started_at=now,
        started_by=actor,
        notes=notes,
    ))
    batch.stage = to_stage


# ── Create ───────────────────────────────────────────────────


async def create_batch(db: AsyncSession, body: BatchCreate, actor: str | None = None) -> Batch:
    """Create a batch in its initial stage and log CREATED."""
    site = await db.get(Site, body.site_id)
    if not site:
        raise NotFoundError("Site", body.site_id)

    domain = body.domain_type.value
    stage = stage_graph.parse_stage(domain, body.stage).value
    if stage not in stage_graph.initial_stages(domain):
        raise ValidationError(f"A batch cannot start in stage {stage}")

    policy = await get_site_policy(db, site.id)
    if policy.allowed_stages is not None and stage not in policy.allowed_stages:
        raise ValidationError(
            f"Stage {stage} is not allowed in jurisdiction {policy.code}"
        )

    batch_number = body.batch_number or await generate_batch_number(db)
    now = datetime.utcnow()
    batch = Batch(
        batch_number=batch_number,
        domain_type=domain,
        stage=stage,
        status=BatchStatus.ACTIVE.value,
        site_id=site.id,
        cultivar_id=body.cultivar_id,
        plant_count=body.plant_count,
        start_date=body.start_date or now.date(),
        expected_harvest_date=body.expected_harvest_date,
        external_batch_id=body.external_batch_id,
        sync_status=SyncStatus.NOT_REQUIRED.value,
        notes=body.notes,
        created_by=actor,
    )
    db.add(batch)
    await db.flush()  # populate batch.id

    db.add(StageHistoryEntry(
        batch_id=batch.id,
        stage=stage,
        started_at=now,
        started_by=actor,
    ))
    log_event(
        db, batch.id, EventType.CREATED, actor,
        notes=body.notes,
        data={
            "batch_number": batch_number,
            "domain_type": domain,
            "stage": stage,
            "plant_count": body.plant_count,
        },
    )
    await db.flush()
    logger.info("Created %s batch %s in stage %s", domain, batch_number, stage)
    return batch


# ── Transition ───────────────────────────────────────────────


def _check_transition(batch: Batch, to_stage: str, policy: JurisdictionPolicy) -> str:
    target = stage_graph.parse_stage(batch.domain_type, to_stage).value
    if target == batch.stage:
        raise NoOpTransitionError(target)

    allowed = stage_graph.next_stages(batch.domain_type, batch.stage)
    if policy.allowed_stages is not None:
        allowed = [s for s in allowed if s in policy.allowed_stages]
    if target not in allowed:
        raise InvalidTransitionError(batch.stage, target, allowed)
    return target


async def _transition_warnings(
    db: AsyncSession,
    batch: Batch,
    target: str,
    policy: JurisdictionPolicy,
) -> list[str]:
    warnings = []
    if (
        batch.domain_type == DomainType.CANNABIS.value
        and target == "flowering"
        and policy.requires_plant_tags
    ):
        tagged = await count_tags(db, batch.id)
        if tagged < batch.plant_count:
            warnings.append(
                f"{batch.plant_count - tagged} of {batch.plant_count} plants are "
                f"untagged entering flowering"
            )
    return warnings


async def transition_batch(
    db: AsyncSession,
    batch_id: str,
    to_stage: str,
    actor: str | None = None,
    notes: str | None = None,
) -> TransitionResult:
    """Move a batch to ``to_stage`` along its domain graph.

    Raises:
        NotFoundError, QuarantineBlockedError, TerminalStateError,
        UnknownStageError, NoOpTransitionError, InvalidTransitionError
    """
    batch = await lock_batch_row(db, batch_id)
    ensure_operation_allowed(batch, "transition")

    policy = await get_site_policy(db, batch.site_id)
    target = _check_transition(batch, to_stage, policy)
    from_stage = batch.stage
    warnings = await _transition_warnings(db, batch, target, policy)

    now = datetime.utcnow()
    await move_stage(db, batch, target, actor, notes, now)

    if target == "completed":
        batch.status = BatchStatus.COMPLETED.value
        await release_active_assignments(db, batch, actor, reason="Batch completed")
        await deactivate_active_recipe(db, batch, actor, reason="batch_completed")

    job = None
    old_phase = stage_graph.regulatory_phase(batch.domain_type, from_stage)
    new_phase = stage_graph.regulatory_phase(batch.domain_type, target)
    if (
        old_phase is not None
        and new_phase is not None
        and old_phase != new_phase
        and batch.external_batch_id
        and policy.requires_external_sync
    ):
        job = await enqueue_phase_change(db, batch, old_phase, new_phase, now, actor)

    log_event(
        db, batch.id, EventType.STAGE_TRANSITION, actor,
        notes=notes,
        data={
            "from": from_stage,
            "to": target,
            "sync_enqueued": job is not None,
            "warnings": warnings,
        },
    )
    await db.flush()

    logger.info(
        "Batch %s: %s → %s (sync_enqueued=%s)",
        batch.batch_number, from_stage, target, job is not None,
    )
    return TransitionResult(
        batch=batch,
        sync_enqueued=job is not None,
        sync_job_id=job.id if job else None,
        warnings=warnings,
    )


# ── Plant count ──────────────────────────────────────────────


async def update_plant_count(
    db: AsyncSession,
    batch_id: str,
    new_count: int,
    actor: str | None = None,
    reason: str | None = None,
) -> tuple[Batch, list[str]]:
    """Set the plant count.  Returns the batch and any mismatch warnings."""
    if new_count < 0:
        raise ValidationError("plant_count cannot be negative")

    batch = await lock_batch_row(db, batch_id)
    ensure_operation_allowed(batch, "update_plant_count")

    previous = batch.plant_count
    batch.plant_count = new_count
    log_event(
        db, batch.id, EventType.PLANT_COUNT_UPDATED, actor,
        notes=reason,
        data={"from": previous, "to": new_count},
    )

    warnings = []
    tagged = await count_tags(db, batch.id)
    if tagged > new_count:
        warnings.append(record_mismatch(db, batch, tagged, actor))
    await db.flush()
    return batch, warnings


async def batch_detail(db: AsyncSession, batch_id: str) -> dict:
    """Batch plus what a caller needs to decide the next action."""
    batch = await get_batch(db, batch_id)
    locks = get_batch_locks(batch)
    policy = await get_site_policy(db, batch.site_id)
    next_stages = [] if batch.is_terminal else stage_graph.next_stages(batch.domain_type, batch.stage)
    if policy.allowed_stages is not None:
        next_stages = [s for s in next_stages if s in policy.allowed_stages]
    return {
        "batch": batch,
        "next_stages": next_stages,
        "blocked_operations": list(locks.locked_operations.values()),
        "tag_completion": await completion(db, batch),
    }


