"""Batch router — lifecycle, quarantine, tags, pods, recipes, harvests, destruction.

Endpoints:
    POST   /api/batches/                          Create batch
    GET    /api/batches/                          List batches (with filters)
    GET    /api/batches/{batch_id}                Detail + next stages + blocked operations
    POST   /api/batches/{batch_id}/transition     Move to another stage
    POST   /api/batches/{batch_id}/quarantine     Hold the batch
    POST   /api/batches/{batch_id}/release        Release the hold
    PATCH  /api/batches/{batch_id}/plant-count    Update plant count
    POST   /api/batches/{batch_id}/tags           Assign regulator plant tags
    GET    /api/batches/{batch_id}/tags           Assigned tags
    GET    /api/batches/{batch_id}/tags/completion  Tag coverage
    POST   /api/batches/{batch_id}/pods           Place plants in a pod
    GET    /api/batches/{batch_id}/pods           Pod assignments
    POST   /api/batches/pod-assignments/{id}/release  Close one assignment
    POST   /api/batches/{batch_id}/destroy        Destroy (terminal)
    GET    /api/batches/{batch_id}/history        Stage history (cached)
    GET    /api/batches/{batch_id}/events         Audit events (cached)
    POST   /api/batches/{batch_id}/recipe         Activate a recipe version
    GET    /api/batches/{batch_id}/recipe         Active recipe activation
    POST   /api/batches/{batch_id}/recipe/deactivate
    GET    /api/batches/{batch_id}/evaluation     Setpoints vs latest telemetry
    POST   /api/batches/{batch_id}/evaluation     Setpoints vs a supplied reading
    POST   /api/batches/{batch_id}/harvests       Record harvest (+ inventory receipt)
    GET    /api/batches/{batch_id}/harvests       Harvest records
"""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.deps import get_actor_id
from app.middleware.exceptions import NotFoundError
from app.models.batch import Batch
from app.models.pod_assignment import PodAssignment
from app.schemas.batch import (
    BatchCreate,
    BatchDetailOut,
    BatchEventOut,
    BatchOut,
    DestroyRequest,
    DestroyResponse,
    OperationLockOut,
    PlantCountResponse,
    PlantCountUpdate,
    PodAssignmentOut,
    PodAssignRequest,
    QuarantineRequest,
    ReleaseRequest,
    StageHistoryOut,
    TagAssignRequest,
    TagAssignResponse,
    TagCompletionOut,
    TransitionRequest,
    TransitionResponse,
)
from app.schemas.common import PaginatedResponse
from app.schemas.harvest import HarvestCreate, HarvestOut, HarvestResult
from app.schemas.recipe import (
    ActivateRecipeRequest,
    DeactivateRecipeRequest,
    EvaluationOut,
    RecipeActivationOut,
    TelemetryIn,
)
from app.services import (
    batch_lifecycle,
    harvest,
    plant_tags,
    pod_assignment,
    quarantine,
    recipe_activation,
)
from app.services.destruction import destroy_batch
from app.utils.cache import cached, invalidate_batch_cache

router = APIRouter()


# ── Create / list / detail ───────────────────────────────────

@router.post("/", response_model=BatchOut, status_code=status.HTTP_201_CREATED)
async def create_batch(
    body: BatchCreate,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor_id),
):
    """Create a batch in its initial stage (default ``planning``)."""
    batch = await batch_lifecycle.create_batch(db, body, actor)
    return batch


@router.get("/", response_model=PaginatedResponse[BatchOut])
async def list_batches(
    domain_type: str | None = Query(None),
    status_filter: str | None = Query(None, alias="status"),
    stage: str | None = Query(None),
    site_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    base = select(Batch)
    if domain_type:
        base = base.where(Batch.domain_type == domain_type)
    if status_filter:
        base = base.where(Batch.status == status_filter)
    if stage:
        base = base.where(Batch.stage == stage)
    if site_id:
        base = base.where(Batch.site_id == site_id)

    total = (await db.execute(select(func.count()).select_from(base.subquery()))).scalar() or 0
    result = await db.execute(
        base.order_by(Batch.created_at.desc()).limit(limit).offset(offset)
    )
    items = [BatchOut.model_validate(b) for b in result.scalars().all()]
    return PaginatedResponse(items=items, total=total, limit=limit, offset=offset)


@router.get("/{batch_id}", response_model=BatchDetailOut)
async def get_batch(batch_id: str, db: AsyncSession = Depends(get_db)):
    detail = await batch_lifecycle.batch_detail(db, batch_id)
    return BatchDetailOut(
        **BatchOut.model_validate(detail["batch"]).model_dump(),
        next_stages=detail["next_stages"],
        blocked_operations=[
            OperationLockOut(
                operation=lock.operation,
                reason=lock.reason,
                blocker_type=lock.blocker_type,
                unlock_hint=lock.unlock_hint,
            )
            for lock in detail["blocked_operations"]
        ],
        tag_completion=TagCompletionOut(**detail["tag_completion"].as_dict()),
    )


# ── Lifecycle ────────────────────────────────────────────────

@router.post("/{batch_id}/transition", response_model=TransitionResponse)
async def transition(
    batch_id: str,
    body: TransitionRequest,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor_id),
):
    """Move the batch to ``to_stage``.

    Returns immediately; a regulatory phase-change report, when one is
    needed, is queued and delivered by the sync worker.
    """
    result = await batch_lifecycle.transition_batch(
        db, batch_id, body.to_stage, actor, body.notes
    )
    await invalidate_batch_cache(batch_id)
    return TransitionResponse(
        batch=BatchOut.model_validate(result.batch),
        sync_enqueued=result.sync_enqueued,
        sync_job_id=result.sync_job_id,
        warnings=result.warnings,
    )


@router.post("/{batch_id}/quarantine", response_model=BatchOut)
async def quarantine_batch(
    batch_id: str,
    body: QuarantineRequest,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor_id),
):
    batch = await quarantine.quarantine(db, batch_id, body.reason, actor)
    await invalidate_batch_cache(batch_id)
    return batch


@router.post("/{batch_id}/release", response_model=BatchOut)
async def release_batch(
    batch_id: str,
    body: ReleaseRequest | None = None,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor_id),
):
    batch = await quarantine.release(db, batch_id, actor, body.notes if body else None)
    await invalidate_batch_cache(batch_id)
    return batch


@router.patch("/{batch_id}/plant-count", response_model=PlantCountResponse)
async def update_plant_count(
    batch_id: str,
    body: PlantCountUpdate,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor_id),
):
    batch, warnings = await batch_lifecycle.update_plant_count(
        db, batch_id, body.plant_count, actor, body.reason
    )
    await invalidate_batch_cache(batch_id)
    return PlantCountResponse(batch=BatchOut.model_validate(batch), warnings=warnings)


# ── Plant tags ───────────────────────────────────────────────

@router.post("/{batch_id}/tags", response_model=TagAssignResponse)
async def assign_tags(
    batch_id: str,
    body: TagAssignRequest,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor_id),
):
    """Assign tags one by one.  Bad tags are reported, not fatal."""
    result = await plant_tags.assign_tags(db, batch_id, body.tags, actor)
    await invalidate_batch_cache(batch_id)
    return TagAssignResponse(
        assigned=result["assigned"],
        skipped_duplicates=result["skipped_duplicates"],
        invalid=result["invalid"],
        completion=TagCompletionOut(**result["completion"].as_dict()),
        warnings=result["warnings"],
    )


@router.get("/{batch_id}/tags", response_model=list[str])
async def list_tags(batch_id: str, db: AsyncSession = Depends(get_db)):
    await batch_lifecycle.get_batch(db, batch_id)
    return await plant_tags.list_tags(db, batch_id)


@router.get("/{batch_id}/tags/completion", response_model=TagCompletionOut)
async def tag_completion(batch_id: str, db: AsyncSession = Depends(get_db)):
    batch = await batch_lifecycle.get_batch(db, batch_id)
    result = await plant_tags.completion(db, batch)
    return TagCompletionOut(**result.as_dict())


# ── Pods ─────────────────────────────────────────────────────

@router.post(
    "/{batch_id}/pods",
    response_model=PodAssignmentOut,
    status_code=status.HTTP_201_CREATED,
)
async def assign_pod(
    batch_id: str,
    body: PodAssignRequest,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor_id),
):
    """Move plants of the batch into a pod (capacity-checked)."""
    assignment = await pod_assignment.assign_to_pod(
        db, batch_id, body.pod_id, body.plant_count, actor, body.notes
    )
    await invalidate_batch_cache(batch_id)
    return assignment


@router.get("/{batch_id}/pods", response_model=list[PodAssignmentOut])
async def list_pod_assignments(
    batch_id: str,
    active_only: bool = Query(False),
    db: AsyncSession = Depends(get_db),
):
    await batch_lifecycle.get_batch(db, batch_id)
    stmt = (
        select(PodAssignment)
        .where(PodAssignment.batch_id == batch_id)
        .order_by(PodAssignment.assigned_at)
    )
    if active_only:
        stmt = stmt.where(PodAssignment.removed_at.is_(None))
    result = await db.execute(stmt)
    return result.scalars().all()


@router.post("/pod-assignments/{assignment_id}/release", response_model=PodAssignmentOut)
async def release_pod_assignment(
    assignment_id: str,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor_id),
):
    assignment = await pod_assignment.release_pod_assignment(db, assignment_id, actor)
    await invalidate_batch_cache(assignment.batch_id)
    return assignment


# ── Destruction ──────────────────────────────────────────────

@router.post("/{batch_id}/destroy", response_model=DestroyResponse)
async def destroy(
    batch_id: str,
    body: DestroyRequest,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor_id),
):
    """Destroy the batch.  Terminal; a reason is always required."""
    result = await destroy_batch(
        db,
        batch_id,
        body.reason,
        actor,
        create_waste_log=body.create_waste_log,
        override_quarantine=body.override_quarantine,
        waste_weight=body.waste_weight,
        disposal_method=body.disposal_method,
        inert_material_weight=body.inert_material_weight,
    )
    await invalidate_batch_cache(batch_id)
    return DestroyResponse(
        batch=BatchOut.model_validate(result.batch),
        waste_log_id=result.waste_log_id,
        released_assignments=result.released_assignments,
        deactivated_recipe_activation_id=result.deactivated_recipe_activation_id,
        warnings=result.warnings,
    )


# ── History / events ─────────────────────────────────────────

@router.get("/{batch_id}/history", response_model=list[StageHistoryOut])
@cached(ttl=300, key_builder=lambda **kw: f"batch:{kw['batch_id']}:history")
async def stage_history(batch_id: str, db: AsyncSession = Depends(get_db)):
    entries = await batch_lifecycle.get_stage_history(db, batch_id)
    return [StageHistoryOut.model_validate(e) for e in entries]


@router.get("/{batch_id}/events", response_model=list[BatchEventOut])
@cached(
    ttl=300,
    key_builder=lambda **kw: f"batch:{kw['batch_id']}:events:{kw.get('event_type') or 'all'}",
)
async def batch_events(
    batch_id: str,
    event_type: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    events = await batch_lifecycle.get_events(db, batch_id, event_type)
    return [BatchEventOut.model_validate(e) for e in events]


# ── Recipe activation ────────────────────────────────────────

@router.post(
    "/{batch_id}/recipe",
    response_model=RecipeActivationOut,
    status_code=status.HTTP_201_CREATED,
)
async def activate_recipe(
    batch_id: str,
    body: ActivateRecipeRequest,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor_id),
):
    """Bind a recipe version to the batch.  Only one may be active."""
    activation = await recipe_activation.activate(
        db, batch_id, body.recipe_id, body.recipe_version_id, actor
    )
    await invalidate_batch_cache(batch_id)
    return activation


@router.get("/{batch_id}/recipe", response_model=RecipeActivationOut | None)
async def active_recipe(batch_id: str, db: AsyncSession = Depends(get_db)):
    await batch_lifecycle.get_batch(db, batch_id)
    return await recipe_activation.get_active_activation(db, batch_id)


@router.post("/{batch_id}/recipe/deactivate", response_model=RecipeActivationOut)
async def deactivate_recipe(
    batch_id: str,
    body: DeactivateRecipeRequest | None = None,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor_id),
):
    activation = await recipe_activation.get_active_activation(db, batch_id)
    if activation is None:
        await batch_lifecycle.get_batch(db, batch_id)
        raise NotFoundError("Active recipe for batch", batch_id)
    activation = await recipe_activation.deactivate(
        db, activation.id, actor, body.reason if body else None
    )
    await invalidate_batch_cache(batch_id)
    return activation


@router.get("/{batch_id}/evaluation", response_model=EvaluationOut)
async def evaluate_latest(batch_id: str, db: AsyncSession = Depends(get_db)):
    """Evaluate the pod's latest telemetry against the active setpoints."""
    return await recipe_activation.evaluate(db, batch_id)


@router.post("/{batch_id}/evaluation", response_model=EvaluationOut)
async def evaluate_reading(
    batch_id: str,
    body: TelemetryIn,
    db: AsyncSession = Depends(get_db),
):
    return await recipe_activation.evaluate(db, batch_id, body.model_dump())


# ── Harvests ─────────────────────────────────────────────────

@router.post(
    "/{batch_id}/harvests",
    response_model=HarvestResult,
    status_code=status.HTTP_201_CREATED,
)
async def record_harvest(
    batch_id: str,
    body: HarvestCreate,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor_id),
):
    """Record a harvest.

    The harvest is kept even when the inventory receipt is rejected; the
    response then carries ``status = "partial_success"`` and the posting
    can be retried through ``POST /api/harvests/{id}/inventory``.
    """
    result = await harvest.record_harvest(db, batch_id, body, actor)
    await invalidate_batch_cache(batch_id)
    return result


@router.get("/{batch_id}/harvests", response_model=list[HarvestOut])
async def list_harvests(batch_id: str, db: AsyncSession = Depends(get_db)):
    await batch_lifecycle.get_batch(db, batch_id)
    return await harvest.list_harvests(db, batch_id)
