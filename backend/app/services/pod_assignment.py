"""Pod assignment — place a batch's plants in a pod under a capacity check.

The pod row is locked before its active assignments are summed, so two
batches racing for the last slots of one pod serialize and the second sees
the first one's plants.  Assigning a batch moves it: its previous active
assignments are released in the same transaction.
"""

import logging
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.middleware.exceptions import (
    CapacityExceededError,
    NotFoundError,
    ValidationError,
)
from app.models.batch import Batch
from app.models.batch_history import EventType
from app.models.pod_assignment import PodAssignment
from app.models.site import Pod
from app.utils.events import log_event
from app.utils.locks import ensure_operation_allowed, lock_batch_row

logger = logging.getLogger(__name__)


async def _lock_pod(db: AsyncSession, pod_id: str) -> Pod:
    result = await db.execute(
        select(Pod).where(Pod.id == pod_id).with_for_update()
    )
    pod = result.scalar_one_or_none()
    if not pod:
        raise NotFoundError("Pod", pod_id)
    return pod


async def pod_occupancy(db: AsyncSession, pod_id: str, exclude_batch_id: str | None = None) -> int:
    """Plants currently placed in ``pod_id`` by active assignments."""
    stmt = select(func.coalesce(func.sum(PodAssignment.plant_count), 0)).where(
        PodAssignment.pod_id == pod_id,
        PodAssignment.removed_at.is_(None),
    )
    if exclude_batch_id is not None:
        stmt = stmt.where(PodAssignment.batch_id != exclude_batch_id)
    return int((await db.execute(stmt)).scalar() or 0)


async def active_assignments(db: AsyncSession, batch_id: str) -> list[PodAssignment]:
    result = await db.execute(
        select(PodAssignment)
        .where(
            PodAssignment.batch_id == batch_id,
            PodAssignment.removed_at.is_(None),
        )
        .order_by(PodAssignment.assigned_at)
    )
    return list(result.scalars().all())


async def release_active_assignments(
    db: AsyncSession,
    batch: Batch,
    actor: str | None,
    reason: str | None = None,
) -> int:
    """Close every active assignment of ``batch``.  Returns the count."""
    now = datetime.utcnow()
    released = await active_assignments(db, batch.id)
    for assignment in released:
        assignment.removed_at = now
        assignment.removed_by = actor
        log_event(
            db, batch.id, EventType.POD_RELEASED, actor,
            notes=reason,
            data={"assignment_id": assignment.id, "pod_id": assignment.pod_id},
        )
    return len(released)


async def assign_to_pod(
    db: AsyncSession,
    batch_id: str,
    pod_id: str,
    plant_count: int,
    actor: str | None = None,
    notes: str | None = None,
) -> PodAssignment:
    """Move ``plant_count`` plants of a batch into a pod.

    Raises CapacityExceededError when the pod would hold more plants than
    its capacity; filling it exactly is allowed.
    """
    batch = await lock_batch_row(db, batch_id)
    ensure_operation_allowed(batch, "assign_pod")

    if plant_count <= 0:
        raise ValidationError("plant_count must be positive")
    if plant_count > batch.plant_count:
        raise ValidationError(
            f"Cannot place {plant_count} plants; batch has {batch.plant_count}"
        )

    pod = await _lock_pod(db, pod_id)
    # The batch's own plants are moving, so they do not count against the pod
    occupied = await pod_occupancy(db, pod.id, exclude_batch_id=batch.id)
    if occupied + plant_count > pod.capacity:
        raise CapacityExceededError(pod.name, pod.capacity, occupied, plant_count)

    await release_active_assignments(db, batch, actor, reason=f"Moved to pod {pod.name}")

    assignment = PodAssignment(
        batch_id=batch.id,
        pod_id=pod.id,
        plant_count=plant_count,
        notes=notes,
        assigned_by=actor,
    )
    db.add(assignment)
    await db.flush()

    log_event(
        db, batch.id, EventType.POD_ASSIGNED, actor,
        notes=notes,
        data={
            "assignment_id": assignment.id,
            "pod_id": pod.id,
            "plant_count": plant_count,
            "pod_occupancy": occupied + plant_count,
            "pod_capacity": pod.capacity,
        },
    )
    logger.info(
        "Batch %s placed %d plants in pod %s (%d/%d)",
        batch.batch_number, plant_count, pod.name, occupied + plant_count, pod.capacity,
    )
    return assignment


async def release_pod_assignment(
    db: AsyncSession,
    assignment_id: str,
    actor: str | None = None,
) -> PodAssignment:
    """Close one assignment."""
    assignment = await db.get(PodAssignment, assignment_id)
    if not assignment:
        raise NotFoundError("Pod assignment", assignment_id)
    if assignment.removed_at is not None:
        raise ValidationError("Pod assignment is already released", error_code="ALREADY_RELEASED")

    assignment.removed_at = datetime.utcnow()
    assignment.removed_by = actor
    log_event(
        db, assignment.batch_id, EventType.POD_RELEASED, actor,
        data={"assignment_id": assignment.id, "pod_id": assignment.pod_id},
    )
    await db.flush()
    return assignment


async def active_pod_id(db: AsyncSession, batch_id: str) -> str | None:
    """Pod holding the batch's most recent active assignment."""
    result = await db.execute(
        select(PodAssignment.pod_id)
        .where(
            PodAssignment.batch_id == batch_id,
            PodAssignment.removed_at.is_(None),
        )
        .order_by(PodAssignment.assigned_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()
