"""Destruction / waste workflow — the terminal ``destroyed`` transition.

Destroying a batch:
  - requires a non-empty reason (persisted on the DESTROYED event and
    waste log)
  - needs ``override_quarantine`` when the batch is quarantined
  - needs a waste-manifest acknowledgement when the jurisdiction asks for
    one and there are plants to destroy: either ``create_waste_log`` or a
    reason that mentions the manifest
  - validates the waste log: a positive weight, a known disposal method and,
    for 50:50 mixes, inert material at least 90% of the waste weight
  - closes the stage history, frees the batch's pods and ends its recipe
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from app.middleware.exceptions import ValidationError
from app.models.batch import Batch, BatchStatus
from app.models.batch_history import EventType
from app.models.waste_log import DisposalMethod, WasteLog
from app.services.batch_lifecycle import move_stage
from app.services.jurisdiction import get_site_policy
from app.services.pod_assignment import release_active_assignments
from app.services.recipe_activation import deactivate_active_recipe
from app.utils.events import log_event
from app.utils.locks import ensure_operation_allowed, lock_batch_row

logger = logging.getLogger(__name__)


@dataclass
class DestroyResult:
    batch: Batch
    waste_log_id: str | None
    released_assignments: int
    deactivated_recipe_activation_id: str | None
    warnings: list[str] = field(default_factory=list)


def _acknowledges_manifest(reason: str, create_waste_log: bool) -> bool:
    return create_waste_log or "manifest" in reason.lower()


INERT_RATIO_TOLERANCE = 0.10


def check_waste_log(
    waste_weight: float | None,
    disposal_method: str | None,
    inert_material_weight: float | None,
) -> tuple[DisposalMethod | None, list[str]]:
    """Validate waste-log fields.  Returns the parsed method and any warnings.

    Weight and method are optional; when given they must be sensible.
    A 50:50 mix needs both weights, with inert material no lighter than
    90% of the waste.  More than 110% is allowed but flagged.
    """
    if waste_weight is not None and waste_weight <= 0:
        raise ValidationError(
            "Waste weight must be greater than zero", error_code="INVALID_WASTE_WEIGHT"
        )
    if inert_material_weight is not None and inert_material_weight <= 0:
        raise ValidationError(
            "Inert material weight must be greater than zero",
            error_code="INVALID_INERT_MATERIAL_WEIGHT",
        )
    if disposal_method is None:
        return None, []

    try:
        method = DisposalMethod(disposal_method)
    except ValueError:
        raise ValidationError(
            f"Unknown disposal method {disposal_method!r}",
            error_code="INVALID_DISPOSAL_METHOD",
            details={"allowed": [m.value for m in DisposalMethod]},
        ) from None
    if not method.is_inert_mix:
        return method, []

    if waste_weight is None:
        raise ValidationError(
            "A 50:50 disposal method requires the waste weight",
            error_code="MISSING_WASTE_WEIGHT",
        )
    if inert_material_weight is None:
        raise ValidationError(
            "A 50:50 disposal method requires the inert material weight",
            error_code="MISSING_INERT_MATERIAL_WEIGHT",
        )

    minimum = waste_weight * (1 - INERT_RATIO_TOLERANCE)
    maximum = waste_weight * (1 + INERT_RATIO_TOLERANCE)
    if inert_material_weight < minimum:
        raise ValidationError(
            f"Inert material weight {inert_material_weight:g} is too low for a 50:50 mix "
            f"(minimum {minimum:.2f})",
            error_code="INERT_MATERIAL_TOO_LOW",
            details={"minimum": round(minimum, 2)},
        )
    warnings = []
    if inert_material_weight > maximum:
        warnings.append(
            f"Inert material weight {inert_material_weight:g} exceeds the 50:50 ratio "
            f"(maximum {maximum:.2f})"
        )
    return method, warnings


async def destroy_batch(
    db: AsyncSession,
    batch_id: str,
    reason: str,
    actor: str | None = None,
    *,
    create_waste_log: bool = False,
    override_quarantine: bool = False,
    waste_weight: float | None = None,
    disposal_method: str | None = None,
    inert_material_weight: float | None = None,
) -> DestroyResult:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A destruction reason is required")

    method, warnings = None, []
    if create_waste_log:
        method, warnings = check_waste_log(waste_weight, disposal_method, inert_material_weight)

    batch = await lock_batch_row(db, batch_id)
    ensure_operation_allowed(batch, "destroy", override_quarantine=override_quarantine)

    policy = await get_site_policy(db, batch.site_id)
    if (
        policy.manifest_required_on_destroy
        and batch.plant_count > 0
        and not _acknowledges_manifest(reason, create_waste_log)
    ):
        raise ValidationError(
            "This jurisdiction requires a waste manifest; set create_waste_log "
            "or reference the manifest in the reason",
            error_code="WASTE_MANIFEST_REQUIRED",
        )

    was_quarantined = batch.status == BatchStatus.QUARANTINED.value
    from_stage = batch.stage
    plant_count = batch.plant_count

    await move_stage(db, batch, "destroyed", actor, notes=reason)
    batch.status = BatchStatus.DESTROYED.value
    released = await release_active_assignments(db, batch, actor, reason="Batch destroyed")
    activation_id = await deactivate_active_recipe(db, batch, actor, reason="batch_destroyed")

    waste_log = None
    if create_waste_log:
        waste_log = WasteLog(
            batch_id=batch.id,
            plant_count=plant_count,
            reason=reason,
            waste_weight=waste_weight,
            disposal_method=method.value if method else None,
            inert_material_weight=inert_material_weight,
            recorded_by=actor,
        )
        db.add(waste_log)
        await db.flush()

    log_event(
        db, batch.id, EventType.DESTROYED, actor,
        notes=reason,
        data={
            "from_stage": from_stage,
            "plant_count": plant_count,
            "quarantine_overridden": was_quarantined,
            "waste_log_id": waste_log.id if waste_log else None,
            "released_assignments": released,
        },
    )
    await db.flush()

    logger.warning(
        "Batch %s destroyed from stage %s (%d plants): %s",
        batch.batch_number, from_stage, plant_count, reason,
    )
    return DestroyResult(
        batch=batch,
        waste_log_id=waste_log.id if waste_log else None,
        released_assignments=released,
        deactivated_recipe_activation_id=activation_id,
        warnings=warnings,
    )
