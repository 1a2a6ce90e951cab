"""Harvest & inventory poster.

Recording a harvest persists the weights and never moves the batch's
stage.  The optional finished-good receipt runs inside a SAVEPOINT: if the
inventory service rejects it, only the savepoint is rolled back, the
harvest stays, and the result reports ``partial_success`` with the
inventory error code.  A failed or skipped receipt can be posted later
with ``retry_inventory_posting``.
"""

import logging
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.middleware.exceptions import InventoryPostingError, NotFoundError, ValidationError
from app.models.batch import Batch
from app.models.batch_history import EventType
from app.models.harvest import HarvestPlantRecord, HarvestRecord
from app.models.plant_tag import PlantTag
from app.schemas.harvest import HarvestCreate, InventoryPostingRequest
from app.services.inventory import InventoryService
from app.services.jurisdiction import get_site_policy
from app.utils.events import log_event
from app.utils.locks import ensure_operation_allowed, lock_batch_row
from app.utils.numbering import generate_lot_code

logger = logging.getLogger(__name__)

InventoryFactory = Callable[[AsyncSession], InventoryService]

SUCCESS = "success"
PARTIAL_SUCCESS = "partial_success"


def _validate_weights(body: HarvestCreate) -> None:
    if body.wet_weight is None or body.wet_weight <= 0:
        raise ValidationError("wet_weight must be greater than zero")
    if body.dry_weight is not None and body.dry_weight < 0:
        raise ValidationError("dry_weight cannot be negative")
    if body.waste_weight is not None and body.waste_weight < 0:
        raise ValidationError("waste_weight cannot be negative")


async def _validate_plants(db: AsyncSession, batch: Batch, body: HarvestCreate) -> None:
    """Per-plant entries must use this batch's tags and add up to the total."""
    tags = [p.plant_tag for p in body.plants]
    if len(tags) != len(set(tags)):
        raise ValidationError("Each plant tag may appear only once per harvest")

    result = await db.execute(
        select(PlantTag.tag).where(PlantTag.batch_id == batch.id, PlantTag.tag.in_(tags))
    )
    known = {row[0] for row in result.all()}
    unknown = [t for t in tags if t not in known]
    if unknown:
        raise ValidationError(
            f"{len(unknown)} plant tag(s) are not assigned to this batch",
            error_code="UNKNOWN_PLANT_TAG",
            details={"tags": unknown[:20]},
        )

    policy = await get_site_policy(db, batch.site_id)
    plant_total = sum(p.wet_weight for p in body.plants)
    diff_pct = abs(plant_total - body.wet_weight) / body.wet_weight * 100
    if diff_pct > policy.harvest_weight_tolerance_pct:
        raise ValidationError(
            f"Per-plant weights total {plant_total:.2f}, {diff_pct:.2f}% off the "
            f"batch wet weight {body.wet_weight:.2f} "
            f"(tolerance {policy.harvest_weight_tolerance_pct}%)",
            error_code="HARVEST_WEIGHT_MISMATCH",
            details={
                "plant_total": plant_total,
                "wet_weight": body.wet_weight,
                "tolerance_pct": policy.harvest_weight_tolerance_pct,
            },
        )


async def get_harvest(db: AsyncSession, harvest_id: str) -> HarvestRecord:
    result = await db.execute(
        select(HarvestRecord)
        .options(selectinload(HarvestRecord.plants))
        .where(HarvestRecord.id == harvest_id)
        .execution_options(populate_existing=True)
    )
    harvest = result.scalar_one_or_none()
    if not harvest:
        raise NotFoundError("Harvest", harvest_id)
    return harvest


async def _post_inventory(
    db: AsyncSession,
    batch: Batch,
    harvest: HarvestRecord,
    request: InventoryPostingRequest,
    actor: str | None,
    inventory_factory: InventoryFactory,
) -> dict:
    """Try the receipt inside a savepoint and record the outcome on the harvest."""
    quantity = request.quantity or harvest.dry_weight or harvest.wet_weight
    lot_code = request.lot_code or generate_lot_code(batch.batch_number)
    harvest.inventory_item_id = request.item_id
    harvest.lot_code = lot_code

    try:
        async with db.begin_nested():
            movement = await inventory_factory(db).post_receipt(
                request.item_id,
                quantity,
                batch_id=batch.id,
                lot_code=lot_code,
                unit=request.unit,
                notes=f"Harvest {harvest.id}",
                actor=actor,
            )
    except InventoryPostingError as exc:
        harvest.inventory_status = "failed"
        harvest.inventory_error = exc.message
        log_event(
            db, batch.id, EventType.INVENTORY_POSTING_FAILED, actor,
            notes=exc.message,
            data={"harvest_id": harvest.id, "error_code": exc.error_code, "item_id": request.item_id},
        )
        logger.warning(
            "Inventory posting failed for harvest %s (%s): %s",
            harvest.id, exc.error_code, exc.message,
        )
        return {
            "status": "failed",
            "lot_code": lot_code,
            "quantity": quantity,
            "error_code": exc.error_code,
            "error": exc.message,
        }

    harvest.inventory_status = "posted"
    harvest.inventory_movement_id = movement.id
    harvest.inventory_error = None
    log_event(
        db, batch.id, EventType.INVENTORY_POSTED, actor,
        data={
            "harvest_id": harvest.id,
            "movement_id": movement.id,
            "item_id": request.item_id,
            "quantity": quantity,
            "lot_code": lot_code,
        },
    )
    return {
        "status": "posted",
        "movement_id": movement.id,
        "lot_code": lot_code,
        "quantity": quantity,
    }


async def record_harvest(
    db: AsyncSession,
    batch_id: str,
    body: HarvestCreate,
    actor: str | None = None,
    inventory_factory: InventoryFactory = InventoryService,
) -> dict:
    """Persist a harvest and optionally post its inventory receipt.

    Returns:
        {
            "status": "success" | "partial_success",
            "harvest": HarvestRecord,
            "inventory": {"status": "not_requested" | "posted" | "failed", ...},
        }
    """
    batch = await lock_batch_row(db, batch_id)
    ensure_operation_allowed(batch, "harvest")
    _validate_weights(body)
    if body.plants:
        await _validate_plants(db, batch, body)

    harvest = HarvestRecord(
        batch_id=batch.id,
        wet_weight=body.wet_weight,
        dry_weight=body.dry_weight,
        waste_weight=body.waste_weight,
        notes=body.notes,
        harvested_by=actor,
    )
    db.add(harvest)
    await db.flush()
    for plant in body.plants or []:
        db.add(HarvestPlantRecord(
            harvest_id=harvest.id,
            plant_tag=plant.plant_tag,
            wet_weight=plant.wet_weight,
        ))

    log_event(
        db, batch.id, EventType.HARVEST_RECORDED, actor,
        notes=body.notes,
        data={
            "harvest_id": harvest.id,
            "wet_weight": body.wet_weight,
            "dry_weight": body.dry_weight,
            "waste_weight": body.waste_weight,
            "plant_records": len(body.plants or []),
        },
    )
    await db.flush()

    inventory = {"status": "not_requested"}
    if body.inventory is not None:
        inventory = await _post_inventory(
            db, batch, harvest, body.inventory, actor, inventory_factory
        )
    await db.flush()

    logger.info(
        "Harvest %s recorded for batch %s (%.2f g wet, inventory %s)",
        harvest.id, batch.batch_number, body.wet_weight, inventory["status"],
    )
    return {
        "status": PARTIAL_SUCCESS if inventory["status"] == "failed" else SUCCESS,
        "harvest": await get_harvest(db, harvest.id),
        "inventory": inventory,
    }


async def retry_inventory_posting(
    db: AsyncSession,
    harvest_id: str,
    request: InventoryPostingRequest | None = None,
    actor: str | None = None,
    inventory_factory: InventoryFactory = InventoryService,
) -> dict:
    """Post (or re-post) the receipt for a harvest whose posting failed or
    was never requested.  Uses the earlier item and lot code when no new
    request is given."""
    harvest = await get_harvest(db, harvest_id)
    if harvest.inventory_status == "posted":
        raise ValidationError(
            "Inventory for this harvest is already posted", error_code="ALREADY_POSTED"
        )

    if request is None:
        if not harvest.inventory_item_id:
            raise ValidationError("An inventory item_id is required to post this harvest")
        request = InventoryPostingRequest(
            item_id=harvest.inventory_item_id, lot_code=harvest.lot_code
        )

    batch = await lock_batch_row(db, harvest.batch_id)
    inventory = await _post_inventory(db, batch, harvest, request, actor, inventory_factory)
    await db.flush()
    return {
        "status": PARTIAL_SUCCESS if inventory["status"] == "failed" else SUCCESS,
        "harvest": await get_harvest(db, harvest.id),
        "inventory": inventory,
    }


async def list_harvests(db: AsyncSession, batch_id: str) -> list[HarvestRecord]:
    result = await db.execute(
        select(HarvestRecord)
        .options(selectinload(HarvestRecord.plants))
        .where(HarvestRecord.batch_id == batch_id)
        .order_by(HarvestRecord.harvested_at)
    )
    return list(result.scalars().all())
