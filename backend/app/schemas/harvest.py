"""Pydantic schemas for harvest recording and inventory posting."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class InventoryPostingRequest(BaseModel):
    """Where the harvest's finished goods go.

    ``quantity`` defaults to the dry weight, falling back to the wet weight.
    ``lot_code`` defaults to ``{batch_number}-{YYYYMMDD}``.
    """
    item_id: str
    quantity: float | None = Field(None, gt=0)
    lot_code: str | None = Field(None, max_length=100)
    unit: str | None = None


class HarvestPlantIn(BaseModel):
    plant_tag: str
    wet_weight: float = Field(..., gt=0)


class HarvestCreate(BaseModel):
    """Payload for POST /api/batches/{id}/harvests.  Weights in grams."""
    wet_weight: float
    dry_weight: float | None = None
    waste_weight: float | None = None
    notes: str | None = None
    plants: list[HarvestPlantIn] | None = None
    inventory: InventoryPostingRequest | None = None


# ── Response ─────────────────────────────────────────────────

class HarvestPlantOut(BaseModel):
    plant_tag: str
    wet_weight: float

    model_config = ConfigDict(from_attributes=True)


class HarvestOut(BaseModel):
    id: str
    batch_id: str
    wet_weight: float
    dry_weight: float | None = None
    waste_weight: float | None = None
    inventory_item_id: str | None = None
    inventory_status: str
    inventory_movement_id: str | None = None
    inventory_error: str | None = None
    lot_code: str | None = None
    notes: str | None = None
    harvested_by: str | None = None
    harvested_at: datetime
    plants: list[HarvestPlantOut] = []

    model_config = ConfigDict(from_attributes=True)


class InventoryOutcome(BaseModel):
    status: str  # not_requested | posted | failed
    movement_id: str | None = None
    lot_code: str | None = None
    quantity: float | None = None
    error_code: str | None = None
    error: str | None = None


class HarvestResult(BaseModel):
    """``status`` is ``partial_success`` when the harvest was saved but the
    inventory receipt was rejected."""
    status: str  # success | partial_success
    harvest: HarvestOut
    inventory: InventoryOutcome
