"""Pydantic schemas for jurisdictions, sites, pods and inventory items."""

import re
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Jurisdiction ─────────────────────────────────────────────

class JurisdictionCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=20)
    name: str = Field(..., min_length=1, max_length=255)
    requires_external_sync: bool = True
    requires_plant_tags: bool = True
    manifest_required_on_destroy: bool = False
    allowed_stages: list[str] | None = None
    tag_format_regex: str | None = Field(None, max_length=255)
    harvest_weight_tolerance_pct: float | None = Field(None, ge=0, le=100)

    @field_validator("tag_format_regex")
    @classmethod
    def must_compile(cls, v: str | None) -> str | None:
        if v is not None:
            try:
                re.compile(v)
            except re.error as exc:
                raise ValueError(f"Invalid regular expression: {exc}") from exc
        return v


class JurisdictionOut(BaseModel):
    id: str
    code: str
    name: str
    requires_external_sync: bool
    requires_plant_tags: bool
    manifest_required_on_destroy: bool
    allowed_stages: list[str] | None = None
    tag_format_regex: str | None = None
    harvest_weight_tolerance_pct: float | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ── Site / Pod ───────────────────────────────────────────────

class SiteCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    jurisdiction_id: str | None = None
    license_number: str | None = Field(None, max_length=100)


class SiteOut(BaseModel):
    id: str
    name: str
    jurisdiction_id: str | None = None
    license_number: str | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PodCreate(BaseModel):
    site_id: str
    name: str = Field(..., min_length=1, max_length=100)
    capacity: int = Field(..., gt=0)
    external_location_name: str | None = Field(None, max_length=255)


class PodOut(BaseModel):
    id: str
    site_id: str
    name: str
    capacity: int
    external_location_name: str | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PodOccupancyOut(PodOut):
    occupied: int
    available: int


# ── Inventory items ──────────────────────────────────────────

class InventoryItemCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    site_id: str | None = None
    item_type: str = "finished_good"
    unit_of_measure: str = Field("g", max_length=20)


class InventoryItemOut(BaseModel):
    id: str
    site_id: str | None = None
    name: str
    item_type: str
    unit_of_measure: str
    current_quantity: float
    is_active: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InventoryMovementOut(BaseModel):
    id: str
    item_id: str
    batch_id: str | None = None
    movement_type: str
    quantity: float
    unit: str
    lot_code: str | None = None
    notes: str | None = None
    recorded_by: str | None = None
    recorded_at: datetime

    model_config = ConfigDict(from_attributes=True)
