"""Pydantic schemas for the batch lifecycle endpoints."""

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.batch import DomainType
from app.models.waste_log import DisposalMethod


# ── Create ───────────────────────────────────────────────────

class BatchCreate(BaseModel):
    """Payload for POST /api/batches.

    ``batch_number`` is generated from the configured format when omitted.
    """
    domain_type: DomainType
    site_id: str
    stage: str = "planning"
    plant_count: int = Field(0, ge=0)

    batch_number: str | None = Field(None, max_length=50)
    cultivar_id: str | None = None
    start_date: date | None = None
    expected_harvest_date: date | None = None
    external_batch_id: str | None = Field(None, max_length=100)
    notes: str | None = None


# ── Lifecycle requests ───────────────────────────────────────

class TransitionRequest(BaseModel):
    to_stage: str = Field(..., min_length=1)
    notes: str | None = None


class QuarantineRequest(BaseModel):
    reason: str

    @field_validator("reason")
    @classmethod
    def strip_reason(cls, v: str) -> str:
        return v.strip()


class ReleaseRequest(BaseModel):
    notes: str | None = None


class PlantCountUpdate(BaseModel):
    plant_count: int = Field(..., ge=0)
    reason: str | None = None


class TagAssignRequest(BaseModel):
    tags: list[str] = Field(..., min_length=1)


class PodAssignRequest(BaseModel):
    pod_id: str
    plant_count: int = Field(..., gt=0)
    notes: str | None = None


class DestroyRequest(BaseModel):
    reason: str
    create_waste_log: bool = False
    override_quarantine: bool = False
    waste_weight: float | None = Field(None, gt=0)
    disposal_method: DisposalMethod | None = None
    inert_material_weight: float | None = Field(None, gt=0)


# ── Response ─────────────────────────────────────────────────

class BatchOut(BaseModel):
    id: str
    batch_number: str
    domain_type: str
    stage: str
    status: str
    quarantine_reason: str | None = None
    quarantined_at: datetime | None = None
    site_id: str
    cultivar_id: str | None = None
    plant_count: int
    start_date: date | None = None
    expected_harvest_date: date | None = None
    external_batch_id: str | None = None
    sync_status: str
    last_sync_confirmation_id: str | None = None
    active_recipe_activation_id: str | None = None
    notes: str | None = None
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime
    version: int

    model_config = ConfigDict(from_attributes=True)


class TagCompletionOut(BaseModel):
    tagged: int
    total: int
    percentage: float
    mismatch: bool
    required: bool


class OperationLockOut(BaseModel):
    operation: str
    reason: str
    blocker_type: str
    unlock_hint: str


class BatchDetailOut(BatchOut):
    next_stages: list[str]
    blocked_operations: list[OperationLockOut]
    tag_completion: TagCompletionOut


class TransitionResponse(BaseModel):
    batch: BatchOut
    sync_enqueued: bool
    sync_job_id: str | None = None
    warnings: list[str] = []


class PlantCountResponse(BaseModel):
    batch: BatchOut
    warnings: list[str] = []


class TagAssignResponse(BaseModel):
    assigned: list[str]
    skipped_duplicates: list[str]
    invalid: list[dict]
    completion: TagCompletionOut
    warnings: list[str] = []


class DestroyResponse(BaseModel):
    batch: BatchOut
    waste_log_id: str | None = None
    released_assignments: int
    deactivated_recipe_activation_id: str | None = None
    warnings: list[str] = []


# ── History / events ─────────────────────────────────────────

class StageHistoryOut(BaseModel):
    id: str
    stage: str
    started_at: datetime
    ended_at: datetime | None = None
    started_by: str | None = None
    notes: str | None = None

    model_config = ConfigDict(from_attributes=True)


class BatchEventOut(BaseModel):
    id: str
    event_type: str
    event_data: dict | None = None
    notes: str | None = None
    recorded_by: str | None = None
    recorded_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PodAssignmentOut(BaseModel):
    id: str
    batch_id: str
    pod_id: str
    plant_count: int
    notes: str | None = None
    assigned_by: str | None = None
    assigned_at: datetime
    removed_by: str | None = None
    removed_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)
