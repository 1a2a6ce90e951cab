"""Pydantic schemas for recipes, activations, and setpoint evaluation."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.batch import DomainType

TRACKED_PARAMETERS = ("temperature", "humidity", "co2", "lights_on")


# ── Authoring ────────────────────────────────────────────────

class SetpointIn(BaseModel):
    parameter_type: str
    min_value: float | None = None
    max_value: float | None = None
    value: float | None = None
    unit: str | None = Field(None, max_length=20)

    @model_validator(mode="after")
    def check_target(self):
        if self.parameter_type not in TRACKED_PARAMETERS:
            raise ValueError(
                f"parameter_type must be one of {', '.join(TRACKED_PARAMETERS)}"
            )
        if self.value is None and self.min_value is None and self.max_value is None:
            raise ValueError("Provide value or at least one of min_value/max_value")
        if (
            self.min_value is not None
            and self.max_value is not None
            and self.min_value > self.max_value
        ):
            raise ValueError("min_value cannot exceed max_value")
        return self


class RecipeStageIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    duration_days: int | None = Field(None, gt=0)
    setpoints: list[SetpointIn] = []

    @model_validator(mode="after")
    def one_setpoint_per_parameter(self):
        params = [s.parameter_type for s in self.setpoints]
        if len(params) != len(set(params)):
            raise ValueError(f"Stage {self.name!r} has more than one setpoint per parameter")
        return self


class RecipeVersionCreate(BaseModel):
    notes: str | None = None
    stages: list[RecipeStageIn] = Field(..., min_length=1)


class RecipeCreate(RecipeVersionCreate):
    """Payload for POST /api/recipes — the recipe and its first version."""
    name: str = Field(..., min_length=1, max_length=255)
    domain_type: DomainType
    description: str | None = None


# ── Read ─────────────────────────────────────────────────────

class SetpointOut(BaseModel):
    id: str
    parameter_type: str
    min_value: float | None = None
    max_value: float | None = None
    value: float | None = None
    unit: str | None = None

    model_config = ConfigDict(from_attributes=True)


class RecipeStageOut(BaseModel):
    id: str
    name: str
    order_index: int
    duration_days: int | None = None
    setpoints: list[SetpointOut] = []

    model_config = ConfigDict(from_attributes=True)


class RecipeVersionOut(BaseModel):
    id: str
    recipe_id: str
    version_number: int
    notes: str | None = None
    created_at: datetime
    stages: list[RecipeStageOut] = []

    model_config = ConfigDict(from_attributes=True)


class RecipeOut(BaseModel):
    id: str
    name: str
    domain_type: str
    description: str | None = None
    created_at: datetime
    versions: list[RecipeVersionOut] = []

    model_config = ConfigDict(from_attributes=True)


# ── Activation ───────────────────────────────────────────────

class ActivateRecipeRequest(BaseModel):
    recipe_id: str
    recipe_version_id: str


class DeactivateRecipeRequest(BaseModel):
    reason: str | None = None


class RecipeActivationOut(BaseModel):
    id: str
    batch_id: str
    recipe_id: str
    recipe_version_id: str
    current_stage_id: str | None = None
    current_stage_day: int
    stage_started_at: datetime
    is_active: bool
    activated_by: str | None = None
    activated_at: datetime
    deactivated_by: str | None = None
    deactivated_at: datetime | None = None
    deactivation_reason: str | None = None

    model_config = ConfigDict(from_attributes=True)


# ── Evaluation ───────────────────────────────────────────────

class TelemetryIn(BaseModel):
    """A reading supplied by the caller instead of the pod's latest one."""
    timestamp: datetime | None = None
    temperature: float | None = None
    humidity: float | None = None
    co2: float | None = None
    lights_on: bool | None = None


class SetpointResult(BaseModel):
    parameter: str
    status: str  # in_range | out_of_range | no_target | no_reading
    value: float | None = None
    min_value: float | None = None
    max_value: float | None = None
    target: float | None = None
    unit: str | None = None


class EvaluationOut(BaseModel):
    batch_id: str
    activation_id: str | None = None
    recipe_stage_id: str | None = None
    recipe_stage_name: str | None = None
    stage_day: int | None = None
    reading_source: str | None = None  # supplied | telemetry
    reading_timestamp: datetime | None = None
    results: list[SetpointResult]
