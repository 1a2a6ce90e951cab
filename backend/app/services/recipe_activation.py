"""Recipe activation tracker.

Binds one recipe version to one batch at a time, compares telemetry with
the current recipe stage's setpoints, and advances the stage day by day.

Evaluation results are computed on every read and never stored.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.config import settings
from app.middleware.exceptions import (
    DuplicateRecipeActiveError,
    NotFoundError,
    ValidationError,
)
from app.models.batch import Batch
from app.models.batch_history import EventType
from app.models.recipe import (
    Recipe,
    RecipeActivation,
    RecipeStage,
    RecipeVersion,
    Setpoint,
)
from app.models.telemetry import TelemetryReading
from app.schemas.recipe import TRACKED_PARAMETERS, RecipeCreate, RecipeVersionCreate
from app.services.pod_assignment import active_pod_id
from app.utils.cache import invalidate_batch_cache
from app.utils.events import log_event
from app.utils.locks import ensure_operation_allowed, lock_batch_row

logger = logging.getLogger(__name__)

IN_RANGE = "in_range"
OUT_OF_RANGE = "out_of_range"
NO_TARGET = "no_target"
NO_READING = "no_reading"


# ── Catalog ──────────────────────────────────────────────────


def _recipe_query():
    return select(Recipe).options(
        selectinload(Recipe.versions)
        .selectinload(RecipeVersion.stages)
        .selectinload(RecipeStage.setpoints)
    )


async def get_recipe(db: AsyncSession, recipe_id: str) -> Recipe:
    result = await db.execute(
        _recipe_query().where(Recipe.id == recipe_id).execution_options(populate_existing=True)
    )
    recipe = result.scalar_one_or_none()
    if not recipe:
        raise NotFoundError("Recipe", recipe_id)
    return recipe


async def list_recipes(db: AsyncSession, domain_type: str | None = None) -> list[Recipe]:
    stmt = _recipe_query().order_by(Recipe.name).execution_options(populate_existing=True)
    if domain_type:
        stmt = stmt.where(Recipe.domain_type == domain_type)
    return list((await db.execute(stmt)).scalars().all())


async def _add_version(
    db: AsyncSession,
    recipe: Recipe,
    body: RecipeVersionCreate,
    version_number: int,
) -> RecipeVersion:
    version = RecipeVersion(
        recipe_id=recipe.id,
        version_number=version_number,
        notes=body.notes,
    )
    db.add(version)
    await db.flush()

    for index, stage_in in enumerate(body.stages):
        stage = RecipeStage(
            recipe_version_id=version.id,
            name=stage_in.name,
            order_index=index,
            duration_days=stage_in.duration_days,
        )
        db.add(stage)
        await db.flush()
        for sp in stage_in.setpoints:
            db.add(Setpoint(
                recipe_version_id=version.id,
                stage_id=stage.id,
                parameter_type=sp.parameter_type,
                min_value=sp.min_value,
                max_value=sp.max_value,
                value=sp.value,
                unit=sp.unit,
            ))
    await db.flush()
    return version


async def create_recipe(db: AsyncSession, body: RecipeCreate, actor: str | None = None) -> Recipe:
    """Create a recipe with its first version, stages and setpoints."""
    recipe = Recipe(
        name=body.name,
        domain_type=body.domain_type.value,
        description=body.description,
        created_by=actor,
    )
    db.add(recipe)
    await db.flush()
    await _add_version(db, recipe, body, version_number=1)
    return await get_recipe(db, recipe.id)


async def create_recipe_version(
    db: AsyncSession,
    recipe_id: str,
    body: RecipeVersionCreate,
) -> RecipeVersion:
    """Append a new version.  Existing versions are never edited."""
    recipe = await get_recipe(db, recipe_id)
    latest = (
        await db.execute(
            select(func.max(RecipeVersion.version_number)).where(
                RecipeVersion.recipe_id == recipe.id
            )
        )
    ).scalar() or 0
    version = await _add_version(db, recipe, body, version_number=latest + 1)
    result = await db.execute(
        select(RecipeVersion)
        .options(selectinload(RecipeVersion.stages).selectinload(RecipeStage.setpoints))
        .where(RecipeVersion.id == version.id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def _first_stage(db: AsyncSession, version_id: str) -> RecipeStage | None:
    result = await db.execute(
        select(RecipeStage)
        .where(RecipeStage.recipe_version_id == version_id)
        .order_by(RecipeStage.order_index)
        .limit(1)
    )
    return result.scalar_one_or_none()


# ── Activation ───────────────────────────────────────────────


async def get_active_activation(db: AsyncSession, batch_id: str) -> RecipeActivation | None:
    result = await db.execute(
        select(RecipeActivation).where(
            RecipeActivation.batch_id == batch_id,
            RecipeActivation.is_active == True,  # noqa: E712
        )
    )
    return result.scalar_one_or_none()


async def activate(
    db: AsyncSession,
    batch_id: str,
    recipe_id: str,
    recipe_version_id: str,
    actor: str | None = None,
) -> RecipeActivation:
    """Bind a recipe version to a batch, starting at its first stage, day 1."""
    batch = await lock_batch_row(db, batch_id)
    ensure_operation_allowed(batch, "activate_recipe")

    recipe = await db.get(Recipe, recipe_id)
    if not recipe:
        raise NotFoundError("Recipe", recipe_id)
    version = await db.get(RecipeVersion, recipe_version_id)
    if not version or version.recipe_id != recipe.id:
        raise NotFoundError("Recipe version", recipe_version_id)
    if recipe.domain_type != batch.domain_type:
        raise ValidationError(
            f"Recipe {recipe.name!r} is for {recipe.domain_type}; batch is {batch.domain_type}"
        )

    current = await get_active_activation(db, batch.id)
    if current:
        raise DuplicateRecipeActiveError(current.id)

    first = await _first_stage(db, version.id)
    if not first:
        raise ValidationError(f"Recipe version {version.version_number} has no stages")

    now = datetime.utcnow()
    activation = RecipeActivation(
        batch_id=batch.id,
        recipe_id=recipe.id,
        recipe_version_id=version.id,
        current_stage_id=first.id,
        current_stage_day=1,
        stage_started_at=now,
        is_active=True,
        activated_by=actor,
        activated_at=now,
    )
    db.add(activation)
    try:
        await db.flush()
    except IntegrityError as exc:
        # Lost a race with a concurrent activation; the partial unique index caught it
        raise DuplicateRecipeActiveError() from exc

    batch.active_recipe_activation_id = activation.id
    log_event(
        db, batch.id, EventType.RECIPE_ACTIVATED, actor,
        data={
            "activation_id": activation.id,
            "recipe_id": recipe.id,
            "recipe_version_id": version.id,
            "version_number": version.version_number,
        },
    )
    await db.flush()
    return activation


def _close(activation: RecipeActivation, actor: str | None, reason: str | None) -> None:
    activation.is_active = False
    activation.deactivated_by = actor
    activation.deactivated_at = datetime.utcnow()
    activation.deactivation_reason = reason


async def deactivate(
    db: AsyncSession,
    activation_id: str,
    actor: str | None = None,
    reason: str | None = None,
) -> RecipeActivation:
    activation = await db.get(RecipeActivation, activation_id)
    if not activation:
        raise NotFoundError("Recipe activation", activation_id)

    # Re-read under the batch lock
    batch = await lock_batch_row(db, activation.batch_id)
    activation = (
        await db.execute(
            select(RecipeActivation)
            .where(RecipeActivation.id == activation_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()
    if not activation.is_active:
        raise ValidationError(
            "Recipe activation is already inactive", error_code="ALREADY_INACTIVE"
        )

    _close(activation, actor, reason)
    if batch.active_recipe_activation_id == activation.id:
        batch.active_recipe_activation_id = None
    log_event(
        db, batch.id, EventType.RECIPE_DEACTIVATED, actor,
        notes=reason,
        data={"activation_id": activation.id},
    )
    await db.flush()
    return activation


async def deactivate_active_recipe(
    db: AsyncSession,
    batch: Batch,
    actor: str | None,
    reason: str,
) -> str | None:
    """Close the batch's active activation, if any (batch already locked).

    Returns the closed activation's id.
    """
    activation = await get_active_activation(db, batch.id)
    if not activation:
        return None
    _close(activation, actor, reason)
    batch.active_recipe_activation_id = None
    log_event(
        db, batch.id, EventType.RECIPE_DEACTIVATED, actor,
        notes=reason,
        data={"activation_id": activation.id},
    )
    return activation.id


# ── Evaluation ───────────────────────────────────────────────


def target_range(setpoint: Setpoint) -> tuple[float | None, float | None]:
    """Inclusive [low, high] bounds for a setpoint.

    An explicit range wins.  A single ``value`` becomes value ± the
    configured tolerance percentage.
    """
    if setpoint.min_value is not None or setpoint.max_value is not None:
        return setpoint.min_value, setpoint.max_value
    margin = abs(setpoint.value) * settings.setpoint_single_value_tolerance_pct / 100
    return setpoint.value - margin, setpoint.value + margin


def evaluate_parameter(parameter: str, value, setpoint: Setpoint | None) -> dict:
    result = {"parameter": parameter, "value": None, "status": NO_TARGET}
    if value is not None:
        result["value"] = float(value)
    if setpoint is None:
        return result

    low, high = target_range(setpoint)
    result.update(
        min_value=low,
        max_value=high,
        target=setpoint.value,
        unit=setpoint.unit,
    )
    if value is None:
        result["status"] = NO_READING
        return result

    numeric = float(value)
    in_range = (low is None or numeric >= low) and (high is None or numeric <= high)
    result["status"] = IN_RANGE if in_range else OUT_OF_RANGE
    return result


async def latest_reading(db: AsyncSession, pod_id: str) -> TelemetryReading | None:
    result = await db.execute(
        select(TelemetryReading)
        .where(TelemetryReading.pod_id == pod_id)
        .order_by(TelemetryReading.timestamp.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def evaluate(db: AsyncSession, batch_id: str, reading: dict | None = None) -> dict:
    """Compare a reading against the active recipe stage's setpoints.

    When ``reading`` is None the latest telemetry from the batch's active
    pod is used.  Without an active activation every parameter is
    ``no_target``.
    """
    batch = await db.get(Batch, batch_id)
    if not batch:
        raise NotFoundError("Batch", batch_id)

    source = None
    timestamp = None
    if reading is not None:
        source = "supplied"
        timestamp = reading.get("timestamp")
    else:
        pod_id = await active_pod_id(db, batch.id)
        row = await latest_reading(db, pod_id) if pod_id else None
        if row is not None:
            source = "telemetry"
            timestamp = row.timestamp
            reading = {p: getattr(row, p) for p in TRACKED_PARAMETERS}
    reading = reading or {}

    activation = await get_active_activation(db, batch.id)
    setpoints: dict[str, Setpoint] = {}
    stage = None
    if activation and activation.current_stage_id:
        stage = await db.get(RecipeStage, activation.current_stage_id)
        rows = await db.execute(
            select(Setpoint).where(Setpoint.stage_id == activation.current_stage_id)
        )
        setpoints = {sp.parameter_type: sp for sp in rows.scalars().all()}

    results = []
    for parameter in TRACKED_PARAMETERS:
        value = reading.get(parameter)
        if parameter == "lights_on" and value is not None:
            value = 1 if value else 0
        results.append(evaluate_parameter(parameter, value, setpoints.get(parameter)))

    return {
        "batch_id": batch.id,
        "activation_id": activation.id if activation else None,
        "recipe_stage_id": stage.id if stage else None,
        "recipe_stage_name": stage.name if stage else None,
        "stage_day": activation.current_stage_day if activation else None,
        "reading_source": source,
        "reading_timestamp": timestamp,
        "results": results,
    }


# ── Daily cadence ────────────────────────────────────────────


async def _advance_one(db: AsyncSession, activation: RecipeActivation, now: datetime) -> str:
    """Recompute day and stage for one activation.

    Returns "unchanged", "day", "stage" or "completed".
    """
    stages = list(
        (
            await db.execute(
                select(RecipeStage)
                .where(RecipeStage.recipe_version_id == activation.recipe_version_id)
                .order_by(RecipeStage.order_index)
            )
        ).scalars().all()
    )
    index = next(
        (i for i, s in enumerate(stages) if s.id == activation.current_stage_id), 0
    )

    outcome = "unchanged"
    started = activation.stage_started_at
    day = (now.date() - started.date()).days + 1
    while stages[index].duration_days is not None and day > stages[index].duration_days:
        duration = stages[index].duration_days
        if index + 1 >= len(stages):
            _close(activation, None, "completed")
            await db.execute(
                update(Batch)
                .where(
                    Batch.id == activation.batch_id,
                    Batch.active_recipe_activation_id == activation.id,
                )
                .values(active_recipe_activation_id=None)
                .execution_options(synchronize_session=False)
            )
            log_event(
                db, activation.batch_id, EventType.RECIPE_DEACTIVATED, None,
                notes="completed",
                data={"activation_id": activation.id, "final_stage": stages[index].name},
            )
            return "completed"
        index += 1
        started = started + timedelta(days=duration)
        day -= duration
        outcome = "stage"

    if outcome == "stage":
        activation.current_stage_id = stages[index].id
        activation.stage_started_at = started
        logger.info(
            "Activation %s advanced to recipe stage %s", activation.id, stages[index].name
        )
    if activation.current_stage_day != day:
        activation.current_stage_day = day
        if outcome == "unchanged":
            outcome = "day"
    return outcome


async def advance_recipe_days(db: AsyncSession, now: datetime | None = None) -> dict[str, int]:
    """Advance every active activation to ``now``.  Idempotent within a day."""
    now = now or datetime.utcnow()
    result = await db.execute(
        select(RecipeActivation).where(RecipeActivation.is_active == True)  # noqa: E712
    )
    changed: list[str] = []
    summary = {"checked": 0, "day": 0, "stage": 0, "completed": 0, "unchanged": 0}
    for activation in result.scalars().all():
        summary["checked"] += 1
        outcome = await _advance_one(db, activation, now)
        summary[outcome] += 1
        if outcome != "unchanged":
            changed.append(activation.batch_id)
    await db.flush()

    for batch_id in changed:
        await invalidate_batch_cache(batch_id)
    return summary
