"""Recipe catalog, activation, evaluation and daily cadence tests."""

from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.exc import IntegrityError

from app.middleware.exceptions import (
    DuplicateRecipeActiveError,
    NotFoundError,
    TerminalStateError,
    ValidationError,
)
from app.models.batch import Batch, DomainType
from app.models.batch_history import EventType
from app.models.recipe import RecipeActivation
from app.models.telemetry import TelemetryReading
from app.schemas.recipe import RecipeCreate, RecipeVersionCreate
from app.services import batch_lifecycle, recipe_activation
from app.services.batch_lifecycle import transition_batch
from app.services.destruction import destroy_batch
from app.services.pod_assignment import assign_to_pod


def _recipe_body(**overrides) -> RecipeCreate:
    body = {
        "name": "Blue Dream Standard",
        "domain_type": "cannabis",
        "stages": [
            {
                "name": "Veg",
                "duration_days": 7,
                "setpoints": [
                    {"parameter_type": "temperature", "min_value": 22, "max_value": 26, "unit": "C"},
                    {"parameter_type": "humidity", "value": 60, "unit": "%"},
                ],
            },
            {
                "name": "Flower",
                "duration_days": 3,
                "setpoints": [{"parameter_type": "co2", "value": 1000, "unit": "ppm"}],
            },
        ],
    }
    body.update(overrides)
    return RecipeCreate.model_validate(body)


@pytest_asyncio.fixture
async def recipe(db_session):
    created = await recipe_activation.create_recipe(db_session, _recipe_body(), actor="grower")
    await db_session.commit()
    return created


@pytest_asyncio.fixture
async def activation(db_session, cannabis_batch, recipe):
    created = await recipe_activation.activate(
        db_session, cannabis_batch.id, recipe.id, recipe.versions[0].id, actor="grower"
    )
    await db_session.commit()
    return created


@pytest.mark.unit
@pytest.mark.asyncio
class TestRecipeCatalog:

    async def test_create_recipe_with_first_version(self, recipe):
        assert recipe.domain_type == "cannabis"
        assert [v.version_number for v in recipe.versions] == [1]
        stages = recipe.versions[0].stages
        assert [(s.name, s.order_index, s.duration_days) for s in stages] == [
            ("Veg", 0, 7),
            ("Flower", 1, 3),
        ]
        assert {sp.parameter_type for sp in stages[0].setpoints} == {"temperature", "humidity"}

    async def test_new_version_is_appended(self, db_session, recipe):
        version = await recipe_activation.create_recipe_version(
            db_session,
            recipe.id,
            RecipeVersionCreate.model_validate({
                "notes": "Longer veg",
                "stages": [{"name": "Veg", "duration_days": 14}],
            }),
        )
        await db_session.commit()
        assert version.version_number == 2
        assert [s.name for s in version.stages] == ["Veg"]

        reloaded = await recipe_activation.get_recipe(db_session, recipe.id)
        assert [v.version_number for v in reloaded.versions] == [1, 2]

    async def test_list_by_domain(self, db_session, recipe):
        assert len(await recipe_activation.list_recipes(db_session, "cannabis")) == 1
        assert await recipe_activation.list_recipes(db_session, "produce") == []

    async def test_missing_recipe(self, db_session):
        with pytest.raises(NotFoundError):
            await recipe_activation.get_recipe(db_session, "missing")


@pytest.mark.unit
class TestRecipeValidation:

    def test_setpoint_needs_a_target(self):
        with pytest.raises(ValueError):
            _recipe_body(stages=[{"name": "Veg", "setpoints": [{"parameter_type": "co2"}]}])

    def test_setpoint_parameter_must_be_tracked(self):
        with pytest.raises(ValueError):
            _recipe_body(stages=[{"name": "Veg", "setpoints": [{"parameter_type": "ph", "value": 6}]}])

    def test_one_setpoint_per_parameter(self):
        with pytest.raises(ValueError):
            _recipe_body(stages=[{
                "name": "Veg",
                "setpoints": [
                    {"parameter_type": "co2", "value": 800},
                    {"parameter_type": "co2", "value": 900},
                ],
            }])


@pytest.mark.unit
@pytest.mark.asyncio
class TestActivation:

    async def test_activate_starts_first_stage_day_one(self, db_session, cannabis_batch, recipe, activation):
        assert activation.is_active
        assert activation.current_stage_id == recipe.versions[0].stages[0].id
        assert activation.current_stage_day == 1

        batch = await db_session.get(Batch, cannabis_batch.id)
        assert batch.active_recipe_activation_id == activation.id
        assert (await recipe_activation.get_active_activation(db_session, batch.id)).id == activation.id

    async def test_second_activation_is_rejected(self, db_session, cannabis_batch, recipe, activation):
        with pytest.raises(DuplicateRecipeActiveError) as exc_info:
            await recipe_activation.activate(
                db_session, cannabis_batch.id, recipe.id, recipe.versions[0].id
            )
        assert exc_info.value.details == {"active_activation_id": activation.id}

    async def test_reactivate_after_deactivation(self, db_session, cannabis_batch, recipe, activation):
        closed = await recipe_activation.deactivate(
            db_session, activation.id, actor="grower", reason="switching"
        )
        await db_session.commit()
        assert closed.is_active is False
        assert closed.deactivation_reason == "switching"

        again = await recipe_activation.activate(
            db_session, cannabis_batch.id, recipe.id, recipe.versions[0].id
        )
        await db_session.commit()
        assert again.id != activation.id

    async def test_deactivate_twice(self, db_session, activation):
        await recipe_activation.deactivate(db_session, activation.id)
        with pytest.raises(ValidationError) as exc_info:
            await recipe_activation.deactivate(db_session, activation.id)
        assert exc_info.value.error_code == "ALREADY_INACTIVE"

    async def test_deactivate_from_stale_copy(self, db_session, session_factory, activation):
        activation_id = activation.id
        batch_id = activation.batch_id
        async with session_factory() as other:
            await recipe_activation.deactivate(other, activation_id, reason="first")
            await other.commit()

        # This session still holds the activation as loaded before the other request
        assert activation.is_active is True
        with pytest.raises(ValidationError) as exc_info:
            await recipe_activation.deactivate(db_session, activation_id, reason="second")
        assert exc_info.value.error_code == "ALREADY_INACTIVE"
        await db_session.rollback()

        events = await batch_lifecycle.get_events(
            db_session, batch_id, EventType.RECIPE_DEACTIVATED.value
        )
        assert [e.notes for e in events] == ["first"]

    async def test_domain_mismatch(self, db_session, produce_batch, recipe):
        with pytest.raises(ValidationError):
            await recipe_activation.activate(
                db_session, produce_batch.id, recipe.id, recipe.versions[0].id
            )

    async def test_version_of_other_recipe(self, db_session, cannabis_batch, recipe):
        other = await recipe_activation.create_recipe(db_session, _recipe_body(name="Other"))
        with pytest.raises(NotFoundError):
            await recipe_activation.activate(
                db_session, cannabis_batch.id, recipe.id, other.versions[0].id
            )

    async def test_terminal_batch(self, db_session, cannabis_batch, recipe):
        await destroy_batch(db_session, cannabis_batch.id, "Failed inspection")
        await db_session.commit()
        with pytest.raises(TerminalStateError):
            await recipe_activation.activate(
                db_session, cannabis_batch.id, recipe.id, recipe.versions[0].id
            )

    async def test_completion_deactivates(self, db_session, make_batch, recipe):
        batch = await make_batch(stage="packaging")
        activation = await recipe_activation.activate(
            db_session, batch.id, recipe.id, recipe.versions[0].id
        )
        await db_session.commit()

        await transition_batch(db_session, batch.id, "completed")
        await db_session.commit()
        await db_session.refresh(activation)
        assert activation.is_active is False
        assert activation.deactivation_reason == "batch_completed"

    async def test_destroy_deactivates(self, db_session, cannabis_batch, activation):
        result = await destroy_batch(db_session, cannabis_batch.id, "Failed inspection")
        await db_session.commit()
        assert result.deactivated_recipe_activation_id == activation.id
        assert result.batch.active_recipe_activation_id is None

    async def test_index_allows_one_active_row_per_batch(self, db_session, cannabis_batch, recipe, activation):
        version = recipe.versions[0]
        db_session.add(RecipeActivation(
            batch_id=cannabis_batch.id,
            recipe_id=recipe.id,
            recipe_version_id=version.id,
            current_stage_id=version.stages[0].id,
            is_active=True,
        ))
        with pytest.raises(IntegrityError):
            await db_session.flush()
        await db_session.rollback()


@pytest.mark.unit
@pytest.mark.asyncio
class TestEvaluation:

    async def _results(self, db, batch_id, reading=None):
        evaluation = await recipe_activation.evaluate(db, batch_id, reading)
        return evaluation, {r["parameter"]: r for r in evaluation["results"]}

    async def test_without_activation_everything_is_no_target(self, db_session, cannabis_batch):
        evaluation, results = await self._results(
            db_session, cannabis_batch.id, {"temperature": 24.0}
        )
        assert evaluation["activation_id"] is None
        assert {r["status"] for r in results.values()} == {"no_target"}
        assert results["temperature"]["value"] == 24.0

    async def test_supplied_reading(self, db_session, cannabis_batch, activation):
        evaluation, results = await self._results(
            db_session, cannabis_batch.id, {"temperature": 27.5, "humidity": 65}
        )
        assert evaluation["reading_source"] == "supplied"
        assert evaluation["recipe_stage_name"] == "Veg"
        assert evaluation["stage_day"] == 1

        assert results["temperature"]["status"] == "out_of_range"
        assert (results["temperature"]["min_value"], results["temperature"]["max_value"]) == (22, 26)
        # single value 60 → 54..66
        assert results["humidity"]["status"] == "in_range"
        assert results["humidity"]["min_value"] == pytest.approx(54.0)
        assert results["humidity"]["max_value"] == pytest.approx(66.0)
        assert results["co2"]["status"] == "no_target"

    async def test_missing_parameter_is_no_reading(self, db_session, cannabis_batch, activation):
        _, results = await self._results(db_session, cannabis_batch.id, {"temperature": 24})
        assert results["temperature"]["status"] == "in_range"
        assert results["humidity"]["status"] == "no_reading"

    async def test_bounds_are_inclusive(self, db_session, cannabis_batch, activation):
        _, results = await self._results(
            db_session, cannabis_batch.id, {"temperature": 26.0, "humidity": 66.0}
        )
        assert results["temperature"]["status"] == "in_range"
        assert results["humidity"]["status"] == "in_range"

    async def test_latest_pod_telemetry(self, db_session, cannabis_batch, pod, activation):
        await assign_to_pod(db_session, cannabis_batch.id, pod.id, 10)
        now = datetime.utcnow()
        db_session.add_all([
            TelemetryReading(pod_id=pod.id, timestamp=now - timedelta(hours=1), temperature=30.0),
            TelemetryReading(
                pod_id=pod.id, timestamp=now, temperature=23.0, humidity=50.0, lights_on=True
            ),
        ])
        await db_session.commit()

        evaluation, results = await self._results(db_session, cannabis_batch.id)
        assert evaluation["reading_source"] == "telemetry"
        assert evaluation["reading_timestamp"] == now
        assert results["temperature"]["status"] == "in_range"
        assert results["humidity"]["status"] == "out_of_range"
        assert results["lights_on"]["value"] == 1.0

    async def test_no_pod_no_reading(self, db_session, cannabis_batch, activation):
        evaluation, results = await self._results(db_session, cannabis_batch.id)
        assert evaluation["reading_source"] is None
        assert results["temperature"]["status"] == "no_reading"

    async def test_missing_batch(self, db_session):
        with pytest.raises(NotFoundError):
            await recipe_activation.evaluate(db_session, "missing")


@pytest.mark.unit
@pytest.mark.asyncio
class TestAdvanceRecipeDays:

    async def test_day_advances(self, db_session, activation):
        started = activation.stage_started_at
        summary = await recipe_activation.advance_recipe_days(db_session, started + timedelta(days=3))
        assert summary["checked"] == 1
        assert summary["day"] == 1
        assert activation.current_stage_day == 4

    async def test_same_day_is_idempotent(self, db_session, activation):
        now = activation.stage_started_at + timedelta(days=2)
        await recipe_activation.advance_recipe_days(db_session, now)
        summary = await recipe_activation.advance_recipe_days(db_session, now)
        assert summary["unchanged"] == 1
        assert activation.current_stage_day == 3

    async def test_stage_advances_after_duration(self, db_session, recipe, activation):
        started = activation.stage_started_at
        summary = await recipe_activation.advance_recipe_days(db_session, started + timedelta(days=8))
        assert summary["stage"] == 1
        assert activation.current_stage_id == recipe.versions[0].stages[1].id
        assert activation.current_stage_day == 2
        assert activation.stage_started_at == started + timedelta(days=7)

    async def test_last_stage_completes_activation(self, db_session, cannabis_batch, activation):
        started = activation.stage_started_at
        summary = await recipe_activation.advance_recipe_days(db_session, started + timedelta(days=10))
        await db_session.commit()

        assert summary["completed"] == 1
        assert activation.is_active is False
        assert activation.deactivation_reason == "completed"
        batch = await db_session.get(Batch, cannabis_batch.id)
        await db_session.refresh(batch)
        assert batch.active_recipe_activation_id is None

    async def test_open_ended_stage_never_completes(self, db_session, make_batch):
        body = _recipe_body(
            name="Mother room",
            stages=[{"name": "Mother", "setpoints": [{"parameter_type": "co2", "value": 800}]}],
        )
        recipe = await recipe_activation.create_recipe(db_session, body)
        batch = await make_batch(stage="vegetative")
        activation = await recipe_activation.activate(
            db_session, batch.id, recipe.id, recipe.versions[0].id
        )
        await recipe_activation.advance_recipe_days(
            db_session, activation.stage_started_at + timedelta(days=90)
        )
        assert activation.is_active
        assert activation.current_stage_day == 91

    async def test_produce_recipe(self, db_session, produce_batch):
        recipe = await recipe_activation.create_recipe(
            db_session,
            _recipe_body(name="Lettuce", domain_type=DomainType.PRODUCE.value),
        )
        activation = await recipe_activation.activate(
            db_session, produce_batch.id, recipe.id, recipe.versions[0].id
        )
        assert activation.batch_id == produce_batch.id


@pytest.mark.cache
@pytest.mark.asyncio
class TestAdvanceInvalidatesCache:

    async def test_changed_batches_lose_cached_reads(self, db_session, redis_client, make_batch, activation):
        idle = await make_batch(stage="vegetative")
        await redis_client.set(f"batch:{activation.batch_id}:history", "[]")
        await redis_client.set(f"batch:{idle.id}:history", "[]")

        await recipe_activation.advance_recipe_days(
            db_session, activation.stage_started_at + timedelta(days=10)
        )
        await db_session.commit()

        assert await redis_client.exists(f"batch:{activation.batch_id}:history") == 0
        assert await redis_client.exists(f"batch:{idle.id}:history") == 1

    async def test_unchanged_batches_keep_cache(self, db_session, redis_client, activation):
        now = activation.stage_started_at + timedelta(days=2)
        await recipe_activation.advance_recipe_days(db_session, now)
        await redis_client.set(f"batch:{activation.batch_id}:history", "[]")

        summary = await recipe_activation.advance_recipe_days(db_session, now)
        assert summary["unchanged"] == 1
        assert await redis_client.exists(f"batch:{activation.batch_id}:history") == 1
