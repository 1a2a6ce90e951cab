"""End-to-end lifecycle walkthroughs across several services."""

import pytest

from app.middleware.exceptions import InvalidTransitionError
from app.models.batch import DomainType
from app.models.site import Pod
from app.schemas.harvest import HarvestCreate
from app.schemas.recipe import RecipeCreate, RecipeVersionCreate
from app.services import (
    batch_lifecycle,
    harvest as harvest_service,
    plant_tags,
    recipe_activation,
    regulatory_sync,
)
from app.services.pod_assignment import assign_to_pod, pod_occupancy


@pytest.mark.integration
@pytest.mark.asyncio
class TestLifecycleScenarios:

    async def test_flowering_with_full_tag_coverage(self, db_session, site, make_batch, make_tags):
        room = Pod(site_id=site.id, name="Flower Room", capacity=120)
        db_session.add(room)
        await db_session.commit()
        batch = await make_batch(stage="vegetative", plant_count=100, external_batch_id="EXT-A")

        await assign_to_pod(db_session, batch.id, room.id, 100)
        await db_session.commit()
        assert await pod_occupancy(db_session, room.id) == 100

        result = await batch_lifecycle.transition_batch(db_session, batch.id, "flowering")
        await db_session.commit()
        assert result.batch.stage == "flowering"
        assert result.sync_enqueued is True

        jobs = await regulatory_sync.list_jobs(db_session, batch.id)
        assert [(j.from_phase, j.to_phase) for j in jobs] == [("Vegetative", "Flowering")]

        tagged = await plant_tags.assign_tags(db_session, batch.id, make_tags(1, 100))
        await db_session.commit()
        assert len(tagged["assigned"]) == 100
        assert tagged["invalid"] == []
        assert tagged["completion"].percentage == 100.0

        with pytest.raises(InvalidTransitionError) as exc_info:
            await batch_lifecycle.transition_batch(db_session, batch.id, "vegetative")
        assert exc_info.value.details["allowed"] == ["harvest"]

    async def test_produce_recipe_out_of_range(self, db_session, make_batch):
        batch = await make_batch(domain=DomainType.PRODUCE, stage="growing", plant_count=200)
        recipe = await recipe_activation.create_recipe(
            db_session,
            RecipeCreate.model_validate({
                "name": "Butterhead",
                "domain_type": "produce",
                "stages": [{"name": "Grow"}],
            }),
        )
        v2 = await recipe_activation.create_recipe_version(
            db_session,
            recipe.id,
            RecipeVersionCreate.model_validate({
                "stages": [{
                    "name": "Grow",
                    "setpoints": [{"parameter_type": "temperature", "min_value": 18, "max_value": 22}],
                }],
            }),
        )
        await db_session.commit()
        assert v2.version_number == 2

        activation = await recipe_activation.activate(db_session, batch.id, recipe.id, v2.id)
        await db_session.commit()
        assert activation.current_stage_day == 1

        evaluation = await recipe_activation.evaluate(db_session, batch.id, {"temperature": 26.0})
        temperature = next(r for r in evaluation["results"] if r["parameter"] == "temperature")
        assert temperature["status"] == "out_of_range"

    async def test_harvest_kept_when_inventory_item_is_invalid(self, db_session, make_batch):
        batch = await make_batch(stage="harvest")
        result = await harvest_service.record_harvest(
            db_session,
            batch.id,
            HarvestCreate.model_validate({
                "wet_weight": 500,
                "dry_weight": 120,
                "inventory": {"item_id": "not-a-real-item"},
            }),
        )
        await db_session.commit()

        assert result["status"] == "partial_success"
        assert result["inventory"]["error_code"] == "INVENTORY_ITEM_NOT_FOUND"

        harvests = await harvest_service.list_harvests(db_session, batch.id)
        assert [(h.wet_weight, h.dry_weight) for h in harvests] == [(500.0, 120.0)]
        assert harvests[0].inventory_status == "failed"
