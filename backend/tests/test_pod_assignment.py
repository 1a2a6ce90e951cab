"""Pod capacity and assignment tests."""

import pytest

from app.middleware.exceptions import (
    CapacityExceededError,
    NotFoundError,
    TerminalStateError,
    ValidationError,
)
from app.services import pod_assignment
from app.services.destruction import destroy_batch


@pytest.mark.unit
@pytest.mark.asyncio
class TestAssignToPod:

    async def test_assign(self, db_session, cannabis_batch, small_pod):
        assignment = await pod_assignment.assign_to_pod(
            db_session, cannabis_batch.id, small_pod.id, 6, actor="user-1"
        )
        await db_session.commit()

        assert assignment.removed_at is None
        assert await pod_assignment.pod_occupancy(db_session, small_pod.id) == 6
        assert await pod_assignment.active_pod_id(db_session, cannabis_batch.id) == small_pod.id

    async def test_filling_exactly_is_allowed(self, db_session, make_batch, small_pod):
        first = await make_batch(plant_count=6)
        second = await make_batch(plant_count=4)
        await pod_assignment.assign_to_pod(db_session, first.id, small_pod.id, 6)
        await pod_assignment.assign_to_pod(db_session, second.id, small_pod.id, 4)
        await db_session.commit()

        assert await pod_assignment.pod_occupancy(db_session, small_pod.id) == 10

    async def test_over_capacity_is_rejected(self, db_session, make_batch, small_pod):
        first = await make_batch(plant_count=8)
        second = await make_batch(plant_count=5)
        await pod_assignment.assign_to_pod(db_session, first.id, small_pod.id, 8)
        await db_session.commit()

        with pytest.raises(CapacityExceededError) as exc_info:
            await pod_assignment.assign_to_pod(db_session, second.id, small_pod.id, 3)
        assert exc_info.value.details == {"capacity": 10, "occupied": 8, "requested": 3}

    async def test_more_than_batch_plants(self, db_session, make_batch, pod):
        batch = await make_batch(plant_count=5)
        with pytest.raises(ValidationError):
            await pod_assignment.assign_to_pod(db_session, batch.id, pod.id, 6)

    async def test_non_positive_count(self, db_session, cannabis_batch, pod):
        with pytest.raises(ValidationError):
            await pod_assignment.assign_to_pod(db_session, cannabis_batch.id, pod.id, 0)

    async def test_missing_pod(self, db_session, cannabis_batch):
        with pytest.raises(NotFoundError):
            await pod_assignment.assign_to_pod(db_session, cannabis_batch.id, "no-pod", 1)

    async def test_moving_releases_previous_pod(self, db_session, cannabis_batch, pod, small_pod):
        await pod_assignment.assign_to_pod(db_session, cannabis_batch.id, small_pod.id, 10)
        await db_session.commit()

        await pod_assignment.assign_to_pod(db_session, cannabis_batch.id, pod.id, 10)
        await db_session.commit()

        active = await pod_assignment.active_assignments(db_session, cannabis_batch.id)
        assert [a.pod_id for a in active] == [pod.id]
        assert await pod_assignment.pod_occupancy(db_session, small_pod.id) == 0

    async def test_own_plants_do_not_count_against_pod(self, db_session, cannabis_batch, small_pod):
        await pod_assignment.assign_to_pod(db_session, cannabis_batch.id, small_pod.id, 10)
        await db_session.commit()

        # Re-placing the same plants in the same full pod succeeds
        await pod_assignment.assign_to_pod(db_session, cannabis_batch.id, small_pod.id, 10)
        await db_session.commit()
        assert await pod_assignment.pod_occupancy(db_session, small_pod.id) == 10

    async def test_terminal_batch(self, db_session, cannabis_batch, pod):
        await destroy_batch(db_session, cannabis_batch.id, "Failed inspection")
        await db_session.commit()

        with pytest.raises(TerminalStateError):
            await pod_assignment.assign_to_pod(db_session, cannabis_batch.id, pod.id, 1)


@pytest.mark.unit
@pytest.mark.asyncio
class TestRelease:

    async def test_release_frees_capacity(self, db_session, make_batch, small_pod):
        first = await make_batch(plant_count=10)
        second = await make_batch(plant_count=10)
        assignment = await pod_assignment.assign_to_pod(db_session, first.id, small_pod.id, 10)
        await db_session.commit()

        await pod_assignment.release_pod_assignment(db_session, assignment.id, actor="user-2")
        await db_session.commit()
        assert assignment.removed_by == "user-2"

        await pod_assignment.assign_to_pod(db_session, second.id, small_pod.id, 10)
        assert await pod_assignment.pod_occupancy(db_session, small_pod.id) == 10

    async def test_release_twice(self, db_session, cannabis_batch, pod):
        assignment = await pod_assignment.assign_to_pod(db_session, cannabis_batch.id, pod.id, 5)
        await pod_assignment.release_pod_assignment(db_session, assignment.id)

        with pytest.raises(ValidationError) as exc_info:
            await pod_assignment.release_pod_assignment(db_session, assignment.id)
        assert exc_info.value.error_code == "ALREADY_RELEASED"

    async def test_destroy_releases_all(self, db_session, cannabis_batch, pod):
        await pod_assignment.assign_to_pod(db_session, cannabis_batch.id, pod.id, 10)
        await db_session.commit()

        result = await destroy_batch(db_session, cannabis_batch.id, "Failed inspection")
        await db_session.commit()
        assert result.released_assignments == 1
        assert await pod_assignment.pod_occupancy(db_session, pod.id) == 0
