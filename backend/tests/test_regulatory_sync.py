"""Regulatory sync tests — job queue, worker outcomes, backoff, client.

The worker opens its own sessions from ``session_factory``; the test
session shares the same single SQLite connection, so every test commits
before running the worker and reloads rows afterwards.
"""

import json
from datetime import datetime, timedelta

import httpx
import pytest
from sqlalchemy import select, update

from app.middleware.exceptions import ExternalSyncFailure, ValidationError
from app.models.batch import Batch
from app.models.batch_history import EventType
from app.models.sync_job import PhaseChangeJob
from app.services import batch_lifecycle, regulatory_sync
from app.services.batch_lifecycle import transition_batch
from app.services.regulatory_client import PhaseChangeReport, RegulatoryClient
from app.services.regulatory_sync import SyncWorker, backoff_delay


async def _reload(db, model, row_id):
    result = await db.execute(
        select(model).where(model.id == row_id).execution_options(populate_existing=True)
    )
    row = result.scalar_one()
    await db.commit()
    return row


async def _make_due(db, job_id):
    await db.execute(
        update(PhaseChangeJob)
        .where(PhaseChangeJob.id == job_id)
        .values(next_attempt_at=datetime.utcnow() - timedelta(seconds=1))
    )
    await db.commit()


async def _enqueue(db, batch_id, *stages) -> str:
    result = None
    for stage in stages:
        result = await transition_batch(db, batch_id, stage, actor="user-1")
    await db.commit()
    return result.sync_job_id


@pytest.fixture
def worker(session_factory, fake_regulator):
    return SyncWorker(
        session_factory=session_factory,
        client=fake_regulator,
        concurrency=1,
        poll_interval=0,
    )


@pytest.mark.unit
class TestBackoff:

    @pytest.mark.parametrize(
        "attempts, seconds",
        [(1, 30), (2, 60), (3, 120), (4, 240), (7, 1920), (8, 3600), (20, 3600)],
    )
    def test_exponential_with_cap(self, attempts, seconds):
        assert backoff_delay(attempts) == timedelta(seconds=seconds)


@pytest.mark.integration
@pytest.mark.asyncio
class TestWorker:

    async def test_success_marks_job_and_batch_synced(self, db_session, cannabis_batch, worker, fake_regulator):
        job_id = await _enqueue(db_session, cannabis_batch.id, "germination", "vegetative")

        summary = await worker.run_once()
        assert summary == {"synced": 1}

        report = fake_regulator.reports[0]
        assert report.external_batch_id == "EXT-1001"
        assert (report.from_phase, report.to_phase) == ("Clone", "Vegetative")
        assert report.occurred_at.endswith("Z")

        job = await _reload(db_session, PhaseChangeJob, job_id)
        assert job.status == "synced"
        assert job.confirmation_id == "CONF-1"
        assert job.completed_at is not None

        batch = await _reload(db_session, Batch, cannabis_batch.id)
        assert batch.sync_status == "synced"
        assert batch.last_sync_confirmation_id == "CONF-1"

        confirmed = await batch_lifecycle.get_events(
            db_session, batch.id, EventType.SYNC_CONFIRMED.value
        )
        assert confirmed[0].event_data["confirmation_id"] == "CONF-1"

    async def test_nothing_due(self, worker):
        assert await worker.run_once() == {}

    async def test_failure_is_retried_with_backoff(self, db_session, cannabis_batch, worker, fake_regulator):
        fake_regulator.fail_times = 1
        job_id = await _enqueue(db_session, cannabis_batch.id, "clone", "vegetative")

        before = datetime.utcnow()
        assert await worker.run_once() == {"pending": 1}

        job = await _reload(db_session, PhaseChangeJob, job_id)
        assert job.attempts == 1
        assert job.last_error == "Regulatory API returned 503"
        assert job.next_attempt_at >= before + timedelta(seconds=30)

        # Not due yet
        assert await worker.run_once() == {}

        await _make_due(db_session, job_id)
        assert await worker.run_once() == {"synced": 1}
        job = await _reload(db_session, PhaseChangeJob, job_id)
        assert job.status == "synced"
        assert job.confirmation_id == "CONF-2"

    async def test_gives_up_after_max_attempts(self, db_session, cannabis_batch, worker, fake_regulator):
        fake_regulator.fail_times = 100
        job_id = await _enqueue(db_session, cannabis_batch.id, "clone", "vegetative")

        outcomes = []
        for _ in range(5):
            summary = await worker.run_once()
            outcomes.extend(summary)
            await _make_due(db_session, job_id)
        assert outcomes == ["pending"] * 4 + ["failed"]
        assert await worker.run_once() == {}
        assert len(fake_regulator.reports) == 5

        job = await _reload(db_session, PhaseChangeJob, job_id)
        assert job.status == "failed"
        assert job.attempts == 5

        batch = await _reload(db_session, Batch, cannabis_batch.id)
        assert batch.sync_status == "failed"
        # Delivery failure never touches the transition itself
        assert batch.stage == "vegetative"

        failed = await batch_lifecycle.get_events(db_session, batch.id, EventType.SYNC_FAILED.value)
        assert failed[0].event_data == {"job_id": job_id, "attempts": 5}

    async def test_newer_job_supersedes_claimed_one(self, db_session, cannabis_batch, worker, fake_regulator):
        first_id = await _enqueue(db_session, cannabis_batch.id, "clone", "vegetative")
        claimed = await regulatory_sync.claim_due_jobs(db_session, limit=5)
        await db_session.commit()
        assert claimed == [first_id]

        second_id = await _enqueue(db_session, cannabis_batch.id, "flowering")

        # The in-flight job blocks the newer one from being claimed
        assert await regulatory_sync.claim_due_jobs(db_session, limit=5) == []
        await db_session.commit()

        assert await worker._execute(first_id) == "superseded"
        assert fake_regulator.reports == []

        assert await worker.run_once() == {"synced": 1}
        assert fake_regulator.reports[0].to_phase == "Flowering"
        job = await _reload(db_session, PhaseChangeJob, second_id)
        assert job.status == "synced"

    async def test_unexpected_client_error_counts_as_attempt(self, db_session, cannabis_batch, session_factory):
        class ExplodingClient:
            async def report_phase_change(self, report):
                raise RuntimeError("boom")

        job_id = await _enqueue(db_session, cannabis_batch.id, "clone", "vegetative")
        worker = SyncWorker(
            session_factory=session_factory, client=ExplodingClient(), concurrency=1, poll_interval=0
        )

        outcomes = []
        for _ in range(5):
            outcomes.extend(await worker.run_once())
            await _make_due(db_session, job_id)
        assert outcomes == ["pending"] * 4 + ["failed"]
        assert await worker.run_once() == {}

        job = await _reload(db_session, PhaseChangeJob, job_id)
        assert job.status == "failed"
        assert job.attempts == 5
        assert "RuntimeError" in job.last_error

        batch = await _reload(db_session, Batch, cannabis_batch.id)
        assert batch.sync_status == "failed"

    async def test_expired_lease_counts_as_attempt(self, db_session, cannabis_batch):
        job_id = await _enqueue(db_session, cannabis_batch.id, "clone", "vegetative")

        now = datetime.utcnow() + timedelta(minutes=1)
        for round_number in range(1, 6):
            assert await regulatory_sync.claim_due_jobs(db_session, limit=5, now=now) == [job_id]
            await db_session.commit()

            requeued = await regulatory_sync.requeue_stale_claims(
                db_session, now=now + timedelta(hours=2)
            )
            await db_session.commit()
            assert requeued == 1

            job = await _reload(db_session, PhaseChangeJob, job_id)
            assert job.attempts == round_number
            assert job.last_error == "Claim lease expired before an outcome was recorded"
            now += timedelta(days=1)

        assert job.status == "failed"
        assert await regulatory_sync.claim_due_jobs(db_session, limit=5, now=now) == []

        batch = await _reload(db_session, Batch, cannabis_batch.id)
        assert batch.sync_status == "failed"

    async def test_live_lease_is_not_requeued(self, db_session, cannabis_batch):
        job_id = await _enqueue(db_session, cannabis_batch.id, "clone", "vegetative")
        assert await regulatory_sync.claim_due_jobs(db_session, limit=5) == [job_id]
        await db_session.commit()

        assert await regulatory_sync.requeue_stale_claims(db_session) == 0
        job = await _reload(db_session, PhaseChangeJob, job_id)
        assert job.status == "in_progress"
        assert job.attempts == 0

    async def test_run_until_idle(self, db_session, make_batch, worker, fake_regulator):
        first = await make_batch(stage="clone", external_batch_id="EXT-A")
        second = await make_batch(stage="clone", external_batch_id="EXT-B")
        await _enqueue(db_session, first.id, "vegetative")
        await _enqueue(db_session, second.id, "vegetative")

        assert await worker.run_until_idle() == {"synced": 2}
        assert sorted(r.external_batch_id for r in fake_regulator.reports) == ["EXT-A", "EXT-B"]


@pytest.mark.integration
@pytest.mark.asyncio
class TestClaiming:

    async def test_one_claim_per_batch_oldest_first(self, db_session, make_batch):
        first = await make_batch(stage="clone", external_batch_id="EXT-A")
        second = await make_batch(stage="clone", external_batch_id="EXT-B")
        first_job = await _enqueue(db_session, first.id, "vegetative")
        second_job = await _enqueue(db_session, second.id, "vegetative")

        assert await regulatory_sync.claim_due_jobs(db_session, limit=1) == [first_job]
        assert await regulatory_sync.claim_due_jobs(db_session, limit=5) == [second_job]
        assert await regulatory_sync.claim_due_jobs(db_session, limit=5) == []

    async def test_future_jobs_are_not_claimed(self, db_session, cannabis_batch):
        await _enqueue(db_session, cannabis_batch.id, "clone", "vegetative")
        claimed = await regulatory_sync.claim_due_jobs(
            db_session, limit=5, now=datetime.utcnow() - timedelta(minutes=5)
        )
        assert claimed == []


@pytest.mark.integration
@pytest.mark.asyncio
class TestRetrigger:

    async def _failed_job(self, db, batch_id, worker, fake_regulator):
        fake_regulator.fail_times = 100
        job_id = await _enqueue(db, batch_id, "clone", "vegetative")
        for _ in range(5):
            await worker.run_once()
            await _make_due(db, job_id)
        job = await _reload(db, PhaseChangeJob, job_id)
        assert job.status == "failed"
        return job_id

    async def test_retrigger_resets_failed_job(self, db_session, cannabis_batch, worker, fake_regulator):
        job_id = await self._failed_job(db_session, cannabis_batch.id, worker, fake_regulator)

        job = await regulatory_sync.retrigger_job(db_session, job_id, actor="operator")
        await db_session.commit()
        assert job.status == "pending"
        assert job.attempts == 0
        assert job.last_error is None

        batch = await _reload(db_session, Batch, cannabis_batch.id)
        assert batch.sync_status == "pending"

        fake_regulator.fail_times = 0
        fake_regulator.reports.clear()
        assert await worker.run_once() == {"synced": 1}

    async def test_only_failed_jobs(self, db_session, cannabis_batch):
        job_id = await _enqueue(db_session, cannabis_batch.id, "clone", "vegetative")
        with pytest.raises(ValidationError) as exc_info:
            await regulatory_sync.retrigger_job(db_session, job_id)
        assert exc_info.value.error_code == "JOB_NOT_FAILED"

    async def test_retrigger_all(self, db_session, cannabis_batch, worker, fake_regulator):
        await self._failed_job(db_session, cannabis_batch.id, worker, fake_regulator)
        assert await regulatory_sync.retrigger_failed_jobs(db_session) == 1
        await db_session.commit()
        assert await regulatory_sync.retrigger_failed_jobs(db_session) == 0

    async def test_list_jobs_filters(self, db_session, cannabis_batch):
        job_id = await _enqueue(db_session, cannabis_batch.id, "clone", "vegetative")
        jobs = await regulatory_sync.list_jobs(db_session, batch_id=cannabis_batch.id)
        assert [j.id for j in jobs] == [job_id]
        assert await regulatory_sync.list_jobs(db_session, status="failed") == []


def _report() -> PhaseChangeReport:
    return PhaseChangeReport(
        batch_id="batch-1",
        external_batch_id="EXT-1001",
        from_phase="Vegetative",
        to_phase="Flowering",
        occurred_at="2026-06-01T12:00:00Z",
    )


@pytest.mark.unit
@pytest.mark.asyncio
class TestRegulatoryClient:

    async def test_posts_report_and_returns_confirmation(self, mock_regulator_transport):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"confirmation_id": "RC-77"})

        client = mock_regulator_transport(handler)
        assert await client.report_phase_change(_report()) == "RC-77"
        assert seen["url"] == "https://regulator.test/v2/plantbatches/growthphase"
        assert seen["auth"] == "Bearer test-key"
        assert seen["body"] == {
            "batch_id": "batch-1",
            "external_batch_id": "EXT-1001",
            "from_phase": "Vegetative",
            "to_phase": "Flowering",
            "occurred_at": "2026-06-01T12:00:00Z",
        }

    async def test_server_error(self, mock_regulator_transport):
        client = mock_regulator_transport(lambda request: httpx.Response(503, text="maintenance"))
        with pytest.raises(ExternalSyncFailure) as exc_info:
            await client.report_phase_change(_report())
        assert "503" in exc_info.value.message

    async def test_missing_confirmation(self, mock_regulator_transport):
        client = mock_regulator_transport(lambda request: httpx.Response(200, json={}))
        with pytest.raises(ExternalSyncFailure):
            await client.report_phase_change(_report())

    async def test_non_object_body(self, mock_regulator_transport):
        client = mock_regulator_transport(lambda request: httpx.Response(200, json=["ok"]))
        with pytest.raises(ExternalSyncFailure) as exc_info:
            await client.report_phase_change(_report())
        assert "unexpected response body" in exc_info.value.message

    async def test_invalid_base_url(self):
        client = RegulatoryClient(
            base_url="https://regulator.test/v2\x00",
            api_key="test-key",
            timeout=5,
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})),
        )
        with pytest.raises(ExternalSyncFailure) as exc_info:
            await client.report_phase_change(_report())
        assert "unreachable" in exc_info.value.message

    async def test_timeout(self, mock_regulator_transport):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        client = mock_regulator_transport(handler)
        with pytest.raises(ExternalSyncFailure) as exc_info:
            await client.report_phase_change(_report())
        assert "timed out" in exc_info.value.message

    async def test_unreachable(self, mock_regulator_transport):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = mock_regulator_transport(handler)
        with pytest.raises(ExternalSyncFailure) as exc_info:
            await client.report_phase_change(_report())
        assert "unreachable" in exc_info.value.message

    async def test_worker_through_http_client(self, db_session, cannabis_batch, session_factory, mock_regulator_transport):
        calls = []

        def handler(request):
            calls.append(json.loads(request.content))
            return httpx.Response(200, json={"confirmation_id": f"RC-{len(calls)}"})

        job_id = await _enqueue(db_session, cannabis_batch.id, "clone", "vegetative")
        worker = SyncWorker(
            session_factory=session_factory,
            client=mock_regulator_transport(handler),
            concurrency=1,
            poll_interval=0,
        )
        assert await worker.run_once() == {"synced": 1}
        assert calls[0]["to_phase"] == "Vegetative"

        job = await _reload(db_session, PhaseChangeJob, job_id)
        assert job.confirmation_id == "RC-1"


@pytest.mark.cache
@pytest.mark.asyncio
class TestRetriggerInvalidatesCache:

    async def test_retrigger_all_drops_batch_cache(self, db_session, redis_client, cannabis_batch, worker, fake_regulator):
        fake_regulator.fail_times = 100
        job_id = await _enqueue(db_session, cannabis_batch.id, "clone", "vegetative")
        for _ in range(5):
            await worker.run_once()
            await _make_due(db_session, job_id)

        key = f"batch:{cannabis_batch.id}:events:all"
        await redis_client.set(key, "[]")
        assert await regulatory_sync.retrigger_failed_jobs(db_session) == 1
        await db_session.commit()
        assert await redis_client.exists(key) == 0
