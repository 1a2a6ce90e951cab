"""Tests for caching functionality."""

import pytest

from app.utils.cache import cache_key, cached, get_redis, invalidate_batch_cache, invalidate_cache


@pytest.mark.cache
@pytest.mark.asyncio
class TestCacheUtility:
    """Test cache utility functions."""

    async def test_get_redis(self, redis_client):
        client = await get_redis()
        assert await client.ping() is True

    async def test_cached_decorator(self, redis_client):
        call_count = 0

        @cached(ttl=10, prefix="test")
        async def tag_summary(batch_id: str, limit: int = 10):
            nonlocal call_count
            call_count += 1
            return {"batch_id": batch_id, "limit": limit}

        assert await tag_summary(batch_id="b-1") == {"batch_id": "b-1", "limit": 10}
        assert await tag_summary(batch_id="b-1") == {"batch_id": "b-1", "limit": 10}
        assert call_count == 1

        await tag_summary(batch_id="b-2")
        assert call_count == 2

    async def test_cache_ttl(self, redis_client):
        @cached(ttl=1, prefix="test_ttl")
        async def fast_expiring():
            return {"value": "expires soon"}

        await fast_expiring()
        keys = [key async for key in redis_client.scan_iter(match="test_ttl:*")]
        assert len(keys) == 1
        assert 0 < await redis_client.ttl(keys[0]) <= 1

    async def test_pydantic_results_come_back_as_dicts(self, redis_client):
        from pydantic import BaseModel

        class Lock(BaseModel):
            operation: str
            reason: str

        @cached(ttl=10, prefix="test_pydantic")
        async def get_lock():
            return Lock(operation="harvest", reason="Quarantined")

        first = await get_lock()
        assert isinstance(first, Lock)

        second = await get_lock()
        assert second == {"operation": "harvest", "reason": "Quarantined"}

    async def test_invalidate_batch_cache(self, redis_client):
        await redis_client.set("batch:b-1:history", "[]")
        await redis_client.set("batch:b-1:events:all", "[]")
        await redis_client.set("batch:b-2:history", "[]")

        await invalidate_batch_cache("b-1")

        remaining = sorted([key async for key in redis_client.scan_iter(match="batch:*")])
        assert remaining == ["batch:b-2:history"]

    async def test_invalidate_pattern(self, redis_client):
        await redis_client.set("test:func1:abc123", "value1")
        await redis_client.set("other:func:xyz789", "value3")

        await invalidate_cache("test:*")

        assert await redis_client.get("test:func1:abc123") is None
        assert await redis_client.get("other:func:xyz789") == "value3"


class TestCacheKey:

    def test_cache_key_generation(self):
        assert cache_key(limit=50, offset=0) == cache_key(offset=0, limit=50)
        assert cache_key(limit=50, offset=0) != cache_key(limit=100, offset=0)
        assert cache_key() == "default"


@pytest.mark.cache
@pytest.mark.asyncio
class TestEndpointCaching:
    """Stage history and events are cached per batch and dropped on writes."""

    async def test_history_cached_until_transition(self, client, redis_client, make_batch):
        batch = await make_batch()
        batch_id = batch.id

        first = await client.get(f"/api/batches/{batch_id}/history")
        assert first.status_code == 200
        assert await redis_client.exists(f"batch:{batch_id}:history") == 1

        second = await client.get(f"/api/batches/{batch_id}/history")
        assert second.json() == first.json()

        await client.post(f"/api/batches/{batch_id}/transition", json={"to_stage": "clone"})
        assert await redis_client.exists(f"batch:{batch_id}:history") == 0

        refreshed = await client.get(f"/api/batches/{batch_id}/history")
        assert [h["stage"] for h in refreshed.json()] == ["planning", "clone"]

    async def test_events_keyed_by_filter(self, client, redis_client, make_batch):
        batch = await make_batch()
        batch_id = batch.id

        await client.get(f"/api/batches/{batch_id}/events")
        await client.get(f"/api/batches/{batch_id}/events", params={"event_type": "CREATED"})

        keys = sorted([key async for key in redis_client.scan_iter(match=f"batch:{batch_id}:*")])
        assert keys == [f"batch:{batch_id}:events:CREATED", f"batch:{batch_id}:events:all"]
