"""Harvest router — inventory posting retries.

Harvests are recorded under ``/api/batches/{batch_id}/harvests``; this
router covers operations addressed by harvest id.

Endpoints:
    GET   /api/harvests/{harvest_id}             One harvest record
    POST  /api/harvests/{harvest_id}/inventory   Retry a failed posting
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.deps import get_actor_id
from app.schemas.harvest import HarvestOut, HarvestResult, InventoryPostingRequest
from app.services import harvest as harvest_service
from app.utils.cache import invalidate_batch_cache

router = APIRouter()


@router.get("/{harvest_id}", response_model=HarvestOut)
async def get_harvest(harvest_id: str, db: AsyncSession = Depends(get_db)):
    return await harvest_service.get_harvest(db, harvest_id)


@router.post("/{harvest_id}/inventory", response_model=HarvestResult)
async def retry_posting(
    harvest_id: str,
    body: InventoryPostingRequest | None = None,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor_id),
):
    """Post the receipt again.  Without a body the earlier item and lot
    code are reused."""
    result = await harvest_service.retry_inventory_posting(db, harvest_id, body, actor)
    await invalidate_batch_cache(result["harvest"].batch_id)
    return result
