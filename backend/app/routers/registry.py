"""Registry router — jurisdictions, sites, pods and inventory items.

Reference data the lifecycle endpoints depend on.

Endpoints:
    POST  /api/jurisdictions                 Create jurisdiction policy
    GET   /api/jurisdictions                 List jurisdictions
    POST  /api/sites                         Create site
    GET   /api/sites                         List sites
    POST  /api/pods                          Create pod
    GET   /api/pods                          List pods (optionally per site)
    GET   /api/pods/{pod_id}                 Pod with current occupancy
    POST  /api/inventory-items               Create inventory item
    GET   /api/inventory-items/{item_id}     Inventory item
    GET   /api/inventory-items/{item_id}/movements
"""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.middleware.exceptions import ConflictError, NotFoundError, ValidationError
from app.models.inventory import InventoryItem, InventoryMovement
from app.models.jurisdiction import Jurisdiction
from app.models.site import Pod, Site
from app.schemas.registry import (
    InventoryItemCreate,
    InventoryItemOut,
    InventoryMovementOut,
    JurisdictionCreate,
    JurisdictionOut,
    PodCreate,
    PodOccupancyOut,
    PodOut,
    SiteCreate,
    SiteOut,
)
from app.services.pod_assignment import pod_occupancy
from app.services.stage_graph import STAGE_ENUMS

router = APIRouter()

_KNOWN_STAGES = frozenset(s.value for enum_cls in STAGE_ENUMS.values() for s in enum_cls)


# ── Jurisdictions ────────────────────────────────────────────

@router.post(
    "/jurisdictions",
    response_model=JurisdictionOut,
    status_code=status.HTTP_201_CREATED,
    tags=["jurisdictions"],
)
async def create_jurisdiction(body: JurisdictionCreate, db: AsyncSession = Depends(get_db)):
    existing = await db.execute(select(Jurisdiction).where(Jurisdiction.code == body.code))
    if existing.scalar_one_or_none():
        raise ConflictError(
            f"Jurisdiction {body.code} already exists", error_code="DUPLICATE_JURISDICTION"
        )
    if body.allowed_stages is not None:
        unknown = sorted(set(body.allowed_stages) - _KNOWN_STAGES)
        if unknown:
            raise ValidationError(
                f"Unknown stages in allowed_stages: {', '.join(unknown)}",
                error_code="UNKNOWN_STAGE",
                details={"unknown": unknown},
            )

    jurisdiction = Jurisdiction(**body.model_dump())
    db.add(jurisdiction)
    await db.flush()
    return jurisdiction


@router.get("/jurisdictions", response_model=list[JurisdictionOut], tags=["jurisdictions"])
async def list_jurisdictions(db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(Jurisdiction).order_by(Jurisdiction.code))
    return result.scalars().all()


# ── Sites ────────────────────────────────────────────────────

@router.post(
    "/sites", response_model=SiteOut, status_code=status.HTTP_201_CREATED, tags=["sites"]
)
async def create_site(body: SiteCreate, db: AsyncSession = Depends(get_db)):
    if body.jurisdiction_id and not await db.get(Jurisdiction, body.jurisdiction_id):
        raise NotFoundError("Jurisdiction", body.jurisdiction_id)
    site = Site(**body.model_dump())
    db.add(site)
    await db.flush()
    return site


@router.get("/sites", response_model=list[SiteOut], tags=["sites"])
async def list_sites(db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(Site).order_by(Site.name))
    return result.scalars().all()


# ── Pods ─────────────────────────────────────────────────────

@router.post(
    "/pods", response_model=PodOut, status_code=status.HTTP_201_CREATED, tags=["pods"]
)
async def create_pod(body: PodCreate, db: AsyncSession = Depends(get_db)):
    if not await db.get(Site, body.site_id):
        raise NotFoundError("Site", body.site_id)
    pod = Pod(**body.model_dump())
    db.add(pod)
    await db.flush()
    return pod


@router.get("/pods", response_model=list[PodOut], tags=["pods"])
async def list_pods(
    site_id: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(Pod).order_by(Pod.name)
    if site_id:
        stmt = stmt.where(Pod.site_id == site_id)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.get("/pods/{pod_id}", response_model=PodOccupancyOut, tags=["pods"])
async def get_pod(pod_id: str, db: AsyncSession = Depends(get_db)):
    pod = await db.get(Pod, pod_id)
    if not pod:
        raise NotFoundError("Pod", pod_id)
    occupied = await pod_occupancy(db, pod.id)
    return PodOccupancyOut(
        **PodOut.model_validate(pod).model_dump(),
        occupied=occupied,
        available=max(pod.capacity - occupied, 0),
    )


# ── Inventory items ──────────────────────────────────────────

@router.post(
    "/inventory-items",
    response_model=InventoryItemOut,
    status_code=status.HTTP_201_CREATED,
    tags=["inventory"],
)
async def create_inventory_item(body: InventoryItemCreate, db: AsyncSession = Depends(get_db)):
    if body.site_id and not await db.get(Site, body.site_id):
        raise NotFoundError("Site", body.site_id)
    item = InventoryItem(**body.model_dump())
    db.add(item)
    await db.flush()
    return item


@router.get("/inventory-items/{item_id}", response_model=InventoryItemOut, tags=["inventory"])
async def get_inventory_item(item_id: str, db: AsyncSession = Depends(get_db)):
    item = await db.get(InventoryItem, item_id)
    if not item:
        raise NotFoundError("Inventory item", item_id)
    return item


@router.get(
    "/inventory-items/{item_id}/movements",
    response_model=list[InventoryMovementOut],
    tags=["inventory"],
)
async def list_movements(item_id: str, db: AsyncSession = Depends(get_db)):
    if not await db.get(InventoryItem, item_id):
        raise NotFoundError("Inventory item", item_id)
    result = await db.execute(
        select(InventoryMovement)
        .where(InventoryMovement.item_id == item_id)
        .order_by(InventoryMovement.recorded_at)
    )
    return result.scalars().all()
