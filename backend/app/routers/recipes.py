"""Recipe router — catalog, versions, activation housekeeping.

Endpoints:
    POST  /api/recipes/                                  Create recipe (version 1)
    GET   /api/recipes/                                  List recipes
    GET   /api/recipes/{recipe_id}                       Recipe with versions
    POST  /api/recipes/{recipe_id}/versions              Append a version
    POST  /api/recipes/activations/{activation_id}/deactivate
    POST  /api/recipes/advance-days                      Run the daily cadence now
"""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.deps import get_actor_id
from app.schemas.recipe import (
    DeactivateRecipeRequest,
    RecipeActivationOut,
    RecipeCreate,
    RecipeOut,
    RecipeVersionCreate,
    RecipeVersionOut,
)
from app.services import recipe_activation
from app.utils.cache import invalidate_batch_cache

router = APIRouter()


@router.post("/", response_model=RecipeOut, status_code=status.HTTP_201_CREATED)
async def create_recipe(
    body: RecipeCreate,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor_id),
):
    return await recipe_activation.create_recipe(db, body, actor)


@router.get("/", response_model=list[RecipeOut])
async def list_recipes(
    domain_type: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    return await recipe_activation.list_recipes(db, domain_type)


@router.get("/{recipe_id}", response_model=RecipeOut)
async def get_recipe(recipe_id: str, db: AsyncSession = Depends(get_db)):
    return await recipe_activation.get_recipe(db, recipe_id)


@router.post(
    "/{recipe_id}/versions",
    response_model=RecipeVersionOut,
    status_code=status.HTTP_201_CREATED,
)
async def create_version(
    recipe_id: str,
    body: RecipeVersionCreate,
    db: AsyncSession = Depends(get_db),
):
    """Append a new version.  Activations keep pointing at the version
    they were started with."""
    return await recipe_activation.create_recipe_version(db, recipe_id, body)


@router.post("/activations/{activation_id}/deactivate", response_model=RecipeActivationOut)
async def deactivate_activation(
    activation_id: str,
    body: DeactivateRecipeRequest | None = None,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor_id),
):
    activation = await recipe_activation.deactivate(
        db, activation_id, actor, body.reason if body else None
    )
    await invalidate_batch_cache(activation.batch_id)
    return activation


@router.post("/advance-days")
async def advance_days(db: AsyncSession = Depends(get_db)):
    """Advance every active activation to today (idempotent within a day)."""
    return await recipe_activation.advance_recipe_days(db)
