from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.middleware.exceptions import register_exception_handlers
from app.routers import batches, harvests, health, recipes, registry, sync
from app.services.scheduler import lifespan

app = FastAPI(
    title="CanopyTrack",
    description="Cultivation batch lifecycle, compliance and regulatory sync",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Exception Handlers ───────────────────────────────────────
register_exception_handlers(app)

# ── Middleware ───────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routers ──────────────────────────────────────────────────
app.include_router(health.router)
app.include_router(registry.router, prefix="/api")
app.include_router(batches.router, prefix="/api/batches", tags=["batches"])
app.include_router(harvests.router, prefix="/api/harvests", tags=["harvests"])
app.include_router(recipes.router, prefix="/api/recipes", tags=["recipes"])
app.include_router(sync.router, prefix="/api/sync", tags=["sync"])
