"""Aggregate model imports for Alembic auto-detection and create_all()."""

# Registry / configuration
from app.models.jurisdiction import Jurisdiction  # noqa: F401
from app.models.site import Pod, Site  # noqa: F401

# Batch aggregate
from app.models.batch import Batch, BatchStatus, DomainType, SyncStatus  # noqa: F401
from app.models.batch_history import BatchEvent, EventType, StageHistoryEntry  # noqa: F401
from app.models.plant_tag import PlantTag  # noqa: F401
from app.models.pod_assignment import PodAssignment  # noqa: F401

# Recipes & telemetry
from app.models.recipe import (  # noqa: F401
    Recipe, RecipeActivation, RecipeStage, RecipeVersion, Setpoint,
)
from app.models.telemetry import TelemetryReading  # noqa: F401

# Harvest, inventory, waste
from app.models.harvest import HarvestPlantRecord, HarvestRecord  # noqa: F401
from app.models.inventory import InventoryItem, InventoryMovement  # noqa: F401
from app.models.waste_log import WasteLog  # noqa: F401

# Regulatory sync
from app.models.sync_job import JobStatus, PhaseChangeJob, RegulatoryPhase  # noqa: F401
