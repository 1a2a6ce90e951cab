"""StageHistoryEntry and BatchEvent — the two append-only batch logs.

StageHistoryEntry records how long a batch spent in each stage.  Exactly
one entry per batch is open (``ended_at IS NULL``) at any time; closing it
and opening the next happen in the same transaction as the stage change.

BatchEvent is the audit trail: every quarantine, tag assignment, harvest,
destruction, etc. appends one row.  Rows are never updated or deleted.

TimescaleDB note:
    ``batch_events`` is a good hypertable candidate on large deployments:

        SELECT create_hypertable('batch_events', 'recorded_at');
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class EventType(str, enum.Enum):
    CREATED = "CREATED"
    STAGE_TRANSITION = "STAGE_TRANSITION"
    QUARANTINED = "QUARANTINED"
    RELEASED = "RELEASED"
    PLANT_COUNT_UPDATED = "PLANT_COUNT_UPDATED"
    TAGS_ASSIGNED = "TAGS_ASSIGNED"
    TAG_COUNT_MISMATCH = "TAG_COUNT_MISMATCH"
    POD_ASSIGNED = "POD_ASSIGNED"
    POD_RELEASED = "POD_RELEASED"
    RECIPE_ACTIVATED = "RECIPE_ACTIVATED"
    RECIPE_DEACTIVATED = "RECIPE_DEACTIVATED"
    HARVEST_RECORDED = "HARVEST_RECORDED"
    INVENTORY_POSTED = "INVENTORY_POSTED"
    INVENTORY_POSTING_FAILED = "INVENTORY_POSTING_FAILED"
    DESTROYED = "DESTROYED"
    SYNC_ENQUEUED = "SYNC_ENQUEUED"
    SYNC_CONFIRMED = "SYNC_CONFIRMED"
    SYNC_FAILED = "SYNC_FAILED"


class StageHistoryEntry(Base):
    __tablename__ = "batch_stage_history"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("batches.id"), nullable=False, index=True
    )
    stage: Mapped[str] = mapped_column(String(30), nullable=False)
    started_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    ended_at: Mapped[datetime | None] = mapped_column(DateTime)
    started_by: Mapped[str | None] = mapped_column(String(36))  # user_id
    notes: Mapped[str | None] = mapped_column(Text)

    batch = relationship("Batch", back_populates="stage_history")


class BatchEvent(Base):
    __tablename__ = "batch_events"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("batches.id"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    # Flexible payload; structure depends on event_type:
    #   STAGE_TRANSITION:  {"from": "vegetative", "to": "flowering", "sync_enqueued": true}
    #   TAGS_ASSIGNED:     {"assigned": 98, "skipped_duplicates": 2, "invalid": 0}
    #   HARVEST_RECORDED:  {"harvest_id": "...", "wet_weight": 500.0}
    #   DESTROYED:         {"waste_log_id": "...", "released_assignments": 2}
    event_data: Mapped[dict | None] = mapped_column(JSON)

    notes: Mapped[str | None] = mapped_column(Text)
    recorded_by: Mapped[str | None] = mapped_column(String(36))  # user_id, None for system
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False, index=True
    )

    batch = relationship("Batch", back_populates="events")
