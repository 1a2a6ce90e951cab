"""Batch — a tracked cohort of plants or produce units.

A Batch moves through a domain-specific stage graph (cannabis or produce)
from planning to completion.  Every mutation goes through the lifecycle
services; the row carries a version counter so concurrent writers cannot
silently overwrite each other.

Status:     active → quarantined → active … → completed | destroyed
Sync:       not_required | pending | synced | failed
"""

import enum
import uuid
from datetime import date, datetime

from sqlalchemy import Date, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class DomainType(str, enum.Enum):
    CANNABIS = "cannabis"
    PRODUCE = "produce"


class BatchStatus(str, enum.Enum):
    ACTIVE = "active"
    QUARANTINED = "quarantined"
    COMPLETED = "completed"
    DESTROYED = "destroyed"


TERMINAL_STATUSES = frozenset({BatchStatus.COMPLETED.value, BatchStatus.DESTROYED.value})


class SyncStatus(str, enum.Enum):
    NOT_REQUIRED = "not_required"
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class Batch(Base):
    __tablename__ = "batches"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    batch_number: Mapped[str] = mapped_column(
        String(50), unique=True, nullable=False, index=True
    )
    domain_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)

    # ── Lifecycle ────────────────────────────────────────────
    stage: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20), default=BatchStatus.ACTIVE.value, nullable=False, index=True
    )
    quarantine_reason: Mapped[str | None] = mapped_column(Text)
    quarantined_at: Mapped[datetime | None] = mapped_column(DateTime)

    # ── Origin ───────────────────────────────────────────────
    site_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("sites.id"), nullable=False, index=True
    )
    # Cultivar catalog lives outside this service
    cultivar_id: Mapped[str | None] = mapped_column(String(36), index=True)
    plant_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    start_date: Mapped[date | None] = mapped_column(Date)
    expected_harvest_date: Mapped[date | None] = mapped_column(Date)

    # ── Regulatory link ──────────────────────────────────────
    # Plant batch id at the regulator; no sync happens without it
    external_batch_id: Mapped[str | None] = mapped_column(String(100), index=True)
    sync_status: Mapped[str] = mapped_column(
        String(20), default=SyncStatus.NOT_REQUIRED.value, nullable=False
    )
    last_sync_confirmation_id: Mapped[str | None] = mapped_column(String(100))

    # ── Recipe ───────────────────────────────────────────────
    active_recipe_activation_id: Mapped[str | None] = mapped_column(String(36))

    # ── Metadata ─────────────────────────────────────────────
    notes: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(String(36))  # user_id
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    # ── Relationships ────────────────────────────────────────
    # Loaded explicitly where needed; history and events can grow large.
    site = relationship("Site")
    stage_history = relationship(
        "StageHistoryEntry", back_populates="batch",
        order_by="StageHistoryEntry.started_at",
    )
    events = relationship(
        "BatchEvent", back_populates="batch",
        order_by="BatchEvent.recorded_at",
    )
    plant_tags = relationship(
        "PlantTag", back_populates="batch",
        order_by="PlantTag.assigned_at",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
