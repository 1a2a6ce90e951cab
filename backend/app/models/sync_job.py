"""PhaseChangeJob — one growth-phase report owed to the regulator.

Jobs are enqueued in the same transaction as the stage transition that
caused them and executed later by the sync worker.

Lifecycle:  pending → in_progress → synced
                         ↘ pending (retry, backoff) … → failed
            pending | failed → superseded  (a newer job for the batch exists)
            failed → pending  (operator re-trigger)
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class RegulatoryPhase(str, enum.Enum):
    CLONE = "Clone"
    VEGETATIVE = "Vegetative"
    FLOWERING = "Flowering"


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SYNCED = "synced"
    FAILED = "failed"
    SUPERSEDED = "superseded"


class PhaseChangeJob(Base):
    __tablename__ = "phase_change_jobs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("batches.id"), nullable=False
    )
    external_batch_id: Mapped[str] = mapped_column(String(100), nullable=False)
    from_phase: Mapped[str] = mapped_column(String(20), nullable=False)
    to_phase: Mapped[str] = mapped_column(String(20), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # ── Execution state ──────────────────────────────────────
    status: Mapped[str] = mapped_column(
        String(20), default=JobStatus.PENDING.value, nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text)
    confirmation_id: Mapped[str | None] = mapped_column(String(100))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)

    batch = relationship("Batch")

    __table_args__ = (
        Index("ix_phase_change_jobs_status_next", "status", "next_attempt_at"),
        Index("ix_phase_change_jobs_batch_occurred", "batch_id", "occurred_at"),
    )
