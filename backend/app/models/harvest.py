"""HarvestRecord — weights recorded when a batch is harvested.

Recording a harvest never moves the batch's stage; callers compose it with
an explicit stage transition.  The optional finished-good inventory receipt
is posted separately and its outcome is tracked on the record so a failed
posting can be retried without touching the harvest itself.

Inventory status:  not_requested | posted | failed
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class HarvestRecord(Base):
    __tablename__ = "harvest_records"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("batches.id"), nullable=False, index=True
    )

    # ── Weights (grams) ──────────────────────────────────────
    wet_weight: Mapped[float] = mapped_column(Float, nullable=False)
    dry_weight: Mapped[float | None] = mapped_column(Float)
    waste_weight: Mapped[float | None] = mapped_column(Float)

    # ── Inventory receipt ────────────────────────────────────
    # Not a foreign key: the item may not exist when a posting is rejected
    inventory_item_id: Mapped[str | None] = mapped_column(String(36))
    inventory_status: Mapped[str] = mapped_column(
        String(20), default="not_requested", nullable=False
    )
    inventory_movement_id: Mapped[str | None] = mapped_column(String(36))
    inventory_error: Mapped[str | None] = mapped_column(Text)
    lot_code: Mapped[str | None] = mapped_column(String(100))

    notes: Mapped[str | None] = mapped_column(Text)
    harvested_by: Mapped[str | None] = mapped_column(String(36))  # user_id
    harvested_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False, index=True
    )

    batch = relationship("Batch")
    plants = relationship("HarvestPlantRecord", back_populates="harvest")


class HarvestPlantRecord(Base):
    """Per-plant weight entry for harvests recorded plant by plant."""
    __tablename__ = "harvest_plant_records"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    harvest_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("harvest_records.id"), nullable=False, index=True
    )
    plant_tag: Mapped[str] = mapped_column(String(64), nullable=False)
    wet_weight: Mapped[float] = mapped_column(Float, nullable=False)

    harvest = relationship("HarvestRecord", back_populates="plants")
