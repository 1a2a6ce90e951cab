"""PlantTag — a regulator-issued identifier assigned to one plant of a batch.

The unique constraint on ``tag`` makes a tag belong to at most one batch.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class PlantTag(Base):
    __tablename__ = "batch_plant_tags"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("batches.id"), nullable=False, index=True
    )
    tag: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    assigned_by: Mapped[str | None] = mapped_column(String(36))  # user_id
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    batch = relationship("Batch", back_populates="plant_tags")
