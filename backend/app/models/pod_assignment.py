import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class PodAssignment(Base):
    """Plants of a batch placed in a pod.  ``removed_at IS NULL`` = active."""
    __tablename__ = "batch_pod_assignments"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("batches.id"), nullable=False, index=True
    )
    pod_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("pods.id"), nullable=False, index=True
    )
    plant_count: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)

    assigned_by: Mapped[str | None] = mapped_column(String(36))  # user_id
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    removed_by: Mapped[str | None] = mapped_column(String(36))
    removed_at: Mapped[datetime | None] = mapped_column(DateTime, index=True)

    batch = relationship("Batch")
    pod = relationship("Pod")
