import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class DisposalMethod(str, enum.Enum):
    """How destroyed plant material was rendered unusable."""
    MIX_SAWDUST = "50_50_sawdust"
    MIX_KITTY_LITTER = "50_50_kitty_litter"
    MIX_SOIL = "50_50_soil"
    MIX_OTHER_INERT = "50_50_other_inert"
    COMPOSTING = "composting"
    GRINDING = "grinding"
    INCINERATION = "incineration"
    OTHER = "other"

    @property
    def is_inert_mix(self) -> bool:
        return self.value.startswith("50_50")


class WasteLog(Base):
    """Record of plant material destroyed with a batch."""
    __tablename__ = "waste_logs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("batches.id"), nullable=False, index=True
    )
    plant_count: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    waste_weight: Mapped[float | None] = mapped_column(Float)  # grams
    disposal_method: Mapped[str | None] = mapped_column(String(50))  # DisposalMethod
    # 50:50 methods: weight of sawdust, litter or soil mixed in (grams)
    inert_material_weight: Mapped[float | None] = mapped_column(Float)
    recorded_by: Mapped[str | None] = mapped_column(String(36))  # user_id
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False, index=True
    )
