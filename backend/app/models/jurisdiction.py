"""Jurisdiction — regulatory configuration applied to every site it governs.

Values that differ per regulator (tag format, manifest policy, harvest
reconciliation tolerance, whether phase changes are reported at all) live
here instead of in code.  Sites without a jurisdiction fall back to the
``default_*`` values in settings.
"""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class Jurisdiction(Base):
    __tablename__ = "jurisdictions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    # State / regulator code, e.g. "OR", "CA", "ME"
    code: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # ── Compliance policy ────────────────────────────────────
    requires_external_sync: Mapped[bool] = mapped_column(Boolean, default=True)
    requires_plant_tags: Mapped[bool] = mapped_column(Boolean, default=True)
    manifest_required_on_destroy: Mapped[bool] = mapped_column(Boolean, default=False)

    # Optional allow-list of stage names; None means the full domain graph
    allowed_stages: Mapped[list | None] = mapped_column(JSON)

    # e.g. "^1A4FF[A-Z0-9]{2}[0-9]{15}$"
    tag_format_regex: Mapped[str | None] = mapped_column(String(255))
    # Per-plant harvest weights must sum to the batch total within this %
    harvest_weight_tolerance_pct: Mapped[float | None] = mapped_column(Float)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
