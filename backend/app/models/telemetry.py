"""TelemetryReading — environmental readings pushed by pod controllers.

Written by the telemetry ingestion service; this service only reads the
latest row per pod for setpoint evaluation.
"""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class TelemetryReading(Base):
    __tablename__ = "telemetry_readings"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    pod_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("pods.id"), nullable=False
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    temperature: Mapped[float | None] = mapped_column(Float)   # °C
    humidity: Mapped[float | None] = mapped_column(Float)      # % RH
    co2: Mapped[float | None] = mapped_column(Float)           # ppm
    lights_on: Mapped[bool | None] = mapped_column(Boolean)

    __table_args__ = (
        Index("ix_telemetry_readings_pod_timestamp", "pod_id", "timestamp"),
    )
