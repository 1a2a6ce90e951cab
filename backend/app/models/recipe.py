"""Recipe catalog and per-batch activations.

A Recipe has immutable Versions; each version is an ordered list of
Stages, and each stage carries environmental Setpoints (one per parameter).
RecipeActivation binds one version to one batch and tracks where the batch
is in that version's stage list.

Only one ``is_active`` row may exist per batch.  The service
checks it under the batch row lock and the partial unique index below
backs it up at the database level.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, Index,
    Integer, String, Text, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class Recipe(Base):
    __tablename__ = "recipes"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # cannabis | produce
    domain_type: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    versions = relationship(
        "RecipeVersion", back_populates="recipe",
        order_by="RecipeVersion.version_number",
    )


class RecipeVersion(Base):
    __tablename__ = "recipe_versions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    recipe_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("recipes.id"), nullable=False, index=True
    )
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    recipe = relationship("Recipe", back_populates="versions")
    stages = relationship(
        "RecipeStage", back_populates="version",
        order_by="RecipeStage.order_index",
    )


class RecipeStage(Base):
    __tablename__ = "recipe_stages"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    recipe_version_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("recipe_versions.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False)
    # None = open-ended, the daily cadence never advances past it
    duration_days: Mapped[int | None] = mapped_column(Integer)

    version = relationship("RecipeVersion", back_populates="stages")
    setpoints = relationship("Setpoint", back_populates="stage")


class Setpoint(Base):
    __tablename__ = "recipe_setpoints"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    recipe_version_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("recipe_versions.id"), nullable=False, index=True
    )
    stage_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("recipe_stages.id"), nullable=False, index=True
    )
    # temperature | humidity | co2 | lights_on
    parameter_type: Mapped[str] = mapped_column(String(30), nullable=False)
    min_value: Mapped[float | None] = mapped_column(Float)
    max_value: Mapped[float | None] = mapped_column(Float)
    # Single target, used when no [min, max] range is given
    value: Mapped[float | None] = mapped_column(Float)
    unit: Mapped[str | None] = mapped_column(String(20))

    stage = relationship("RecipeStage", back_populates="setpoints")


class RecipeActivation(Base):
    __tablename__ = "recipe_activations"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("batches.id"), nullable=False, index=True
    )
    recipe_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("recipes.id"), nullable=False
    )
    recipe_version_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("recipe_versions.id"), nullable=False
    )

    # ── Progress ─────────────────────────────────────────────
    current_stage_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("recipe_stages.id")
    )
    current_stage_day: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    stage_started_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    # ── Status ───────────────────────────────────────────────
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    activated_by: Mapped[str | None] = mapped_column(String(36))
    activated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    deactivated_by: Mapped[str | None] = mapped_column(String(36))
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime)
    deactivation_reason: Mapped[str | None] = mapped_column(Text)

    recipe = relationship("Recipe")
    version = relationship("RecipeVersion")
    current_stage = relationship("RecipeStage")

    __table_args__ = (
        Index(
            "uq_recipe_activations_one_active_per_batch",
            "batch_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )
