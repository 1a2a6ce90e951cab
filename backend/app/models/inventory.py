"""Inventory catalog and movement ledger.

InventoryItem tracks the current on-hand quantity per catalog item.

InventoryMovement is an audit ledger recording every stock change.  This
service only ever posts ``receive`` movements (finished goods from a
harvest); consumption and adjustments belong to the inventory module.
"""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class InventoryItem(Base):
    """Current inventory level per catalog item."""
    __tablename__ = "inventory_items"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    site_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("sites.id"), index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # finished_good | raw_material | consumable | ...
    item_type: Mapped[str] = mapped_column(String(50), default="finished_good")
    unit_of_measure: Mapped[str] = mapped_column(String(20), default="g")
    current_quantity: Mapped[float] = mapped_column(Float, default=0.0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    movements = relationship(
        "InventoryMovement", back_populates="item",
        order_by="InventoryMovement.recorded_at.desc()",
    )


class InventoryMovement(Base):
    """Audit ledger for inventory changes."""
    __tablename__ = "inventory_movements"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    item_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("inventory_items.id"), nullable=False, index=True
    )
    batch_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("batches.id"), index=True
    )

    # receive | consume | adjust
    movement_type: Mapped[str] = mapped_column(String(30), nullable=False)

    # Positive for stock in, negative for stock out
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    unit: Mapped[str] = mapped_column(String(20), nullable=False)
    lot_code: Mapped[str | None] = mapped_column(String(100), index=True)

    notes: Mapped[str | None] = mapped_column(Text)
    recorded_by: Mapped[str | None] = mapped_column(String(36))  # user_id
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, index=True
    )

    item = relationship("InventoryItem", back_populates="movements")
