"""Inventory collaborator — finished-good receipts from harvests.

``InventoryService`` is the seam the harvest poster talks to.  The default
implementation writes to the local inventory tables; every rejection is
raised as InventoryPostingError so the caller can keep the harvest and
report a partial success.
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.middleware.exceptions import InventoryPostingError
from app.models.inventory import InventoryItem, InventoryMovement

logger = logging.getLogger(__name__)


class InventoryService:
    """Post receive movements against the local inventory ledger."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_item(self, item_id: str) -> InventoryItem:
        result = await self.db.execute(
            select(InventoryItem).where(InventoryItem.id == item_id).with_for_update()
        )
        item = result.scalar_one_or_none()
        if not item:
            raise InventoryPostingError(
                f"Inventory item not found: {item_id}",
                error_code="INVENTORY_ITEM_NOT_FOUND",
            )
        if not item.is_active:
            raise InventoryPostingError(
                f"Inventory item {item.name} is inactive",
                error_code="INVENTORY_ITEM_INACTIVE",
            )
        return item

    async def post_receipt(
        self,
        item_id: str,
        quantity: float,
        *,
        batch_id: str | None = None,
        lot_code: str | None = None,
        unit: str | None = None,
        notes: str | None = None,
        actor: str | None = None,
    ) -> InventoryMovement:
        """Add ``quantity`` to the item's on-hand stock and ledger it."""
        if quantity is None or quantity <= 0:
            raise InventoryPostingError(
                "Receipt quantity must be positive",
                error_code="INVENTORY_INVALID_QUANTITY",
            )

        item = await self.get_item(item_id)
        if unit is not None and unit != item.unit_of_measure:
            raise InventoryPostingError(
                f"Unit {unit} does not match item unit {item.unit_of_measure}",
                error_code="INVENTORY_UNIT_MISMATCH",
            )

        item.current_quantity = (item.current_quantity or 0.0) + quantity
        movement = InventoryMovement(
            item_id=item.id,
            batch_id=batch_id,
            movement_type="receive",
            quantity=quantity,
            unit=item.unit_of_measure,
            lot_code=lot_code,
            notes=notes,
            recorded_by=actor,
        )
        self.db.add(movement)
        await self.db.flush()

        logger.info(
            "Received %.2f %s of %s (lot %s)",
            quantity, item.unit_of_measure, item.name, lot_code,
        )
        return movement
