"""Quarantine gate — hold a batch and release it.

While quarantined a batch cannot change stage or be harvested, and can
only be destroyed with an explicit override (see ``utils.locks``).
"""

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.middleware.exceptions import ConflictError, ValidationError
from app.models.batch import Batch, BatchStatus
from app.models.batch_history import EventType
from app.utils.events import log_event
from app.utils.locks import ensure_operation_allowed, lock_batch_row

logger = logging.getLogger(__name__)


async def quarantine(
    db: AsyncSession,
    batch_id: str,
    reason: str,
    actor: str | None = None,
) -> Batch:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A quarantine reason is required")

    batch = await lock_batch_row(db, batch_id)
    ensure_operation_allowed(batch, "quarantine")
    if batch.status == BatchStatus.QUARANTINED.value:
        raise ConflictError(
            f"Batch {batch.batch_number} is already quarantined",
            error_code="ALREADY_QUARANTINED",
        )

    batch.status = BatchStatus.QUARANTINED.value
    batch.quarantine_reason = reason
    batch.quarantined_at = datetime.utcnow()
    log_event(
        db, batch.id, EventType.QUARANTINED, actor,
        notes=reason,
        data={"reason": reason, "stage": batch.stage},
    )
    await db.flush()
    logger.warning("Batch %s quarantined: %s", batch.batch_number, reason)
    return batch


async def release(
    db: AsyncSession,
    batch_id: str,
    actor: str | None = None,
    notes: str | None = None,
) -> Batch:
    batch = await lock_batch_row(db, batch_id)
    if batch.status != BatchStatus.QUARANTINED.value:
        raise ConflictError(
            f"Batch {batch.batch_number} is not quarantined",
            error_code="NOT_QUARANTINED",
        )

    previous_reason = batch.quarantine_reason
    batch.status = BatchStatus.ACTIVE.value
    batch.quarantine_reason = None
    batch.quarantined_at = None
    log_event(
        db, batch.id, EventType.RELEASED, actor,
        notes=notes,
        data={"previous_reason": previous_reason},
    )
    await db.flush()
    logger.info("Batch %s released from quarantine", batch.batch_number)
    return batch
