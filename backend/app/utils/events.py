"""Lightweight helper for appending batch audit events.

Usage:
    log_event(
        db, batch.id, EventType.QUARANTINED, actor,
        notes=reason, data={"reason": reason},
    )

The row is added to the current session and committed with the
enclosing transaction — no extra flush is performed.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.batch_history import BatchEvent, EventType


def log_event(
    db: AsyncSession,
    batch_id: str,
    event_type: EventType,
    actor: str | None,
    *,
    notes: str | None = None,
    data: dict | None = None,
) -> BatchEvent:
    """Append an audit event for ``batch_id`` to the current DB session."""
    event = BatchEvent(
        batch_id=batch_id,
        event_type=event_type.value,
        event_data=data,
        notes=notes,
        recorded_by=actor,
    )
    db.add(event)
    return event
