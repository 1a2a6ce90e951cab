"""Pydantic schemas for regulatory sync jobs."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class PhaseChangeJobOut(BaseModel):
    id: str
    batch_id: str
    external_batch_id: str
    from_phase: str
    to_phase: str
    occurred_at: datetime
    status: str
    attempts: int
    max_attempts: int
    next_attempt_at: datetime
    last_error: str | None = None
    confirmation_id: str | None = None
    created_at: datetime
    completed_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class SyncRunOut(BaseModel):
    """Counts per resulting job status for one worker pass."""
    results: dict[str, int]


class RetriggerAllOut(BaseModel):
    retriggered: int
