"""Batch operation locks — which mutations a batch's status currently blocks.

``get_batch_locks`` describes the locks without raising, so the detail
endpoint can show callers what is blocked and how to unblock it.
``ensure_operation_allowed`` is the precondition the lifecycle services
call before mutating; it raises the matching domain exception.

``lock_batch_row`` loads a batch with ``SELECT … FOR UPDATE`` so two
writers on the same batch serialize at the database.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.middleware.exceptions import (
    NotFoundError,
    QuarantineBlockedError,
    QuarantineOverrideRequiredError,
    TerminalStateError,
)
from app.models.batch import Batch, BatchStatus


# ── Data structures ────────────────────────────────────────────


@dataclass
class OperationLock:
    """A single blocked operation with reason and unlock instructions."""
    operation: str
    reason: str
    blocker_type: str   # "quarantine", "terminal"
    unlock_hint: str


@dataclass
class LockInfo:
    """Lock state for a batch.  Empty locked_operations means nothing locked."""
    locked_operations: dict[str, OperationLock] = field(default_factory=dict)

    @property
    def is_locked(self) -> bool:
        return len(self.locked_operations) > 0

    def check(self, operation: str) -> OperationLock | None:
        return self.locked_operations.get(operation)

    def locked_operation_names(self) -> list[str]:
        return list(self.locked_operations.keys())


def _add_locks(
    info: LockInfo,
    operations: list[str],
    reason: str,
    blocker_type: str,
    unlock_hint: str,
) -> None:
    for name in operations:
        info.locked_operations[name] = OperationLock(
            operation=name,
            reason=f"Cannot {name.replace('_', ' ')}: {reason}",
            blocker_type=blocker_type,
            unlock_hint=unlock_hint,
        )


# ── Batch locks ────────────────────────────────────────────────


ALL_OPERATIONS = [
    "transition", "quarantine", "harvest", "destroy",
    "assign_tags", "assign_pod", "activate_recipe", "update_plant_count",
]

QUARANTINE_BLOCKED_OPERATIONS = ["transition", "harvest", "destroy"]


def get_batch_locks(batch: Batch) -> LockInfo:
    """Check which operations the batch's status blocks."""
    info = LockInfo()

    if batch.is_terminal:
        _add_locks(
            info,
            ALL_OPERATIONS,
            reason=f"batch is {batch.status}",
            blocker_type="terminal",
            unlock_hint="Completed and destroyed batches cannot change.",
        )
        return info

    if batch.status == BatchStatus.QUARANTINED.value:
        _add_locks(
            info,
            QUARANTINE_BLOCKED_OPERATIONS,
            reason=f"batch is quarantined ({batch.quarantine_reason})",
            blocker_type="quarantine",
            unlock_hint="Release the quarantine first.",
        )
        info.locked_operations["destroy"].unlock_hint = (
            "Release the quarantine or destroy with override_quarantine."
        )
    return info


def ensure_operation_allowed(
    batch: Batch,
    operation: str,
    override_quarantine: bool = False,
) -> None:
    """Raise if ``operation`` is blocked on ``batch``."""
    lock = get_batch_locks(batch).check(operation)
    if lock is None:
        return
    if lock.blocker_type == "terminal":
        raise TerminalStateError(batch.batch_number, batch.status)
    if operation == "destroy":
        if override_quarantine:
            return
        raise QuarantineOverrideRequiredError(batch.batch_number)
    raise QuarantineBlockedError(batch.batch_number, operation.replace("_", " "))


# ── Row locks ──────────────────────────────────────────────────


async def lock_batch_row(db: AsyncSession, batch_id: str) -> Batch:
    """Load a batch for update.  No-op lock on SQLite."""
    result = await db.execute(
        select(Batch)
        .where(Batch.id == batch_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    batch = result.scalar_one_or_none()
    if not batch:
        raise NotFoundError("Batch", batch_id)
    return batch
