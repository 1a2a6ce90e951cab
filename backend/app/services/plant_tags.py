"""Plant tag reconciler — regulator-issued plant tags versus plant count.

``assign_tags`` validates each candidate on its own: a malformed tag or one
owned by another batch lands in ``invalid`` without stopping the rest of
the submission.  Tags already on this batch, or repeated in the request,
are reported once each in ``skipped_duplicates``.

Having more tags than plants is recorded as a TAG_COUNT_MISMATCH event and
returned as a warning; tags are never dropped to fit the count.
"""

import re
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.middleware.exceptions import ValidationError
from app.models.batch import Batch
from app.models.batch_history import EventType
from app.models.plant_tag import PlantTag
from app.services.jurisdiction import get_site_policy
from app.utils.events import log_event
from app.utils.locks import ensure_operation_allowed, lock_batch_row


@dataclass
class TagCompletion:
    tagged: int
    total: int
    percentage: float
    mismatch: bool
    required: bool

    def as_dict(self) -> dict:
        return {
            "tagged": self.tagged,
            "total": self.total,
            "percentage": self.percentage,
            "mismatch": self.mismatch,
            "required": self.required,
        }


def mismatch_warning(tagged: int, total: int) -> str:
    return f"Tag count mismatch: {tagged} tags assigned for {total} plants"


async def count_tags(db: AsyncSession, batch_id: str) -> int:
    result = await db.execute(
        select(func.count(PlantTag.id)).where(PlantTag.batch_id == batch_id)
    )
    return result.scalar() or 0


async def completion(db: AsyncSession, batch: Batch) -> TagCompletion:
    """Tag coverage for ``batch``.  0% when the batch has no plants."""
    policy = await get_site_policy(db, batch.site_id)
    tagged = await count_tags(db, batch.id)
    total = batch.plant_count
    percentage = round(tagged / total * 100, 2) if total > 0 else 0.0
    return TagCompletion(
        tagged=tagged,
        total=total,
        percentage=percentage,
        mismatch=tagged > total,
        required=policy.requires_plant_tags,
    )


def record_mismatch(db: AsyncSession, batch: Batch, tagged: int, actor: str | None) -> str:
    """Log a TAG_COUNT_MISMATCH event and return the warning text."""
    warning = mismatch_warning(tagged, batch.plant_count)
    log_event(
        db, batch.id, EventType.TAG_COUNT_MISMATCH, actor,
        notes=warning,
        data={"tagged": tagged, "plant_count": batch.plant_count},
    )
    return warning


async def assign_tags(
    db: AsyncSession,
    batch_id: str,
    candidate_tags: list[str],
    actor: str | None = None,
) -> dict:
    """Assign regulator tags to a batch.

    Returns:
        {
            "assigned": [...],
            "skipped_duplicates": [...],
            "invalid": [{"tag": ..., "reason": ...}],
            "completion": TagCompletion,
            "warnings": [...],
        }
    """
    batch = await lock_batch_row(db, batch_id)
    ensure_operation_allowed(batch, "assign_tags")
    if not candidate_tags:
        raise ValidationError("At least one tag is required")

    policy = await get_site_policy(db, batch.site_id)
    pattern = re.compile(policy.tag_format_regex)

    cleaned = [t.strip() for t in candidate_tags]
    existing = {
        row.tag: row.batch_id
        for row in (
            await db.execute(
                select(PlantTag.tag, PlantTag.batch_id).where(PlantTag.tag.in_(set(cleaned)))
            )
        ).all()
    }

    assigned: list[str] = []
    duplicates: list[str] = []
    invalid: list[dict] = []
    seen: set[str] = set()

    for tag in cleaned:
        if tag in seen:
            if tag not in duplicates and tag not in {i["tag"] for i in invalid}:
                duplicates.append(tag)
            continue
        seen.add(tag)

        if not tag or not pattern.fullmatch(tag):
            invalid.append({"tag": tag, "reason": "format"})
            continue
        owner = existing.get(tag)
        if owner == batch.id:
            duplicates.append(tag)
            continue
        if owner is not None:
            invalid.append({"tag": tag, "reason": "assigned_to_other_batch"})
            continue

        db.add(PlantTag(batch_id=batch.id, tag=tag, assigned_by=actor))
        assigned.append(tag)

    await db.flush()

    if assigned:
        log_event(
            db, batch.id, EventType.TAGS_ASSIGNED, actor,
            data={
                "assigned": len(assigned),
                "skipped_duplicates": len(duplicates),
                "invalid": len(invalid),
            },
        )

    result = await completion(db, batch)
    warnings = []
    if result.mismatch and assigned:
        warnings.append(record_mismatch(db, batch, result.tagged, actor))

    return {
        "assigned": assigned,
        "skipped_duplicates": duplicates,
        "invalid": invalid,
        "completion": result,
        "warnings": warnings,
    }


async def list_tags(db: AsyncSession, batch_id: str) -> list[str]:
    result = await db.execute(
        select(PlantTag.tag)
        .where(PlantTag.batch_id == batch_id)
        .order_by(PlantTag.assigned_at, PlantTag.tag)
    )
    return [row[0] for row in result.all()]
