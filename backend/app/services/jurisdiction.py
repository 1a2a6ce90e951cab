"""Resolve the compliance policy that applies to a batch's site."""

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.jurisdiction import Jurisdiction
from app.models.site import Site


@dataclass(frozen=True)
class JurisdictionPolicy:
    code: str | None
    requires_external_sync: bool
    requires_plant_tags: bool
    manifest_required_on_destroy: bool
    allowed_stages: frozenset[str] | None
    tag_format_regex: str
    harvest_weight_tolerance_pct: float


def default_policy() -> JurisdictionPolicy:
    return JurisdictionPolicy(
        code=None,
        requires_external_sync=settings.default_requires_external_sync,
        requires_plant_tags=settings.default_requires_plant_tags,
        manifest_required_on_destroy=settings.default_manifest_required_on_destroy,
        allowed_stages=None,
        tag_format_regex=settings.default_tag_format_regex,
        harvest_weight_tolerance_pct=settings.default_harvest_tolerance_pct,
    )


def policy_from(jurisdiction: Jurisdiction | None) -> JurisdictionPolicy:
    if jurisdiction is None:
        return default_policy()
    return JurisdictionPolicy(
        code=jurisdiction.code,
        requires_external_sync=jurisdiction.requires_external_sync,
        requires_plant_tags=jurisdiction.requires_plant_tags,
        manifest_required_on_destroy=jurisdiction.manifest_required_on_destroy,
        allowed_stages=(
            frozenset(jurisdiction.allowed_stages)
            if jurisdiction.allowed_stages is not None else None
        ),
        tag_format_regex=jurisdiction.tag_format_regex or settings.default_tag_format_regex,
        harvest_weight_tolerance_pct=(
            jurisdiction.harvest_weight_tolerance_pct
            if jurisdiction.harvest_weight_tolerance_pct is not None
            else settings.default_harvest_tolerance_pct
        ),
    )


async def get_site_policy(db: AsyncSession, site_id: str) -> JurisdictionPolicy:
    """Policy for ``site_id``; application defaults when the site has no
    jurisdiction (or does not exist)."""
    result = await db.execute(
        select(Jurisdiction)
        .join(Site, Site.jurisdiction_id == Jurisdiction.id)
        .where(Site.id == site_id)
    )
    return policy_from(result.scalar_one_or_none())
