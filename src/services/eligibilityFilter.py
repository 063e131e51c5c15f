"""
Eligibility Filter
==================

Narrows the Geo Index result for a job down to the providers that may be
offered it.

Pipeline:
  1. Ask the Geo Index for online providers of the job's role within the
     radius, nearest first, over-fetching ``max(limit * 3, floor)`` ids.
  2. Load the matching ``ProviderState`` rows in one query.
  3. Apply the hard filters (state + capability), preserving distance order.
  4. While fewer than ``limit`` passed and the page came back full, double
     the window and evaluate the newly returned ids. Busy or suspended
     providers close to the pickup therefore never hide an eligible one
     further out.
  5. Cap at ``limit``.

An empty result is a normal outcome meaning "no providers available".
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings
from src.core.timeutils import ensure_utc, utcnow
from src.models.provider import (
    UNRESTRICTED_AUDIENCE,
    ProviderState,
    VerificationStatus,
)
from src.services.geoService import GeoHit, GeoIndex

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CapabilityRequirement:
    """What a job needs from a provider."""

    role: str
    sub_category: Optional[str] = None
    type_tag: Optional[str] = None
    vehicle_type: Optional[str] = None
    audience_tag: Optional[str] = None


class RejectionReason(str, Enum):
    WRONG_TENANT = "wrong_tenant"
    OFFLINE = "offline"
    NOT_VERIFIED = "not_verified"
    BANNED = "banned"
    SUSPENDED = "suspended"
    BUSY = "busy"
    EXCLUDED = "excluded"
    STALE_LOCATION = "stale_location"
    ROLE_MISMATCH = "role_mismatch"
    SUB_CATEGORY_MISMATCH = "sub_category_mismatch"
    TYPE_MISMATCH = "type_mismatch"
    VEHICLE_MISMATCH = "vehicle_mismatch"
    AUDIENCE_MISMATCH = "audience_mismatch"


@dataclass(frozen=True)
class EligibleProvider:
    provider: ProviderState
    distance_m: float


@dataclass
class EligibilityResult:
    providers: list[EligibleProvider] = field(default_factory=list)
    rejected: dict[uuid.UUID, RejectionReason] = field(default_factory=dict)

    @property
    def provider_ids(self) -> list[uuid.UUID]:
        return [p.provider.id for p in self.providers]

    @property
    def is_empty(self) -> bool:
        return not self.providers


# ---------------------------------------------------------------------------
# Hard filters
# ---------------------------------------------------------------------------

def _contains(values: Iterable[str] | None, wanted: str) -> bool:
    wanted_norm = wanted.strip().lower()
    return any(str(v).strip().lower() == wanted_norm for v in (values or []))


def capability_mismatch(
    provider: ProviderState, requirement: CapabilityRequirement
) -> RejectionReason | None:
    """Return the first capability the provider lacks, or None."""
    if provider.role != requirement.role:
        return RejectionReason.ROLE_MISMATCH

    if requirement.sub_category and not _contains(
        provider.sub_categories, requirement.sub_category
    ):
        return RejectionReason.SUB_CATEGORY_MISMATCH

    if requirement.type_tag and not _contains(provider.type_tags, requirement.type_tag):
        return RejectionReason.TYPE_MISMATCH

    # An empty vehicle list means the provider handles every vehicle type
    if (
        requirement.vehicle_type
        and provider.vehicle_types
        and not _contains(provider.vehicle_types, requirement.vehicle_type)
    ):
        return RejectionReason.VEHICLE_MISMATCH

    audience = (requirement.audience_tag or UNRESTRICTED_AUDIENCE).upper()
    if audience != UNRESTRICTED_AUDIENCE:
        if (provider.audience_tag or "").upper() != audience:
            return RejectionReason.AUDIENCE_MISMATCH

    return None


def state_rejection(
    provider: ProviderState,
    *,
    tenant_code: str,
    now: datetime,
    excluded: frozenset[uuid.UUID] = frozenset(),
    max_location_age_seconds: int = 0,
) -> RejectionReason | None:
    """Return why the provider's runtime state rules it out, or None."""
    if provider.tenant_code != tenant_code:
        return RejectionReason.WRONG_TENANT
    if provider.id in excluded:
        return RejectionReason.EXCLUDED
    if not provider.is_online:
        return RejectionReason.OFFLINE
    if provider.verification_status != VerificationStatus.APPROVED:
        return RejectionReason.NOT_VERIFIED
    if provider.is_banned:
        return RejectionReason.BANNED
    suspended_until = ensure_utc(provider.suspended_until)
    if suspended_until is not None and suspended_until > now:
        return RejectionReason.SUSPENDED
    if provider.active_job_id is not None:
        return RejectionReason.BUSY
    if max_location_age_seconds > 0:
        updated_at = ensure_utc(provider.location_updated_at)
        if updated_at is None or now - updated_at > timedelta(seconds=max_location_age_seconds):
            return RejectionReason.STALE_LOCATION
    return None


def evaluate_provider(
    provider: ProviderState,
    requirement: CapabilityRequirement,
    *,
    tenant_code: str,
    now: datetime,
    excluded: frozenset[uuid.UUID] = frozenset(),
    max_location_age_seconds: int = 0,
) -> RejectionReason | None:
    return state_rejection(
        provider,
        tenant_code=tenant_code,
        now=now,
        excluded=excluded,
        max_location_age_seconds=max_location_age_seconds,
    ) or capability_mismatch(provider, requirement)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def find_eligible_providers(
    db: AsyncSession,
    geo_index: GeoIndex,
    *,
    tenant_code: str,
    requirement: CapabilityRequirement,
    lat: float,
    lng: float,
    exclude: Iterable[uuid.UUID] = (),
    limit: int | None = None,
    radius_m: float | None = None,
    now: datetime | None = None,
) -> EligibilityResult:
    """Return the eligible providers for a job, nearest first.

    Args:
        db: Async database session.
        geo_index: Geo Index backend to query.
        tenant_code: Tenant the job belongs to.
        requirement: Capability the job needs.
        lat: Pickup latitude.
        lng: Pickup longitude.
        exclude: Provider ids that must not be returned.
        limit: Result cap (defaults to ``settings.dispatch_result_limit``).
        radius_m: Search radius (defaults to ``settings.dispatch_radius_meters``).
        now: Reference time for suspension/freshness checks.

    Returns:
        EligibilityResult with ordered providers and per-id rejection reasons.
    """
    limit = limit if limit is not None else settings.dispatch_result_limit
    radius_m = radius_m if radius_m is not None else settings.dispatch_radius_meters
    now = now or utcnow()
    excluded = frozenset(exclude)

    result = EligibilityResult()
    candidates: list[EligibleProvider] = []
    seen: set[uuid.UUID] = set()
    window = max(limit * 3, settings.dispatch_prefetch_floor)
    hit_count = 0

    while True:
        hits = await geo_index.nearest(
            tenant_code, lat, lng, radius_m, window, role=requirement.role
        )
        hit_count = len(hits)
        fresh = [h for h in hits if h.provider_id not in seen]
        seen.update(h.provider_id for h in fresh)
        if fresh:
            candidates.extend(
                await _evaluate_hits(
                    db, fresh, requirement, result,
                    tenant_code=tenant_code, now=now, excluded=excluded,
                )
            )

        # A short page means the radius is exhausted
        if len(candidates) >= limit or len(hits) < window:
            break
        window *= 2

    if not hit_count:
        logger.info(
            "No providers within %.0fm of (%.5f, %.5f) for role=%s tenant=%s",
            radius_m, lat, lng, requirement.role, tenant_code,
        )
        return result

    # Distance first, rating as a non-load-bearing tie-break
    candidates.sort(key=lambda c: (c.distance_m, -float(c.provider.rating or 0)))
    result.providers = candidates[:limit]

    logger.info(
        "Eligibility for role=%s tenant=%s: %d hits, %d eligible, %d rejected",
        requirement.role, tenant_code, hit_count, len(result.providers), len(result.rejected),
    )
    return result


async def _evaluate_hits(
    db: AsyncSession,
    hits: list[GeoHit],
    requirement: CapabilityRequirement,
    result: EligibilityResult,
    *,
    tenant_code: str,
    now: datetime,
    excluded: frozenset[uuid.UUID],
) -> list[EligibleProvider]:
    """Load and filter one page of geo hits, recording rejections on *result*."""
    rows = await db.execute(
        select(ProviderState).where(
            ProviderState.id.in_([h.provider_id for h in hits])
        )
    )
    providers_by_id = {p.id: p for p in rows.scalars().all()}

    eligible: list[EligibleProvider] = []
    for hit in hits:
        provider = providers_by_id.get(hit.provider_id)
        if provider is None:
            # Geo entry outlived the provider row
            continue
        reason = evaluate_provider(
            provider,
            requirement,
            tenant_code=tenant_code,
            now=now,
            excluded=excluded,
            max_location_age_seconds=settings.provider_location_max_age_seconds,
        )
        if reason is not None:
            result.rejected[provider.id] = reason
            continue
        eligible.append(EligibleProvider(provider=provider, distance_m=hit.distance_m))
    return eligible
