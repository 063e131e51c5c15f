"""
Provider Service
================

Mutations of ``ProviderState`` that belong to the provider itself
(position and availability) plus the cancellation counter the lifecycle
service updates when a provider backs out of an assigned job.

Every position/availability write is mirrored to the Geo Index so the
Redis backend (when enabled) stays in step with the rows.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings
from src.core.timeutils import ensure_utc, utcnow
from src.events import jobEvents
from src.models.provider import ProviderState
from src.services.exceptions import InvalidLocationError, ProviderNotFoundError
from src.services.geoService import GeoIndex, is_valid_coordinate

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_provider(
    db: AsyncSession,
    provider_id: uuid.UUID,
    *,
    for_tenant: Optional[str] = None,
) -> ProviderState:
    """Load a provider; a tenant mismatch is reported as not found."""
    result = await db.execute(select(ProviderState).where(ProviderState.id == provider_id))
    provider = result.scalar_one_or_none()
    if provider is None or (for_tenant is not None and provider.tenant_code != for_tenant):
        raise ProviderNotFoundError(provider_id)
    return provider


# ---------------------------------------------------------------------------
# Provider-owned updates
# ---------------------------------------------------------------------------

async def update_location(
    db: AsyncSession,
    geo_index: GeoIndex,
    provider_id: uuid.UUID,
    *,
    tenant_code: str,
    lat: float,
    lng: float,
    now: datetime | None = None,
) -> ProviderState:
    if not is_valid_coordinate(lat, lng):
        raise InvalidLocationError(f"Invalid coordinates ({lat}, {lng})")

    provider = await get_provider(db, provider_id, for_tenant=tenant_code)
    provider.latitude = float(lat)
    provider.longitude = float(lng)
    provider.location_updated_at = now or utcnow()
    await db.flush()

    await geo_index.upsert(provider)
    logger.debug("Provider %s at (%.5f, %.5f)", provider_id, lat, lng)
    return provider


async def set_availability(
    db: AsyncSession,
    geo_index: GeoIndex,
    provider_id: uuid.UUID,
    *,
    tenant_code: str,
    is_online: bool,
    push_token: Optional[str] = None,
) -> ProviderState:
    provider = await get_provider(db, provider_id, for_tenant=tenant_code)
    provider.is_online = is_online
    if push_token is not None:
        provider.push_token = push_token or None
    await db.flush()

    if is_online:
        await geo_index.upsert(provider)
    else:
        await geo_index.remove(provider.id, provider.tenant_code, role=provider.role)

    logger.info("Provider %s is now %s", provider_id, "online" if is_online else "offline")
    return provider


# ---------------------------------------------------------------------------
# Cancellation counter
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CancelPenalty:
    cancel_count: int
    suspended_until: Optional[datetime] = None


def next_cancel_count(
    previous_count: int,
    last_cancelled_at: Optional[datetime],
    now: datetime,
    decay_hours: int,
) -> int:
    """Rolling counter: restart at 1 once the last cancel is older than the window."""
    last = ensure_utc(last_cancelled_at)
    if last is None or now - last > timedelta(hours=decay_hours):
        return 1
    return previous_count + 1


async def record_provider_cancellation(
    db: AsyncSession,
    provider: ProviderState,
    now: datetime,
    job_id: uuid.UUID | None = None,
) -> CancelPenalty:
    """Bump the provider's rolling cancel counter and suspend past the threshold."""
    count = next_cancel_count(
        provider.cancel_count,
        provider.last_cancelled_at,
        now,
        settings.provider_cancel_decay_hours,
    )
    provider.cancel_count = count
    provider.last_cancelled_at = now

    suspended_until: Optional[datetime] = None
    if count >= settings.provider_cancel_suspend_threshold:
        suspended_until = now + timedelta(hours=settings.provider_cancel_suspend_hours)
        provider.suspended_until = suspended_until
        jobEvents.emit_provider_suspended(provider.id, suspended_until, count, job_id)

    await db.flush()
    return CancelPenalty(cancel_count=count, suspended_until=suspended_until)
