"""
Provider API Routes
===================

Self-service endpoints used by the provider app.

Routes:
  PUT  /api/v1/providers/me/location      -- Report current position
  PUT  /api/v1/providers/me/availability  -- Go online / offline, set push token
"""

from __future__ import annotations

import logging

from fastapi import APIRouter

from src.api.deps import CurrentActor, DBSession, GeoIndexDep, Tenant, http_error, require_role
from src.api.schemas.provider import (
    AvailabilityUpdateRequest,
    LocationUpdateRequest,
    ProviderStateOut,
)
from src.services import providerService
from src.services.exceptions import DispatchError
from src.services.jobStateManager import ActorType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/providers", tags=["Providers"])


@router.put(
    "/me/location",
    response_model=ProviderStateOut,
    summary="Update the caller's position",
)
async def update_my_location(
    db: DBSession,
    geo_index: GeoIndexDep,
    tenant: Tenant,
    actor: CurrentActor,
    body: LocationUpdateRequest,
) -> ProviderStateOut:
    require_role(actor, ActorType.PROVIDER)
    try:
        provider = await providerService.update_location(
            db,
            geo_index,
            actor.actor_id,
            tenant_code=tenant,
            lat=body.latitude,
            lng=body.longitude,
        )
    except DispatchError as exc:
        raise http_error(exc)
    return ProviderStateOut.model_validate(provider)


@router.put(
    "/me/availability",
    response_model=ProviderStateOut,
    summary="Go online or offline",
)
async def update_my_availability(
    db: DBSession,
    geo_index: GeoIndexDep,
    tenant: Tenant,
    actor: CurrentActor,
    body: AvailabilityUpdateRequest,
) -> ProviderStateOut:
    require_role(actor, ActorType.PROVIDER)
    try:
        provider = await providerService.set_availability(
            db,
            geo_index,
            actor.actor_id,
            tenant_code=tenant,
            is_online=body.is_online,
            push_token=body.push_token,
        )
    except DispatchError as exc:
        raise http_error(exc)
    return ProviderStateOut.model_validate(provider)
