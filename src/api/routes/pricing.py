"""
Pricing API Routes
==================

  GET  /api/v1/pricing/config  -- Effective pricing rules for the tenant
"""

from __future__ import annotations

import logging

from fastapi import APIRouter

from src.api.deps import DBSession, Tenant
from src.api.schemas.pricing import (
    CancellationPolicyOut,
    PricingConfigOut,
    RolePolicyOut,
)
from src.services.pricingEngine import load_pricing_rules

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pricing", tags=["Pricing"])


@router.get(
    "/config",
    response_model=PricingConfigOut,
    summary="Get the tenant's pricing rules",
    description=(
        "Returns the active pricing configuration for the tenant resolved from "
        "X-Country-Code, or the built-in defaults when none is stored."
    ),
)
async def get_pricing_config(db: DBSession, tenant: Tenant) -> PricingConfigOut:
    rules = await load_pricing_rules(db, tenant)
    roles = {
        role: RolePolicyOut.model_validate(policy).model_copy(
            update={"enabled": rules.is_service_enabled(role)}
        )
        for role, policy in rules.roles.items()
    }
    return PricingConfigOut(
        tenant_code=rules.tenant_code,
        currency=rules.currency,
        timezone=rules.timezone,
        base_fee=rules.base_fee,
        per_km_fee=rules.per_km_fee,
        night_fee=rules.night_fee,
        weekend_fee=rules.weekend_fee,
        night_start_hour=rules.night_start_hour,
        night_end_hour=rules.night_end_hour,
        roles=roles,
        type_multipliers=rules.type_multipliers.as_dict(),
        vehicle_multipliers=rules.vehicle_multipliers.as_dict(),
        surge_enabled=rules.surge_enabled,
        surge_multipliers=rules.surge_multipliers.as_dict(),
        max_surge_multiplier=rules.max_surge_multiplier,
        insurance_enabled=rules.insurance_enabled,
        cancellation=CancellationPolicyOut.model_validate(rules.cancellation),
    )
