"""
Insurance API Routes
====================

  POST /api/v1/insurance/validate  -- Check a partner code without using it
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, status

from src.api.deps import DBSession, Tenant
from src.api.schemas.insurance import InsuranceValidateRequest, InsuranceValidateResponse
from src.core.timeutils import utcnow
from src.services.insuranceWaiver import validate_code
from src.services.pricingEngine import load_pricing_rules

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/insurance", tags=["Insurance"])


@router.post(
    "/validate",
    response_model=InsuranceValidateResponse,
    summary="Validate an insurance code",
)
async def validate_insurance_code(
    db: DBSession,
    tenant: Tenant,
    body: InsuranceValidateRequest,
) -> InsuranceValidateResponse:
    rules = await load_pricing_rules(db, tenant)
    if not rules.insurance_enabled:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "code": "SERVICE_DISABLED",
                "message": f"Insurance waivers are not available in {tenant}",
            },
        )

    result = await validate_code(
        db,
        partner_id=body.partner_id,
        code=body.code,
        tenant_code=tenant,
        now=utcnow(),
        phone=body.phone,
        email=body.email,
    )
    return InsuranceValidateResponse(
        valid=result.ok,
        reason=result.reason.value if result.reason else None,
        message=result.message,
        partner_code=result.partner_code,
        remaining_uses=result.remaining_uses,
    )
