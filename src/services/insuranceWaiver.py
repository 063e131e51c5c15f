"""
Insurance Waiver Adapter
========================

Validates insurance partner codes and commits their usage.

A waiver is two-phase from the dispatch engine's point of view:

  1. ``validate_code`` before the job is created (read only);
  2. ``mark_code_used`` once the job row exists. The increment is a single
     conditional UPDATE (``used_count < max_uses``, active, unexpired), so
     two bookings racing for the last use cannot both succeed.

If step 2 fails the caller deletes the job it just created; a job whose fee
was zeroed by a code that was never actually consumed must not survive.
"""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.timeutils import ensure_utc
from src.models.insurance import InsuranceCode, InsurancePartner

logger = logging.getLogger(__name__)


class WaiverFailureReason(str, enum.Enum):
    INVALID = "INVALID"
    PARTNER_INACTIVE = "PARTNER_INACTIVE"
    EXPIRED = "EXPIRED"
    EXHAUSTED = "EXHAUSTED"
    TENANT_MISMATCH = "TENANT_MISMATCH"
    BINDING_MISMATCH = "BINDING_MISMATCH"


_FAILURE_MESSAGES: dict[WaiverFailureReason, str] = {
    WaiverFailureReason.INVALID: "Invalid code",
    WaiverFailureReason.PARTNER_INACTIVE: "Insurance partner is not active",
    WaiverFailureReason.EXPIRED: "Code expired",
    WaiverFailureReason.EXHAUSTED: "Code already used",
    WaiverFailureReason.TENANT_MISMATCH: "Code not valid in this country",
    WaiverFailureReason.BINDING_MISMATCH: "Code not valid for this customer",
}


@dataclass(frozen=True)
class WaiverValidation:
    ok: bool
    reason: Optional[WaiverFailureReason] = None
    code_id: Optional[uuid.UUID] = None
    partner_id: Optional[uuid.UUID] = None
    partner_code: Optional[str] = None
    code: Optional[str] = None
    remaining_uses: int = 0

    @property
    def message(self) -> str:
        if self.ok:
            return "Code valid"
        return _FAILURE_MESSAGES[self.reason]

    def to_record(self, tenant_code: str, validated_at: datetime) -> dict[str, Any]:
        """Waiver record stored on the job."""
        return {
            "partner_id": str(self.partner_id),
            "partner_code": self.partner_code,
            "code": self.code,
            "tenant_code": tenant_code,
            "validated_at": validated_at.isoformat(),
        }


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def _fail(reason: WaiverFailureReason) -> WaiverValidation:
    return WaiverValidation(ok=False, reason=reason)


async def validate_code(
    db: AsyncSession,
    *,
    partner_id: uuid.UUID,
    code: str,
    tenant_code: str,
    now: datetime,
    phone: Optional[str] = None,
    email: Optional[str] = None,
) -> WaiverValidation:
    """Check a partner/code pair without consuming it.

    Returns:
        WaiverValidation with ``ok=True`` and the code's identifiers, or
        ``ok=False`` with the first failing reason.
    """
    normalized = normalize_code(code)
    if not normalized:
        return _fail(WaiverFailureReason.INVALID)

    row = await db.execute(
        select(InsuranceCode, InsurancePartner)
        .join(InsurancePartner, InsurancePartner.id == InsuranceCode.partner_id)
        .where(
            InsuranceCode.partner_id == partner_id,
            InsuranceCode.code == normalized,
        )
    )
    found = row.first()
    if found is None:
        return _fail(WaiverFailureReason.INVALID)
    insurance_code, partner = found

    if not insurance_code.is_active:
        return _fail(WaiverFailureReason.INVALID)
    if not partner.is_active:
        return _fail(WaiverFailureReason.PARTNER_INACTIVE)
    if insurance_code.tenant_code != tenant_code or partner.tenant_code != tenant_code:
        return _fail(WaiverFailureReason.TENANT_MISMATCH)

    expires_at = ensure_utc(insurance_code.expires_at)
    if expires_at is None or expires_at < now:
        return _fail(WaiverFailureReason.EXPIRED)

    if insurance_code.used_count >= insurance_code.max_uses:
        return _fail(WaiverFailureReason.EXHAUSTED)

    bound_phone = (insurance_code.bound_phone or "").strip()
    if bound_phone and (phone or "").strip() != bound_phone:
        return _fail(WaiverFailureReason.BINDING_MISMATCH)

    bound_email = (insurance_code.bound_email or "").strip().lower()
    if bound_email and (email or "").strip().lower() != bound_email:
        return _fail(WaiverFailureReason.BINDING_MISMATCH)

    return WaiverValidation(
        ok=True,
        code_id=insurance_code.id,
        partner_id=partner.id,
        partner_code=partner.partner_code,
        code=insurance_code.code,
        remaining_uses=insurance_code.max_uses - insurance_code.used_count,
    )


async def mark_code_used(
    db: AsyncSession,
    *,
    code_id: uuid.UUID,
    job_id: uuid.UUID,
    now: datetime,
) -> bool:
    """Consume one use of a code. Returns False if no use could be taken."""
    result = await db.execute(
        update(InsuranceCode)
        .where(
            InsuranceCode.id == code_id,
            InsuranceCode.is_active.is_(True),
            InsuranceCode.expires_at >= now,
            InsuranceCode.used_count < InsuranceCode.max_uses,
        )
        .values(
            used_count=InsuranceCode.used_count + 1,
            last_used_at=now,
            last_used_job_id=job_id,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning("Insurance code %s could not be marked used for job %s", code_id, job_id)
        return False

    logger.info("Insurance code %s consumed by job %s", code_id, job_id)
    return True
