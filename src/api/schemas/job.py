"""
Pydantic v2 schemas for the Job API
===================================

These schemas define the public API contract for job preview, creation,
payment, broadcast, claim, start, completion and cancellation. They expose
only the fields that clients need; internal audit columns stay hidden.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.api.schemas.pricing import PriceBreakdownOut
from src.models.job import BookingFeeStatus, CancelledBy, JobStatus


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

class LocationInput(BaseModel):
    """A point supplied by the customer app."""

    latitude: float = Field(ge=-90, le=90, description="Latitude (WGS84)")
    longitude: float = Field(ge=-180, le=180, description="Longitude (WGS84)")
    address: Optional[str] = Field(default=None, max_length=500)


class InsuranceInput(BaseModel):
    """Insurance partner code that waives the booking fee."""

    partner_id: uuid.UUID
    code: str = Field(min_length=1, max_length=64)
    phone: Optional[str] = Field(default=None, max_length=32)
    email: Optional[str] = Field(default=None, max_length=255)


class JobCreateRequest(BaseModel):
    """Request body for previewing or creating a job."""

    role: str = Field(min_length=1, max_length=32, description="Provider role, e.g. TOW_TRUCK")
    pickup: LocationInput
    dropoff: Optional[LocationInput] = None
    sub_category: Optional[str] = Field(default=None, max_length=100)
    type_tag: Optional[str] = Field(default=None, max_length=100)
    vehicle_type: Optional[str] = Field(default=None, max_length=50)
    audience_tag: Optional[str] = Field(
        default=None,
        min_length=1,
        max_length=1,
        description="Restricts the job to providers with the same tag; 'B' is unrestricted",
    )
    notes: Optional[str] = Field(default=None, max_length=2000)
    insurance: Optional[InsuranceInput] = None


class PaymentConfirmRequest(BaseModel):
    reference: str = Field(min_length=1, max_length=255, description="Payment intent reference")


class JobCancelRequest(BaseModel):
    """Request body for cancelling a job."""

    reason: Optional[str] = Field(default=None, max_length=500)
    refund: bool = Field(
        default=False,
        description="Operator cancels only: whether the booking fee is refunded",
    )


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------

class JobOut(BaseModel):
    """Full job representation returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    reference_number: str
    tenant_code: str
    customer_id: uuid.UUID
    role: str
    sub_category: Optional[str] = None
    type_tag: Optional[str] = None
    vehicle_type: Optional[str] = None
    audience_tag: Optional[str] = None
    status: JobStatus
    pickup_latitude: Optional[float] = None
    pickup_longitude: Optional[float] = None
    pickup_address: Optional[str] = None
    dropoff_latitude: Optional[float] = None
    dropoff_longitude: Optional[float] = None
    dropoff_address: Optional[str] = None
    notes: Optional[str] = None
    assigned_provider_id: Optional[uuid.UUID] = None
    provider_of_record_id: Optional[uuid.UUID] = None
    dispatch_attempts: int
    currency: str
    estimated_total: Decimal
    booking_fee: Decimal
    booking_fee_status: BookingFeeStatus
    pricing_snapshot: dict[str, Any] = Field(default_factory=dict)
    insurance_waiver: Optional[dict[str, Any]] = None
    broadcasted_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[CancelledBy] = None
    cancel_reason: Optional[str] = None
    refund_eligible: Optional[bool] = None
    refund_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BroadcastOut(BaseModel):
    status: str
    attempt: int
    provider_count: int
    delivered_count: int


class JobPreviewResponse(BaseModel):
    pricing: PriceBreakdownOut
    eligible_count: int
    providers_available: bool
    waiver_applied: bool = False


class JobCreateResponse(BaseModel):
    """``job`` is null when no provider was available (nothing was created)."""

    status: str
    job: Optional[JobOut] = None
    pricing: PriceBreakdownOut
    eligible_count: int
    broadcast: Optional[BroadcastOut] = None
    replayed: bool = False


class BroadcastResponse(BaseModel):
    job: JobOut
    broadcast: BroadcastOut


class ClaimResponse(BaseModel):
    outcome: str
    job_id: uuid.UUID
    provider_id: uuid.UUID
    job_status: Optional[JobStatus] = None
    assigned_at: Optional[datetime] = None


class StartResponse(BaseModel):
    ok: bool
    code: Optional[str] = None
    distance_m: Optional[float] = None
    max_allowed_m: float
    job: JobOut


class CancelResponse(BaseModel):
    job: JobOut
    previous_status: JobStatus
    refund_eligible: bool
    refund_reason: str
    provider_cancel_count: Optional[int] = None
    provider_suspended_until: Optional[datetime] = None
