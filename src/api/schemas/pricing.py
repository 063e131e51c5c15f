"""
Pydantic v2 schemas for the Pricing API.

Covers:
- Price breakdowns returned by job preview and creation
- The tenant's effective pricing configuration
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from src.services.pricingEngine import BookingFeeMode


class PriceBreakdownOut(BaseModel):
    """Every intermediate value of a price calculation."""

    model_config = ConfigDict(from_attributes=True)

    currency: str
    role: str
    base_fee: Decimal
    per_km_fee: Decimal
    distance_km: Decimal
    distance_fee: Decimal
    night_fee: Decimal
    weekend_fee: Decimal
    is_night: bool
    is_weekend: bool
    type_multiplier: Decimal
    vehicle_multiplier: Decimal
    surge_multiplier: Decimal
    subtotal: Decimal
    estimated_total: Decimal
    booking_fee_mode: BookingFeeMode
    booking_fee: Decimal
    commission_amount: Optional[Decimal] = None
    provider_amount_due: Optional[Decimal] = None
    waiver_applied: bool = False


class RolePolicyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    base_fee: Optional[Decimal] = None
    per_km_fee: Optional[Decimal] = None
    distance_exempt: bool
    requires_dropoff: bool
    requires_sub_category: bool
    booking_fee_mode: BookingFeeMode
    booking_fee_percent: Decimal
    booking_fee_flat: Decimal
    commission_percent: Optional[Decimal] = None
    enabled: bool = True


class CancellationPolicyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    grace_seconds: int
    no_show_seconds: int
    provider_cancel_window_seconds: int
    refund_if_no_provider: bool


class PricingConfigOut(BaseModel):
    """Effective pricing rules for the caller's tenant."""

    tenant_code: str
    currency: str
    timezone: str
    base_fee: Decimal
    per_km_fee: Decimal
    night_fee: Decimal
    weekend_fee: Decimal
    night_start_hour: int = Field(ge=0, le=23)
    night_end_hour: int = Field(ge=0, le=23)
    roles: dict[str, RolePolicyOut]
    type_multipliers: dict[str, str]
    vehicle_multipliers: dict[str, str]
    surge_enabled: bool
    surge_multipliers: dict[str, str]
    max_surge_multiplier: Decimal
    insurance_enabled: bool
    cancellation: CancellationPolicyOut
