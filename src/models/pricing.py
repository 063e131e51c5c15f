"""
SQLAlchemy model for tenant pricing configuration.

One active row per tenant (country). Scalar defaults are columns; the
per-role, per-type and multiplier tables are JSONB documents that the
pricing engine parses into typed rules before use.
"""

from decimal import Decimal
from typing import Any

from sqlalchemy import Boolean, Integer, Numeric, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class PricingConfig(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "pricing_configs"

    tenant_code: Mapped[str] = mapped_column(String(2), unique=True, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Global defaults (last link of every fallback chain)
    base_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    per_km_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    night_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    weekend_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    night_start_hour: Mapped[int] = mapped_column(Integer, nullable=False, default=20)
    night_end_hour: Mapped[int] = mapped_column(Integer, nullable=False, default=6)

    # {role: {base_fee, per_km_fee, night_fee, weekend_fee, distance_exempt,
    #         requires_sub_category, booking_fee_mode, booking_fee_percent,
    #         booking_fee_flat, commission_percent}}
    role_pricing: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    # {type_tag: {base_fee, per_km_fee, night_fee, weekend_fee}}
    type_pricing: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    # {sub_category: {base_fee, night_fee, weekend_fee}}
    category_pricing: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)

    type_multipliers: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    vehicle_multipliers: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    # {enabled, max_multiplier, multipliers: {role: value}}
    surge: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)

    # {TOW_TRUCK: bool, MECHANIC: bool, ..., insurance_enabled: bool}
    service_toggles: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    # {grace_seconds, no_show_seconds, provider_cancel_window_seconds,
    #  refund_if_no_provider}
    cancellation_policy: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, default=dict
    )

    def __repr__(self) -> str:
        return f"<PricingConfig {self.tenant_code} {self.currency}>"
