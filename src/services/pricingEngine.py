"""
Pricing Engine
==============

Tenant-scoped job pricing.

Computation order (``calculate_price``):

  base      = type/category fee -> role default -> tenant default
  distance  = perKm x haversine(pickup, dropoff) km, rounded to 0.1 km
              (zero for distance-exempt roles)
  surcharge = nightFee if local time is in the night window
              + weekendFee if the local day is Saturday/Sunday
  subtotal  = (base + distance + surcharge)
              x typeMultiplier x vehicleMultiplier x surge (if enabled)

The booking fee then follows the role's policy:

  - PERCENT:  ``subtotal * percent / 100`` (towing default 15%)
  - FLAT:     fixed amount
  - CALL_OUT: the whole subtotal is collected up front and the final
              total is unknown (estimated total reported as 0)

An insurance waiver zeroes the booking fee only; the subtotal and estimated
total are left untouched because the insurer settles them later.
Commission-bearing roles also get a commission/provider-due split.

``calculate_price`` is pure: given identical rules, request and clock it
returns identical output. Every multiplier table resolves unknown keys to
1.0 and drops non-positive entries, so an unconfigured multiplier can never
zero a price.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings
from src.models.pricing import PricingConfig
from src.models.provider import ProviderRole
from src.services.geoService import haversine_distance

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_BASE_FEE = Decimal("50")
DEFAULT_PER_KM_FEE = Decimal("15")

# Night window: 20:00 - 06:00 local time
NIGHT_START_HOUR = 20
NIGHT_END_HOUR = 6
WEEKEND_DAYS: frozenset[int] = frozenset({5, 6})  # Saturday, Sunday

DEFAULT_BOOKING_FEE_PERCENT = Decimal("15")
DEFAULT_COMMISSION_PERCENT = Decimal("15")
DEFAULT_MAX_SURGE_MULTIPLIER = Decimal("2.5")

_MONEY = Decimal("0.01")
_KM = Decimal("0.1")
_HUNDRED = Decimal("100")
_ONE = Decimal("1")
_ZERO = Decimal("0")

DEFAULT_TYPE_MULTIPLIERS: dict[str, str] = {
    "Pickup with tow hitch": "0.9",
    "Hook & Chain": "1.0",
    "Wheel-Lift": "1.0",
    "Boom Trucks(With Crane)": "1.1",
    "Flatbed/Roll Back": "1.2",
    "Integrated / Wrecker": "1.2",
    "Heavy-Duty Rotator(Recovery)": "2.0",
}

DEFAULT_VEHICLE_MULTIPLIERS: dict[str, str] = {
    "Sedan": "1.0",
    "Hatchback": "1.0",
    "SUV": "1.2",
    "Van": "1.4",
    "Truck": "1.5",
}


class BookingFeeMode(str, Enum):
    PERCENT = "PERCENT"
    FLAT = "FLAT"
    CALL_OUT = "CALL_OUT"


class PricingConfigError(ValueError):
    """Raised when a stored pricing document cannot be interpreted."""


# ---------------------------------------------------------------------------
# Typed rules
# ---------------------------------------------------------------------------

def money(value: Decimal) -> Decimal:
    return value.quantize(_MONEY, rounding=ROUND_HALF_UP)


def _dec(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except ArithmeticError as exc:
        raise PricingConfigError(f"Not a number: {value!r}") from exc


class MultiplierTable:
    """Mapping from a tenant-registered key to a positive multiplier.

    Unknown keys resolve to 1.0. Lookups fall back to a case-insensitive
    match so ``"suv"`` and ``"SUV"`` hit the same entry.
    """

    def __init__(self, entries: Mapping[str, Any] | None = None) -> None:
        self._entries: dict[str, Decimal] = {}
        for key, raw in (entries or {}).items():
            value = _dec(raw)
            if value is None or value <= _ZERO:
                logger.warning("Ignoring non-positive multiplier %r for %r", raw, key)
                continue
            self._entries[str(key).strip()] = value
        self._folded = {k.lower(): v for k, v in self._entries.items()}

    def get(self, key: Optional[str]) -> Decimal:
        if not key:
            return _ONE
        key = key.strip()
        if key in self._entries:
            return self._entries[key]
        return self._folded.get(key.lower(), _ONE)

    def as_dict(self) -> dict[str, str]:
        return {k: str(v) for k, v in self._entries.items()}


@dataclass(frozen=True)
class FeeOverride:
    """Type- or category-level fees; ``None`` falls through to the role."""
    base_fee: Optional[Decimal] = None
    per_km_fee: Optional[Decimal] = None
    night_fee: Optional[Decimal] = None
    weekend_fee: Optional[Decimal] = None

    @classmethod
    def parse(cls, raw: Mapping[str, Any] | None) -> "FeeOverride":
        raw = raw or {}
        return cls(
            base_fee=_dec(raw.get("base_fee")),
            per_km_fee=_dec(raw.get("per_km_fee")),
            night_fee=_dec(raw.get("night_fee")),
            weekend_fee=_dec(raw.get("weekend_fee")),
        )


@dataclass(frozen=True)
class RolePolicy:
    base_fee: Optional[Decimal] = None
    per_km_fee: Optional[Decimal] = None
    night_fee: Optional[Decimal] = None
    weekend_fee: Optional[Decimal] = None
    distance_exempt: bool = False
    requires_dropoff: bool = False
    requires_sub_category: bool = False
    booking_fee_mode: BookingFeeMode = BookingFeeMode.PERCENT
    booking_fee_percent: Decimal = DEFAULT_BOOKING_FEE_PERCENT
    booking_fee_flat: Decimal = _ZERO
    commission_percent: Optional[Decimal] = None

    @classmethod
    def parse(cls, raw: Mapping[str, Any] | None) -> "RolePolicy":
        raw = raw or {}
        try:
            mode = BookingFeeMode(str(raw.get("booking_fee_mode", "PERCENT")).upper())
        except ValueError as exc:
            raise PricingConfigError(
                f"Unknown booking_fee_mode {raw.get('booking_fee_mode')!r}"
            ) from exc
        return cls(
            base_fee=_dec(raw.get("base_fee")),
            per_km_fee=_dec(raw.get("per_km_fee")),
            night_fee=_dec(raw.get("night_fee")),
            weekend_fee=_dec(raw.get("weekend_fee")),
            distance_exempt=bool(raw.get("distance_exempt", False)),
            requires_dropoff=bool(raw.get("requires_dropoff", False)),
            requires_sub_category=bool(raw.get("requires_sub_category", False)),
            booking_fee_mode=mode,
            booking_fee_percent=_dec(raw.get("booking_fee_percent"), DEFAULT_BOOKING_FEE_PERCENT),
            booking_fee_flat=_dec(raw.get("booking_fee_flat"), _ZERO),
            commission_percent=_dec(raw.get("commission_percent")),
        )


DEFAULT_ROLE_POLICIES: dict[str, RolePolicy] = {
    ProviderRole.TOW_TRUCK.value: RolePolicy(
        base_fee=Decimal("50"),
        per_km_fee=Decimal("15"),
        requires_dropoff=True,
        booking_fee_mode=BookingFeeMode.PERCENT,
        booking_fee_percent=DEFAULT_BOOKING_FEE_PERCENT,
        commission_percent=DEFAULT_COMMISSION_PERCENT,
    ),
    ProviderRole.MECHANIC.value: RolePolicy(
        base_fee=Decimal("200"),
        per_km_fee=Decimal("10"),
        distance_exempt=True,
        requires_sub_category=True,
        booking_fee_mode=BookingFeeMode.CALL_OUT,
    ),
    ProviderRole.HOME_SERVICE.value: RolePolicy(
        base_fee=Decimal("150"),
        distance_exempt=True,
        requires_sub_category=True,
        booking_fee_mode=BookingFeeMode.FLAT,
        booking_fee_flat=Decimal("100"),
        commission_percent=DEFAULT_COMMISSION_PERCENT,
    ),
}


@dataclass(frozen=True)
class CancellationPolicy:
    grace_seconds: int
    no_show_seconds: int
    provider_cancel_window_seconds: int
    refund_if_no_provider: bool = True

    @classmethod
    def parse(cls, raw: Mapping[str, Any] | None) -> "CancellationPolicy":
        raw = raw or {}
        return cls(
            grace_seconds=int(raw.get("grace_seconds", settings.customer_cancel_grace_seconds)),
            no_show_seconds=int(raw.get("no_show_seconds", settings.provider_no_show_seconds)),
            provider_cancel_window_seconds=int(
                raw.get(
                    "provider_cancel_window_seconds",
                    settings.provider_cancel_window_seconds,
                )
            ),
            refund_if_no_provider=bool(raw.get("refund_if_no_provider", True)),
        )


@dataclass(frozen=True)
class PricingRules:
    """Everything the engine needs for one tenant, already parsed."""
    tenant_code: str
    currency: str
    timezone: str
    base_fee: Decimal
    per_km_fee: Decimal
    night_fee: Decimal = _ZERO
    weekend_fee: Decimal = _ZERO
    night_start_hour: int = NIGHT_START_HOUR
    night_end_hour: int = NIGHT_END_HOUR
    roles: dict[str, RolePolicy] = field(default_factory=dict)
    type_fees: dict[str, FeeOverride] = field(default_factory=dict)
    category_fees: dict[str, FeeOverride] = field(default_factory=dict)
    type_multipliers: MultiplierTable = field(default_factory=MultiplierTable)
    vehicle_multipliers: MultiplierTable = field(default_factory=MultiplierTable)
    surge_enabled: bool = False
    surge_multipliers: MultiplierTable = field(default_factory=MultiplierTable)
    max_surge_multiplier: Decimal = DEFAULT_MAX_SURGE_MULTIPLIER
    service_toggles: dict[str, bool] = field(default_factory=dict)
    cancellation: CancellationPolicy = field(
        default_factory=lambda: CancellationPolicy.parse(None)
    )

    def role_policy(self, role: str) -> RolePolicy:
        return self.roles.get(role) or RolePolicy()

    def is_service_enabled(self, role: str) -> bool:
        return bool(self.service_toggles.get(role, True))

    @property
    def insurance_enabled(self) -> bool:
        return bool(self.service_toggles.get("insurance_enabled", True))


def default_rules(tenant_code: str) -> PricingRules:
    """Rules used when a tenant has no active ``PricingConfig`` row."""
    return PricingRules(
        tenant_code=tenant_code,
        currency=settings.default_currency,
        timezone=settings.default_timezone,
        base_fee=DEFAULT_BASE_FEE,
        per_km_fee=DEFAULT_PER_KM_FEE,
        roles=dict(DEFAULT_ROLE_POLICIES),
        type_multipliers=MultiplierTable(DEFAULT_TYPE_MULTIPLIERS),
        vehicle_multipliers=MultiplierTable(DEFAULT_VEHICLE_MULTIPLIERS),
        surge_enabled=True,
    )


def rules_from_config(config: PricingConfig) -> PricingRules:
    """Parse a stored ``PricingConfig`` row into typed rules."""
    roles = dict(DEFAULT_ROLE_POLICIES)
    for role, raw in (config.role_pricing or {}).items():
        roles[role] = RolePolicy.parse(raw)

    surge = config.surge or {}
    return PricingRules(
        tenant_code=config.tenant_code,
        currency=config.currency,
        timezone=config.timezone,
        base_fee=Decimal(str(config.base_fee)),
        per_km_fee=Decimal(str(config.per_km_fee)),
        night_fee=Decimal(str(config.night_fee or 0)),
        weekend_fee=Decimal(str(config.weekend_fee or 0)),
        night_start_hour=config.night_start_hour,
        night_end_hour=config.night_end_hour,
        roles=roles,
        type_fees={k: FeeOverride.parse(v) for k, v in (config.type_pricing or {}).items()},
        category_fees={
            k: FeeOverride.parse(v) for k, v in (config.category_pricing or {}).items()
        },
        type_multipliers=MultiplierTable(config.type_multipliers),
        vehicle_multipliers=MultiplierTable(config.vehicle_multipliers),
        surge_enabled=bool(surge.get("enabled", False)),
        surge_multipliers=MultiplierTable(surge.get("multipliers")),
        max_surge_multiplier=_dec(surge.get("max_multiplier"), DEFAULT_MAX_SURGE_MULTIPLIER),
        service_toggles={k: bool(v) for k, v in (config.service_toggles or {}).items()},
        cancellation=CancellationPolicy.parse(config.cancellation_policy),
    )


async def load_pricing_rules(db: AsyncSession, tenant_code: str) -> PricingRules:
    """Load the active pricing rules for a tenant, falling back to defaults."""
    result = await db.execute(
        select(PricingConfig).where(
            PricingConfig.tenant_code == tenant_code,
            PricingConfig.is_active.is_(True),
        )
    )
    config = result.scalar_one_or_none()
    if config is None:
        logger.info("No pricing config for tenant %s; using defaults", tenant_code)
        return default_rules(tenant_code)
    return rules_from_config(config)


# ---------------------------------------------------------------------------
# Request / result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PriceRequest:
    role: str
    pickup_lat: float
    pickup_lng: float
    dropoff_lat: Optional[float] = None
    dropoff_lng: Optional[float] = None
    sub_category: Optional[str] = None
    type_tag: Optional[str] = None
    vehicle_type: Optional[str] = None

    @property
    def has_dropoff(self) -> bool:
        return self.dropoff_lat is not None and self.dropoff_lng is not None


@dataclass(frozen=True)
class PriceBreakdown:
    """Full price computation result; ``to_snapshot`` is stored on the job."""
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

    def to_snapshot(self) -> dict[str, Any]:
        snapshot: dict[str, Any] = {}
        for key, value in asdict(self).items():
            if isinstance(value, Decimal):
                snapshot[key] = str(value)
            elif isinstance(value, Enum):
                snapshot[key] = value.value
            else:
                snapshot[key] = value
        return snapshot

    @classmethod
    def from_snapshot(cls, snapshot: Mapping[str, Any]) -> "PriceBreakdown":
        """Rebuild the breakdown stored on a job by ``to_snapshot``."""
        values: dict[str, Any] = {}
        for name in cls.__dataclass_fields__:
            if name not in snapshot:
                continue
            value = snapshot[name]
            if name == "booking_fee_mode":
                value = BookingFeeMode(value)
            elif name in _SNAPSHOT_DECIMALS and value is not None:
                value = Decimal(str(value))
            values[name] = value
        return cls(**values)


_SNAPSHOT_DECIMALS = frozenset({
    "base_fee",
    "per_km_fee",
    "distance_km",
    "distance_fee",
    "night_fee",
    "weekend_fee",
    "type_multiplier",
    "vehicle_multiplier",
    "surge_multiplier",
    "subtotal",
    "estimated_total",
    "booking_fee",
    "commission_amount",
    "provider_amount_due",
})


# ---------------------------------------------------------------------------
# Calculation
# ---------------------------------------------------------------------------

def _first(*values: Optional[Decimal]) -> Decimal:
    for value in values:
        if value is not None:
            return value
    return _ZERO


def _local_time(now: datetime, tz_name: str) -> datetime:
    try:
        return now.astimezone(ZoneInfo(tz_name))
    except ZoneInfoNotFoundError:
        logger.warning("Unknown timezone %r; pricing in UTC", tz_name)
        return now.astimezone(ZoneInfo("UTC"))


def is_night(local: datetime, start_hour: int, end_hour: int) -> bool:
    hour = local.hour
    if start_hour > end_hour:
        return hour >= start_hour or hour < end_hour
    return start_hour <= hour < end_hour


def is_weekend(local: datetime) -> bool:
    return local.weekday() in WEEKEND_DAYS


def trip_distance_km(request: PriceRequest) -> Decimal:
    if not request.has_dropoff:
        return _ZERO
    km = haversine_distance(
        float(request.pickup_lat),
        float(request.pickup_lng),
        float(request.dropoff_lat),
        float(request.dropoff_lng),
    )
    return Decimal(str(km)).quantize(_KM, rounding=ROUND_HALF_UP)


def calculate_price(
    rules: PricingRules,
    request: PriceRequest,
    now: datetime,
    *,
    waiver_applied: bool = False,
) -> PriceBreakdown:
    """Price a job request against a tenant's rules.

    Args:
        rules: Parsed tenant rules.
        request: Capability and locations of the job.
        now: Wall-clock time (timezone-aware) used for night/weekend checks.
        waiver_applied: Whether an insurance waiver covers the booking fee.

    Returns:
        PriceBreakdown with every intermediate value and the final amounts.
    """
    policy = rules.role_policy(request.role)
    override = (
        rules.type_fees.get(request.type_tag or "")
        or rules.category_fees.get(request.sub_category or "")
        or FeeOverride()
    )

    base = _first(override.base_fee, policy.base_fee, rules.base_fee)
    per_km = _first(override.per_km_fee, policy.per_km_fee, rules.per_km_fee)
    night_amount = _first(override.night_fee, policy.night_fee, rules.night_fee)
    weekend_amount = _first(override.weekend_fee, policy.weekend_fee, rules.weekend_fee)

    distance_km = _ZERO if policy.distance_exempt else trip_distance_km(request)
    distance_fee = per_km * distance_km

    local = _local_time(now, rules.timezone)
    night = is_night(local, rules.night_start_hour, rules.night_end_hour)
    weekend = is_weekend(local)
    night_fee = night_amount if night else _ZERO
    weekend_fee = weekend_amount if weekend else _ZERO

    type_multiplier = rules.type_multipliers.get(request.type_tag)
    vehicle_multiplier = rules.vehicle_multipliers.get(request.vehicle_type)
    surge_multiplier = _ONE
    if rules.surge_enabled:
        surge_multiplier = min(
            rules.surge_multipliers.get(request.role), rules.max_surge_multiplier
        )

    subtotal = money(
        (base + distance_fee + night_fee + weekend_fee)
        * type_multiplier
        * vehicle_multiplier
        * surge_multiplier
    )

    if policy.booking_fee_mode == BookingFeeMode.CALL_OUT:
        estimated_total = _ZERO
        booking_fee = subtotal
    elif policy.booking_fee_mode == BookingFeeMode.FLAT:
        estimated_total = subtotal
        booking_fee = money(policy.booking_fee_flat)
    else:
        estimated_total = subtotal
        booking_fee = money(subtotal * policy.booking_fee_percent / _HUNDRED)

    if waiver_applied:
        booking_fee = _ZERO

    commission_amount: Optional[Decimal] = None
    provider_amount_due: Optional[Decimal] = None
    if policy.commission_percent is not None and estimated_total > _ZERO:
        commission_amount = money(estimated_total * policy.commission_percent / _HUNDRED)
        provider_amount_due = max(estimated_total - commission_amount, _ZERO)

    return PriceBreakdown(
        currency=rules.currency,
        role=request.role,
        base_fee=money(base),
        per_km_fee=money(per_km),
        distance_km=distance_km,
        distance_fee=money(distance_fee),
        night_fee=money(night_fee),
        weekend_fee=money(weekend_fee),
        is_night=night,
        is_weekend=weekend,
        type_multiplier=type_multiplier,
        vehicle_multiplier=vehicle_multiplier,
        surge_multiplier=surge_multiplier,
        subtotal=subtotal,
        estimated_total=estimated_total,
        booking_fee_mode=policy.booking_fee_mode,
        booking_fee=money(booking_fee),
        commission_amount=commission_amount,
        provider_amount_due=provider_amount_due,
        waiver_applied=waiver_applied,
    )
