"""
Unit tests for the Pricing Engine.

Covers the fee cascade, distance fees, night/weekend surcharges in the
tenant's timezone, multipliers and surge caps, the three booking fee modes,
insurance waivers and parsing of stored tenant configuration.
"""

import math
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.models.pricing import PricingConfig
from src.services.pricingEngine import (
    DEFAULT_ROLE_POLICIES,
    BookingFeeMode,
    FeeOverride,
    MultiplierTable,
    PriceRequest,
    PricingConfigError,
    PricingRules,
    RolePolicy,
    calculate_price,
    default_rules,
    is_night,
    load_pricing_rules,
    rules_from_config,
    trip_distance_km,
)

PICKUP_LAT = -26.2041
PICKUP_LNG = 28.0473
KM_PER_DEGREE_LAT = 6371.0 * math.pi / 180.0

# Wednesday 12:00 SAST
WEEKDAY_NOON = datetime(2026, 10, 14, 10, 0, tzinfo=timezone.utc)
# Wednesday 21:30 SAST
WEEKDAY_NIGHT = datetime(2026, 10, 14, 19, 30, tzinfo=timezone.utc)
# Saturday 12:00 SAST
SATURDAY_NOON = datetime(2026, 10, 17, 10, 0, tzinfo=timezone.utc)
# Saturday 22:00 SAST
SATURDAY_NIGHT = datetime(2026, 10, 17, 20, 0, tzinfo=timezone.utc)


def _tow_request(km: float = 10.0, **kwargs) -> PriceRequest:
    return PriceRequest(
        role="TOW_TRUCK",
        pickup_lat=PICKUP_LAT,
        pickup_lng=PICKUP_LNG,
        dropoff_lat=PICKUP_LAT + km / KM_PER_DEGREE_LAT,
        dropoff_lng=PICKUP_LNG,
        **kwargs,
    )


def _surcharge_rules(**overrides) -> PricingRules:
    values = dict(
        tenant_code="ZA",
        currency="ZAR",
        timezone="Africa/Johannesburg",
        base_fee=Decimal("50"),
        per_km_fee=Decimal("15"),
        night_fee=Decimal("25"),
        weekend_fee=Decimal("40"),
        roles=dict(DEFAULT_ROLE_POLICIES),
    )
    values.update(overrides)
    return PricingRules(**values)


# ---------------------------------------------------------------------------
# Distance
# ---------------------------------------------------------------------------


class TestTripDistance:
    def test_rounded_to_tenth_of_km(self):
        assert trip_distance_km(_tow_request(10.0)) == Decimal("10.0")
        assert trip_distance_km(_tow_request(3.26)) == Decimal("3.3")

    def test_no_dropoff_is_zero(self):
        request = PriceRequest(role="TOW_TRUCK", pickup_lat=PICKUP_LAT, pickup_lng=PICKUP_LNG)
        assert trip_distance_km(request) == Decimal("0")


# ---------------------------------------------------------------------------
# Role defaults and booking fee modes
# ---------------------------------------------------------------------------


class TestBookingFeeModes:
    def test_tow_truck_percent_fee(self):
        price = calculate_price(default_rules("ZA"), _tow_request(10.0), WEEKDAY_NOON)

        assert price.base_fee == Decimal("50.00")
        assert price.distance_km == Decimal("10.0")
        assert price.distance_fee == Decimal("150.00")
        assert price.subtotal == Decimal("200.00")
        assert price.estimated_total == Decimal("200.00")
        assert price.booking_fee_mode == BookingFeeMode.PERCENT
        assert price.booking_fee == Decimal("30.00")
        assert price.currency == "ZAR"

    def test_tow_truck_commission_split(self):
        price = calculate_price(default_rules("ZA"), _tow_request(10.0), WEEKDAY_NOON)
        assert price.commission_amount == Decimal("30.00")
        assert price.provider_amount_due == Decimal("170.00")

    def test_mechanic_call_out_collects_whole_subtotal(self):
        request = PriceRequest(
            role="MECHANIC",
            pickup_lat=PICKUP_LAT,
            pickup_lng=PICKUP_LNG,
            sub_category="Battery",
        )
        price = calculate_price(default_rules("ZA"), request, WEEKDAY_NOON)

        assert price.booking_fee_mode == BookingFeeMode.CALL_OUT
        assert price.subtotal == Decimal("200.00")
        assert price.booking_fee == Decimal("200.00")
        assert price.estimated_total == Decimal("0")
        assert price.commission_amount is None

    def test_mechanic_is_distance_exempt(self):
        request = PriceRequest(
            role="MECHANIC",
            pickup_lat=PICKUP_LAT,
            pickup_lng=PICKUP_LNG,
            dropoff_lat=PICKUP_LAT + 0.5,
            dropoff_lng=PICKUP_LNG,
            sub_category="Battery",
        )
        price = calculate_price(default_rules("ZA"), request, WEEKDAY_NOON)
        assert price.distance_km == Decimal("0")
        assert price.distance_fee == Decimal("0.00")

    def test_home_service_flat_fee(self):
        request = PriceRequest(
            role="HOME_SERVICE",
            pickup_lat=PICKUP_LAT,
            pickup_lng=PICKUP_LNG,
            sub_category="Plumbing",
        )
        price = calculate_price(default_rules("ZA"), request, WEEKDAY_NOON)

        assert price.booking_fee_mode == BookingFeeMode.FLAT
        assert price.subtotal == Decimal("150.00")
        assert price.booking_fee == Decimal("100.00")
        assert price.commission_amount == Decimal("22.50")
        assert price.provider_amount_due == Decimal("127.50")

    def test_unknown_role_falls_back_to_tenant_defaults(self):
        request = PriceRequest(role="LOCKSMITH", pickup_lat=PICKUP_LAT, pickup_lng=PICKUP_LNG)
        price = calculate_price(default_rules("ZA"), request, WEEKDAY_NOON)
        assert price.base_fee == Decimal("50.00")
        assert price.booking_fee == Decimal("7.50")


# ---------------------------------------------------------------------------
# Surcharges
# ---------------------------------------------------------------------------


class TestSurcharges:
    def test_weekday_daytime_has_no_surcharge(self):
        price = calculate_price(_surcharge_rules(), _tow_request(10.0), WEEKDAY_NOON)
        assert price.is_night is False
        assert price.is_weekend is False
        assert price.subtotal == Decimal("200.00")

    def test_night_fee(self):
        price = calculate_price(_surcharge_rules(), _tow_request(10.0), WEEKDAY_NIGHT)
        assert price.is_night is True
        assert price.night_fee == Decimal("25.00")
        assert price.subtotal == Decimal("225.00")

    def test_weekend_fee(self):
        price = calculate_price(_surcharge_rules(), _tow_request(10.0), SATURDAY_NOON)
        assert price.is_weekend is True
        assert price.subtotal == Decimal("240.00")

    def test_night_and_weekend_stack(self):
        price = calculate_price(_surcharge_rules(), _tow_request(10.0), SATURDAY_NIGHT)
        assert price.subtotal == Decimal("265.00")

    def test_night_window_uses_tenant_timezone(self):
        # 18:30 UTC is 20:30 in Johannesburg
        at = datetime(2026, 10, 14, 18, 30, tzinfo=timezone.utc)
        assert calculate_price(_surcharge_rules(), _tow_request(), at).is_night is True
        utc_rules = _surcharge_rules(timezone="UTC")
        assert calculate_price(utc_rules, _tow_request(), at).is_night is False

    def test_unknown_timezone_prices_in_utc(self):
        at = datetime(2026, 10, 14, 18, 30, tzinfo=timezone.utc)
        rules = _surcharge_rules(timezone="Mars/Olympus_Mons")
        assert calculate_price(rules, _tow_request(), at).is_night is False

    @pytest.mark.parametrize(
        "hour,expected",
        [(19, False), (20, True), (23, True), (0, True), (5, True), (6, False), (12, False)],
    )
    def test_wrapping_night_window(self, hour, expected):
        local = datetime(2026, 10, 14, hour, 0)
        assert is_night(local, 20, 6) is expected

    def test_non_wrapping_night_window(self):
        assert is_night(datetime(2026, 10, 14, 2, 0), 1, 5) is True
        assert is_night(datetime(2026, 10, 14, 5, 0), 1, 5) is False


# ---------------------------------------------------------------------------
# Multipliers
# ---------------------------------------------------------------------------


class TestMultipliers:
    def test_vehicle_multiplier(self):
        price = calculate_price(
            default_rules("ZA"), _tow_request(10.0, vehicle_type="SUV"), WEEKDAY_NOON
        )
        assert price.vehicle_multiplier == Decimal("1.2")
        assert price.subtotal == Decimal("240.00")
        assert price.booking_fee == Decimal("36.00")

    def test_type_and_vehicle_multipliers_compound(self):
        request = _tow_request(10.0, type_tag="Flatbed/Roll Back", vehicle_type="SUV")
        price = calculate_price(default_rules("ZA"), request, WEEKDAY_NOON)
        assert price.subtotal == Decimal("288.00")

    def test_unknown_keys_resolve_to_one(self):
        request = _tow_request(10.0, type_tag="Hovercraft", vehicle_type="Spaceship")
        price = calculate_price(default_rules("ZA"), request, WEEKDAY_NOON)
        assert price.type_multiplier == Decimal("1")
        assert price.vehicle_multiplier == Decimal("1")
        assert price.subtotal == Decimal("200.00")

    def test_lookup_is_case_insensitive(self):
        table = MultiplierTable({"SUV": "1.2"})
        assert table.get("suv") == Decimal("1.2")
        assert table.get(" SUV ") == Decimal("1.2")

    def test_non_positive_entries_are_dropped(self):
        table = MultiplierTable({"Sedan": "0", "Van": "-1", "Truck": "1.5"})
        assert table.get("Sedan") == Decimal("1")
        assert table.get("Van") == Decimal("1")
        assert table.as_dict() == {"Truck": "1.5"}

    def test_surge_is_capped(self):
        rules = _surcharge_rules(
            night_fee=Decimal("0"),
            weekend_fee=Decimal("0"),
            surge_enabled=True,
            surge_multipliers=MultiplierTable({"TOW_TRUCK": "3.0"}),
            max_surge_multiplier=Decimal("2.5"),
        )
        price = calculate_price(rules, _tow_request(10.0), WEEKDAY_NOON)
        assert price.surge_multiplier == Decimal("2.5")
        assert price.subtotal == Decimal("500.00")

    def test_surge_ignored_when_disabled(self):
        rules = _surcharge_rules(
            surge_enabled=False,
            surge_multipliers=MultiplierTable({"TOW_TRUCK": "2.0"}),
        )
        price = calculate_price(rules, _tow_request(10.0), WEEKDAY_NOON)
        assert price.surge_multiplier == Decimal("1")

    def test_type_fee_override_replaces_role_base(self):
        rules = _surcharge_rules(
            type_fees={"Flatbed/Roll Back": FeeOverride(base_fee=Decimal("80"))}
        )
        price = calculate_price(
            rules, _tow_request(10.0, type_tag="Flatbed/Roll Back"), WEEKDAY_NOON
        )
        assert price.base_fee == Decimal("80.00")
        assert price.subtotal == Decimal("230.00")


# ---------------------------------------------------------------------------
# Waiver and determinism
# ---------------------------------------------------------------------------


class TestWaiverAndSnapshot:
    def test_waiver_zeroes_booking_fee_only(self):
        price = calculate_price(
            default_rules("ZA"), _tow_request(10.0), WEEKDAY_NOON, waiver_applied=True
        )
        assert price.booking_fee == Decimal("0.00")
        assert price.subtotal == Decimal("200.00")
        assert price.estimated_total == Decimal("200.00")
        assert price.waiver_applied is True

    def test_identical_inputs_identical_output(self):
        rules = default_rules("ZA")
        first = calculate_price(rules, _tow_request(7.3, vehicle_type="Van"), WEEKDAY_NOON)
        second = calculate_price(rules, _tow_request(7.3, vehicle_type="Van"), WEEKDAY_NOON)
        assert first == second

    def test_snapshot_is_json_friendly(self):
        snapshot = calculate_price(
            default_rules("ZA"), _tow_request(10.0), WEEKDAY_NOON
        ).to_snapshot()
        assert snapshot["subtotal"] == "200.00"
        assert snapshot["booking_fee_mode"] == "PERCENT"
        assert snapshot["is_night"] is False


# ---------------------------------------------------------------------------
# Stored configuration
# ---------------------------------------------------------------------------


def _config(**overrides) -> PricingConfig:
    values = dict(
        tenant_code="KE",
        currency="KES",
        timezone="Africa/Nairobi",
        is_active=True,
        base_fee=Decimal("500"),
        per_km_fee=Decimal("60"),
        night_fee=Decimal("100"),
        weekend_fee=Decimal("0"),
        night_start_hour=21,
        night_end_hour=5,
        role_pricing={},
        type_pricing={},
        category_pricing={},
        type_multipliers={},
        vehicle_multipliers={"SUV": "1.3"},
        surge={},
        service_toggles={},
        cancellation_policy={},
    )
    values.update(overrides)
    return PricingConfig(**values)


class TestRulesFromConfig:
    def test_scalars_are_parsed(self):
        rules = rules_from_config(_config())
        assert rules.currency == "KES"
        assert rules.base_fee == Decimal("500")
        assert rules.night_start_hour == 21
        assert rules.vehicle_multipliers.get("SUV") == Decimal("1.3")

    def test_role_override_merges_with_defaults(self):
        rules = rules_from_config(
            _config(role_pricing={"TOW_TRUCK": {"booking_fee_mode": "flat", "booking_fee_flat": "20"}})
        )
        tow = rules.role_policy("TOW_TRUCK")
        assert tow.booking_fee_mode == BookingFeeMode.FLAT
        assert tow.booking_fee_flat == Decimal("20")
        assert rules.role_policy("MECHANIC").booking_fee_mode == BookingFeeMode.CALL_OUT

    def test_unknown_fee_mode_is_rejected(self):
        with pytest.raises(PricingConfigError):
            RolePolicy.parse({"booking_fee_mode": "HALF"})

    def test_surge_and_toggles(self):
        rules = rules_from_config(
            _config(
                surge={"enabled": True, "multipliers": {"TOW_TRUCK": "1.5"}, "max_multiplier": "2"},
                service_toggles={"MECHANIC": False, "insurance_enabled": False},
            )
        )
        assert rules.surge_enabled is True
        assert rules.max_surge_multiplier == Decimal("2")
        assert rules.is_service_enabled("MECHANIC") is False
        assert rules.is_service_enabled("TOW_TRUCK") is True
        assert rules.insurance_enabled is False

    def test_cancellation_policy_defaults_and_overrides(self):
        rules = rules_from_config(_config(cancellation_policy={"grace_seconds": 120}))
        assert rules.cancellation.grace_seconds == 120
        assert rules.cancellation.no_show_seconds == 2700
        assert rules.cancellation.provider_cancel_window_seconds == 300


class TestLoadPricingRules:
    @pytest.mark.asyncio
    async def test_falls_back_to_defaults(self, mock_db):
        result = MagicMock()
        result.scalar_one_or_none.return_value = None
        mock_db.execute = AsyncMock(return_value=result)

        rules = await load_pricing_rules(mock_db, "ZA")

        assert rules.tenant_code == "ZA"
        assert rules.base_fee == Decimal("50")
        assert "TOW_TRUCK" in rules.roles

    @pytest.mark.asyncio
    async def test_uses_stored_config(self, mock_db):
        result = MagicMock()
        result.scalar_one_or_none.return_value = _config()
        mock_db.execute = AsyncMock(return_value=result)

        rules = await load_pricing_rules(mock_db, "KE")

        assert rules.currency == "KES"
