"""
Unit tests for the Provider Service: position and availability updates and
the rolling cancellation counter.
"""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from src.services.exceptions import InvalidLocationError, ProviderNotFoundError
from src.services.providerService import (
    get_provider,
    next_cancel_count,
    record_provider_cancellation,
    set_availability,
    update_location,
)

NOW = datetime(2026, 10, 14, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def index_spy():
    spy = AsyncMock()
    spy.upsert = AsyncMock()
    spy.remove = AsyncMock()
    return spy


class TestGetProvider:
    @pytest.mark.asyncio
    async def test_found(self, db_session, make_provider):
        provider = await make_provider()
        assert (await get_provider(db_session, provider.id)).id == provider.id

    @pytest.mark.asyncio
    async def test_missing(self, db_session):
        with pytest.raises(ProviderNotFoundError):
            await get_provider(db_session, uuid.uuid4())

    @pytest.mark.asyncio
    async def test_other_tenant_is_not_found(self, db_session, make_provider):
        provider = await make_provider(tenant_code="KE")
        with pytest.raises(ProviderNotFoundError):
            await get_provider(db_session, provider.id, for_tenant="ZA")


class TestUpdateLocation:
    @pytest.mark.asyncio
    async def test_moves_provider_and_mirrors_index(
        self, db_session, make_provider, index_spy
    ):
        provider = await make_provider()
        later = NOW + timedelta(minutes=1)

        updated = await update_location(
            db_session, index_spy, provider.id,
            tenant_code="ZA", lat=-26.1, lng=28.1, now=later,
        )

        assert (updated.latitude, updated.longitude) == (-26.1, 28.1)
        assert updated.location_updated_at == later
        index_spy.upsert.assert_awaited_once_with(updated)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("lat,lng", [(0.0, 0.0), (95.0, 28.0), (-26.1, 200.0)])
    async def test_invalid_coordinates(self, db_session, make_provider, index_spy, lat, lng):
        provider = await make_provider()

        with pytest.raises(InvalidLocationError):
            await update_location(
                db_session, index_spy, provider.id, tenant_code="ZA", lat=lat, lng=lng
            )

        index_spy.upsert.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_other_tenant(self, db_session, make_provider, index_spy):
        provider = await make_provider()
        with pytest.raises(ProviderNotFoundError):
            await update_location(
                db_session, index_spy, provider.id, tenant_code="KE", lat=-26.1, lng=28.1
            )


class TestSetAvailability:
    @pytest.mark.asyncio
    async def test_going_offline_removes_from_index(
        self, db_session, make_provider, index_spy
    ):
        provider = await make_provider()

        updated = await set_availability(
            db_session, index_spy, provider.id, tenant_code="ZA", is_online=False
        )

        assert updated.is_online is False
        index_spy.remove.assert_awaited_once_with(
            provider.id, "ZA", role=provider.role
        )
        index_spy.upsert.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_going_online_with_new_token(self, db_session, make_provider, index_spy):
        provider = await make_provider(is_online=False, push_token=None)

        updated = await set_availability(
            db_session, index_spy, provider.id,
            tenant_code="ZA", is_online=True, push_token="fcm-new",
        )

        assert updated.is_online is True
        assert updated.push_token == "fcm-new"
        index_spy.upsert.assert_awaited_once_with(updated)

    @pytest.mark.asyncio
    async def test_empty_token_clears_it(self, db_session, make_provider, index_spy):
        provider = await make_provider(push_token="fcm-old")

        updated = await set_availability(
            db_session, index_spy, provider.id,
            tenant_code="ZA", is_online=True, push_token="",
        )

        assert updated.push_token is None

    @pytest.mark.asyncio
    async def test_token_left_alone_when_omitted(self, db_session, make_provider, index_spy):
        provider = await make_provider(push_token="fcm-old")

        updated = await set_availability(
            db_session, index_spy, provider.id, tenant_code="ZA", is_online=True
        )

        assert updated.push_token == "fcm-old"


class TestNextCancelCount:
    def test_first_cancel(self):
        assert next_cancel_count(0, None, NOW, 24) == 1

    def test_within_decay_window(self):
        assert next_cancel_count(2, NOW - timedelta(hours=23), NOW, 24) == 3

    def test_counter_restarts_after_window(self):
        assert next_cancel_count(3, NOW - timedelta(hours=25), NOW, 24) == 1

    def test_naive_timestamp(self):
        last = (NOW - timedelta(hours=1)).replace(tzinfo=None)
        assert next_cancel_count(1, last, NOW, 24) == 2


class TestRecordProviderCancellation:
    @pytest.mark.asyncio
    async def test_below_threshold(self, db_session, make_provider):
        provider = await make_provider(cancel_count=1, last_cancelled_at=NOW - timedelta(hours=2))

        penalty = await record_provider_cancellation(db_session, provider, NOW)

        assert penalty.cancel_count == 2
        assert penalty.suspended_until is None
        assert provider.last_cancelled_at == NOW
        assert provider.suspended_until is None

    @pytest.mark.asyncio
    async def test_fourth_cancel_suspends_for_twelve_hours(self, db_session, make_provider):
        provider = await make_provider(cancel_count=3, last_cancelled_at=NOW - timedelta(hours=1))

        penalty = await record_provider_cancellation(db_session, provider, NOW, uuid.uuid4())

        assert penalty.cancel_count == 4
        assert penalty.suspended_until == NOW + timedelta(hours=12)
        assert provider.suspended_until == NOW + timedelta(hours=12)

    @pytest.mark.asyncio
    async def test_stale_counter_does_not_suspend(self, db_session, make_provider):
        provider = await make_provider(cancel_count=3, last_cancelled_at=NOW - timedelta(days=2))

        penalty = await record_provider_cancellation(db_session, provider, NOW)

        assert penalty.cancel_count == 1
        assert penalty.suspended_until is None
