"""
Unit tests for the Job Service lifecycle operations: start (with the
pickup proximity check), complete, the three cancel paths and draft discard.
"""

import math
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import func, select, update

from src.core.config import settings
from src.models import BookingFeeStatus, CancelledBy, Job, JobStatus, PricingConfig
from src.services.exceptions import (
    InvalidTransitionError,
    JobNotFoundError,
    NotAssignedProviderError,
    NotJobOwnerError,
    ProviderCancelWindowExpiredError,
)
from src.services.jobService import (
    StartFailure,
    cancel_job_by_customer,
    cancel_job_by_operator,
    cancel_job_by_provider,
    complete_job,
    discard_draft,
    get_job,
    start_job,
)
from src.services.jobStateManager import RefundReason

NOW = datetime(2026, 10, 14, 10, 0, tzinfo=timezone.utc)
PICKUP_LAT = -26.2041
KM_PER_DEGREE_LAT = 6371.0 * math.pi / 180.0


def north_of(lat: float, km: float) -> float:
    return lat + km / KM_PER_DEGREE_LAT


def ago(seconds: int) -> datetime:
    return NOW - timedelta(seconds=seconds)


@pytest.fixture
def assigned_job(make_provider, make_job):
    """An ASSIGNED job, accepted ``seconds`` before NOW, and its provider."""

    async def _make(seconds: int = 60, **provider_overrides):
        provider = await make_provider(**provider_overrides)
        job = await make_job(JobStatus.ASSIGNED, provider=provider, assigned_at=ago(seconds))
        return job, provider

    return _make


class TestGetJob:
    @pytest.mark.asyncio
    async def test_other_tenant_is_not_found(self, db_session, make_job):
        job = await make_job()
        with pytest.raises(JobNotFoundError):
            await get_job(db_session, job.id, tenant_code="KE")


# ---------------------------------------------------------------------------
# Start
# ---------------------------------------------------------------------------


class TestStartJob:
    @pytest.mark.asyncio
    async def test_start_at_pickup(self, db_session, assigned_job):
        job, provider = await assigned_job()

        result = await start_job(db_session, job.id, provider.id, tenant_code="ZA", now=NOW)

        assert result.ok is True
        assert result.distance_m == pytest.approx(0.0)
        assert result.max_allowed_m == settings.start_proximity_meters
        assert job.status == JobStatus.IN_PROGRESS
        assert job.started_at is not None

    @pytest.mark.asyncio
    async def test_within_radius(self, db_session, assigned_job):
        job, provider = await assigned_job(latitude=north_of(PICKUP_LAT, 0.025))

        result = await start_job(db_session, job.id, provider.id, tenant_code="ZA", now=NOW)

        assert result.ok is True
        assert result.distance_m == pytest.approx(25.0, abs=0.01)

    @pytest.mark.asyncio
    async def test_too_far_leaves_job_untouched(self, db_session, assigned_job):
        job, provider = await assigned_job(latitude=north_of(PICKUP_LAT, 0.1))

        result = await start_job(db_session, job.id, provider.id, tenant_code="ZA", now=NOW)

        assert result.ok is False
        assert result.code == StartFailure.TOO_FAR_FROM_PICKUP
        assert result.distance_m == pytest.approx(100.0, abs=0.01)
        assert result.max_allowed_m == 30.0
        await db_session.refresh(job)
        assert job.status == JobStatus.ASSIGNED

    @pytest.mark.asyncio
    async def test_provider_without_gps(self, db_session, assigned_job):
        job, provider = await assigned_job(latitude=None, longitude=None)

        result = await start_job(db_session, job.id, provider.id, tenant_code="ZA", now=NOW)

        assert result.code == StartFailure.PROVIDER_GPS_MISSING
        assert result.distance_m is None

    @pytest.mark.asyncio
    async def test_provider_with_placeholder_gps(self, db_session, assigned_job):
        job, provider = await assigned_job(latitude=0.0, longitude=0.0)

        result = await start_job(db_session, job.id, provider.id, tenant_code="ZA", now=NOW)

        assert result.code == StartFailure.PROVIDER_GPS_INVALID

    @pytest.mark.asyncio
    async def test_job_without_pickup(self, db_session, make_provider, make_job):
        provider = await make_provider()
        job = await make_job(
            JobStatus.ASSIGNED,
            provider=provider,
            assigned_at=ago(60),
            pickup_latitude=None,
            pickup_longitude=None,
        )

        result = await start_job(db_session, job.id, provider.id, tenant_code="ZA", now=NOW)

        assert result.code == StartFailure.PICKUP_LOCATION_MISSING

    @pytest.mark.asyncio
    async def test_only_assigned_provider(self, db_session, assigned_job, make_provider):
        job, _ = await assigned_job()
        stranger = await make_provider()

        with pytest.raises(NotAssignedProviderError):
            await start_job(db_session, job.id, stranger.id, tenant_code="ZA", now=NOW)

    @pytest.mark.asyncio
    async def test_cannot_start_unassigned_job(self, db_session, make_job, make_provider):
        provider = await make_provider()
        job = await make_job(JobStatus.BROADCASTED)

        with pytest.raises(InvalidTransitionError):
            await start_job(db_session, job.id, provider.id, tenant_code="ZA", now=NOW)


# ---------------------------------------------------------------------------
# Complete
# ---------------------------------------------------------------------------


class TestCompleteJob:
    @pytest.mark.asyncio
    async def test_complete_frees_provider(self, db_session, make_provider, make_job):
        provider = await make_provider(jobs_completed=4)
        job = await make_job(JobStatus.IN_PROGRESS, provider=provider, assigned_at=ago(900))

        completed = await complete_job(db_session, job.id, provider.id, tenant_code="ZA", now=NOW)

        assert completed.status == JobStatus.COMPLETED
        assert completed.assigned_provider_id is None
        assert completed.provider_of_record_id == provider.id
        await db_session.refresh(provider)
        assert provider.active_job_id is None
        assert provider.jobs_completed == 5

    @pytest.mark.asyncio
    async def test_cannot_complete_before_start(self, db_session, assigned_job):
        job, provider = await assigned_job()

        with pytest.raises(InvalidTransitionError):
            await complete_job(db_session, job.id, provider.id, tenant_code="ZA", now=NOW)

    @pytest.mark.asyncio
    async def test_only_assigned_provider(self, db_session, make_provider, make_job):
        provider = await make_provider()
        stranger = await make_provider()
        job = await make_job(JobStatus.IN_PROGRESS, provider=provider, assigned_at=ago(900))

        with pytest.raises(NotAssignedProviderError):
            await complete_job(db_session, job.id, stranger.id, tenant_code="ZA", now=NOW)


# ---------------------------------------------------------------------------
# Customer cancel
# ---------------------------------------------------------------------------


class TestCustomerCancel:
    @pytest.mark.asyncio
    async def test_within_grace_window_is_refunded(self, db_session, assigned_job):
        job, provider = await assigned_job(seconds=90)

        result = await cancel_job_by_customer(
            db_session, job.id, job.customer_id, tenant_code="ZA", reason="changed my mind", now=NOW
        )

        assert result.refund.eligible is True
        assert result.refund.reason == RefundReason.CANCELLED_WITHIN_GRACE_WINDOW
        assert result.previous_status == JobStatus.ASSIGNED
        assert result.penalty is None

        cancelled = result.job
        assert cancelled.status == JobStatus.CANCELLED
        assert cancelled.cancelled_by == CancelledBy.CUSTOMER
        assert cancelled.cancel_reason == "changed my mind"
        assert cancelled.booking_fee_status == BookingFeeStatus.REFUND_REQUESTED
        assert cancelled.refund_reason == RefundReason.CANCELLED_WITHIN_GRACE_WINDOW.value
        assert cancelled.assigned_provider_id is None
        assert cancelled.provider_of_record_id == provider.id

        await db_session.refresh(provider)
        assert provider.active_job_id is None

    @pytest.mark.asyncio
    async def test_after_grace_window_is_not_refunded(self, db_session, assigned_job):
        job, _ = await assigned_job(seconds=200)

        result = await cancel_job_by_customer(
            db_session, job.id, job.customer_id, tenant_code="ZA", now=NOW
        )

        assert result.refund.eligible is False
        assert result.refund.reason == RefundReason.OUTSIDE_REFUND_WINDOW
        assert result.job.booking_fee_status == BookingFeeStatus.PAID
        assert result.job.refund_eligible is False

    @pytest.mark.asyncio
    async def test_provider_no_show_is_refunded(self, db_session, assigned_job):
        job, _ = await assigned_job(seconds=2700)

        result = await cancel_job_by_customer(
            db_session, job.id, job.customer_id, tenant_code="ZA", now=NOW
        )

        assert result.refund.reason == RefundReason.PROVIDER_NO_SHOW
        assert result.job.booking_fee_status == BookingFeeStatus.REFUND_REQUESTED

    @pytest.mark.asyncio
    async def test_broadcasted_job_is_not_refunded(self, db_session, make_job):
        job = await make_job(JobStatus.BROADCASTED)

        result = await cancel_job_by_customer(
            db_session, job.id, job.customer_id, tenant_code="ZA", now=NOW
        )

        assert result.job.status == JobStatus.CANCELLED
        assert result.refund.reason == RefundReason.NOT_REFUNDABLE_IN_STATUS

    @pytest.mark.asyncio
    async def test_paid_draft_is_refunded(self, db_session, make_job):
        job = await make_job(JobStatus.CREATED)

        result = await cancel_job_by_customer(
            db_session, job.id, job.customer_id, tenant_code="ZA", now=NOW
        )

        assert result.refund.reason == RefundReason.NO_PROVIDER_FOUND
        assert result.job.booking_fee_status == BookingFeeStatus.REFUND_REQUESTED

    @pytest.mark.asyncio
    async def test_waived_fee_is_never_refund_requested(self, db_session, make_provider, make_job):
        provider = await make_provider()
        job = await make_job(
            JobStatus.ASSIGNED,
            provider=provider,
            assigned_at=ago(30),
            booking_fee_status=BookingFeeStatus.WAIVED,
        )

        result = await cancel_job_by_customer(
            db_session, job.id, job.customer_id, tenant_code="ZA", now=NOW
        )

        assert result.refund.eligible is True
        assert result.job.booking_fee_status == BookingFeeStatus.WAIVED

    @pytest.mark.asyncio
    async def test_only_owner(self, db_session, make_job):
        job = await make_job()

        with pytest.raises(NotJobOwnerError):
            await cancel_job_by_customer(db_session, job.id, uuid.uuid4(), tenant_code="ZA", now=NOW)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [JobStatus.COMPLETED, JobStatus.CANCELLED])
    async def test_terminal_job(self, db_session, make_job, status):
        job = await make_job(status)

        with pytest.raises(InvalidTransitionError):
            await cancel_job_by_customer(
                db_session, job.id, job.customer_id, tenant_code="ZA", now=NOW
            )

    @pytest.mark.asyncio
    async def test_decision_is_retaken_after_a_lost_race(
        self, db_session, make_job, make_provider
    ):
        job = await make_job(JobStatus.BROADCASTED)
        provider = await make_provider()
        # A claim lands after the job was read but before the cancel is written
        await db_session.execute(
            update(Job)
            .where(Job.id == job.id)
            .values(
                status=JobStatus.ASSIGNED,
                assigned_provider_id=provider.id,
                assigned_at=ago(60),
            )
            .execution_options(synchronize_session=False)
        )

        result = await cancel_job_by_customer(
            db_session, job.id, job.customer_id, tenant_code="ZA", now=NOW
        )

        assert result.previous_status == JobStatus.ASSIGNED
        assert result.refund.reason == RefundReason.CANCELLED_WITHIN_GRACE_WINDOW
        assert result.job.provider_of_record_id == provider.id

    @pytest.mark.asyncio
    async def test_tenant_grace_window(self, db_session, assigned_job):

        db_session.add(
            PricingConfig(
                tenant_code="ZA",
                currency="ZAR",
                timezone="Africa/Johannesburg",
                base_fee=Decimal("50"),
                per_km_fee=Decimal("15"),
                cancellation_policy={"grace_seconds": 300},
            )
        )
        job, _ = await assigned_job(seconds=200)

        result = await cancel_job_by_customer(
            db_session, job.id, job.customer_id, tenant_code="ZA", now=NOW
        )

        assert result.refund.reason == RefundReason.CANCELLED_WITHIN_GRACE_WINDOW


# ---------------------------------------------------------------------------
# Provider cancel
# ---------------------------------------------------------------------------


class TestProviderCancel:
    @pytest.mark.asyncio
    async def test_cancel_inside_window(self, db_session, assigned_job):
        job, provider = await assigned_job(seconds=60)

        result = await cancel_job_by_provider(
            db_session, job.id, provider.id, tenant_code="ZA", reason="flat tyre", now=NOW
        )

        assert result.refund.reason == RefundReason.PROVIDER_CANCELLED
        assert result.penalty.cancel_count == 1
        assert result.penalty.suspended_until is None

        cancelled = result.job
        assert cancelled.status == JobStatus.CANCELLED
        assert cancelled.cancelled_by == CancelledBy.PROVIDER
        assert cancelled.booking_fee_status == BookingFeeStatus.REFUND_REQUESTED
        assert str(provider.id) in cancelled.excluded_provider_ids

        await db_session.refresh(provider)
        assert provider.active_job_id is None
        assert provider.cancel_count == 1

    @pytest.mark.asyncio
    async def test_fourth_cancel_suspends(self, db_session, assigned_job):
        job, provider = await assigned_job(
            seconds=60, cancel_count=3, last_cancelled_at=NOW - timedelta(hours=2)
        )

        result = await cancel_job_by_provider(
            db_session, job.id, provider.id, tenant_code="ZA", now=NOW
        )

        assert result.penalty.cancel_count == 4
        assert result.penalty.suspended_until == NOW + timedelta(hours=12)

    @pytest.mark.asyncio
    async def test_window_expired(self, db_session, assigned_job):
        job, provider = await assigned_job(seconds=301)

        with pytest.raises(ProviderCancelWindowExpiredError):
            await cancel_job_by_provider(db_session, job.id, provider.id, tenant_code="ZA", now=NOW)

        await db_session.refresh(job)
        assert job.status == JobStatus.ASSIGNED

    @pytest.mark.asyncio
    async def test_window_setting(self, db_session, assigned_job):
        job, provider = await assigned_job(seconds=400)

        with patch.object(settings, "provider_cancel_window_seconds", 600):
            result = await cancel_job_by_provider(
                db_session, job.id, provider.id, tenant_code="ZA", now=NOW
            )

        assert result.job.status == JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_other_provider(self, db_session, assigned_job, make_provider):
        job, _ = await assigned_job()
        stranger = await make_provider()

        with pytest.raises(NotAssignedProviderError):
            await cancel_job_by_provider(db_session, job.id, stranger.id, tenant_code="ZA", now=NOW)

    @pytest.mark.asyncio
    async def test_cannot_cancel_in_progress(self, db_session, make_provider, make_job):
        provider = await make_provider()
        job = await make_job(JobStatus.IN_PROGRESS, provider=provider, assigned_at=ago(60))

        with pytest.raises(InvalidTransitionError):
            await cancel_job_by_provider(db_session, job.id, provider.id, tenant_code="ZA", now=NOW)


# ---------------------------------------------------------------------------
# Operator cancel
# ---------------------------------------------------------------------------


class TestOperatorCancel:
    @pytest.mark.asyncio
    async def test_admin_cancel_with_refund(self, db_session, make_provider, make_job):
        provider = await make_provider()
        job = await make_job(JobStatus.IN_PROGRESS, provider=provider, assigned_at=ago(900))
        operator_id = uuid.uuid4()

        result = await cancel_job_by_operator(
            db_session, job.id, tenant_code="ZA", operator_id=operator_id, refund=True, now=NOW
        )

        assert result.cancelled_by == CancelledBy.ADMIN
        assert result.refund.eligible is True
        assert result.refund.reason == RefundReason.OPERATOR_DECISION
        assert result.job.booking_fee_status == BookingFeeStatus.REFUND_REQUESTED
        assert result.job.cancelled_by_id == operator_id
        await db_session.refresh(provider)
        assert provider.active_job_id is None
        assert provider.cancel_count == 0

    @pytest.mark.asyncio
    async def test_system_cancel_without_refund(self, db_session, make_job):
        job = await make_job(JobStatus.BROADCASTED)

        result = await cancel_job_by_operator(
            db_session, job.id, tenant_code="ZA", system=True, now=NOW
        )

        assert result.cancelled_by == CancelledBy.SYSTEM
        assert result.refund.eligible is False
        assert result.job.booking_fee_status == BookingFeeStatus.PAID


# ---------------------------------------------------------------------------
# Draft discard
# ---------------------------------------------------------------------------


class TestDiscardDraft:
    @pytest.mark.asyncio
    async def test_unpaid_draft_is_deleted(self, db_session, make_job):
        job = await make_job(JobStatus.CREATED, booking_fee_status=BookingFeeStatus.PENDING)

        await discard_draft(db_session, job.id, job.customer_id, tenant_code="ZA")

        count = (
            await db_session.execute(select(func.count()).select_from(Job))
        ).scalar_one()
        assert count == 0

    @pytest.mark.asyncio
    async def test_paid_draft_must_be_cancelled(self, db_session, make_job):
        job = await make_job(JobStatus.CREATED)

        with pytest.raises(InvalidTransitionError):
            await discard_draft(db_session, job.id, job.customer_id, tenant_code="ZA")

    @pytest.mark.asyncio
    async def test_only_owner(self, db_session, make_job):
        job = await make_job(JobStatus.CREATED, booking_fee_status=BookingFeeStatus.PENDING)

        with pytest.raises(NotJobOwnerError):
            await discard_draft(db_session, job.id, uuid.uuid4(), tenant_code="ZA")
