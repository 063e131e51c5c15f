"""
Job Service
===========

Lifecycle operations on an existing job: start, complete, cancel and
draft discard. Creation and broadcast live in ``dispatchService`` and the
claim in ``assignmentArbiter``.

Every write here is a conditional UPDATE on the status that was observed
when the decision was made. When another request got there first the job
is re-read and the decision taken again, up to
``settings.cancel_max_attempts`` times.

Usage::

    from src.services import jobService

    result = await jobService.start_job(db, job_id, provider_id, tenant_code="ZA")
    if not result.ok:
        ...  # result.code, result.distance_m, result.max_allowed_m
"""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings
from src.core.timeutils import utcnow
from src.events import jobEvents
from src.models.job import BookingFeeStatus, CancelledBy, Job, JobStatus
from src.models.provider import ProviderState
from src.services.assignmentArbiter import release_provider
from src.services.exceptions import (
    ConcurrentJobUpdateError,
    InvalidTransitionError,
    JobNotFoundError,
    NotAssignedProviderError,
    NotJobOwnerError,
    ProviderCancelWindowExpiredError,
)
from src.services.geoService import haversine_meters, is_valid_coordinate
from src.services.jobStateManager import (
    ActorType,
    RefundDecision,
    RefundReason,
    evaluate_customer_refund,
    provider_cancel_window_open,
    validate_discard,
    validate_transition,
)
from src.services.pricingEngine import load_pricing_rules
from src.services.providerService import (
    CancelPenalty,
    get_provider,
    record_provider_cancellation,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_job(
    db: AsyncSession,
    job_id: uuid.UUID,
    *,
    tenant_code: str,
    refresh: bool = False,
) -> Job:
    """Load a job inside a tenant. Other tenants' jobs are reported as missing."""
    job = await db.get(Job, job_id, populate_existing=refresh)
    if job is None or job.tenant_code != tenant_code:
        raise JobNotFoundError(job_id)
    return job


def _require_transition(current: JobStatus, target: JobStatus, actor: ActorType) -> None:
    check = validate_transition(current, target, actor)
    if not check.allowed:
        raise InvalidTransitionError(check.reason)


# ---------------------------------------------------------------------------
# Start
# ---------------------------------------------------------------------------

class StartFailure(str, enum.Enum):
    PICKUP_LOCATION_MISSING = "PICKUP_LOCATION_MISSING"
    PROVIDER_GPS_MISSING = "PROVIDER_GPS_MISSING"
    PROVIDER_GPS_INVALID = "PROVIDER_GPS_INVALID"
    TOO_FAR_FROM_PICKUP = "TOO_FAR_FROM_PICKUP"


@dataclass(frozen=True)
class StartResult:
    ok: bool
    job: Job
    code: Optional[StartFailure] = None
    distance_m: Optional[float] = None
    max_allowed_m: float = 0.0


def check_start_proximity(
    job: Job,
    provider: ProviderState,
    max_allowed_m: float,
) -> tuple[Optional[StartFailure], Optional[float]]:
    """Return ``(failure, distance_m)``; failure is None when close enough."""
    if not is_valid_coordinate(job.pickup_latitude, job.pickup_longitude):
        return StartFailure.PICKUP_LOCATION_MISSING, None
    if provider.latitude is None or provider.longitude is None:
        return StartFailure.PROVIDER_GPS_MISSING, None
    if not is_valid_coordinate(provider.latitude, provider.longitude):
        return StartFailure.PROVIDER_GPS_INVALID, None

    distance = haversine_meters(
        job.pickup_latitude, job.pickup_longitude, provider.latitude, provider.longitude
    )
    if distance > max_allowed_m:
        return StartFailure.TOO_FAR_FROM_PICKUP, distance
    return None, distance


async def start_job(
    db: AsyncSession,
    job_id: uuid.UUID,
    provider_id: uuid.UUID,
    *,
    tenant_code: str,
    now: datetime | None = None,
) -> StartResult:
    """Move ASSIGNED -> IN_PROGRESS once the provider is at the pickup.

    A failed proximity check is returned as ``StartResult(ok=False)`` with
    the measured and allowed distance; the job is left untouched.
    """
    now = now or utcnow()
    max_allowed = settings.start_proximity_meters

    job = await get_job(db, job_id, tenant_code=tenant_code)
    _require_transition(job.status, JobStatus.IN_PROGRESS, ActorType.PROVIDER)
    if job.assigned_provider_id != provider_id:
        raise NotAssignedProviderError("Only the assigned provider can start this job")

    provider = await get_provider(db, provider_id, for_tenant=tenant_code)
    failure, distance = check_start_proximity(job, provider, max_allowed)
    if failure is not None:
        logger.warning(
            "Provider %s cannot start job %s: %s (distance=%s, allowed=%.0fm)",
            provider_id, job_id, failure.value,
            f"{distance:.1f}m" if distance is not None else "n/a", max_allowed,
        )
        return StartResult(
            ok=False, job=job, code=failure, distance_m=distance, max_allowed_m=max_allowed
        )

    result = await db.execute(
        update(Job)
        .where(
            Job.id == job_id,
            Job.status == JobStatus.ASSIGNED,
            Job.assigned_provider_id == provider_id,
        )
        .values(status=JobStatus.IN_PROGRESS, started_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(job)
    if result.rowcount != 1:
        raise InvalidTransitionError(f"Job is now {job.status.value}")

    jobEvents.emit_job_status_changed(
        job_id, JobStatus.ASSIGNED.value, JobStatus.IN_PROGRESS.value, provider_id
    )
    logger.info("Job %s started by provider %s (%.1fm from pickup)", job_id, provider_id, distance)
    return StartResult(ok=True, job=job, distance_m=distance, max_allowed_m=max_allowed)


# ---------------------------------------------------------------------------
# Complete
# ---------------------------------------------------------------------------

async def complete_job(
    db: AsyncSession,
    job_id: uuid.UUID,
    provider_id: uuid.UUID,
    *,
    tenant_code: str,
    now: datetime | None = None,
) -> Job:
    """Move IN_PROGRESS -> COMPLETED and free the provider."""
    now = now or utcnow()

    job = await get_job(db, job_id, tenant_code=tenant_code)
    _require_transition(job.status, JobStatus.COMPLETED, ActorType.PROVIDER)
    if job.assigned_provider_id != provider_id:
        raise NotAssignedProviderError("Only the assigned provider can complete this job")

    result = await db.execute(
        update(Job)
        .where(
            Job.id == job_id,
            Job.status == JobStatus.IN_PROGRESS,
            Job.assigned_provider_id == provider_id,
        )
        .values(
            status=JobStatus.COMPLETED,
            completed_at=now,
            provider_of_record_id=provider_id,
            assigned_provider_id=None,
        )
        .execution_options(synchronize_session=False)
    )
    await db.refresh(job)
    if result.rowcount != 1:
        raise InvalidTransitionError(f"Job is now {job.status.value}")

    await release_provider(db, provider_id, job_id)
    await db.execute(
        update(ProviderState)
        .where(ProviderState.id == provider_id)
        .values(jobs_completed=ProviderState.jobs_completed + 1)
        .execution_options(synchronize_session=False)
    )

    jobEvents.emit_job_status_changed(
        job_id, JobStatus.IN_PROGRESS.value, JobStatus.COMPLETED.value, provider_id
    )
    jobEvents.emit_job_completed(job_id, provider_id)
    logger.info("Job %s completed by provider %s", job_id, provider_id)
    return job


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CancelResult:
    job: Job
    cancelled_by: CancelledBy
    refund: RefundDecision
    previous_status: JobStatus
    penalty: Optional[CancelPenalty] = None


@dataclass(frozen=True)
class _CancelPlan:
    observed_status: JobStatus
    observed_provider_id: Optional[uuid.UUID]
    refund: RefundDecision


async def _plan_customer_cancel(
    db: AsyncSession, job: Job, actor_id: uuid.UUID, now: datetime
) -> _CancelPlan:
    if job.customer_id != actor_id:
        raise NotJobOwnerError("Only the customer who created the job can cancel it")
    _require_transition(job.status, JobStatus.CANCELLED, ActorType.CUSTOMER)

    policy = (await load_pricing_rules(db, job.tenant_code)).cancellation
    refund = evaluate_customer_refund(
        job.status,
        job.assigned_at,
        now,
        grace_seconds=policy.grace_seconds,
        no_show_seconds=policy.no_show_seconds,
        booking_fee_status=job.booking_fee_status,
        refund_if_no_provider=policy.refund_if_no_provider,
    )
    if refund.reason == RefundReason.ASSIGNMENT_TIME_UNKNOWN:
        logger.warning("Job %s is ASSIGNED without assigned_at; no refund granted", job.id)
    return _CancelPlan(job.status, job.assigned_provider_id, refund)


async def _plan_provider_cancel(
    db: AsyncSession, job: Job, actor_id: uuid.UUID, now: datetime
) -> _CancelPlan:
    if job.assigned_provider_id != actor_id:
        raise NotAssignedProviderError("Only the assigned provider can cancel this job")
    _require_transition(job.status, JobStatus.CANCELLED, ActorType.PROVIDER)

    policy = (await load_pricing_rules(db, job.tenant_code)).cancellation
    if not provider_cancel_window_open(job.assigned_at, now, policy.provider_cancel_window_seconds):
        raise ProviderCancelWindowExpiredError(
            f"Providers may only cancel within {policy.provider_cancel_window_seconds}s "
            f"of accepting a job"
        )
    return _CancelPlan(
        job.status,
        job.assigned_provider_id,
        RefundDecision(eligible=True, reason=RefundReason.PROVIDER_CANCELLED),
    )


def _plan_operator_cancel(job: Job, actor: ActorType, refund: bool) -> _CancelPlan:
    _require_transition(job.status, JobStatus.CANCELLED, actor)
    decision = (
        RefundDecision(eligible=True, reason=RefundReason.OPERATOR_DECISION)
        if refund
        else RefundDecision(eligible=False, reason=RefundReason.OPERATOR_DECISION)
    )
    return _CancelPlan(job.status, job.assigned_provider_id, decision)


async def _cancel(
    db: AsyncSession,
    job_id: uuid.UUID,
    *,
    tenant_code: str,
    cancelled_by: CancelledBy,
    actor_id: Optional[uuid.UUID],
    reason: Optional[str],
    now: datetime,
    refund: bool = False,
) -> CancelResult:
    for attempt in range(1, settings.cancel_max_attempts + 1):
        job = await get_job(db, job_id, tenant_code=tenant_code, refresh=attempt > 1)

        if cancelled_by == CancelledBy.CUSTOMER:
            plan = await _plan_customer_cancel(db, job, actor_id, now)
        elif cancelled_by == CancelledBy.PROVIDER:
            plan = await _plan_provider_cancel(db, job, actor_id, now)
        else:
            actor = ActorType.ADMIN if cancelled_by == CancelledBy.ADMIN else ActorType.SYSTEM
            plan = _plan_operator_cancel(job, actor, refund)

        fee_status = job.booking_fee_status
        if plan.refund.eligible and fee_status == BookingFeeStatus.PAID:
            fee_status = BookingFeeStatus.REFUND_REQUESTED

        stmt = update(Job).where(Job.id == job_id, Job.status == plan.observed_status)
        if plan.observed_provider_id is None:
            stmt = stmt.where(Job.assigned_provider_id.is_(None))
        else:
            stmt = stmt.where(Job.assigned_provider_id == plan.observed_provider_id)

        excluded = list(job.excluded_provider_ids or [])
        if cancelled_by == CancelledBy.PROVIDER:
            excluded.append(str(plan.observed_provider_id))

        result = await db.execute(
            stmt.values(
                status=JobStatus.CANCELLED,
                cancelled_at=now,
                cancelled_by=cancelled_by,
                cancelled_by_id=actor_id,
                cancel_reason=reason,
                refund_eligible=plan.refund.eligible,
                refund_reason=plan.refund.reason.value,
                booking_fee_status=fee_status,
                assigned_provider_id=None,
                provider_of_record_id=plan.observed_provider_id or Job.provider_of_record_id,
                excluded_provider_ids=excluded,
            ).execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            break
        logger.info(
            "Cancel of job %s lost a race on attempt %d (was %s); re-evaluating",
            job_id, attempt, plan.observed_status.value,
        )
    else:
        raise ConcurrentJobUpdateError(
            f"Job {job_id} kept changing; cancellation was not applied"
        )

    await db.refresh(job)

    penalty: Optional[CancelPenalty] = None
    if plan.observed_provider_id is not None:
        await release_provider(db, plan.observed_provider_id, job_id)
        if cancelled_by == CancelledBy.PROVIDER:
            provider = await get_provider(db, plan.observed_provider_id)
            penalty = await record_provider_cancellation(db, provider, now, job_id)

    jobEvents.emit_job_status_changed(
        job_id, plan.observed_status.value, JobStatus.CANCELLED.value, actor_id
    )
    jobEvents.emit_job_cancelled(
        job_id, actor_id, cancelled_by.value, reason, plan.refund.eligible
    )
    logger.info(
        "Job %s cancelled by %s %s from %s (refund=%s, %s)",
        job_id, cancelled_by.value, actor_id, plan.observed_status.value,
        plan.refund.eligible, plan.refund.reason.value,
    )
    return CancelResult(
        job=job,
        cancelled_by=cancelled_by,
        refund=plan.refund,
        previous_status=plan.observed_status,
        penalty=penalty,
    )


async def cancel_job_by_customer(
    db: AsyncSession,
    job_id: uuid.UUID,
    customer_id: uuid.UUID,
    *,
    tenant_code: str,
    reason: Optional[str] = None,
    now: datetime | None = None,
) -> CancelResult:
    return await _cancel(
        db,
        job_id,
        tenant_code=tenant_code,
        cancelled_by=CancelledBy.CUSTOMER,
        actor_id=customer_id,
        reason=reason,
        now=now or utcnow(),
    )


async def cancel_job_by_provider(
    db: AsyncSession,
    job_id: uuid.UUID,
    provider_id: uuid.UUID,
    *,
    tenant_code: str,
    reason: Optional[str] = None,
    now: datetime | None = None,
) -> CancelResult:
    """Back out of an ASSIGNED job inside the provider cancel window.

    The customer is refunded, the provider is excluded from the job and their
    rolling cancel counter moves (suspending them past the threshold).
    """
    return await _cancel(
        db,
        job_id,
        tenant_code=tenant_code,
        cancelled_by=CancelledBy.PROVIDER,
        actor_id=provider_id,
        reason=reason,
        now=now or utcnow(),
    )


async def cancel_job_by_operator(
    db: AsyncSession,
    job_id: uuid.UUID,
    *,
    tenant_code: str,
    operator_id: Optional[uuid.UUID] = None,
    system: bool = False,
    refund: bool = False,
    reason: Optional[str] = None,
    now: datetime | None = None,
) -> CancelResult:
    """Admin or system cancel from any non-terminal state."""
    return await _cancel(
        db,
        job_id,
        tenant_code=tenant_code,
        cancelled_by=CancelledBy.SYSTEM if system else CancelledBy.ADMIN,
        actor_id=operator_id,
        reason=reason,
        now=now or utcnow(),
        refund=refund,
    )


# ---------------------------------------------------------------------------
# Draft discard
# ---------------------------------------------------------------------------

async def discard_draft(
    db: AsyncSession,
    job_id: uuid.UUID,
    customer_id: uuid.UUID,
    *,
    tenant_code: str,
) -> None:
    """Delete a CREATED job whose booking fee was never paid or waived."""
    job = await get_job(db, job_id, tenant_code=tenant_code)
    if job.customer_id != customer_id:
        raise NotJobOwnerError("Only the customer who created the job can discard it")

    check = validate_discard(job.status, job.booking_fee_status)
    if not check.allowed:
        raise InvalidTransitionError(check.reason)

    result = await db.execute(
        delete(Job)
        .where(
            Job.id == job_id,
            Job.status == JobStatus.CREATED,
            Job.booking_fee_status == job.booking_fee_status,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrentJobUpdateError(f"Job {job_id} changed before it could be discarded")

    db.expunge(job)
    jobEvents.emit_job_discarded(job_id, customer_id)
    logger.info("Draft job %s discarded by customer %s", job_id, customer_id)
