"""
Dispatch Service
================

Creates jobs and offers them to eligible providers.

Creation is ordered so that a job is only persisted once it can actually
be served:

1. validate the request against the tenant's rules,
2. refuse a customer who already has an active job,
3. validate the insurance code (if any) without consuming it,
4. re-check eligibility; an empty set returns ``NO_PROVIDERS`` and writes
   nothing,
5. price and persist the job as CREATED,
6. consume the insurance code; if that fails the job is deleted again,
7. broadcast straight away when nothing is owed, otherwise wait for the
   booking fee.

``broadcast_job`` is re-entrant: it serves the first broadcast from
CREATED and every manual retry from BROADCASTED against the same job id.
Notification is best-effort. Delivery outcomes are written to the
``BroadcastRecord`` and a failed push never rolls the job back.
"""

from __future__ import annotations

import enum
import logging
import random
import string
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings
from src.core.timeutils import utcnow
from src.events import jobEvents
from src.integrations.fcm import DeliveryOutcome, JobSummary, NotificationSender
from src.integrations.stripe import PaymentVerifier
from src.models.job import (
    ACTIVE_JOB_STATUSES,
    BookingFeeStatus,
    BroadcastRecord,
    Job,
    JobStatus,
)
from src.services import ephemeralStore
from src.services.eligibilityFilter import (
    CapabilityRequirement,
    EligibilityResult,
    find_eligible_providers,
)
from src.services.exceptions import (
    BookingFeeNotSettledError,
    CustomerHasActiveJobError,
    InsuranceWaiverError,
    InvalidTransitionError,
    JobNotFoundError,
    JobValidationError,
    NotJobOwnerError,
    ServiceDisabledError,
    WaiverCommitError,
)
from src.services.geoService import GeoIndex, is_valid_coordinate
from src.services.insuranceWaiver import WaiverValidation, mark_code_used, validate_code
from src.services.jobStateManager import ActorType, validate_transition
from src.services.pricingEngine import (
    PriceBreakdown,
    PriceRequest,
    PricingRules,
    calculate_price,
    load_pricing_rules,
)

logger = logging.getLogger(__name__)

_SETTLED_FEE_STATUSES: frozenset[BookingFeeStatus] = frozenset({
    BookingFeeStatus.NOT_REQUIRED,
    BookingFeeStatus.PAID,
    BookingFeeStatus.WAIVED,
})


# ---------------------------------------------------------------------------
# Request / result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WaiverClaim:
    """Insurance code presented by the customer."""

    partner_id: uuid.UUID
    code: str
    phone: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class JobRequest:
    role: str
    pickup_lat: float
    pickup_lng: float
    pickup_address: Optional[str] = None
    dropoff_lat: Optional[float] = None
    dropoff_lng: Optional[float] = None
    dropoff_address: Optional[str] = None
    sub_category: Optional[str] = None
    type_tag: Optional[str] = None
    vehicle_type: Optional[str] = None
    audience_tag: Optional[str] = None
    notes: Optional[str] = None
    insurance: Optional[WaiverClaim] = None

    def price_request(self) -> PriceRequest:
        return PriceRequest(
            role=self.role,
            pickup_lat=self.pickup_lat,
            pickup_lng=self.pickup_lng,
            dropoff_lat=self.dropoff_lat,
            dropoff_lng=self.dropoff_lng,
            sub_category=self.sub_category,
            type_tag=self.type_tag,
            vehicle_type=self.vehicle_type,
        )

    def requirement(self) -> CapabilityRequirement:
        return CapabilityRequirement(
            role=self.role,
            sub_category=self.sub_category,
            type_tag=self.type_tag,
            vehicle_type=self.vehicle_type,
            audience_tag=self.audience_tag,
        )


class DispatchStatus(str, enum.Enum):
    NO_PROVIDERS = "NO_PROVIDERS"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    BROADCASTED = "BROADCASTED"
    BROADCAST_PENDING = "BROADCAST_PENDING"
    # Replays of a job that has moved on since it was created
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class BroadcastStatus(str, enum.Enum):
    BROADCASTED = "BROADCASTED"
    NO_PROVIDERS = "NO_PROVIDERS"


@dataclass(frozen=True)
class BroadcastResult:
    status: BroadcastStatus
    job: Job
    attempt: int
    provider_ids: list[uuid.UUID] = field(default_factory=list)
    delivery: dict[uuid.UUID, DeliveryOutcome] = field(default_factory=dict)

    @property
    def delivered_count(self) -> int:
        return sum(1 for o in self.delivery.values() if o == DeliveryOutcome.DELIVERED)


@dataclass(frozen=True)
class DispatchOutcome:
    """Result of ``create_job``. ``job`` is None only for ``NO_PROVIDERS``."""

    status: DispatchStatus
    pricing: PriceBreakdown
    eligible_count: int
    job: Optional[Job] = None
    broadcast: Optional[BroadcastResult] = None
    replayed: bool = False


@dataclass(frozen=True)
class JobPreview:
    pricing: PriceBreakdown
    eligible_count: int
    waiver: Optional[WaiverValidation] = None

    @property
    def providers_available(self) -> bool:
        return self.eligible_count > 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def generate_reference_number(now: datetime | None = None) -> str:
    """Human-readable job reference, e.g. ``JOB-261019-4KQ7ZD``.

    Uniqueness is enforced by the database constraint; collisions in the
    six-character suffix are rare enough to surface as an IntegrityError.
    """
    now = now or utcnow()
    chars = string.ascii_uppercase + string.digits
    suffix = "".join(random.choices(chars, k=6))
    return f"JOB-{now:%y%m%d}-{suffix}"


def validate_request(rules: PricingRules, request: JobRequest) -> None:
    """Reject a request the tenant cannot serve. Raises before any write."""
    if not request.role:
        raise JobValidationError("role is required")
    if request.role not in rules.roles:
        raise JobValidationError(f"Unknown role '{request.role}'")
    if not rules.is_service_enabled(request.role):
        raise ServiceDisabledError(f"{request.role} is not available in {rules.tenant_code}")

    if not is_valid_coordinate(request.pickup_lat, request.pickup_lng):
        raise JobValidationError("A valid pickup location is required")

    policy = rules.role_policy(request.role)
    has_dropoff = request.dropoff_lat is not None or request.dropoff_lng is not None
    if has_dropoff and not is_valid_coordinate(request.dropoff_lat, request.dropoff_lng):
        raise JobValidationError("Dropoff location is invalid")
    if policy.requires_dropoff and not has_dropoff:
        raise JobValidationError(f"{request.role} jobs require a dropoff location")
    if policy.requires_sub_category and not request.sub_category:
        raise JobValidationError(f"{request.role} jobs require a sub-category")

    if request.insurance is not None and not rules.insurance_enabled:
        raise ServiceDisabledError(f"Insurance waivers are not available in {rules.tenant_code}")


async def _validate_waiver(
    db: AsyncSession,
    claim: WaiverClaim,
    *,
    tenant_code: str,
    now: datetime,
) -> WaiverValidation:
    validation = await validate_code(
        db,
        partner_id=claim.partner_id,
        code=claim.code,
        tenant_code=tenant_code,
        now=now,
        phone=claim.phone,
        email=claim.email,
    )
    if not validation.ok:
        logger.warning(
            "Insurance code rejected for partner %s: %s",
            claim.partner_id, validation.reason.value,
        )
        raise InsuranceWaiverError(validation.reason.value, validation.message)
    return validation


async def _find_active_job(db: AsyncSession, customer_id: uuid.UUID) -> Optional[uuid.UUID]:
    result = await db.execute(
        select(Job.id)
        .where(Job.customer_id == customer_id, Job.status.in_(ACTIVE_JOB_STATUSES))
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _eligible_for(
    db: AsyncSession,
    geo_index: GeoIndex,
    *,
    tenant_code: str,
    request: JobRequest,
    now: datetime,
    exclude: list[uuid.UUID] | None = None,
) -> EligibilityResult:
    return await find_eligible_providers(
        db,
        geo_index,
        tenant_code=tenant_code,
        requirement=request.requirement(),
        lat=request.pickup_lat,
        lng=request.pickup_lng,
        exclude=exclude or (),
        now=now,
    )


def _idempotency_key(tenant_code: str, customer_id: uuid.UUID, key: str) -> str:
    return f"{tenant_code}:{customer_id}:{key}"


def _request_from_job(job: Job) -> JobRequest:
    return JobRequest(
        role=job.role,
        pickup_lat=job.pickup_latitude,
        pickup_lng=job.pickup_longitude,
        pickup_address=job.pickup_address,
        dropoff_lat=job.dropoff_latitude,
        dropoff_lng=job.dropoff_longitude,
        dropoff_address=job.dropoff_address,
        sub_category=job.sub_category,
        type_tag=job.type_tag,
        vehicle_type=job.vehicle_type,
        audience_tag=job.audience_tag,
    )


async def get_job_for_tenant(db: AsyncSession, job_id: uuid.UUID, tenant_code: str) -> Job:
    job = await db.get(Job, job_id)
    if job is None or job.tenant_code != tenant_code:
        raise JobNotFoundError(job_id)
    return job


# ---------------------------------------------------------------------------
# Preview
# ---------------------------------------------------------------------------

async def preview_job(
    db: AsyncSession,
    geo_index: GeoIndex,
    *,
    tenant_code: str,
    request: JobRequest,
    now: datetime | None = None,
) -> JobPreview:
    """Price a request and count eligible providers. Writes nothing."""
    now = now or utcnow()
    rules = await load_pricing_rules(db, tenant_code)
    validate_request(rules, request)

    waiver: Optional[WaiverValidation] = None
    if request.insurance is not None:
        waiver = await _validate_waiver(db, request.insurance, tenant_code=tenant_code, now=now)

    eligible = await _eligible_for(db, geo_index, tenant_code=tenant_code, request=request, now=now)
    pricing = calculate_price(
        rules, request.price_request(), now, waiver_applied=waiver is not None
    )
    return JobPreview(pricing=pricing, eligible_count=len(eligible.providers), waiver=waiver)


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

async def create_job(
    db: AsyncSession,
    geo_index: GeoIndex,
    notifier: NotificationSender,
    *,
    tenant_code: str,
    customer_id: uuid.UUID,
    request: JobRequest,
    idempotency_key: Optional[str] = None,
    now: datetime | None = None,
) -> DispatchOutcome:
    """Create a job and broadcast it when no booking fee is owed.

    Raises:
        JobValidationError: The request is incomplete or malformed.
        ServiceDisabledError: The role (or insurance) is switched off.
        CustomerHasActiveJobError: The customer already has a live job.
        InsuranceWaiverError: The presented code failed validation.
        WaiverCommitError: The code could not be consumed; nothing persisted.
    """
    now = now or utcnow()

    store_key: Optional[str] = None
    if idempotency_key:
        store_key = _idempotency_key(tenant_code, customer_id, idempotency_key)
        replay = await _replay(db, store_key, tenant_code=tenant_code, now=now)
        if replay is not None:
            return replay

    rules = await load_pricing_rules(db, tenant_code)
    validate_request(rules, request)

    active_job_id = await _find_active_job(db, customer_id)
    if active_job_id is not None:
        raise CustomerHasActiveJobError(customer_id, active_job_id)

    waiver: Optional[WaiverValidation] = None
    if request.insurance is not None:
        waiver = await _validate_waiver(db, request.insurance, tenant_code=tenant_code, now=now)

    pricing = calculate_price(
        rules, request.price_request(), now, waiver_applied=waiver is not None
    )

    eligible = await _eligible_for(db, geo_index, tenant_code=tenant_code, request=request, now=now)
    if eligible.is_empty:
        logger.warning(
            "No eligible %s providers for customer %s in %s; job not created",
            request.role, customer_id, tenant_code,
        )
        return DispatchOutcome(DispatchStatus.NO_PROVIDERS, pricing=pricing, eligible_count=0)

    if waiver is not None:
        fee_status = BookingFeeStatus.WAIVED
    elif pricing.booking_fee <= 0:
        fee_status = BookingFeeStatus.NOT_REQUIRED
    else:
        fee_status = BookingFeeStatus.PENDING

    job = Job(
        reference_number=generate_reference_number(now),
        tenant_code=tenant_code,
        customer_id=customer_id,
        role=request.role,
        sub_category=request.sub_category,
        type_tag=request.type_tag,
        vehicle_type=request.vehicle_type,
        audience_tag=request.audience_tag,
        pickup_latitude=request.pickup_lat,
        pickup_longitude=request.pickup_lng,
        pickup_address=request.pickup_address,
        dropoff_latitude=request.dropoff_lat,
        dropoff_longitude=request.dropoff_lng,
        dropoff_address=request.dropoff_address,
        notes=request.notes,
        status=JobStatus.CREATED,
        excluded_provider_ids=[],
        dispatch_attempts=0,
        currency=pricing.currency,
        estimated_total=pricing.estimated_total,
        booking_fee=pricing.booking_fee,
        booking_fee_status=fee_status,
        pricing_snapshot=pricing.to_snapshot(),
        insurance_waiver=waiver.to_record(tenant_code, now) if waiver is not None else None,
    )
    db.add(job)
    await db.flush()

    if waiver is not None:
        await _commit_waiver(db, job, waiver, now)

    jobEvents.emit_job_created(job.id, customer_id, job.reference_number, tenant_code, job.role)
    logger.info(
        "Job %s (%s) created for customer %s: role=%s fee=%s %s (%s)",
        job.id, job.reference_number, customer_id, job.role,
        job.booking_fee, job.currency, fee_status.value,
    )

    if store_key is not None:
        await ephemeralStore.put_entry(
            db,
            ephemeralStore.IDEMPOTENCY_NAMESPACE,
            store_key,
            {"job_id": str(job.id)},
            ttl_seconds=settings.idempotency_ttl_seconds,
            now=now,
        )

    if fee_status not in _SETTLED_FEE_STATUSES:
        return DispatchOutcome(
            DispatchStatus.AWAITING_PAYMENT,
            pricing=pricing,
            eligible_count=len(eligible.providers),
            job=job,
        )

    broadcast = await broadcast_job(
        db, geo_index, notifier, job.id, tenant_code=tenant_code, now=now
    )
    status = (
        DispatchStatus.BROADCASTED
        if broadcast.status == BroadcastStatus.BROADCASTED
        else DispatchStatus.BROADCAST_PENDING
    )
    return DispatchOutcome(
        status,
        pricing=pricing,
        eligible_count=len(eligible.providers),
        job=broadcast.job,
        broadcast=broadcast,
    )


async def _commit_waiver(
    db: AsyncSession,
    job: Job,
    waiver: WaiverValidation,
    now: datetime,
) -> None:
    """Consume the code for *job*; on failure delete the job and raise."""
    try:
        async with db.begin_nested():
            used = await mark_code_used(db, code_id=waiver.code_id, job_id=job.id, now=now)
    except SQLAlchemyError:
        logger.exception("Store error while consuming insurance code %s", waiver.code_id)
        used = False

    if used:
        jobEvents.emit_insurance_code_used(job.id, waiver.partner_code, waiver.code)
        return

    job_id = job.id
    await db.delete(job)
    await db.flush()
    logger.warning("Job %s rolled back: insurance code %s was not consumed", job_id, waiver.code_id)
    raise WaiverCommitError("Insurance code could not be applied; please try again")


async def _replay(
    db: AsyncSession,
    store_key: str,
    *,
    tenant_code: str,
    now: datetime,
) -> Optional[DispatchOutcome]:
    entry = await ephemeralStore.get_entry(
        db, ephemeralStore.IDEMPOTENCY_NAMESPACE, store_key, now
    )
    if entry is None:
        return None

    job = await db.get(Job, uuid.UUID(entry["job_id"]))
    if job is None or job.tenant_code != tenant_code:
        # The job was discarded since; treat the key as unused.
        return None

    logger.info("Replaying job %s for idempotency key %s", job.id, store_key)
    if job.status == JobStatus.CREATED:
        status = (
            DispatchStatus.BROADCAST_PENDING
            if job.booking_fee_status in _SETTLED_FEE_STATUSES
            else DispatchStatus.AWAITING_PAYMENT
        )
    else:
        status = DispatchStatus(job.status.value)

    # The price the customer was quoted, not today's
    pricing = PriceBreakdown.from_snapshot(job.pricing_snapshot or {})
    return DispatchOutcome(status, pricing=pricing, eligible_count=0, job=job, replayed=True)


# ---------------------------------------------------------------------------
# Booking fee
# ---------------------------------------------------------------------------

async def confirm_booking_payment(
    db: AsyncSession,
    geo_index: GeoIndex,
    notifier: NotificationSender,
    verifier: PaymentVerifier,
    job_id: uuid.UUID,
    *,
    tenant_code: str,
    customer_id: uuid.UUID,
    reference: str,
    now: datetime | None = None,
) -> BroadcastResult:
    """Verify the booking fee payment and broadcast the job.

    A job whose fee is already settled is broadcast without re-verifying.
    """
    now = now or utcnow()
    job = await get_job_for_tenant(db, job_id, tenant_code)
    if job.customer_id != customer_id:
        raise NotJobOwnerError("Only the customer who created the job can pay for it")
    if job.status != JobStatus.CREATED:
        raise InvalidTransitionError(f"Cannot pay for a job in status {job.status.value}")

    if job.booking_fee_status not in _SETTLED_FEE_STATUSES:
        verification = await verifier.verify(reference)
        if not verification.paid:
            logger.warning(
                "Booking fee for job %s not confirmed (reference=%s status=%s)",
                job_id, reference, verification.status,
            )
            raise BookingFeeNotSettledError("Booking fee payment has not succeeded")

        result = await db.execute(
            update(Job)
            .where(
                Job.id == job_id,
                Job.status == JobStatus.CREATED,
                Job.booking_fee_status == BookingFeeStatus.PENDING,
            )
            .values(
                booking_fee_status=BookingFeeStatus.PAID,
                booking_fee_reference=verification.reference,
            )
            .execution_options(synchronize_session=False)
        )
        await db.refresh(job)
        if result.rowcount == 1:
            logger.info("Booking fee for job %s paid (%s)", job_id, verification.reference)
        elif job.booking_fee_status not in _SETTLED_FEE_STATUSES:
            raise InvalidTransitionError(f"Job is now {job.status.value}")

    return await broadcast_job(db, geo_index, notifier, job_id, tenant_code=tenant_code, now=now)


# ---------------------------------------------------------------------------
# Broadcast
# ---------------------------------------------------------------------------

async def broadcast_job(
    db: AsyncSession,
    geo_index: GeoIndex,
    notifier: NotificationSender,
    job_id: uuid.UUID,
    *,
    tenant_code: str,
    now: datetime | None = None,
) -> BroadcastResult:
    """Offer a job to the currently eligible providers.

    Raises:
        JobNotFoundError: Unknown job or wrong tenant.
        InvalidTransitionError: The job is past BROADCASTED.
        BookingFeeNotSettledError: A CREATED job whose fee is still pending.
    """
    now = now or utcnow()
    job = await get_job_for_tenant(db, job_id, tenant_code)

    if job.status == JobStatus.CREATED:
        check = validate_transition(job.status, JobStatus.BROADCASTED, ActorType.SYSTEM)
        if not check.allowed:
            raise InvalidTransitionError(check.reason)
        if job.booking_fee_status not in _SETTLED_FEE_STATUSES:
            raise BookingFeeNotSettledError("Booking fee must be paid before broadcasting")
    elif job.status != JobStatus.BROADCASTED or job.assigned_provider_id is not None:
        raise InvalidTransitionError(f"Cannot broadcast a job in status {job.status.value}")

    excluded = [uuid.UUID(p) for p in job.excluded_provider_ids or []]
    eligible = await _eligible_for(
        db,
        geo_index,
        tenant_code=tenant_code,
        request=_request_from_job(job),
        now=now,
        exclude=excluded,
    )
    if eligible.is_empty:
        logger.warning(
            "Broadcast of job %s found no eligible providers (status stays %s)",
            job_id, job.status.value,
        )
        return BroadcastResult(BroadcastStatus.NO_PROVIDERS, job, job.dispatch_attempts)

    observed = job.status
    stmt = update(Job).where(Job.id == job_id, Job.status == observed)
    if observed == JobStatus.BROADCASTED:
        stmt = stmt.where(Job.assigned_provider_id.is_(None))
    result = await db.execute(
        stmt.values(
            status=JobStatus.BROADCASTED,
            broadcasted_at=now,
            dispatch_attempts=Job.dispatch_attempts + 1,
        ).execution_options(synchronize_session=False)
    )
    await db.refresh(job)
    if result.rowcount != 1:
        logger.warning("Job %s changed to %s during broadcast", job_id, job.status.value)
        raise InvalidTransitionError(f"Job is now {job.status.value}")

    attempt = job.dispatch_attempts
    provider_ids = eligible.provider_ids
    record = BroadcastRecord(
        job_id=job.id,
        tenant_code=tenant_code,
        attempt=attempt,
        provider_ids=[str(p) for p in provider_ids],
        delivery={},
        created_at=now,
    )
    db.add(record)
    await db.flush()

    if observed == JobStatus.CREATED:
        jobEvents.emit_job_status_changed(
            job.id, JobStatus.CREATED.value, JobStatus.BROADCASTED.value
        )

    delivery = await _notify(notifier, job, eligible)
    record.delivery = {str(pid): outcome.value for pid, outcome in delivery.items()}
    await db.flush()

    broadcast = BroadcastResult(
        BroadcastStatus.BROADCASTED, job, attempt, provider_ids, delivery
    )
    jobEvents.emit_job_broadcasted(job.id, attempt, provider_ids, broadcast.delivered_count)
    push_attempted = any(o != DeliveryOutcome.SKIPPED for o in delivery.values())
    if push_attempted and broadcast.delivered_count == 0:
        logger.warning(
            "Job %s broadcast #%d reached none of %d providers; retry-broadcast is available",
            job_id, attempt, len(provider_ids),
        )
    else:
        logger.info(
            "Job %s broadcast #%d to %d providers (%d delivered)",
            job_id, attempt, len(provider_ids), broadcast.delivered_count,
        )
    return broadcast


async def _notify(
    notifier: NotificationSender,
    job: Job,
    eligible: EligibilityResult,
) -> dict[uuid.UUID, DeliveryOutcome]:
    nearest = eligible.providers[0].distance_m if eligible.providers else None
    summary = JobSummary(
        job_id=job.id,
        reference_number=job.reference_number,
        role=job.role,
        pickup_address=job.pickup_address,
        distance_m=nearest,
        currency=job.currency,
        estimated_total=str(job.estimated_total),
    )
    tokens = {e.provider.id: e.provider.push_token for e in eligible.providers}
    try:
        outcomes = await notifier.notify(tokens, summary)
    except Exception:
        logger.exception("Notifying providers about job %s failed", job.id)
        return {pid: DeliveryOutcome.FAILED for pid in tokens}

    return {pid: outcomes.get(pid, DeliveryOutcome.FAILED) for pid in tokens}

