"""
Job API Routes
==============

REST endpoints for the job lifecycle.

Routes:
  POST   /api/v1/jobs/preview            -- Price + eligible count, no side effects
  POST   /api/v1/jobs                    -- Create (and broadcast when nothing is owed)
  GET    /api/v1/jobs/{job_id}           -- Job detail
  POST   /api/v1/jobs/{job_id}/payment   -- Confirm booking fee, then broadcast
  POST   /api/v1/jobs/{job_id}/broadcast -- Retry broadcast (operator)
  DELETE /api/v1/jobs/{job_id}           -- Discard an unpaid draft
  POST   /api/v1/jobs/{job_id}/claim     -- Provider claims a broadcast job
  POST   /api/v1/jobs/{job_id}/start     -- Provider starts at the pickup
  POST   /api/v1/jobs/{job_id}/complete  -- Provider completes
  POST   /api/v1/jobs/{job_id}/cancel    -- Customer, provider or operator cancel

Negative outcomes that are not errors (no providers, a lost claim, a
failed proximity check) are returned as bodies with an outcome code.
"""

from __future__ import annotations

import logging
import uuid
from typing import Annotated, Optional

from fastapi import APIRouter, Header, HTTPException, Response, status

from src.api.deps import (
    CurrentActor,
    DBSession,
    GeoIndexDep,
    NotifierDep,
    PaymentVerifierDep,
    Tenant,
    http_error,
    require_role,
)
from src.api.schemas.job import (
    BroadcastOut,
    BroadcastResponse,
    CancelResponse,
    ClaimResponse,
    JobCancelRequest,
    JobCreateRequest,
    JobCreateResponse,
    JobOut,
    JobPreviewResponse,
    PaymentConfirmRequest,
    StartResponse,
)
from src.api.schemas.pricing import PriceBreakdownOut
from src.services import assignmentArbiter, dispatchService, jobService
from src.services.dispatchService import BroadcastResult, JobRequest, WaiverClaim
from src.services.exceptions import DispatchError
from src.services.jobStateManager import ActorType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["Jobs"])


def _to_job_request(body: JobCreateRequest) -> JobRequest:
    insurance = None
    if body.insurance is not None:
        insurance = WaiverClaim(
            partner_id=body.insurance.partner_id,
            code=body.insurance.code,
            phone=body.insurance.phone,
            email=body.insurance.email,
        )
    return JobRequest(
        role=body.role.strip().upper(),
        pickup_lat=body.pickup.latitude,
        pickup_lng=body.pickup.longitude,
        pickup_address=body.pickup.address,
        dropoff_lat=body.dropoff.latitude if body.dropoff else None,
        dropoff_lng=body.dropoff.longitude if body.dropoff else None,
        dropoff_address=body.dropoff.address if body.dropoff else None,
        sub_category=body.sub_category,
        type_tag=body.type_tag,
        vehicle_type=body.vehicle_type,
        audience_tag=body.audience_tag,
        notes=body.notes,
        insurance=insurance,
    )


def _broadcast_out(result: BroadcastResult) -> BroadcastOut:
    return BroadcastOut(
        status=result.status.value,
        attempt=result.attempt,
        provider_count=len(result.provider_ids),
        delivered_count=result.delivered_count,
    )


# ---------------------------------------------------------------------------
# POST /api/v1/jobs/preview
# ---------------------------------------------------------------------------

@router.post(
    "/preview",
    response_model=JobPreviewResponse,
    summary="Preview price and provider availability",
)
async def preview_job(
    db: DBSession,
    geo_index: GeoIndexDep,
    tenant: Tenant,
    body: JobCreateRequest,
) -> JobPreviewResponse:
    try:
        preview = await dispatchService.preview_job(
            db, geo_index, tenant_code=tenant, request=_to_job_request(body)
        )
    except DispatchError as exc:
        raise http_error(exc)

    return JobPreviewResponse(
        pricing=PriceBreakdownOut.model_validate(preview.pricing),
        eligible_count=preview.eligible_count,
        providers_available=preview.providers_available,
        waiver_applied=preview.waiver is not None,
    )


# ---------------------------------------------------------------------------
# POST /api/v1/jobs
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=JobCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a job",
    description=(
        "Validates the request, re-checks provider eligibility and persists the "
        "job. Jobs with a waived or zero booking fee are broadcast immediately; "
        "otherwise the job waits for payment. When no provider is eligible "
        "nothing is created and status is NO_PROVIDERS."
    ),
)
async def create_job(
    db: DBSession,
    geo_index: GeoIndexDep,
    notifier: NotifierDep,
    tenant: Tenant,
    actor: CurrentActor,
    body: JobCreateRequest,
    response: Response,
    idempotency_key: Annotated[Optional[str], Header()] = None,
) -> JobCreateResponse:
    require_role(actor, ActorType.CUSTOMER)
    try:
        outcome = await dispatchService.create_job(
            db,
            geo_index,
            notifier,
            tenant_code=tenant,
            customer_id=actor.actor_id,
            request=_to_job_request(body),
            idempotency_key=idempotency_key,
        )
    except DispatchError as exc:
        raise http_error(exc)

    if outcome.job is None or outcome.replayed:
        response.status_code = status.HTTP_200_OK

    return JobCreateResponse(
        status=outcome.status.value,
        job=JobOut.model_validate(outcome.job) if outcome.job is not None else None,
        pricing=PriceBreakdownOut.model_validate(outcome.pricing),
        eligible_count=outcome.eligible_count,
        broadcast=_broadcast_out(outcome.broadcast) if outcome.broadcast else None,
        replayed=outcome.replayed,
    )


# ---------------------------------------------------------------------------
# GET /api/v1/jobs/{job_id}
# ---------------------------------------------------------------------------

@router.get("/{job_id}", response_model=JobOut, summary="Get job detail")
async def get_job(
    db: DBSession,
    tenant: Tenant,
    actor: CurrentActor,
    job_id: uuid.UUID,
) -> JobOut:
    try:
        job = await jobService.get_job(db, job_id, tenant_code=tenant)
    except DispatchError as exc:
        raise http_error(exc)

    visible = (
        actor.is_operator
        or (actor.role == ActorType.CUSTOMER and job.customer_id == actor.actor_id)
        or (actor.role == ActorType.PROVIDER and job.assigned_provider_id == actor.actor_id)
    )
    if not visible:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "JOB_NOT_FOUND", "message": f"Job {job_id} not found"},
        )
    return JobOut.model_validate(job)


# ---------------------------------------------------------------------------
# POST /api/v1/jobs/{job_id}/payment
# ---------------------------------------------------------------------------

@router.post(
    "/{job_id}/payment",
    response_model=BroadcastResponse,
    summary="Confirm the booking fee and broadcast",
)
async def confirm_payment(
    db: DBSession,
    geo_index: GeoIndexDep,
    notifier: NotifierDep,
    verifier: PaymentVerifierDep,
    tenant: Tenant,
    actor: CurrentActor,
    job_id: uuid.UUID,
    body: PaymentConfirmRequest,
) -> BroadcastResponse:
    require_role(actor, ActorType.CUSTOMER)
    try:
        result = await dispatchService.confirm_booking_payment(
            db,
            geo_index,
            notifier,
            verifier,
            job_id,
            tenant_code=tenant,
            customer_id=actor.actor_id,
            reference=body.reference,
        )
    except DispatchError as exc:
        raise http_error(exc)

    return BroadcastResponse(job=JobOut.model_validate(result.job), broadcast=_broadcast_out(result))


# ---------------------------------------------------------------------------
# POST /api/v1/jobs/{job_id}/broadcast
# ---------------------------------------------------------------------------

@router.post(
    "/{job_id}/broadcast",
    response_model=BroadcastResponse,
    summary="Retry broadcast",
    description="Re-offers a CREATED (fee settled) or BROADCASTED job to the current eligible set.",
)
async def retry_broadcast(
    db: DBSession,
    geo_index: GeoIndexDep,
    notifier: NotifierDep,
    tenant: Tenant,
    actor: CurrentActor,
    job_id: uuid.UUID,
) -> BroadcastResponse:
    require_role(actor, ActorType.ADMIN, ActorType.SYSTEM)
    try:
        result = await dispatchService.broadcast_job(
            db, geo_index, notifier, job_id, tenant_code=tenant
        )
    except DispatchError as exc:
        raise http_error(exc)

    return BroadcastResponse(job=JobOut.model_validate(result.job), broadcast=_broadcast_out(result))


# ---------------------------------------------------------------------------
# DELETE /api/v1/jobs/{job_id}
# ---------------------------------------------------------------------------

@router.delete(
    "/{job_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Discard an unpaid draft",
)
async def discard_draft(
    db: DBSession,
    tenant: Tenant,
    actor: CurrentActor,
    job_id: uuid.UUID,
) -> Response:
    require_role(actor, ActorType.CUSTOMER)
    try:
        await jobService.discard_draft(db, job_id, actor.actor_id, tenant_code=tenant)
    except DispatchError as exc:
        raise http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# POST /api/v1/jobs/{job_id}/claim
# ---------------------------------------------------------------------------

@router.post(
    "/{job_id}/claim",
    response_model=ClaimResponse,
    summary="Claim a broadcast job",
    description=(
        "At most one provider wins. Losers receive 409 with outcome "
        "ALREADY_ASSIGNED, JOB_UNAVAILABLE or PROVIDER_BUSY."
    ),
)
async def claim_job(
    db: DBSession,
    tenant: Tenant,
    actor: CurrentActor,
    job_id: uuid.UUID,
    response: Response,
) -> ClaimResponse:
    require_role(actor, ActorType.PROVIDER)
    try:
        result = await assignmentArbiter.claim_job(
            db, job_id, actor.actor_id, tenant_code=tenant
        )
    except DispatchError as exc:
        raise http_error(exc)

    if not result.won:
        response.status_code = status.HTTP_409_CONFLICT

    return ClaimResponse(
        outcome=result.outcome.value,
        job_id=result.job_id,
        provider_id=result.provider_id,
        job_status=result.job_status,
        assigned_at=result.assigned_at,
    )


# ---------------------------------------------------------------------------
# POST /api/v1/jobs/{job_id}/start
# ---------------------------------------------------------------------------

@router.post(
    "/{job_id}/start",
    response_model=StartResponse,
    summary="Start a job at the pickup",
    description=(
        "Requires the provider's last reported position to be within the "
        "start radius of the pickup. Failures return 422 with a code and the "
        "measured and allowed distance."
    ),
)
async def start_job(
    db: DBSession,
    tenant: Tenant,
    actor: CurrentActor,
    job_id: uuid.UUID,
    response: Response,
) -> StartResponse:
    require_role(actor, ActorType.PROVIDER)
    try:
        result = await jobService.start_job(db, job_id, actor.actor_id, tenant_code=tenant)
    except DispatchError as exc:
        raise http_error(exc)

    if not result.ok:
        response.status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    return StartResponse(
        ok=result.ok,
        code=result.code.value if result.code else None,
        distance_m=result.distance_m,
        max_allowed_m=result.max_allowed_m,
        job=JobOut.model_validate(result.job),
    )


# ---------------------------------------------------------------------------
# POST /api/v1/jobs/{job_id}/complete
# ---------------------------------------------------------------------------

@router.post("/{job_id}/complete", response_model=JobOut, summary="Complete a job")
async def complete_job(
    db: DBSession,
    tenant: Tenant,
    actor: CurrentActor,
    job_id: uuid.UUID,
) -> JobOut:
    require_role(actor, ActorType.PROVIDER)
    try:
        job = await jobService.complete_job(db, job_id, actor.actor_id, tenant_code=tenant)
    except DispatchError as exc:
        raise http_error(exc)
    return JobOut.model_validate(job)


# ---------------------------------------------------------------------------
# POST /api/v1/jobs/{job_id}/cancel
# ---------------------------------------------------------------------------

@router.post(
    "/{job_id}/cancel",
    response_model=CancelResponse,
    summary="Cancel a job",
    description=(
        "Customers may cancel any non-terminal job; refund eligibility follows "
        "the tenant's grace and no-show windows. Providers may cancel only "
        "while ASSIGNED and inside the provider cancel window. Operators may "
        "cancel any non-terminal job."
    ),
)
async def cancel_job(
    db: DBSession,
    tenant: Tenant,
    actor: CurrentActor,
    job_id: uuid.UUID,
    body: JobCancelRequest,
) -> CancelResponse:
    try:
        if actor.role == ActorType.CUSTOMER:
            result = await jobService.cancel_job_by_customer(
                db, job_id, actor.actor_id, tenant_code=tenant, reason=body.reason
            )
        elif actor.role == ActorType.PROVIDER:
            result = await jobService.cancel_job_by_provider(
                db, job_id, actor.actor_id, tenant_code=tenant, reason=body.reason
            )
        else:
            result = await jobService.cancel_job_by_operator(
                db,
                job_id,
                tenant_code=tenant,
                operator_id=actor.actor_id,
                system=actor.role == ActorType.SYSTEM,
                refund=body.refund,
                reason=body.reason,
            )
    except DispatchError as exc:
        raise http_error(exc)

    return CancelResponse(
        job=JobOut.model_validate(result.job),
        previous_status=result.previous_status,
        refund_eligible=result.refund.eligible,
        refund_reason=result.refund.reason.value,
        provider_cancel_count=result.penalty.cancel_count if result.penalty else None,
        provider_suspended_until=result.penalty.suspended_until if result.penalty else None,
    )
