"""
Assignment Arbiter
==================

Resolves the race between providers who were offered the same job.

A claim is a single conditional UPDATE on the job row::

    UPDATE jobs
       SET status = 'ASSIGNED', assigned_provider_id = :p, assigned_at = :now
     WHERE id = :job AND status = 'BROADCASTED' AND assigned_provider_id IS NULL

Exactly one concurrent claim can match the WHERE clause; every other
claimant sees zero affected rows and gets ``ALREADY_ASSIGNED`` (or
``JOB_UNAVAILABLE`` if the job was cancelled or never broadcast). Losing is
a normal outcome, not an error.

After winning, the provider's ``active_job_id`` is set with its own
conditional update. If the provider turns out to hold another job already,
the job claim is reverted and ``PROVIDER_BUSY`` is returned, so a provider
never ends up with two active jobs.

``release_provider`` and ``reconcile_active_jobs`` clear stale
``active_job_id`` markers after completion or cancellation.
"""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.timeutils import ensure_utc, utcnow
from src.events import jobEvents
from src.models.job import BroadcastRecord, Job, JobStatus
from src.models.provider import ProviderState, VerificationStatus
from src.services.exceptions import JobNotFoundError, ProviderNotEligibleError
from src.services.providerService import get_provider

logger = logging.getLogger(__name__)


class ClaimOutcome(str, enum.Enum):
    ASSIGNED = "ASSIGNED"
    ALREADY_ASSIGNED = "ALREADY_ASSIGNED"
    JOB_UNAVAILABLE = "JOB_UNAVAILABLE"
    PROVIDER_BUSY = "PROVIDER_BUSY"


_TAKEN_STATUSES: frozenset[JobStatus] = frozenset({
    JobStatus.ASSIGNED,
    JobStatus.IN_PROGRESS,
    JobStatus.COMPLETED,
})


@dataclass(frozen=True)
class ClaimResult:
    outcome: ClaimOutcome
    job_id: uuid.UUID
    provider_id: uuid.UUID
    job_status: Optional[JobStatus] = None
    assigned_at: Optional[datetime] = None

    @property
    def won(self) -> bool:
        return self.outcome == ClaimOutcome.ASSIGNED


def _check_claimant(provider: ProviderState, now: datetime) -> None:
    if provider.verification_status != VerificationStatus.APPROVED:
        raise ProviderNotEligibleError("Provider is not verified")
    if provider.is_banned:
        raise ProviderNotEligibleError("Provider is banned")
    suspended_until = ensure_utc(provider.suspended_until)
    if suspended_until is not None and suspended_until > now:
        raise ProviderNotEligibleError(
            f"Provider is suspended until {suspended_until.isoformat()}"
        )


async def claim_job(
    db: AsyncSession,
    job_id: uuid.UUID,
    provider_id: uuid.UUID,
    *,
    tenant_code: str,
    now: datetime | None = None,
) -> ClaimResult:
    """Attempt to assign a BROADCASTED job to a provider.

    Raises:
        JobNotFoundError: If the job does not exist in the tenant.
        ProviderNotFoundError: If the provider does not exist in the tenant.
        ProviderNotEligibleError: If the provider may not take jobs at all.
    """
    now = now or utcnow()

    provider = await get_provider(db, provider_id, for_tenant=tenant_code)
    _check_claimant(provider, now)

    job = await db.get(Job, job_id)
    if job is None or job.tenant_code != tenant_code:
        raise JobNotFoundError(job_id)

    if str(provider_id) in (job.excluded_provider_ids or []):
        return ClaimResult(ClaimOutcome.JOB_UNAVAILABLE, job_id, provider_id, job.status)

    if job.role != provider.role:
        raise ProviderNotEligibleError("Provider role does not match the job")

    if provider.active_job_id is not None and provider.active_job_id != job_id:
        return ClaimResult(ClaimOutcome.PROVIDER_BUSY, job_id, provider_id, job.status)

    # -- The arbitration point ------------------------------------------------
    claim = await db.execute(
        update(Job)
        .where(
            Job.id == job_id,
            Job.status == JobStatus.BROADCASTED,
            Job.assigned_provider_id.is_(None),
        )
        .values(
            status=JobStatus.ASSIGNED,
            assigned_provider_id=provider_id,
            assigned_at=now,
        )
        .execution_options(synchronize_session=False)
    )

    if claim.rowcount != 1:
        await db.refresh(job)
        outcome = (
            ClaimOutcome.ALREADY_ASSIGNED
            if job.status in _TAKEN_STATUSES
            else ClaimOutcome.JOB_UNAVAILABLE
        )
        logger.info(
            "Claim on job %s by provider %s lost: %s (status=%s)",
            job_id, provider_id, outcome.value, job.status.value,
        )
        return ClaimResult(outcome, job_id, provider_id, job.status)

    marked = await db.execute(
        update(ProviderState)
        .where(ProviderState.id == provider_id, ProviderState.active_job_id.is_(None))
        .values(active_job_id=job_id)
        .execution_options(synchronize_session=False)
    )
    if marked.rowcount != 1:
        # Provider picked up another job in the meantime: give this one back
        await db.execute(
            update(Job)
            .where(
                Job.id == job_id,
                Job.status == JobStatus.ASSIGNED,
                Job.assigned_provider_id == provider_id,
            )
            .values(status=JobStatus.BROADCASTED, assigned_provider_id=None, assigned_at=None)
            .execution_options(synchronize_session=False)
        )
        await db.refresh(job)
        logger.warning(
            "Provider %s won job %s while busy; claim reverted", provider_id, job_id
        )
        return ClaimResult(ClaimOutcome.PROVIDER_BUSY, job_id, provider_id, job.status)

    await _stamp_broadcast_record(db, job_id, provider_id, now)

    await db.refresh(job)
    await db.refresh(provider)

    jobEvents.emit_job_assigned(job_id, provider_id)
    jobEvents.emit_job_status_changed(
        job_id, JobStatus.BROADCASTED.value, JobStatus.ASSIGNED.value, provider_id
    )
    logger.info("Job %s assigned to provider %s", job_id, provider_id)

    return ClaimResult(
        ClaimOutcome.ASSIGNED,
        job_id,
        provider_id,
        job_status=JobStatus.ASSIGNED,
        assigned_at=now,
    )


async def _stamp_broadcast_record(
    db: AsyncSession,
    job_id: uuid.UUID,
    provider_id: uuid.UUID,
    now: datetime,
) -> None:
    result = await db.execute(
        select(BroadcastRecord)
        .where(BroadcastRecord.job_id == job_id)
        .order_by(BroadcastRecord.attempt.desc())
        .limit(1)
    )
    record = result.scalar_one_or_none()
    if record is None:
        logger.warning("Job %s assigned without a broadcast record", job_id)
        return
    record.claimed_by_provider_id = provider_id
    record.claimed_at = now
    await db.flush()


# ---------------------------------------------------------------------------
# Active job reconciliation
# ---------------------------------------------------------------------------

async def release_provider(
    db: AsyncSession,
    provider_id: uuid.UUID,
    job_id: uuid.UUID,
) -> bool:
    """Clear ``active_job_id`` if (and only if) it still points at *job_id*."""
    result = await db.execute(
        update(ProviderState)
        .where(ProviderState.id == provider_id, ProviderState.active_job_id == job_id)
        .values(active_job_id=None)
        .execution_options(synchronize_session=False)
    )
    released = result.rowcount == 1
    if not released:
        logger.info("Provider %s no longer held job %s; nothing to release", provider_id, job_id)
    return released


async def reconcile_active_jobs(db: AsyncSession, tenant_code: str | None = None) -> int:
    """Clear ``active_job_id`` markers that no longer match a live assignment.

    A marker is stale when its job is missing, is no longer ASSIGNED /
    IN_PROGRESS, or is assigned to someone else.

    Returns:
        Number of providers released.
    """
    stmt = (
        select(ProviderState.id, ProviderState.active_job_id, Job.status, Job.assigned_provider_id)
        .outerjoin(Job, Job.id == ProviderState.active_job_id)
        .where(ProviderState.active_job_id.is_not(None))
    )
    if tenant_code is not None:
        stmt = stmt.where(ProviderState.tenant_code == tenant_code)

    rows = (await db.execute(stmt)).all()

    released = 0
    for provider_id, active_job_id, status, assigned_provider_id in rows:
        live = (
            status in (JobStatus.ASSIGNED, JobStatus.IN_PROGRESS)
            and assigned_provider_id == provider_id
        )
        if live:
            continue
        if await release_provider(db, provider_id, active_job_id):
            released += 1
            logger.warning(
                "Released stale active job %s from provider %s (job status=%s)",
                active_job_id, provider_id, status.value if status else "missing",
            )
    return released
