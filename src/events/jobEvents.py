"""
Job Event Emission
==================

Event payloads for job lifecycle changes. Each function builds an event
that downstream consumers (analytics, customer notifications, audit) can
subscribe to.

The transport (Redis pub/sub, a task queue or an event bus) is not wired
here: each emitter logs the event and returns the payload dict so callers
and tests can inspect it.

Events emitted:
  - job.created
  - job.broadcasted
  - job.assigned
  - job.status_changed
  - job.cancelled
  - job.completed
  - job.discarded
  - insurance.code_used
  - provider.suspended
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


def _build_event(
    event_type: str,
    job_id: uuid.UUID | None,
    *,
    data: dict[str, Any] | None = None,
    actor_id: uuid.UUID | None = None,
) -> dict[str, Any]:
    """Construct a standardised event payload."""
    return {
        "event_type": event_type,
        "job_id": str(job_id) if job_id else None,
        "actor_id": str(actor_id) if actor_id else None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": data or {},
    }


def _emit(event: dict[str, Any]) -> dict[str, Any]:
    logger.info("Event emitted: %s for job %s", event["event_type"], event["job_id"])
    return event


def emit_job_created(
    job_id: uuid.UUID,
    customer_id: uuid.UUID,
    reference_number: str,
    tenant_code: str,
    role: str,
) -> dict[str, Any]:
    """Emit event when a new job is created."""
    return _emit(_build_event(
        "job.created",
        job_id,
        actor_id=customer_id,
        data={
            "reference_number": reference_number,
            "tenant_code": tenant_code,
            "role": role,
        },
    ))


def emit_job_broadcasted(
    job_id: uuid.UUID,
    attempt: int,
    provider_ids: list[uuid.UUID],
    delivered: int,
) -> dict[str, Any]:
    """Emit event when a job is offered to a set of providers."""
    return _emit(_build_event(
        "job.broadcasted",
        job_id,
        data={
            "attempt": attempt,
            "provider_ids": [str(p) for p in provider_ids],
            "delivered": delivered,
        },
    ))


def emit_job_assigned(job_id: uuid.UUID, provider_id: uuid.UUID) -> dict[str, Any]:
    """Emit event when a provider wins the claim on a job."""
    return _emit(_build_event(
        "job.assigned",
        job_id,
        actor_id=provider_id,
        data={"provider_id": str(provider_id)},
    ))


def emit_job_status_changed(
    job_id: uuid.UUID,
    old_status: str,
    new_status: str,
    actor_id: uuid.UUID | None = None,
) -> dict[str, Any]:
    """Emit event when a job transitions between states."""
    event = _build_event(
        "job.status_changed",
        job_id,
        actor_id=actor_id,
        data={"old_status": old_status, "new_status": new_status},
    )
    logger.info(
        "Event emitted: %s for job %s (%s -> %s)",
        event["event_type"],
        job_id,
        old_status,
        new_status,
    )
    return event


def emit_job_cancelled(
    job_id: uuid.UUID,
    cancelled_by: uuid.UUID | None,
    role: str,
    reason: str | None = None,
    refund_eligible: bool = False,
) -> dict[str, Any]:
    """Emit event when a job is cancelled."""
    return _emit(_build_event(
        "job.cancelled",
        job_id,
        actor_id=cancelled_by,
        data={"role": role, "reason": reason, "refund_eligible": refund_eligible},
    ))


def emit_job_completed(job_id: uuid.UUID, provider_id: uuid.UUID) -> dict[str, Any]:
    """Emit event when a job reaches the completed state."""
    return _emit(_build_event(
        "job.completed",
        job_id,
        actor_id=provider_id,
        data={"provider_id": str(provider_id)},
    ))


def emit_job_discarded(job_id: uuid.UUID, customer_id: uuid.UUID) -> dict[str, Any]:
    """Emit event when an unpaid draft is deleted."""
    return _emit(_build_event("job.discarded", job_id, actor_id=customer_id))


def emit_insurance_code_used(
    job_id: uuid.UUID,
    partner_code: str,
    code: str,
) -> dict[str, Any]:
    return _emit(_build_event(
        "insurance.code_used",
        job_id,
        data={"partner_code": partner_code, "code": code},
    ))


def emit_provider_suspended(
    provider_id: uuid.UUID,
    suspended_until: datetime,
    cancel_count: int,
    job_id: uuid.UUID | None = None,
) -> dict[str, Any]:
    """Emit event when repeated cancellations suspend a provider."""
    event = _build_event(
        "provider.suspended",
        job_id,
        actor_id=provider_id,
        data={
            "suspended_until": suspended_until.isoformat(),
            "cancel_count": cancel_count,
        },
    )
    logger.warning(
        "Event emitted: %s for provider %s until %s",
        event["event_type"],
        provider_id,
        suspended_until.isoformat(),
    )
    return event
