"""
Job State Manager
=================

Finite state machine governing all valid job status transitions. Every
status change MUST go through ``validate_transition`` before being persisted.

State machine overview::

    CREATED --> BROADCASTED --> ASSIGNED --> IN_PROGRESS --> COMPLETED

    (any non-terminal) --> CANCELLED
    CREATED --> (draft discard, row deleted)

Guards enforce which actor may trigger each edge:

  - CREATED -> BROADCASTED        system only (dispatch engine)
  - BROADCASTED -> ASSIGNED       provider only (assignment arbiter)
  - ASSIGNED -> IN_PROGRESS       provider only
  - IN_PROGRESS -> COMPLETED      provider only
  - * -> CANCELLED                customer from any non-terminal state,
                                  provider only from ASSIGNED,
                                  admin/system from any non-terminal state

COMPLETED and CANCELLED are terminal. Time-based rules (provider cancel
window, customer refund windows) live in ``evaluate_customer_refund`` and
``provider_cancel_window_open`` so they can be tested without a clock.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from src.core.timeutils import ensure_utc
from src.models.job import BookingFeeStatus, JobStatus


# ---------------------------------------------------------------------------
# Actor types for guard enforcement
# ---------------------------------------------------------------------------

class ActorType(str, enum.Enum):
    CUSTOMER = "customer"
    PROVIDER = "provider"
    SYSTEM = "system"
    ADMIN = "admin"


# ---------------------------------------------------------------------------
# Transition guard result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TransitionResult:
    """Result of a transition validation attempt."""
    allowed: bool
    reason: str | None = None


# ---------------------------------------------------------------------------
# Transition definitions
# ---------------------------------------------------------------------------

VALID_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.CREATED: {
        JobStatus.BROADCASTED,
        JobStatus.CANCELLED,
    },
    JobStatus.BROADCASTED: {
        JobStatus.ASSIGNED,
        JobStatus.CANCELLED,
    },
    JobStatus.ASSIGNED: {
        JobStatus.IN_PROGRESS,
        JobStatus.CANCELLED,
    },
    JobStatus.IN_PROGRESS: {
        JobStatus.COMPLETED,
        JobStatus.CANCELLED,
    },
    JobStatus.COMPLETED: set(),
    JobStatus.CANCELLED: set(),
}

_PROVIDER_CANCELLABLE: frozenset[JobStatus] = frozenset({JobStatus.ASSIGNED})

# Booking fee states that block a draft discard (money already settled)
_SETTLED_FEE_STATUSES: frozenset[BookingFeeStatus] = frozenset({
    BookingFeeStatus.PAID,
    BookingFeeStatus.WAIVED,
})

_PROVIDER_EDGES: dict[JobStatus, str] = {
    JobStatus.ASSIGNED: "Only a provider can claim a job.",
    JobStatus.IN_PROGRESS: "Only the assigned provider can start a job.",
    JobStatus.COMPLETED: "Only the assigned provider can complete a job.",
}


# ---------------------------------------------------------------------------
# Guard functions
# ---------------------------------------------------------------------------

def _guard_broadcast(actor_type: ActorType) -> TransitionResult:
    if actor_type != ActorType.SYSTEM:
        return TransitionResult(
            allowed=False,
            reason="Only the dispatch engine can broadcast a job.",
        )
    return TransitionResult(allowed=True)


def _guard_provider_edge(new_status: JobStatus, actor_type: ActorType) -> TransitionResult:
    if actor_type != ActorType.PROVIDER:
        return TransitionResult(allowed=False, reason=_PROVIDER_EDGES[new_status])
    return TransitionResult(allowed=True)


def _guard_cancel(current: JobStatus, actor_type: ActorType) -> TransitionResult:
    if actor_type == ActorType.PROVIDER and current not in _PROVIDER_CANCELLABLE:
        return TransitionResult(
            allowed=False,
            reason=(
                f"Provider cannot cancel a job in '{current.value}' status. "
                f"Cancellation by provider is only allowed in: "
                f"{', '.join(s.value for s in sorted(_PROVIDER_CANCELLABLE, key=lambda s: s.value))}."
            ),
        )
    return TransitionResult(allowed=True)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def is_terminal(status: JobStatus) -> bool:
    return not VALID_TRANSITIONS.get(status)


def validate_transition(
    current_status: JobStatus,
    new_status: JobStatus,
    actor_type: ActorType = ActorType.SYSTEM,
) -> TransitionResult:
    """Validate whether a job status transition is allowed.

    Checks two layers:
    1. Is the transition structurally valid per the state machine?
    2. Does the actor have permission for this specific transition (guards)?

    Returns a ``TransitionResult`` with ``allowed=True`` if the transition
    is permitted, or ``allowed=False`` with a human-readable ``reason``.
    """
    allowed_targets = VALID_TRANSITIONS.get(current_status, set())
    if new_status not in allowed_targets:
        return TransitionResult(
            allowed=False,
            reason=(
                f"Invalid transition: '{current_status.value}' -> '{new_status.value}'. "
                f"Allowed transitions from '{current_status.value}': "
                f"{', '.join(s.value for s in sorted(allowed_targets, key=lambda s: s.value)) or 'none'}."
            ),
        )

    if new_status == JobStatus.BROADCASTED:
        return _guard_broadcast(actor_type)

    if new_status in _PROVIDER_EDGES:
        return _guard_provider_edge(new_status, actor_type)

    if new_status == JobStatus.CANCELLED:
        return _guard_cancel(current_status, actor_type)

    return TransitionResult(allowed=True)


def get_valid_transitions(
    current_status: JobStatus,
    actor_type: ActorType = ActorType.SYSTEM,
) -> list[JobStatus]:
    """Return the statuses the given actor can move to from the current one."""
    candidates = VALID_TRANSITIONS.get(current_status, set())
    valid: list[JobStatus] = []
    for target in candidates:
        result = validate_transition(current_status, target, actor_type)
        if result.allowed:
            valid.append(target)
    return sorted(valid, key=lambda s: s.value)


def validate_discard(
    current_status: JobStatus,
    booking_fee_status: BookingFeeStatus,
) -> TransitionResult:
    """A draft may be discarded only while CREATED and before payment."""
    if current_status != JobStatus.CREATED:
        return TransitionResult(
            allowed=False,
            reason=f"Only CREATED drafts can be discarded (job is '{current_status.value}').",
        )
    if booking_fee_status in _SETTLED_FEE_STATUSES:
        return TransitionResult(
            allowed=False,
            reason="Booking fee already settled; cancel the job instead.",
        )
    return TransitionResult(allowed=True)


# ---------------------------------------------------------------------------
# Cancellation windows
# ---------------------------------------------------------------------------

class RefundReason(str, enum.Enum):
    CANCELLED_WITHIN_GRACE_WINDOW = "CANCELLED_WITHIN_GRACE_WINDOW"
    PROVIDER_NO_SHOW = "PROVIDER_NO_SHOW"
    PROVIDER_CANCELLED = "PROVIDER_CANCELLED"
    NO_PROVIDER_FOUND = "NO_PROVIDER_FOUND"
    OPERATOR_DECISION = "OPERATOR_DECISION"
    # Negative outcomes
    OUTSIDE_REFUND_WINDOW = "OUTSIDE_REFUND_WINDOW"
    ASSIGNMENT_TIME_UNKNOWN = "ASSIGNMENT_TIME_UNKNOWN"
    NOT_REFUNDABLE_IN_STATUS = "NOT_REFUNDABLE_IN_STATUS"


@dataclass(frozen=True)
class RefundDecision:
    eligible: bool
    reason: RefundReason
    elapsed_seconds: Optional[float] = None


def evaluate_customer_refund(
    status: JobStatus,
    assigned_at: Optional[datetime],
    now: datetime,
    *,
    grace_seconds: int,
    no_show_seconds: int,
    booking_fee_status: BookingFeeStatus = BookingFeeStatus.PAID,
    refund_if_no_provider: bool = True,
) -> RefundDecision:
    """Decide whether a customer cancellation is refund-eligible.

    ASSIGNED jobs are refunded inside the grace window after assignment and
    again once the no-show threshold has passed; the stretch in between is
    not refundable. A CREATED job whose fee was paid but never reached a
    provider is refunded when the tenant allows it.
    """
    if status == JobStatus.ASSIGNED:
        assigned = ensure_utc(assigned_at)
        if assigned is None:
            return RefundDecision(eligible=False, reason=RefundReason.ASSIGNMENT_TIME_UNKNOWN)
        elapsed = max((now - assigned).total_seconds(), 0.0)
        if elapsed <= grace_seconds:
            return RefundDecision(True, RefundReason.CANCELLED_WITHIN_GRACE_WINDOW, elapsed)
        if elapsed >= no_show_seconds:
            return RefundDecision(True, RefundReason.PROVIDER_NO_SHOW, elapsed)
        return RefundDecision(False, RefundReason.OUTSIDE_REFUND_WINDOW, elapsed)

    if (
        status == JobStatus.CREATED
        and booking_fee_status == BookingFeeStatus.PAID
        and refund_if_no_provider
    ):
        return RefundDecision(eligible=True, reason=RefundReason.NO_PROVIDER_FOUND)

    return RefundDecision(eligible=False, reason=RefundReason.NOT_REFUNDABLE_IN_STATUS)


def provider_cancel_window_open(
    assigned_at: Optional[datetime],
    now: datetime,
    window_seconds: int,
) -> bool:
    assigned = ensure_utc(assigned_at)
    if assigned is None:
        return False
    return now - assigned <= timedelta(seconds=window_seconds)
