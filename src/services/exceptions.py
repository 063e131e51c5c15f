"""
Domain exceptions shared by the dispatch services.

Only input/authorization problems are exceptions. Expected negative
outcomes (no providers, a lost claim race, a failed proximity check) are
returned as typed results by the services themselves.
"""

from __future__ import annotations

import uuid


class DispatchError(Exception):
    """Base class; ``code`` is the machine-readable value sent to clients."""

    code: str = "DISPATCH_ERROR"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class JobNotFoundError(DispatchError):
    code = "JOB_NOT_FOUND"

    def __init__(self, job_id: uuid.UUID) -> None:
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class JobValidationError(DispatchError):
    code = "VALIDATION_ERROR"


class ServiceDisabledError(DispatchError):
    code = "SERVICE_DISABLED"


class CustomerHasActiveJobError(DispatchError):
    code = "CUSTOMER_ALREADY_HAS_ACTIVE_JOB"

    def __init__(self, customer_id: uuid.UUID, job_id: uuid.UUID) -> None:
        self.customer_id = customer_id
        self.job_id = job_id
        super().__init__(f"Customer already has an active job ({job_id})")


class InvalidTransitionError(DispatchError):
    code = "INVALID_TRANSITION"


class NotJobOwnerError(DispatchError):
    code = "NOT_JOB_OWNER"


class NotAssignedProviderError(DispatchError):
    code = "NOT_ASSIGNED_PROVIDER"


class ProviderNotEligibleError(DispatchError):
    code = "PROVIDER_NOT_ELIGIBLE"


class ProviderCancelWindowExpiredError(DispatchError):
    code = "PROVIDER_CANCEL_WINDOW_EXPIRED"


class BookingFeeNotSettledError(DispatchError):
    code = "BOOKING_FEE_NOT_PAID"


class ConcurrentJobUpdateError(DispatchError):
    code = "CONCURRENT_UPDATE"


class InsuranceWaiverError(DispatchError):
    """The presented code failed validation; nothing was created."""

    code = "INSURANCE_CODE_INVALID"

    def __init__(self, reason: str, message: str) -> None:
        self.reason = reason
        super().__init__(message)


class WaiverCommitError(DispatchError):
    """Code usage could not be committed; the job was rolled back."""

    code = "INSURANCE_LOCK_FAILED"


class ProviderNotFoundError(DispatchError):
    code = "PROVIDER_NOT_FOUND"

    def __init__(self, provider_id: uuid.UUID) -> None:
        self.provider_id = provider_id
        super().__init__(f"Provider {provider_id} not found")


class InvalidLocationError(DispatchError):
    code = "INVALID_LOCATION"
