"""
Dispatch SQLAlchemy Models
==========================

Central import point for all ORM models. Import ``Base`` from here for
Alembic auto-generation and for the ``create_all`` convenience in tests.

Usage::

    from src.models import Base, Job, ProviderState
"""

# -- Base & Mixins --
from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin

# -- Jobs --
from .job import (
    ACTIVE_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    BookingFeeStatus,
    BroadcastRecord,
    CancelledBy,
    Job,
    JobStatus,
)

# -- Providers --
from .provider import (
    UNRESTRICTED_AUDIENCE,
    ProviderRole,
    ProviderState,
    VerificationStatus,
)

# -- Pricing --
from .pricing import PricingConfig

# -- Insurance --
from .insurance import InsuranceCode, InsurancePartner

# -- Ephemeral state --
from .ephemeral import EphemeralEntry

__all__ = [
    "ACTIVE_JOB_STATUSES",
    "Base",
    "BookingFeeStatus",
    "BroadcastRecord",
    "CancelledBy",
    "EphemeralEntry",
    "InsuranceCode",
    "InsurancePartner",
    "Job",
    "JobStatus",
    "PricingConfig",
    "ProviderRole",
    "ProviderState",
    "TERMINAL_JOB_STATUSES",
    "TimestampMixin",
    "UNRESTRICTED_AUDIENCE",
    "UUIDPrimaryKeyMixin",
    "VerificationStatus",
]
