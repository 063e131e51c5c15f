"""
SQLAlchemy models for jobs and their broadcast log.

A job moves CREATED -> BROADCASTED -> ASSIGNED -> IN_PROGRESS -> COMPLETED,
with CANCELLED reachable from every non-terminal state. All status writes go
through conditional updates in the service layer; the ORM classes carry no
transition logic of their own.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class JobStatus(str, enum.Enum):
    CREATED = "CREATED"
    BROADCASTED = "BROADCASTED"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class BookingFeeStatus(str, enum.Enum):
    NOT_REQUIRED = "NOT_REQUIRED"   # free booking, nothing to collect
    PENDING = "PENDING"
    PAID = "PAID"
    WAIVED = "WAIVED"               # covered by an insurance code
    REFUND_REQUESTED = "REFUND_REQUESTED"


class CancelledBy(str, enum.Enum):
    CUSTOMER = "CUSTOMER"
    PROVIDER = "PROVIDER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


ACTIVE_JOB_STATUSES: frozenset[JobStatus] = frozenset({
    JobStatus.BROADCASTED,
    JobStatus.ASSIGNED,
    JobStatus.IN_PROGRESS,
})

TERMINAL_JOB_STATUSES: frozenset[JobStatus] = frozenset({
    JobStatus.COMPLETED,
    JobStatus.CANCELLED,
})


class Job(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_tenant_status", "tenant_code", "status"),
        Index("ix_jobs_customer_status", "customer_id", "status"),
    )

    reference_number: Mapped[str] = mapped_column(
        String(20), unique=True, nullable=False
    )
    tenant_code: Mapped[str] = mapped_column(String(2), nullable=False)
    customer_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    # Requested capability
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    sub_category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    type_tag: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    vehicle_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    audience_tag: Mapped[Optional[str]] = mapped_column(String(1), nullable=True)

    # Locations
    pickup_latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    pickup_longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    pickup_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    dropoff_latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    dropoff_longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    dropoff_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="job_status"),
        nullable=False,
        default=JobStatus.CREATED,
    )

    # Assignment -- non-null only while ASSIGNED / IN_PROGRESS
    assigned_provider_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    # Audit: last provider that held the assignment, never cleared
    provider_of_record_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    excluded_provider_ids: Mapped[list[str]] = mapped_column(
        JSONB, nullable=False, default=list
    )
    dispatch_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Pricing snapshot
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    estimated_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    booking_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    booking_fee_status: Mapped[BookingFeeStatus] = mapped_column(
        Enum(BookingFeeStatus, name="booking_fee_status"),
        nullable=False,
        default=BookingFeeStatus.PENDING,
    )
    booking_fee_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    pricing_snapshot: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, default=dict
    )
    insurance_waiver: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONB, nullable=True
    )

    # Lifecycle timestamps
    broadcasted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    assigned_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Cancellation audit
    cancelled_by: Mapped[Optional[CancelledBy]] = mapped_column(
        Enum(CancelledBy, name="cancelled_by"), nullable=True
    )
    cancelled_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refund_eligible: Mapped[Optional[bool]] = mapped_column(nullable=True)
    refund_reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<Job {self.reference_number} status={self.status.value}>"


class BroadcastRecord(UUIDPrimaryKeyMixin, Base):
    """Append-only log of who a job was offered to and who claimed it."""

    __tablename__ = "broadcast_records"

    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    tenant_code: Mapped[str] = mapped_column(String(2), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    provider_ids: Mapped[list[str]] = mapped_column(JSONB, nullable=False)
    delivery: Mapped[dict[str, str]] = mapped_column(JSONB, nullable=False, default=dict)
    claimed_by_provider_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    claimed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
