"""
SQLAlchemy model for provider runtime state.

One row per provider: position, availability, declared capabilities and the
counters the dispatch core reads when deciding who may receive a broadcast.
``active_job_id`` is the at-most-one-active-job marker and is only written
through conditional updates.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Float,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class ProviderRole(str, enum.Enum):
    TOW_TRUCK = "TOW_TRUCK"
    MECHANIC = "MECHANIC"
    HOME_SERVICE = "HOME_SERVICE"


class VerificationStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


# Audience tag meaning "no restriction" (jobs and providers alike)
UNRESTRICTED_AUDIENCE = "B"


class ProviderState(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "provider_states"
    __table_args__ = (
        Index("ix_provider_states_tenant_role_online", "tenant_code", "role", "is_online"),
    )

    tenant_code: Mapped[str] = mapped_column(String(2), nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False)

    # Capability set
    sub_categories: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list)
    type_tags: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list)
    vehicle_types: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list)
    audience_tag: Mapped[Optional[str]] = mapped_column(String(1), nullable=True)

    # Position
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    location_updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Availability & standing
    is_online: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verification_status: Mapped[VerificationStatus] = mapped_column(
        Enum(VerificationStatus, name="verification_status"),
        nullable=False,
        default=VerificationStatus.PENDING,
    )
    is_banned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    suspended_until: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    active_job_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )

    # Rolling cancellation counter (decays after 24h without a cancel)
    cancel_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    rating: Mapped[Decimal] = mapped_column(Numeric(3, 2), nullable=False, default=Decimal("0"))
    jobs_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    push_token: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    def __repr__(self) -> str:
        return f"<ProviderState {self.id} role={self.role} online={self.is_online}>"
