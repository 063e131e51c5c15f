"""
SQLAlchemy models for insurance partners and their waiver codes.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class InsurancePartner(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "insurance_partners"

    partner_code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    tenant_code: Mapped[str] = mapped_column(String(2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class InsuranceCode(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "insurance_codes"
    __table_args__ = (
        UniqueConstraint("partner_id", "code", name="uq_insurance_codes_partner_code"),
    )

    partner_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("insurance_partners.id", ondelete="CASCADE"),
        nullable=False,
    )
    # Stored upper-case
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    tenant_code: Mapped[str] = mapped_column(String(2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Optional binding to the policy holder
    bound_phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    bound_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    max_uses: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_used_job_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
