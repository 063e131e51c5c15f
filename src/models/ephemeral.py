"""
Short-lived key/value entries with an explicit expiry (OTP, idempotency
keys). Rows past ``expires_at`` are treated as absent and purged lazily.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class EphemeralEntry(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "ephemeral_entries"
    __table_args__ = (
        UniqueConstraint("namespace", "key", name="uq_ephemeral_entries_namespace_key"),
    )

    namespace: Mapped[str] = mapped_column(String(64), nullable=False)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
