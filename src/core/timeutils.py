"""
Timezone helpers shared by the lifecycle and pricing services.

Some backends (SQLite in tests) hand back naive datetimes for
``DateTime(timezone=True)`` columns; every comparison goes through
``ensure_utc`` so aware and naive values are never mixed.
"""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Return *value* as an aware UTC datetime (naive values are assumed UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
