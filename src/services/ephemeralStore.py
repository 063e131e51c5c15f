"""
Ephemeral Store
===============

Short-lived key/value state kept in the database with an explicit expiry,
so it survives restarts and is shared by every worker. Used for
idempotency keys on job creation and for any OTP-style caches.

Expired rows are invisible to ``get`` and removed by ``purge_expired``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.timeutils import ensure_utc, utcnow
from src.models.ephemeral import EphemeralEntry

logger = logging.getLogger(__name__)

IDEMPOTENCY_NAMESPACE = "job_create_idempotency"


async def _find(db: AsyncSession, namespace: str, key: str) -> Optional[EphemeralEntry]:
    result = await db.execute(
        select(EphemeralEntry).where(
            EphemeralEntry.namespace == namespace,
            EphemeralEntry.key == key,
        )
    )
    return result.scalar_one_or_none()


async def get_entry(
    db: AsyncSession,
    namespace: str,
    key: str,
    now: datetime | None = None,
) -> Optional[dict[str, Any]]:
    """Return the stored value, or None if absent or expired."""
    now = now or utcnow()
    entry = await _find(db, namespace, key)
    if entry is None:
        return None
    if ensure_utc(entry.expires_at) <= now:
        return None
    return entry.value


async def put_entry(
    db: AsyncSession,
    namespace: str,
    key: str,
    value: dict[str, Any],
    ttl_seconds: int,
    now: datetime | None = None,
) -> EphemeralEntry:
    """Insert or overwrite an entry with a fresh expiry."""
    now = now or utcnow()
    expires_at = now + timedelta(seconds=ttl_seconds)

    entry = await _find(db, namespace, key)
    if entry is None:
        entry = EphemeralEntry(namespace=namespace, key=key, value=value, expires_at=expires_at)
        db.add(entry)
    else:
        entry.value = value
        entry.expires_at = expires_at
    await db.flush()
    return entry


async def pop_entry(
    db: AsyncSession,
    namespace: str,
    key: str,
    now: datetime | None = None,
) -> Optional[dict[str, Any]]:
    """Return and delete an entry (one-time reads such as OTP checks)."""
    value = await get_entry(db, namespace, key, now)
    await db.execute(
        delete(EphemeralEntry).where(
            EphemeralEntry.namespace == namespace,
            EphemeralEntry.key == key,
        )
    )
    return value


async def purge_expired(db: AsyncSession, now: datetime | None = None) -> int:
    now = now or utcnow()
    result = await db.execute(
        delete(EphemeralEntry).where(EphemeralEntry.expires_at <= now)
    )
    if result.rowcount:
        logger.info("Purged %d expired ephemeral entries", result.rowcount)
    return result.rowcount or 0
